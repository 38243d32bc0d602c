from __future__ import annotations

from datetime import timedelta
import logging

from awe_agentrelay.adapters import BinaryResolver, SubprocessRunner
from awe_agentrelay.api import create_app
from awe_agentrelay.cancellation import CancellationRegistry
from awe_agentrelay.config import Settings, load_settings
from awe_agentrelay.db import Database, SqlCatalog
from awe_agentrelay.observability import configure_observability
from awe_agentrelay.pipeline import Pipeline
from awe_agentrelay.poller import Poller
from awe_agentrelay.queue_store import SqlQueueStore
from awe_agentrelay.service import OrchestratorService

_log = logging.getLogger(__name__)


def build_app(settings: Settings | None = None):
    settings = settings or load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )

    db = Database(settings.database_url)
    db.create_schema()
    catalog = SqlCatalog(db)
    queue = SqlQueueStore(db)
    registry = CancellationRegistry()
    resolver = BinaryResolver(settings.tool_paths)
    for row in resolver.health():
        if not row['available']:
            _log.warning('%s not found on this host; runs using it will fail', row['display_name'])

    runner = SubprocessRunner(
        resolver=resolver,
        registry=registry,
        temp_root=settings.temp_root,
        timeout_seconds=settings.run_timeout_seconds,
    )
    pipeline = Pipeline(catalog=catalog, queue=queue, runner=runner, registry=registry)
    poller = Poller(
        queue=queue,
        pipeline=pipeline,
        registry=registry,
        poll_interval_seconds=settings.poll_interval_seconds,
        max_task_runs_per_workspace=settings.max_task_runs_per_workspace,
        max_workers=settings.max_workers,
        retention=timedelta(days=settings.queue_retention_days),
        cleanup_interval_seconds=settings.cleanup_interval_seconds,
    )
    service = OrchestratorService(
        catalog=catalog,
        queue=queue,
        registry=registry,
        resolver=resolver,
    )
    return create_app(service=service, poller=poller)


app = build_app()
