from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import tempfile

TOOL_PATH_ENV = {
    'claude': 'AWE_RELAY_CLAUDE_PATH',
    'gemini': 'AWE_RELAY_GEMINI_PATH',
    'codex': 'AWE_RELAY_CODEX_PATH',
    'opencode': 'AWE_RELAY_OPENCODE_PATH',
}


@dataclass(frozen=True)
class Settings:
    database_url: str
    service_name: str
    otel_endpoint: str | None
    poll_interval_seconds: float
    run_timeout_seconds: int
    max_task_runs_per_workspace: int
    max_workers: int
    queue_retention_days: int
    cleanup_interval_seconds: int
    temp_root: Path
    tool_paths: dict[str, str] = field(default_factory=dict)


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_text(name: str) -> str | None:
    text = str(os.getenv(name, '') or '').strip()
    return text or None


def load_tool_paths() -> dict[str, str]:
    paths: dict[str, str] = {}
    for cli_type, env_name in TOOL_PATH_ENV.items():
        value = _env_text(env_name)
        if value:
            paths[cli_type] = value
    return paths


def load_settings() -> Settings:
    database_url = os.getenv('AWE_RELAY_DATABASE_URL', '') or 'sqlite:///./.agentrelay/relay.db'
    service_name = os.getenv('AWE_RELAY_SERVICE_NAME', 'awe-agentrelay')
    otel_endpoint = _env_text('AWE_RELAY_OTEL_EXPORTER_OTLP_ENDPOINT')
    poll_interval_ms = _env_int('AWE_RELAY_POLL_INTERVAL_MS', 1000, minimum=50)
    # Agents can spend a long time editing a repository; keep the ceiling generous.
    run_timeout_seconds = _env_int('AWE_RELAY_RUN_TIMEOUT_SECONDS', 1800, minimum=10)
    max_task_runs_per_workspace = _env_int('AWE_RELAY_MAX_TASK_RUNS_PER_WORKSPACE', 1, minimum=1)
    max_workers = _env_int('AWE_RELAY_MAX_WORKERS', 8, minimum=1)
    queue_retention_days = _env_int('AWE_RELAY_QUEUE_RETENTION_DAYS', 7, minimum=1)
    cleanup_interval_seconds = _env_int('AWE_RELAY_CLEANUP_INTERVAL_SECONDS', 3600, minimum=60)
    temp_root = Path(_env_text('AWE_RELAY_TEMP_ROOT') or tempfile.gettempdir()).resolve()
    return Settings(
        database_url=database_url,
        service_name=service_name,
        otel_endpoint=otel_endpoint,
        poll_interval_seconds=poll_interval_ms / 1000.0,
        run_timeout_seconds=run_timeout_seconds,
        max_task_runs_per_workspace=max_task_runs_per_workspace,
        max_workers=max_workers,
        queue_retention_days=queue_retention_days,
        cleanup_interval_seconds=cleanup_interval_seconds,
        temp_root=temp_root,
        tool_paths=load_tool_paths(),
    )
