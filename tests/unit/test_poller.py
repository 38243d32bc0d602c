from __future__ import annotations

from datetime import timedelta
from pathlib import Path
import threading
import time

from awe_agentrelay.cancellation import CancellationRegistry
from awe_agentrelay.db import Database, SqlCatalog
from awe_agentrelay.pipeline import CANCELLED, COMPLETED
from awe_agentrelay.poller import Poller
from awe_agentrelay.queue_store import SqlQueueStore


class GatedPipeline:
    """Holds every dispatch until the gate opens, then completes the item."""

    def __init__(self, queue: SqlQueueStore, registry: CancellationRegistry):
        self.queue = queue
        self.registry = registry
        self.gate = threading.Event()
        self.seen: list[str] = []
        self._lock = threading.Lock()

    def dispatch(self, item: dict) -> str:
        with self._lock:
            self.seen.append(item['entity_id'])
        with self.registry.run_scope(item['entity_id']) as token:
            while not self.gate.is_set():
                if token.wait(0.01):
                    self.queue.fail(item['id'], 'cancelled')
                    return CANCELLED
        self.queue.complete(item['id'])
        return COMPLETED


class CrashingPipeline:
    def dispatch(self, item: dict) -> str:
        raise RuntimeError('boom')


def _setup(tmp_path: Path) -> tuple[SqlCatalog, SqlQueueStore, CancellationRegistry]:
    db = Database(f'sqlite:///{(tmp_path / "relay.db").as_posix()}')
    db.create_schema()
    return SqlCatalog(db), SqlQueueStore(db), CancellationRegistry()


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_tick_runs_one_task_per_workspace_while_chats_proceed(tmp_path: Path):
    catalog, queue, registry = _setup(tmp_path)
    ws = catalog.create_workspace(title='ws')
    other = catalog.create_workspace(title='other')
    first = catalog.create_task(workspace_id=ws['id'], summary='first')
    second = catalog.create_task(workspace_id=ws['id'], summary='second')
    elsewhere = catalog.create_task(workspace_id=other['id'], summary='elsewhere')
    chat = catalog.create_chat(workspace_id=ws['id'])
    for task in (first, second, elsewhere):
        queue.enqueue(kind='task', entity_id=task['id'], workspace_id=task['workspace_id'])
    queue.enqueue(kind='chat', entity_id=chat['id'], workspace_id=ws['id'])

    pipeline = GatedPipeline(queue, registry)
    poller = Poller(queue=queue, pipeline=pipeline, registry=registry)
    try:
        assert poller.tick_once() == 3
        assert poller.tick_once() == 0
        assert set(poller.inflight_entities()) == {first['id'], elsewhere['id'], chat['id']}
        assert queue.get_active(kind='task', entity_id=second['id'])['status'] == 'queued'

        pipeline.gate.set()
        assert poller.wait_idle(timeout=5) is True
        assert poller.tick_once() == 1
        assert poller.wait_idle(timeout=5) is True
    finally:
        pipeline.gate.set()
        poller.stop(timeout=5)

    assert pipeline.seen.index(first['id']) < pipeline.seen.index(second['id'])
    assert len(queue.list_items(status='completed', limit=10)) == 4


def test_max_workers_bounds_in_flight_items(tmp_path: Path):
    catalog, queue, registry = _setup(tmp_path)
    ws = catalog.create_workspace(title='ws')
    for index in range(3):
        chat = catalog.create_chat(workspace_id=ws['id'], title=f'chat {index}')
        queue.enqueue(kind='chat', entity_id=chat['id'], workspace_id=ws['id'])

    pipeline = GatedPipeline(queue, registry)
    poller = Poller(queue=queue, pipeline=pipeline, registry=registry, max_workers=2)
    try:
        assert poller.tick_once() == 2
        assert poller.tick_once() == 0
        pipeline.gate.set()
        assert poller.wait_idle(timeout=5) is True
        assert poller.tick_once() == 1
    finally:
        pipeline.gate.set()
        poller.stop(timeout=5)


def test_crashing_dispatch_fails_the_item(tmp_path: Path):
    catalog, queue, registry = _setup(tmp_path)
    ws = catalog.create_workspace(title='ws')
    task = catalog.create_task(workspace_id=ws['id'], summary='t')
    item = queue.enqueue(kind='task', entity_id=task['id'], workspace_id=ws['id'])

    poller = Poller(queue=queue, pipeline=CrashingPipeline(), registry=registry)
    try:
        assert poller.tick_once() == 1
        assert poller.wait_idle(timeout=5) is True
    finally:
        poller.stop(timeout=5)

    stored = queue.get(item['id'])
    assert (stored['status'], stored['error']) == ('failed', 'boom')


def test_start_recovers_and_stop_cancels_in_flight_runs(tmp_path: Path):
    catalog, queue, registry = _setup(tmp_path)
    ws = catalog.create_workspace(title='ws')
    task = catalog.create_task(workspace_id=ws['id'], summary='t')
    item = queue.enqueue(kind='task', entity_id=task['id'], workspace_id=ws['id'])
    # Left in_progress by a previous process.
    queue.claim_next()

    pipeline = GatedPipeline(queue, registry)
    poller = Poller(queue=queue, pipeline=pipeline, registry=registry, poll_interval_seconds=0.01)
    poller.start()
    try:
        assert poller.running is True
        assert _wait_for(lambda: registry.is_active(task['id'])) is True
    finally:
        poller.stop(timeout=5)

    assert poller.running is False
    stored = queue.get(item['id'])
    assert (stored['status'], stored['error']) == ('failed', 'cancelled')
    assert pipeline.seen == [task['id']]
    assert poller.tick_once() == 0


def test_run_cleanup_purges_old_terminal_items(tmp_path: Path):
    catalog, queue, registry = _setup(tmp_path)
    ws = catalog.create_workspace(title='ws')
    task = catalog.create_task(workspace_id=ws['id'], summary='t')
    item = queue.enqueue(kind='task', entity_id=task['id'], workspace_id=ws['id'])
    queue.complete(item['id'])

    keep = Poller(queue=queue, pipeline=CrashingPipeline(), registry=registry)
    assert keep.run_cleanup() == 0
    purge = Poller(
        queue=queue,
        pipeline=CrashingPipeline(),
        registry=registry,
        retention=timedelta(seconds=-1),
    )
    assert purge.run_cleanup() == 1
    assert queue.get(item['id']) is None
