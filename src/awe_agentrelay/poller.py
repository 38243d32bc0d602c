from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import timedelta
import logging
import threading
import time
from typing import Callable

from awe_agentrelay.cancellation import CancellationRegistry
from awe_agentrelay.domain.models import QueueKind
from awe_agentrelay.errors import failure_reason
from awe_agentrelay.pipeline import Pipeline
from awe_agentrelay.queue_store import SqlQueueStore

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class _InFlight:
    kind: str
    entity_id: str
    workspace_id: str
    future: Future


class Poller:
    """Background loop that claims queue items and runs them on a thread pool."""

    def __init__(
        self,
        *,
        queue: SqlQueueStore,
        pipeline: Pipeline,
        registry: CancellationRegistry,
        poll_interval_seconds: float = 1.0,
        max_task_runs_per_workspace: int = 1,
        max_workers: int = 8,
        retention: timedelta = timedelta(days=7),
        cleanup_interval_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.pipeline = pipeline
        self.registry = registry
        self.poll_interval_seconds = max(0.01, float(poll_interval_seconds))
        self.max_task_runs_per_workspace = max(1, int(max_task_runs_per_workspace))
        self.max_workers = max(1, int(max_workers))
        self.retention = retention
        self.cleanup_interval_seconds = float(cleanup_interval_seconds)
        self._clock = clock
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._pool: ThreadPoolExecutor | None = None
        self._inflight: dict[int, _InFlight] = {}
        self._inflight_lock = threading.Lock()
        self._next_cleanup_at = 0.0

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            recovered = self.queue.recover_interrupted()
            if recovered:
                _log.info('recovered interrupted queue items count=%s', recovered)
            self._stop.clear()
            self._next_cleanup_at = self._clock()
            self._thread = threading.Thread(target=self._loop, daemon=True, name='relay-poller')
            self._thread.start()

    def stop(self, *, timeout: float = 10.0) -> None:
        with self._lock:
            self._stop.set()
            thread = self._thread

        killed = self.registry.cancel_all()
        if killed:
            _log.info('stopped in-flight runs on shutdown count=%s', killed)

        if thread is not None and thread.is_alive():
            thread.join(timeout=max(timeout, 0.0))

        with self._inflight_lock:
            futures = [entry.future for entry in self._inflight.values()]
        if futures and timeout > 0:
            wait(futures, timeout=timeout)

        pool = self._pool
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=False)
            self._pool = None
        self._sweep()
        self._thread = None

    def tick_once(self) -> int:
        """Claim and dispatch every item the concurrency policy allows right now."""
        self._sweep()
        if self._stop.is_set():
            return 0
        dispatched = 0

        while self._has_capacity():
            item = self.queue.claim_next(kind=QueueKind.CHAT)
            if item is None:
                break
            self._submit(item)
            dispatched += 1

        for workspace_id in self.queue.workspaces_with_queued(kind=QueueKind.TASK):
            while self._has_capacity() and self._task_runs(workspace_id) < self.max_task_runs_per_workspace:
                item = self.queue.claim_next(workspace_id, kind=QueueKind.TASK)
                if item is None:
                    break
                self._submit(item)
                dispatched += 1
        return dispatched

    def wait_idle(self, timeout: float = 10.0) -> bool:
        """Block until nothing is in flight. Returns False on timeout."""
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            with self._inflight_lock:
                futures = [entry.future for entry in self._inflight.values()]
            if not futures:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            wait(futures, timeout=remaining)
            self._sweep()

    def run_cleanup(self) -> int:
        purged = self.queue.purge_terminal(older_than=self.retention)
        if purged:
            _log.info('purged terminal queue items count=%s', purged)
        return purged

    def inflight_entities(self) -> list[str]:
        with self._inflight_lock:
            return sorted({entry.entity_id for entry in self._inflight.values() if not entry.future.done()})

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                if self._clock() >= self._next_cleanup_at:
                    self.run_cleanup()
                    self._next_cleanup_at = self._clock() + self.cleanup_interval_seconds
                self.tick_once()
            except Exception:
                _log.exception('poller tick failed')
            self._stop.wait(self.poll_interval_seconds)

    def _get_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='relay-run')
        return self._pool

    def _has_capacity(self) -> bool:
        with self._inflight_lock:
            return len(self._inflight) < self.max_workers

    def _task_runs(self, workspace_id: str) -> int:
        with self._inflight_lock:
            return sum(
                1
                for entry in self._inflight.values()
                if entry.kind == QueueKind.TASK.value and entry.workspace_id == workspace_id
            )

    def _submit(self, item: dict) -> None:
        _log.info(
            'dispatching queue item id=%s kind=%s entity_id=%s priority=%s',
            item['id'], item['kind'], item['entity_id'], item['is_priority'],
        )
        future = self._get_pool().submit(self._run, item)
        with self._inflight_lock:
            self._inflight[int(item['id'])] = _InFlight(
                kind=str(item['kind']),
                entity_id=str(item['entity_id']),
                workspace_id=str(item['workspace_id']),
                future=future,
            )

    def _run(self, item: dict) -> str:
        try:
            return self.pipeline.dispatch(item)
        except Exception as exc:
            _log.exception('dispatch crashed queue_item_id=%s', item['id'])
            self.queue.fail(int(item['id']), failure_reason(exc))
            raise

    def _sweep(self) -> None:
        with self._inflight_lock:
            done_ids = [item_id for item_id, entry in self._inflight.items() if entry.future.done()]
            finished = [self._inflight.pop(item_id) for item_id in done_ids]
        for item_id, entry in zip(done_ids, finished):
            exc = entry.future.exception()
            if exc is not None:
                _log.error('queue item %s raised unexpected error: %s', item_id, exc)


__all__ = ['Poller']
