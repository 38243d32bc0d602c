from __future__ import annotations

from contextlib import contextmanager
import logging
import subprocess
from threading import Event, Lock
from typing import Iterable, Iterator

_log = logging.getLogger(__name__)


class CancellationToken:
    """Per-invocation cancel flag checked before spawn and while awaiting exit."""

    def __init__(self) -> None:
        self._event = Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


class CancellationRegistry:
    """Maps an entity with an in-flight run to its token and live subprocess."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._tokens: dict[str, CancellationToken] = {}
        self._handles: dict[str, subprocess.Popen] = {}

    @contextmanager
    def run_scope(self, entity_id: str) -> Iterator[CancellationToken]:
        token = CancellationToken()
        with self._lock:
            self._tokens[entity_id] = token
        try:
            yield token
        finally:
            with self._lock:
                if self._tokens.get(entity_id) is token:
                    del self._tokens[entity_id]
                self._handles.pop(entity_id, None)

    def register(self, entity_id: str, handle: subprocess.Popen) -> None:
        with self._lock:
            self._handles[entity_id] = handle
            token = self._tokens.get(entity_id)
            kill_now = token is not None and token.cancelled
        if kill_now:
            # Cancel arrived between the pre-spawn check and registration.
            self._kill(entity_id, handle)

    def deregister(self, entity_id: str, handle: subprocess.Popen | None = None) -> None:
        with self._lock:
            current = self._handles.get(entity_id)
            if current is None:
                return
            if handle is None or current is handle:
                del self._handles[entity_id]

    def is_active(self, entity_id: str) -> bool:
        with self._lock:
            return entity_id in self._tokens or entity_id in self._handles

    def active_entities(self) -> list[str]:
        with self._lock:
            return sorted(set(self._tokens) | set(self._handles))

    def cancel(self, entity_id: str) -> bool:
        """Cancel the entity's run. Returns False when nothing was running."""
        with self._lock:
            token = self._tokens.get(entity_id)
            handle = self._handles.get(entity_id)
        if token is None and handle is None:
            return False
        if token is not None:
            token.cancel()
        if handle is not None:
            self._kill(entity_id, handle)
        _log.info('cancel requested entity_id=%s spawned=%s', entity_id, handle is not None)
        return True

    def cancel_many(self, entity_ids: Iterable[str]) -> int:
        return sum(1 for entity_id in entity_ids if self.cancel(entity_id))

    def cancel_all(self) -> int:
        return self.cancel_many(self.active_entities())

    @staticmethod
    def _kill(entity_id: str, handle: subprocess.Popen) -> None:
        if handle.poll() is not None:
            return
        try:
            handle.kill()
        except OSError:
            _log.warning('kill failed entity_id=%s pid=%s', entity_id, handle.pid, exc_info=True)
