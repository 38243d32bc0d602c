from __future__ import annotations

from dataclasses import dataclass
import time

from awe_agentrelay.adapters.resolver import BinaryResolver
from awe_agentrelay.cancellation import CancellationRegistry
from awe_agentrelay.db import SqlCatalog
from awe_agentrelay.domain.events import EventType, cycle_in_flight
from awe_agentrelay.domain.models import (
    ActorType,
    MessageRole,
    QueueKind,
    QueueStatus,
    TaskStatus,
    normalize_cli_type,
    normalize_task_status,
)
from awe_agentrelay.errors import InputValidationError, NotFoundError, QueueConflictError
from awe_agentrelay.observability import get_logger
from awe_agentrelay.queue_store import SqlQueueStore

_log = get_logger('awe_agentrelay.service')

# Statuses a user may move a task out of and have the agents pick it up again.
_REOPEN_FROM = (TaskStatus.IN_REVIEW.value, TaskStatus.DONE.value)


@dataclass(frozen=True)
class CreateTaskInput:
    workspace_id: str
    summary: str
    description: str = ''
    priority: bool = False


@dataclass(frozen=True)
class CreateAgentInput:
    workspace_id: str
    name: str
    instruction: str
    cli_type: str = 'claude'
    order: int | None = None


def _require_text(value: str | None, *, field: str) -> str:
    text = str(value or '').strip()
    if not text:
        raise InputValidationError(f'{field} must not be blank', field=field)
    return text


class OrchestratorService:
    def __init__(
        self,
        *,
        catalog: SqlCatalog,
        queue: SqlQueueStore,
        registry: CancellationRegistry,
        resolver: BinaryResolver,
        cancel_wait_seconds: float = 5.0,
    ):
        self.catalog = catalog
        self.queue = queue
        self.registry = registry
        self.resolver = resolver
        self.cancel_wait_seconds = max(0.0, float(cancel_wait_seconds))

    # Workspaces, agents, tasks, chats

    def create_workspace(
        self,
        *,
        title: str,
        description: str = '',
        working_directory: str | None = None,
        notify_on_error: bool = True,
        notify_on_in_review: bool = True,
    ) -> dict:
        return self.catalog.create_workspace(
            title=_require_text(title, field='title'),
            description=description,
            working_directory=working_directory,
            notify_on_error=notify_on_error,
            notify_on_in_review=notify_on_in_review,
        )

    def get_workspace(self, workspace_id: str) -> dict:
        workspace = self.catalog.get_workspace(workspace_id)
        if workspace is None:
            raise NotFoundError('workspace', workspace_id)
        return workspace

    def delete_workspace(self, workspace_id: str) -> None:
        """Stop every run the workspace owns, then remove it with its tasks and chats."""
        self.get_workspace(workspace_id)
        owned = self.catalog.list_workspace_entities(workspace_id)
        entity_ids = [*owned['task_ids'], *owned['chat_ids']]
        cancelled = self.registry.cancel_many(entity_ids)
        if cancelled:
            _log.info('cancelled runs before workspace delete workspace_id=%s count=%s', workspace_id, cancelled)
            self._await_runs_exit(entity_ids)
        self.catalog.delete_workspace(workspace_id)
        _log.info('workspace deleted workspace_id=%s', workspace_id)

    def create_agent(self, payload: CreateAgentInput) -> dict:
        name = _require_text(payload.name, field='name')
        instruction = _require_text(payload.instruction, field='instruction')
        try:
            cli_type = normalize_cli_type(payload.cli_type)
        except ValueError as exc:
            raise InputValidationError(str(exc), field='cli_type') from exc
        if payload.order is not None and int(payload.order) < 1:
            raise InputValidationError('order must be >= 1', field='order')
        return self.catalog.create_agent(
            workspace_id=payload.workspace_id,
            name=name,
            instruction=instruction,
            cli_type=cli_type,
            order=payload.order,
        )

    def list_agents(self, workspace_id: str) -> list[dict]:
        self.get_workspace(workspace_id)
        return self.catalog.list_agents(workspace_id)

    def create_task(self, payload: CreateTaskInput) -> dict:
        summary = _require_text(payload.summary, field='summary')
        task = self.catalog.create_task(
            workspace_id=payload.workspace_id,
            summary=summary,
            description=payload.description,
        )
        self.enqueue_task(task['id'], priority=payload.priority)
        return task

    def get_task(self, task_id: str) -> dict:
        task = self.catalog.get_task(task_id)
        if task is None:
            raise NotFoundError('task', task_id)
        return task

    def list_events(self, task_id: str) -> list[dict]:
        self.get_task(task_id)
        return self.catalog.list_events(task_id)

    def list_comments(self, task_id: str) -> list[dict]:
        self.get_task(task_id)
        return self.catalog.list_comments(task_id)

    def create_chat(
        self,
        *,
        workspace_id: str,
        agent_id: str | None = None,
        title: str | None = None,
        cli_type: str | None = None,
    ) -> dict:
        if cli_type:
            try:
                cli_type = normalize_cli_type(cli_type)
            except ValueError as exc:
                raise InputValidationError(str(exc), field='cli_type') from exc
        return self.catalog.create_chat(
            workspace_id=workspace_id,
            agent_id=agent_id,
            title=str(title or '').strip() or 'New chat',
            cli_type=cli_type or None,
        )

    def get_chat(self, chat_id: str) -> dict:
        chat = self.catalog.get_chat(chat_id)
        if chat is None:
            raise NotFoundError('chat', chat_id)
        return chat

    def list_chat_messages(self, chat_id: str) -> list[dict]:
        self.get_chat(chat_id)
        return self.catalog.list_chat_messages(chat_id)

    # Queue submission

    def enqueue_task(self, task_id: str, *, priority: bool = False) -> dict:
        task = self.get_task(task_id)
        item = self.queue.enqueue(
            kind=QueueKind.TASK,
            entity_id=task_id,
            workspace_id=task['workspace_id'],
            priority=priority,
        )
        _log.info('task enqueued task_id=%s queue_item_id=%s', task_id, item['id'])
        return item

    def enqueue_chat(self, chat_id: str) -> dict:
        chat = self.get_chat(chat_id)
        item = self.queue.enqueue(kind=QueueKind.CHAT, entity_id=chat_id, workspace_id=chat['workspace_id'])
        _log.info('chat enqueued chat_id=%s queue_item_id=%s', chat_id, item['id'])
        return item

    def submit_task_comment(self, task_id: str, content: str) -> dict:
        text = _require_text(content, field='content')
        task = self.get_task(task_id)
        comment = self.catalog.append_comment(task_id, content=text, author_type=ActorType.USER.value)
        self.catalog.append_event(
            task_id,
            event_type=EventType.COMMENT_ADDED,
            actor_type=ActorType.USER.value,
            payload={'comment_id': comment['id']},
        )
        if task['status'] != TaskStatus.DONE.value:
            self._enqueue_task_quietly(task)
        return comment

    def change_task_status(self, task_id: str, status: str) -> dict:
        try:
            new_status = normalize_task_status(status)
        except ValueError as exc:
            raise InputValidationError(str(exc), field='status') from exc
        task = self.get_task(task_id)
        old_status = task['status']
        if old_status == new_status:
            return task
        updated = self.catalog.update_task_status(task_id, new_status)
        self.catalog.append_event(
            task_id,
            event_type=EventType.STATUS_CHANGED,
            actor_type=ActorType.USER.value,
            payload={'old_status': old_status, 'new_status': new_status},
        )
        if new_status == TaskStatus.TODO.value and old_status in _REOPEN_FROM:
            self._enqueue_task_quietly(updated)
        return updated

    def submit_chat_message(self, chat_id: str, content: str) -> dict:
        text = _require_text(content, field='content')
        self.get_chat(chat_id)
        active = self.queue.get_active(kind=QueueKind.CHAT, entity_id=chat_id)
        if active is not None:
            raise QueueConflictError(chat_id, active_item_id=str(active['id']))
        message = self.catalog.append_chat_message(chat_id, role=MessageRole.USER.value, content=text)
        self.enqueue_chat(chat_id)
        return message

    def prioritize_task(self, task_id: str, *, priority: bool = True) -> dict | None:
        self.get_task(task_id)
        item = self.queue.set_priority(kind=QueueKind.TASK, entity_id=task_id, priority=priority)
        self.catalog.append_event(
            task_id,
            event_type=EventType.TASK_PRIORITIZED if priority else EventType.TASK_DEPRIORITIZED,
            actor_type=ActorType.USER.value,
            payload={'queue_item_id': item['id'] if item else None},
        )
        return item

    # Processing state

    def cancel(self, entity_id: str) -> bool:
        """Stop a running step, or a task cycle parked between two agent steps."""
        if self.registry.cancel(entity_id):
            return True
        if self._cancel_between_steps(entity_id):
            return True
        # The poller may have claimed the parked item in the meantime.
        if self.registry.cancel(entity_id):
            return True
        _log.info('nothing to cancel entity_id=%s', entity_id)
        return False

    def is_processing(self, entity_id: str) -> bool:
        if self.registry.is_active(entity_id):
            return True
        for kind in (QueueKind.TASK, QueueKind.CHAT):
            active = self.queue.get_active(kind=kind, entity_id=entity_id)
            if active is not None and active['status'] == QueueStatus.IN_PROGRESS.value:
                return True
        return self._parked_cycle_item(entity_id) is not None

    def processing_state(self, entity_id: str, *, kind: QueueKind) -> dict:
        active = self.queue.get_active(kind=kind, entity_id=entity_id)
        return {
            'entity_id': entity_id,
            'processing': self.is_processing(entity_id),
            'queue_item_id': active['id'] if active else None,
            'queue_status': active['status'] if active else None,
        }

    def tool_health(self) -> list[dict]:
        return self.resolver.health()

    def _enqueue_task_quietly(self, task: dict) -> dict | None:
        try:
            return self.enqueue_task(task['id'])
        except QueueConflictError:
            # The active cycle replays the log and sees the new input.
            _log.debug('task already queued task_id=%s', task['id'])
            return None

    def _parked_cycle_item(self, task_id: str) -> dict | None:
        active = self.queue.get_active(kind=QueueKind.TASK, entity_id=task_id)
        if active is None or active['status'] != QueueStatus.QUEUED.value:
            return None
        if not cycle_in_flight(self.catalog.list_events(task_id)):
            return None
        return active

    def _cancel_between_steps(self, task_id: str) -> bool:
        item = self._parked_cycle_item(task_id)
        if item is None:
            return False
        if not self.queue.fail(item['id'], 'cancelled', expected_status=QueueStatus.QUEUED.value):
            return False
        _log.info('cancelled task cycle between steps task_id=%s queue_item_id=%s', task_id, item['id'])
        self.catalog.append_event(
            task_id,
            event_type=EventType.RUN_CANCELLED,
            actor_type=ActorType.SYSTEM.value,
            payload={'queue_item_id': item['id']},
        )
        self.catalog.append_comment(
            task_id,
            content='Processing cancelled by user',
            author_type=ActorType.SYSTEM.value,
        )
        return True

    def _await_runs_exit(self, entity_ids: list[str]) -> None:
        deadline = time.monotonic() + self.cancel_wait_seconds
        while time.monotonic() < deadline:
            if not any(self.registry.is_active(entity_id) for entity_id in entity_ids):
                return
            time.sleep(0.05)
        _log.warning('runs still active after cancel entity_ids=%s', entity_ids)


__all__ = ['CreateAgentInput', 'CreateTaskInput', 'OrchestratorService']
