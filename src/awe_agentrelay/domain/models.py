from __future__ import annotations

from enum import Enum


class QueueStatus(str, Enum):
    QUEUED = 'queued'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    FAILED = 'failed'


ACTIVE_QUEUE_STATUSES = (QueueStatus.QUEUED.value, QueueStatus.IN_PROGRESS.value)
TERMINAL_QUEUE_STATUSES = (QueueStatus.COMPLETED.value, QueueStatus.FAILED.value)


class QueueKind(str, Enum):
    TASK = 'task'
    CHAT = 'chat'


class TaskStatus(str, Enum):
    TODO = 'todo'
    IN_PROGRESS = 'in_progress'
    IN_REVIEW = 'in_review'
    DONE = 'done'


# Statuses whose queue items the poller may pick up.
RUNNABLE_TASK_STATUSES = (TaskStatus.TODO.value, TaskStatus.IN_PROGRESS.value)


class CliType(str, Enum):
    CLAUDE = 'claude'
    GEMINI = 'gemini'
    CODEX = 'codex'
    OPENCODE = 'opencode'


class ActorType(str, Enum):
    USER = 'user'
    AGENT = 'agent'
    SYSTEM = 'system'


class MessageRole(str, Enum):
    USER = 'user'
    AGENT = 'agent'
    SYSTEM = 'system'


def normalize_cli_type(value: str | CliType | None) -> str:
    if isinstance(value, CliType):
        return value.value
    text = str(value or '').strip().lower()
    try:
        return CliType(text).value
    except ValueError as exc:
        raise ValueError(f'unsupported cli type: {value}') from exc


def normalize_task_status(value: str | TaskStatus) -> str:
    if isinstance(value, TaskStatus):
        return value.value
    text = str(value or '').strip().lower()
    try:
        return TaskStatus(text).value
    except ValueError as exc:
        raise ValueError(f'unsupported task status: {value}') from exc
