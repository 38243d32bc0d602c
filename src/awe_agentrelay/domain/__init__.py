from awe_agentrelay.domain.events import EventType, cycle_in_flight, is_cycle_reset, normalize_event_type
from awe_agentrelay.domain.models import (
    ActorType,
    CliType,
    MessageRole,
    QueueKind,
    QueueStatus,
    TaskStatus,
    normalize_cli_type,
    normalize_task_status,
)

__all__ = [
    'ActorType',
    'CliType',
    'EventType',
    'MessageRole',
    'QueueKind',
    'QueueStatus',
    'TaskStatus',
    'cycle_in_flight',
    'is_cycle_reset',
    'normalize_cli_type',
    'normalize_event_type',
    'normalize_task_status',
]
