from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    AGENT_FAILED = 'agent_failed'
    AGENT_FINISHED = 'agent_finished'
    AGENT_STARTED = 'agent_started'
    COMMENT_ADDED = 'comment_added'
    CYCLE_COMPLETED = 'cycle_completed'
    RUN_CANCELLED = 'run_cancelled'
    STATUS_CHANGED = 'status_changed'
    TASK_CREATED = 'task_created'
    TASK_DEPRIORITIZED = 'task_deprioritized'
    TASK_PRIORITIZED = 'task_prioritized'


def normalize_event_type(value: str | EventType) -> str:
    if isinstance(value, EventType):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('event_type is required')
    return text


def is_cycle_reset(event: dict) -> bool:
    """True when the event restarts the agent roster from the first position."""
    event_type = str(event.get('type') or '')
    actor_type = str(event.get('actor_type') or '')
    if event_type == EventType.CYCLE_COMPLETED.value:
        return True
    if actor_type != 'user':
        return False
    return event_type in {EventType.COMMENT_ADDED.value, EventType.STATUS_CHANGED.value}


def cycle_in_flight(events: list[dict]) -> bool:
    """True when an agent has started since the last reset and the cycle has not stopped."""
    in_flight = False
    for event in events:
        event_type = str(event.get('type') or '')
        if is_cycle_reset(event):
            in_flight = False
        elif event_type in {EventType.AGENT_STARTED.value, EventType.AGENT_FINISHED.value}:
            in_flight = True
        elif event_type in {EventType.AGENT_FAILED.value, EventType.RUN_CANCELLED.value}:
            in_flight = False
    return in_flight
