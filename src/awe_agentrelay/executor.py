from __future__ import annotations

from dataclasses import dataclass
import logging

from awe_agentrelay.db import SqlCatalog
from awe_agentrelay.domain.actions import (
    PRIVILEGED_ACTION_TYPES,
    ChangeStatusAction,
    CommentAction,
    CreateAgentAction,
    DeleteAgentAction,
    RenameChatAction,
    ReorderAgentsAction,
    SkipAction,
    UpdateAgentAction,
    UpdateWorkspaceAction,
)
from awe_agentrelay.domain.events import EventType
from awe_agentrelay.domain.models import ActorType, CliType, TaskStatus
from awe_agentrelay.errors import InputValidationError, NotFoundError, RelayError, failure_reason

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionOutcome:
    action_type: str
    applied: bool
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def moved_to_review(outcomes: list[ActionOutcome]) -> bool:
    return any(o.applied and o.action_type == 'change_status' for o in outcomes)


def failure_summary(outcomes: list[ActionOutcome]) -> str | None:
    failed = [o for o in outcomes if o.failed]
    if not failed:
        return None
    lines = '\n'.join(f'- {o.action_type}: {o.error}' for o in failed)
    return f'Some actions failed:\n{lines}'


def _cli_value(value: CliType | None) -> str | None:
    return value.value if value is not None else None


class ActionExecutor:
    """Applies validated agent actions, one transaction per action."""

    def __init__(self, catalog: SqlCatalog):
        self.catalog = catalog

    def apply_task_actions(self, task: dict, agent: dict, actions) -> list[ActionOutcome]:
        outcomes: list[ActionOutcome] = []
        for action in actions:
            try:
                outcomes.append(self._apply_task_action(task, agent, action))
            except (RelayError, ValueError) as exc:
                _log.error(
                    'task action failed task_id=%s agent_id=%s type=%s error=%s',
                    task['id'], agent['id'], action.type, exc,
                )
                outcomes.append(ActionOutcome(action.type, False, failure_reason(exc)))
        return outcomes

    def _apply_task_action(self, task: dict, agent: dict, action) -> ActionOutcome:
        match action:
            case SkipAction():
                return ActionOutcome('skip', True)
            case CommentAction(content=content):
                comment = self.catalog.append_comment(
                    task['id'],
                    content=content,
                    author_type=ActorType.AGENT.value,
                    agent_id=agent['id'],
                )
                self.catalog.append_event(
                    task['id'],
                    event_type=EventType.COMMENT_ADDED,
                    actor_type=ActorType.AGENT.value,
                    actor_id=agent['id'],
                    payload={'comment_id': comment['id'], 'agent_name': agent['name']},
                )
                return ActionOutcome('comment', True)
            case ChangeStatusAction(status=status):
                current = self.catalog.get_task(task['id'])
                if current is None:
                    raise NotFoundError('task', task['id'])
                self.catalog.update_task_status(task['id'], status)
                self.catalog.append_event(
                    task['id'],
                    event_type=EventType.STATUS_CHANGED,
                    actor_type=ActorType.AGENT.value,
                    actor_id=agent['id'],
                    payload={
                        'old_status': current['status'],
                        'new_status': TaskStatus.IN_REVIEW.value,
                        'agent_name': agent['name'],
                    },
                )
                return ActionOutcome('change_status', True)
            case _:
                _log.warning('ignoring unsupported task action type=%s', getattr(action, 'type', action))
                return ActionOutcome(str(getattr(action, 'type', 'unknown')), False)

    def apply_chat_actions(self, chat: dict, actions) -> list[ActionOutcome]:
        builtin = chat.get('agent_id') is None
        outcomes: list[ActionOutcome] = []
        for action in actions:
            if action.type in PRIVILEGED_ACTION_TYPES and not builtin:
                _log.warning(
                    'dropping privileged action from agent chat chat_id=%s type=%s',
                    chat['id'], action.type,
                )
                outcomes.append(ActionOutcome(action.type, False))
                continue
            try:
                outcomes.append(self._apply_chat_action(chat, action))
            except (RelayError, ValueError) as exc:
                _log.error('chat action failed chat_id=%s type=%s error=%s', chat['id'], action.type, exc)
                outcomes.append(ActionOutcome(action.type, False, failure_reason(exc)))
        return outcomes

    def _apply_chat_action(self, chat: dict, action) -> ActionOutcome:
        workspace_id = chat['workspace_id']
        match action:
            case SkipAction():
                return ActionOutcome('skip', True)
            case RenameChatAction(title=title):
                if not self.catalog.rename_chat_if_unanswered(chat['id'], title):
                    _log.debug('skipping rename_chat, chat already answered chat_id=%s', chat['id'])
                    return ActionOutcome('rename_chat', False, 'Action skipped')
                return ActionOutcome('rename_chat', True)
            case CreateAgentAction():
                created = self.catalog.create_agent(
                    workspace_id=workspace_id,
                    name=action.name,
                    instruction=action.instruction,
                    cli_type=_cli_value(action.cli_type) or CliType.CLAUDE.value,
                    order=action.order,
                )
                _log.info('created agent via chat chat_id=%s agent_id=%s', chat['id'], created['id'])
                return ActionOutcome('create_agent', True)
            case UpdateAgentAction():
                self._require_workspace_agent(workspace_id, action.agent_id)
                self.catalog.update_agent(
                    action.agent_id,
                    name=action.name,
                    instruction=action.instruction,
                    cli_type=_cli_value(action.cli_type),
                    order=action.order,
                )
                return ActionOutcome('update_agent', True)
            case DeleteAgentAction(agent_id=agent_id):
                self._require_workspace_agent(workspace_id, agent_id)
                self.catalog.delete_agent(agent_id)
                return ActionOutcome('delete_agent', True)
            case ReorderAgentsAction(agent_ids=agent_ids):
                self.catalog.reorder_agents(workspace_id, list(agent_ids))
                return ActionOutcome('reorder_agents', True)
            case UpdateWorkspaceAction():
                fields = action.model_dump(exclude={'type'}, exclude_none=True)
                if not fields:
                    raise InputValidationError('update_workspace named no fields', field='update_workspace')
                self.catalog.update_workspace(workspace_id, **fields)
                return ActionOutcome('update_workspace', True)
            case _:
                _log.warning('ignoring unsupported chat action type=%s', getattr(action, 'type', action))
                return ActionOutcome(str(getattr(action, 'type', 'unknown')), False)

    def _require_workspace_agent(self, workspace_id: str, agent_id: str) -> dict:
        agent = self.catalog.get_agent(agent_id)
        if agent is None or agent['workspace_id'] != workspace_id:
            raise NotFoundError('agent', agent_id)
        return agent


__all__ = ['ActionExecutor', 'ActionOutcome', 'failure_summary', 'moved_to_review']
