from __future__ import annotations

import logging

from awe_agentrelay.adapters.runner import RunRequest, SubprocessRunner
from awe_agentrelay.cancellation import CancellationRegistry, CancellationToken
from awe_agentrelay.db import SqlCatalog
from awe_agentrelay.domain.actions import (
    CHAT_OUTPUT_SCHEMA,
    TASK_OUTPUT_SCHEMA,
    parse_chat_output,
    parse_task_output,
)
from awe_agentrelay.domain.events import EventType, is_cycle_reset
from awe_agentrelay.domain.models import ActorType, CliType, MessageRole, QueueKind, TaskStatus
from awe_agentrelay.errors import NotFoundError, RelayError, RunCancelledError, failure_reason
from awe_agentrelay.executor import ActionExecutor, failure_summary, moved_to_review
from awe_agentrelay.observability import run_span, set_agent_context, set_run_context
from awe_agentrelay.prompting import ChatRunContext, PromptAssembler, TaskRunContext
from awe_agentrelay.queue_store import SqlQueueStore

_log = logging.getLogger(__name__)

# Terminal dispositions returned by dispatch().
COMPLETED = 'completed'
REQUEUED = 'requeued'
FAILED = 'failed'
CANCELLED = 'cancelled'


def next_agent(roster: list[dict], events: list[dict]) -> dict | None:
    """First agent (by order) that has not finished since the last cycle reset."""
    finished: set[str] = set()
    for event in events:
        if is_cycle_reset(event):
            finished.clear()
        elif event.get('type') == EventType.AGENT_FINISHED.value and event.get('actor_id'):
            finished.add(str(event['actor_id']))
    for agent in sorted(roster, key=lambda a: int(a['order'])):
        if agent['id'] not in finished:
            return agent
    return None


class Pipeline:
    """Runs one claimed queue item to a terminal or requeued disposition."""

    def __init__(
        self,
        *,
        catalog: SqlCatalog,
        queue: SqlQueueStore,
        runner: SubprocessRunner,
        registry: CancellationRegistry,
        executor: ActionExecutor | None = None,
        prompts: PromptAssembler | None = None,
    ):
        self.catalog = catalog
        self.queue = queue
        self.runner = runner
        self.registry = registry
        self.executor = executor or ActionExecutor(catalog)
        self.prompts = prompts or PromptAssembler()

    def dispatch(self, item: dict) -> str:
        entity_id = str(item['entity_id'])
        set_run_context(entity_id=entity_id, queue_item_id=str(item['id']))
        with run_span('relay.dispatch', kind=item['kind'], entity_id=entity_id, queue_item_id=item['id']):
            with self.registry.run_scope(entity_id) as token:
                if item['kind'] == QueueKind.CHAT.value:
                    return self._dispatch_chat(item, token)
                return self._dispatch_task(item, token)

    # Tasks

    def _dispatch_task(self, item: dict, token: CancellationToken) -> str:
        task_id = str(item['entity_id'])
        task = self.catalog.get_task(task_id)
        if task is None:
            _log.warning('task vanished before processing task_id=%s', task_id)
            self.queue.fail(item['id'], str(NotFoundError('task', task_id)))
            return FAILED
        workspace = self.catalog.get_workspace(task['workspace_id'])
        if workspace is None:
            self.queue.fail(item['id'], str(NotFoundError('workspace', task['workspace_id'])))
            return FAILED

        roster = self.catalog.list_agents(workspace['id'])
        if not roster:
            _log.info('workspace has no agents; moving task to review task_id=%s', task_id)
            self._set_status(task, TaskStatus.IN_REVIEW.value, reason='no_agents')
            self.queue.complete(item['id'])
            return COMPLETED

        if task['status'] == TaskStatus.TODO.value:
            moved = self.catalog.update_task_status_if(
                task_id,
                expected_status=TaskStatus.TODO.value,
                status=TaskStatus.IN_PROGRESS.value,
            )
            if moved is not None:
                self._status_event(task_id, TaskStatus.TODO.value, TaskStatus.IN_PROGRESS.value)
                task = moved

        agent = self._pick_agent(workspace['id'], task_id)
        if agent is None:
            self.catalog.append_event(
                task_id,
                event_type=EventType.CYCLE_COMPLETED,
                actor_type=ActorType.SYSTEM.value,
            )
            self.queue.complete(item['id'])
            return COMPLETED

        set_agent_context(agent['id'])
        roster = self.catalog.list_agents(workspace['id'])
        context = TaskRunContext(
            workspace=workspace,
            agent=agent,
            agents=roster,
            task=task,
            comments=self.catalog.list_comments(task_id),
            events=self.catalog.list_events(task_id),
        )
        request = RunRequest(
            entity_id=task_id,
            kind=QueueKind.TASK.value,
            cli_type=agent['cli_type'],
            schema=TASK_OUTPUT_SCHEMA,
            render_input=lambda files, file_contract: self.prompts.render_task_input(context, files, file_contract),
            working_directory=workspace.get('working_directory'),
        )
        self.catalog.append_event(
            task_id,
            event_type=EventType.AGENT_STARTED,
            actor_type=ActorType.AGENT.value,
            actor_id=agent['id'],
            payload={'agent_name': agent['name'], 'cli_type': agent['cli_type']},
        )
        try:
            result = self.runner.run(request, token)
            output = parse_task_output(result.payload)
        except RunCancelledError:
            _log.info('task run cancelled task_id=%s agent_id=%s', task_id, agent['id'])
            self.catalog.append_event(
                task_id,
                event_type=EventType.RUN_CANCELLED,
                actor_type=ActorType.SYSTEM.value,
                payload={'agent_id': agent['id'], 'agent_name': agent['name']},
            )
            self._system_comment(task_id, 'Processing cancelled by user')
            self.queue.fail(item['id'], 'cancelled')
            return CANCELLED
        except RelayError as exc:
            _log.error('task run failed task_id=%s agent_id=%s error=%s', task_id, agent['id'], failure_reason(exc))
            return self._fail_task_run(item, agent, exc)
        except Exception as exc:
            _log.exception('task run crashed task_id=%s agent_id=%s', task_id, agent['id'])
            return self._fail_task_run(item, agent, exc)

        outcomes = self.executor.apply_task_actions(task, agent, output.actions)
        self.catalog.append_event(
            task_id,
            event_type=EventType.AGENT_FINISHED,
            actor_type=ActorType.AGENT.value,
            actor_id=agent['id'],
            payload={
                'agent_name': agent['name'],
                'actions': [o.action_type for o in outcomes if o.applied],
                'duration_seconds': round(result.duration_seconds, 3),
            },
        )
        if moved_to_review(outcomes):
            self.queue.complete(item['id'])
            return COMPLETED
        if self._pick_agent(workspace['id'], task_id) is not None:
            self.queue.requeue(item['id'])
            return REQUEUED
        self.catalog.append_event(
            task_id,
            event_type=EventType.CYCLE_COMPLETED,
            actor_type=ActorType.SYSTEM.value,
        )
        self.queue.complete(item['id'])
        return COMPLETED

    def _fail_task_run(self, item: dict, agent: dict, exc: Exception) -> str:
        task_id = str(item['entity_id'])
        reason = failure_reason(exc)
        self.catalog.append_event(
            task_id,
            event_type=EventType.AGENT_FAILED,
            actor_type=ActorType.AGENT.value,
            actor_id=agent['id'],
            payload={
                'agent_name': agent['name'],
                'error': reason,
                'kind': getattr(exc, 'kind', exc.__class__.__name__),
            },
        )
        self._system_comment(task_id, f'Processing failed: {reason}')
        self.queue.fail(item['id'], reason)
        return FAILED

    def _pick_agent(self, workspace_id: str, task_id: str) -> dict | None:
        while True:
            candidate = next_agent(self.catalog.list_agents(workspace_id), self.catalog.list_events(task_id))
            if candidate is None:
                return None
            # Re-read right before use; the roster may change while we replay.
            fresh = self.catalog.get_agent(candidate['id'])
            if fresh is not None:
                return fresh
            _log.info('agent removed before run agent_id=%s', candidate['id'])

    def _set_status(self, task: dict, status: str, *, reason: str) -> None:
        self.catalog.update_task_status(task['id'], status)
        self._status_event(task['id'], task['status'], status, reason=reason)

    def _status_event(self, task_id: str, old: str, new: str, *, reason: str | None = None) -> None:
        payload = {'old_status': old, 'new_status': new}
        if reason:
            payload['reason'] = reason
        self.catalog.append_event(
            task_id,
            event_type=EventType.STATUS_CHANGED,
            actor_type=ActorType.SYSTEM.value,
            payload=payload,
        )

    def _system_comment(self, task_id: str, content: str) -> None:
        self.catalog.append_comment(task_id, content=content, author_type=ActorType.SYSTEM.value)

    # Chats

    def _dispatch_chat(self, item: dict, token: CancellationToken) -> str:
        chat_id = str(item['entity_id'])
        chat = self.catalog.get_chat(chat_id)
        if chat is None:
            _log.warning('chat vanished before processing chat_id=%s', chat_id)
            self.queue.fail(item['id'], str(NotFoundError('chat', chat_id)))
            return FAILED
        workspace = self.catalog.get_workspace(chat['workspace_id'])
        if workspace is None:
            self.queue.fail(item['id'], str(NotFoundError('workspace', chat['workspace_id'])))
            return FAILED

        agent = None
        if chat['agent_id'] is not None:
            agent = self.catalog.get_agent(chat['agent_id'])
            if agent is None:
                reason = str(NotFoundError('agent', chat['agent_id']))
                self._system_message(chat_id, f'Error: {reason}')
                self.queue.fail(item['id'], reason)
                return FAILED
            set_agent_context(agent['id'])

        context = ChatRunContext(
            workspace=workspace,
            chat=chat,
            agent=agent,
            agents=self.catalog.list_agents(workspace['id']),
            messages=self.catalog.list_chat_messages(chat_id),
        )
        request = RunRequest(
            entity_id=chat_id,
            kind=QueueKind.CHAT.value,
            cli_type=self._chat_cli_type(chat, agent),
            schema=CHAT_OUTPUT_SCHEMA,
            render_input=lambda files, file_contract: self.prompts.render_chat_input(context, files, file_contract),
            working_directory=workspace.get('working_directory'),
            context_text=self.prompts.render_chat_context(context),
        )
        try:
            result = self.runner.run(request, token)
            output = parse_chat_output(result.payload)
        except RunCancelledError:
            _log.info('chat run cancelled chat_id=%s', chat_id)
            self._system_message(chat_id, 'Cancelled by user')
            self.queue.fail(item['id'], 'cancelled')
            return CANCELLED
        except RelayError as exc:
            _log.error('chat run failed chat_id=%s error=%s', chat_id, failure_reason(exc))
            return self._fail_chat_run(item, exc)
        except Exception as exc:
            _log.exception('chat run crashed chat_id=%s', chat_id)
            return self._fail_chat_run(item, exc)

        outcomes = self.executor.apply_chat_actions(chat, output.actions)
        if output.message:
            self.catalog.append_chat_message(
                chat_id,
                role=MessageRole.AGENT.value,
                content=output.message,
                agent_id=chat['agent_id'],
            )
        summary = failure_summary(outcomes)
        if summary:
            self._system_message(chat_id, summary)
        self.queue.complete(item['id'])
        return COMPLETED

    def _fail_chat_run(self, item: dict, exc: Exception) -> str:
        reason = failure_reason(exc)
        self._system_message(str(item['entity_id']), f'Error: {reason}')
        self.queue.fail(item['id'], reason)
        return FAILED

    @staticmethod
    def _chat_cli_type(chat: dict, agent: dict | None) -> str:
        if chat.get('cli_type'):
            return str(chat['cli_type'])
        if agent is not None:
            return str(agent['cli_type'])
        return CliType.CLAUDE.value

    def _system_message(self, chat_id: str, content: str) -> None:
        self.catalog.append_chat_message(chat_id, role=MessageRole.SYSTEM.value, content=content)


__all__ = ['CANCELLED', 'COMPLETED', 'FAILED', 'Pipeline', 'REQUEUED', 'next_agent']
