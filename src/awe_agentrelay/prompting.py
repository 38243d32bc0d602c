from __future__ import annotations

from dataclasses import dataclass, field
import json
from string import Template

from awe_agentrelay.adapters.base import RunFiles
from awe_agentrelay.domain.actions import CHAT_OUTPUT_SCHEMA, TASK_OUTPUT_SCHEMA

BUILTIN_AGENT_INSTRUCTION = """\
You are the assistant built into this workspace. You help the user shape the
workspace itself: which agents exist, what each one is told to do, the order in
which they work on tasks, and the workspace settings.

Agents run one after another on every task, in ascending order. Each agent is
bound to one command-line tool (claude, gemini, codex or opencode) and receives
its instruction as its role description. Keep instructions focused on one
responsibility, and keep the roster small.

Read the context file for the current workspace settings and the agent roster
with their ids before proposing changes. Only change what the user asked for,
and explain what you changed in your message."""

_TASK_OUTPUT_TEMPLATE = Template("""\
# Output Instruction

Respond with one JSON object of the form {"actions": [...]}. Available actions:

- {"type": "skip"}: nothing to contribute this turn.
- {"type": "comment", "content": "<markdown>"}: post a comment on the task for the
  other agents and the user.
- {"type": "change_status", "status": "in_review"}: hand the task to a human for
  review. This ends the current cycle; agents after you do not run.

Actions are applied in order. Use an empty list when you have nothing to add.
$delivery""")

_CHAT_OUTPUT_TEMPLATE = Template("""\
# Output Instruction

Respond with one JSON object of the form {"message": "<reply>", "actions": [...]}.
The message is shown to the user. Available actions:

- {"type": "skip"}: no side effect.
- {"type": "rename_chat", "title": "<title>"}: give this conversation a short
  title. Only honoured on your first reply.
$privileged
$delivery""")

_PRIVILEGED_ACTIONS = """\
- {"type": "create_agent", "name": "...", "instruction": "...", "cli_type": "claude|gemini|codex|opencode", "order": 1}
- {"type": "update_agent", "agent_id": "...", "name": "...", "instruction": "...", "cli_type": "...", "order": 2}
- {"type": "delete_agent", "agent_id": "..."}
- {"type": "reorder_agents", "agent_ids": ["...", "..."]}: every agent id, in the new order.
- {"type": "update_workspace", "title": "...", "description": "...", "working_directory": "...",
  "notify_on_error": true, "notify_on_in_review": true}
  Omitted fields are left unchanged."""

_FILE_DELIVERY = Template("""
Write the JSON object, and nothing else, to this file:
$output_path

It must validate against this JSON schema:
```json
$schema
```""")

_FLAG_DELIVERY = """
Your final answer is validated against the JSON schema supplied on the command line."""


@dataclass(frozen=True)
class TaskRunContext:
    workspace: dict
    agent: dict
    agents: list[dict]
    task: dict
    comments: list[dict] = field(default_factory=list)
    events: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class ChatRunContext:
    workspace: dict
    chat: dict
    agent: dict | None
    agents: list[dict]
    messages: list[dict] = field(default_factory=list)

    @property
    def is_builtin(self) -> bool:
        return self.chat.get('agent_id') is None


def _jsonl(rows: list[dict]) -> str:
    return '\n'.join(json.dumps(row, ensure_ascii=False) for row in rows)


def _delivery(files: RunFiles, *, file_contract: bool, schema: dict) -> str:
    if not file_contract:
        return _FLAG_DELIVERY
    return _FILE_DELIVERY.substitute(
        output_path=str(files.output_path),
        schema=json.dumps(schema, indent=2),
    )


def _section(title: str, body: str, *, empty: str = '(none)') -> str:
    text = str(body or '').strip()
    return f'{title}\n\n{text or empty}'


class PromptAssembler:
    """Renders the markdown input file each external tool is pointed at."""

    def render_task_input(self, ctx: TaskRunContext, files: RunFiles, file_contract: bool) -> str:
        agent_names = {agent['id']: agent['name'] for agent in ctx.agents}
        agent_names.setdefault(ctx.agent['id'], ctx.agent['name'])

        roster_lines = []
        for agent in ctx.agents:
            marker = ' (you)' if agent['id'] == ctx.agent['id'] else ''
            roster_lines.append(f"{agent['order']}. {agent['name']}{marker}")

        comment_rows = [
            {
                'author': self._comment_author(comment, agent_names),
                'content': comment['content'],
                'created_at': comment['created_at'],
            }
            for comment in ctx.comments
        ]
        event_rows = [
            {
                'event_type': event['type'],
                'actor_type': event['actor_type'],
                'actor_id': event['actor_id'],
                'metadata': event['payload'],
                'created_at': event['created_at'],
            }
            for event in ctx.events
        ]
        parts = [
            _section('# Context', ctx.workspace.get('description') or ''),
            _section('# Your Role', ctx.agent.get('instruction') or ''),
            _section('## Other Agents in This Workflow', '\n'.join(roster_lines)),
            '# Task',
            _section('## Summary', ctx.task.get('summary') or ''),
            _section('## Description', ctx.task.get('description') or ''),
            _section('## Comments', _jsonl(comment_rows)),
            _section('## Activity Log', _jsonl(event_rows)),
            _TASK_OUTPUT_TEMPLATE.substitute(
                delivery=_delivery(files, file_contract=file_contract, schema=TASK_OUTPUT_SCHEMA),
            ),
        ]
        return '\n\n'.join(parts) + '\n'

    def render_chat_input(self, ctx: ChatRunContext, files: RunFiles, file_contract: bool) -> str:
        if ctx.agent is not None:
            instruction = ctx.agent.get('instruction') or ''
        else:
            instruction = BUILTIN_AGENT_INSTRUCTION
        metadata = {
            'chat_id': ctx.chat['id'],
            'chat_title': ctx.chat['title'],
            'agent': ctx.agent['name'] if ctx.agent is not None else 'workspace assistant',
            'workspace_id': ctx.workspace['id'],
        }
        history_rows = [
            {'role': message['role'], 'content': message['content'], 'created_at': message['created_at']}
            for message in ctx.messages
        ]
        context_path = str(files.context_path) if files.context_path is not None else '(not provided)'
        parts = [
            _section('# Instruction', instruction),
            _section('# Chat Metadata', json.dumps(metadata, ensure_ascii=False, indent=2)),
            _section('## Conversation History', _jsonl(history_rows)),
            _section(
                '# Context File',
                f'Workspace settings and the agent roster are in {context_path}. Read it when you need them.',
            ),
            _CHAT_OUTPUT_TEMPLATE.substitute(
                privileged=_PRIVILEGED_ACTIONS if ctx.is_builtin else '',
                delivery=_delivery(files, file_contract=file_contract, schema=CHAT_OUTPUT_SCHEMA),
            ),
        ]
        return '\n\n'.join(parts) + '\n'

    def render_chat_context(self, ctx: ChatRunContext) -> str:
        workspace = {
            'id': ctx.workspace['id'],
            'title': ctx.workspace['title'],
            'description': ctx.workspace['description'],
            'working_directory': ctx.workspace['working_directory'],
            'notify_on_error': ctx.workspace['notify_on_error'],
            'notify_on_in_review': ctx.workspace['notify_on_in_review'],
        }
        agents = [
            {
                'id': agent['id'],
                'name': agent['name'],
                'cli_type': agent['cli_type'],
                'order': agent['order'],
                'instruction': agent['instruction'],
            }
            for agent in ctx.agents
        ]
        return '\n\n'.join(
            [
                _section('# Workspace', json.dumps(workspace, ensure_ascii=False, indent=2)),
                _section('# Agents', _jsonl(agents)),
            ]
        ) + '\n'

    @staticmethod
    def _comment_author(comment: dict, agent_names: dict[str, str]) -> str:
        author_type = comment.get('author_type')
        if author_type == 'agent':
            return agent_names.get(comment.get('agent_id') or '', 'agent (removed)')
        return str(author_type or 'user')


__all__ = [
    'BUILTIN_AGENT_INSTRUCTION',
    'ChatRunContext',
    'PromptAssembler',
    'TaskRunContext',
]
