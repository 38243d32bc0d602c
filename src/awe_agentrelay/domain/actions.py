from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from awe_agentrelay.domain.models import CliType
from awe_agentrelay.errors import OutputSchemaError

_log = logging.getLogger(__name__)


def _require_type(schema: dict) -> None:
    required = schema.setdefault('required', [])
    if 'type' not in required:
        required.insert(0, 'type')


class _ActionModel(BaseModel):
    model_config = ConfigDict(extra='ignore', frozen=True, json_schema_extra=_require_type)


def _require_text(value: str) -> str:
    text = str(value or '').strip()
    if not text:
        raise ValueError('must not be blank')
    return text


class SkipAction(_ActionModel):
    type: Literal['skip'] = 'skip'


class CommentAction(_ActionModel):
    type: Literal['comment'] = 'comment'
    content: str = Field(min_length=1)

    content_not_blank = field_validator('content')(_require_text)


class ChangeStatusAction(_ActionModel):
    type: Literal['change_status'] = 'change_status'
    # Agents may only hand a task over for human review.
    status: Literal['in_review']


class RenameChatAction(_ActionModel):
    type: Literal['rename_chat'] = 'rename_chat'
    title: str = Field(min_length=1, max_length=255)

    title_not_blank = field_validator('title')(_require_text)


class CreateAgentAction(_ActionModel):
    type: Literal['create_agent'] = 'create_agent'
    name: str = Field(min_length=1, max_length=255)
    instruction: str = Field(min_length=1)
    cli_type: CliType | None = None
    order: int | None = Field(default=None, ge=1)

    name_not_blank = field_validator('name', 'instruction')(_require_text)


class UpdateAgentAction(_ActionModel):
    type: Literal['update_agent'] = 'update_agent'
    agent_id: str = Field(min_length=1)
    name: str | None = Field(default=None, min_length=1, max_length=255)
    instruction: str | None = Field(default=None, min_length=1)
    cli_type: CliType | None = None
    order: int | None = Field(default=None, ge=1)


class DeleteAgentAction(_ActionModel):
    type: Literal['delete_agent'] = 'delete_agent'
    agent_id: str = Field(min_length=1)


class ReorderAgentsAction(_ActionModel):
    type: Literal['reorder_agents'] = 'reorder_agents'
    agent_ids: list[str] = Field(min_length=1)


class UpdateWorkspaceAction(_ActionModel):
    type: Literal['update_workspace'] = 'update_workspace'
    title: str | None = Field(default=None, max_length=255)
    description: str | None = None
    working_directory: str | None = None
    notify_on_error: bool | None = None
    notify_on_in_review: bool | None = None


TaskAction = Annotated[
    Union[SkipAction, CommentAction, ChangeStatusAction],
    Field(discriminator='type'),
]

ChatAction = Annotated[
    Union[
        SkipAction,
        RenameChatAction,
        CreateAgentAction,
        UpdateAgentAction,
        DeleteAgentAction,
        ReorderAgentsAction,
        UpdateWorkspaceAction,
    ],
    Field(discriminator='type'),
]

PRIVILEGED_ACTION_TYPES = frozenset(
    {'create_agent', 'update_agent', 'delete_agent', 'reorder_agents', 'update_workspace'}
)

_TASK_ACTION_ADAPTER: TypeAdapter = TypeAdapter(TaskAction)
_CHAT_ACTION_ADAPTER: TypeAdapter = TypeAdapter(ChatAction)


@dataclass(frozen=True)
class TaskOutput:
    actions: tuple


@dataclass(frozen=True)
class ChatOutput:
    message: str | None
    actions: tuple


def _validate_actions(raw_actions: list, adapter: TypeAdapter) -> tuple:
    accepted = []
    for index, raw in enumerate(raw_actions):
        try:
            accepted.append(adapter.validate_python(raw))
        except ValidationError as exc:
            # A single bad action never fails the run.
            _log.debug('dropping malformed action index=%s error=%s', index, exc.errors(include_url=False))
    return tuple(accepted)


def _structure_error(detail: str) -> OutputSchemaError:
    return OutputSchemaError(f'CLI output structure was invalid: {detail}')


def parse_task_output(payload: object) -> TaskOutput:
    if not isinstance(payload, dict):
        raise _structure_error('expected a JSON object')
    raw_actions = payload.get('actions')
    if not isinstance(raw_actions, list):
        raise _structure_error('"actions" must be an array')
    return TaskOutput(actions=_validate_actions(raw_actions, _TASK_ACTION_ADAPTER))


def parse_chat_output(payload: object) -> ChatOutput:
    if not isinstance(payload, dict):
        raise _structure_error('expected a JSON object')
    message = payload.get('message')
    if message is not None and not isinstance(message, str):
        raise _structure_error('"message" must be a string')
    raw_actions = payload.get('actions')
    if raw_actions is None:
        raw_actions = []
    if not isinstance(raw_actions, list):
        raise _structure_error('"actions" must be an array')
    text = str(message or '').strip() or None
    return ChatOutput(message=text, actions=_validate_actions(raw_actions, _CHAT_ACTION_ADAPTER))


class _TaskOutputEnvelope(BaseModel):
    actions: list[TaskAction]


class _ChatOutputEnvelope(BaseModel):
    message: str = ''
    actions: list[ChatAction] = Field(default_factory=list)


def _output_schema(envelope: type[BaseModel]) -> dict:
    schema = TypeAdapter(envelope).json_schema()
    schema.pop('title', None)
    return {'$schema': 'https://json-schema.org/draft/2020-12/schema', **schema}


# Generated from the models so the tool sees exactly what parse_*_output accepts.
TASK_OUTPUT_SCHEMA: dict = _output_schema(_TaskOutputEnvelope)
CHAT_OUTPUT_SCHEMA: dict = _output_schema(_ChatOutputEnvelope)


__all__ = [
    'CHAT_OUTPUT_SCHEMA',
    'ChangeStatusAction',
    'ChatAction',
    'ChatOutput',
    'CommentAction',
    'CreateAgentAction',
    'DeleteAgentAction',
    'PRIVILEGED_ACTION_TYPES',
    'RenameChatAction',
    'ReorderAgentsAction',
    'SkipAction',
    'TASK_OUTPUT_SCHEMA',
    'TaskAction',
    'TaskOutput',
    'UpdateAgentAction',
    'UpdateWorkspaceAction',
    'parse_chat_output',
    'parse_task_output',
]
