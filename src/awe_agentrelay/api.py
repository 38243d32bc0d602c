from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Literal

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from awe_agentrelay.domain.models import QueueKind
from awe_agentrelay.errors import InputValidationError, NotFoundError, QueueConflictError
from awe_agentrelay.poller import Poller
from awe_agentrelay.service import CreateAgentInput, CreateTaskInput, OrchestratorService


class CreateWorkspaceRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(default='')
    working_directory: str | None = Field(default=None, max_length=1000)
    notify_on_error: bool = Field(default=True)
    notify_on_in_review: bool = Field(default=True)


class WorkspaceResponse(BaseModel):
    id: str
    title: str
    description: str
    working_directory: str | None
    notify_on_error: bool
    notify_on_in_review: bool
    created_at: str
    updated_at: str


class CreateAgentRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    instruction: str = Field(min_length=1)
    cli_type: Literal['claude', 'gemini', 'codex', 'opencode'] = Field(default='claude')
    order: int | None = Field(default=None, ge=1)


class AgentResponse(BaseModel):
    id: str
    workspace_id: str
    name: str
    instruction: str
    cli_type: str
    order: int
    created_at: str
    updated_at: str


class CreateTaskRequest(BaseModel):
    summary: str = Field(min_length=1, max_length=255)
    description: str = Field(default='')
    priority: bool = Field(default=False)


class TaskResponse(BaseModel):
    id: str
    workspace_id: str
    summary: str
    description: str
    status: str
    created_at: str
    updated_at: str


class QueueTaskRequest(BaseModel):
    priority: bool = Field(default=False)


class QueueItemResponse(BaseModel):
    id: int
    kind: str
    entity_id: str
    workspace_id: str
    status: str
    is_priority: bool
    error: str | None
    created_at: str
    updated_at: str


class CommentRequest(BaseModel):
    content: str = Field(min_length=1)


class CommentResponse(BaseModel):
    id: int
    task_id: str
    author_type: str
    agent_id: str | None
    content: str
    created_at: str


class StatusRequest(BaseModel):
    status: Literal['todo', 'in_progress', 'in_review', 'done']


class PrioritizeRequest(BaseModel):
    priority: bool = Field(default=True)


class EventResponse(BaseModel):
    seq: int
    task_id: str
    type: str
    actor_type: str
    actor_id: str | None
    payload: dict
    created_at: str


class CreateChatRequest(BaseModel):
    agent_id: str | None = Field(default=None)
    title: str | None = Field(default=None, max_length=255)
    cli_type: Literal['claude', 'gemini', 'codex', 'opencode'] | None = Field(default=None)


class ChatResponse(BaseModel):
    id: str
    workspace_id: str
    agent_id: str | None
    cli_type: str | None
    title: str
    created_at: str
    updated_at: str


class ChatMessageRequest(BaseModel):
    content: str = Field(min_length=1)


class ChatMessageResponse(BaseModel):
    id: int
    chat_id: str
    role: str
    agent_id: str | None
    content: str
    created_at: str


class CancelResponse(BaseModel):
    entity_id: str
    cancelled: bool


class ProcessingResponse(BaseModel):
    entity_id: str
    processing: bool
    queue_item_id: int | None
    queue_status: str | None


class ToolHealthResponse(BaseModel):
    cli_type: str
    display_name: str
    available: bool
    path: str | None


class AppState:
    def __init__(self, service: OrchestratorService, poller: Poller | None = None):
        self.service = service
        self.poller = poller


def _error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
    payload: dict[str, str] = {'code': code, 'message': message}
    if field:
        payload['field'] = field
    return payload


def _field_from_loc(loc: tuple | list | None) -> str | None:
    parts = [str(part) for part in (loc or []) if not isinstance(part, int)]
    if parts and parts[0] in {'body', 'query', 'path', 'header', 'cookie'}:
        parts = parts[1:]
    return '.'.join(parts) or None


def create_app(*, service: OrchestratorService, poller: Poller | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if poller is not None:
            poller.start()
        try:
            yield
        finally:
            if poller is not None:
                poller.stop()

    app = FastAPI(title='awe-agentrelay api', version='0.1.0', lifespan=lifespan)
    app.state.container = AppState(service=service, poller=poller)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        first = details[0] if details else {}
        return JSONResponse(
            status_code=400,
            content=_error_payload(
                message=str(first.get('msg') or 'invalid request body'),
                field=_field_from_loc(first.get('loc')),
            ),
        )

    @app.exception_handler(InputValidationError)
    async def handle_input_validation_error(request: Request, exc: InputValidationError):  # noqa: ARG001
        return JSONResponse(
            status_code=400,
            content=_error_payload(message=exc.message, field=exc.field, code=exc.code),
        )

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):  # noqa: ARG001
        return JSONResponse(status_code=404, content=_error_payload(message=str(exc), code='not_found'))

    @app.exception_handler(QueueConflictError)
    async def handle_conflict(request: Request, exc: QueueConflictError):  # noqa: ARG001
        return JSONResponse(status_code=409, content=_error_payload(message=str(exc), code='conflict'))

    def get_service() -> OrchestratorService:
        return app.state.container.service

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @app.get('/api/health/tools', response_model=list[ToolHealthResponse])
    def tool_health(service: OrchestratorService = Depends(get_service)) -> list[ToolHealthResponse]:
        return [ToolHealthResponse(**row) for row in service.tool_health()]

    # Workspaces

    @app.post('/api/workspaces', response_model=WorkspaceResponse, status_code=201)
    def create_workspace(
        payload: CreateWorkspaceRequest,
        service: OrchestratorService = Depends(get_service),
    ) -> WorkspaceResponse:
        workspace = service.create_workspace(**payload.model_dump())
        return WorkspaceResponse(**workspace)

    @app.delete('/api/workspaces/{workspace_id}', status_code=204)
    def delete_workspace(workspace_id: str, service: OrchestratorService = Depends(get_service)) -> Response:
        service.delete_workspace(workspace_id)
        return Response(status_code=204)

    @app.post('/api/workspaces/{workspace_id}/agents', response_model=AgentResponse, status_code=201)
    def create_agent(
        workspace_id: str,
        payload: CreateAgentRequest,
        service: OrchestratorService = Depends(get_service),
    ) -> AgentResponse:
        agent = service.create_agent(
            CreateAgentInput(
                workspace_id=workspace_id,
                name=payload.name,
                instruction=payload.instruction,
                cli_type=payload.cli_type,
                order=payload.order,
            )
        )
        return AgentResponse(**agent)

    @app.post('/api/workspaces/{workspace_id}/tasks', response_model=TaskResponse, status_code=201)
    def create_task(
        workspace_id: str,
        payload: CreateTaskRequest,
        service: OrchestratorService = Depends(get_service),
    ) -> TaskResponse:
        task = service.create_task(
            CreateTaskInput(
                workspace_id=workspace_id,
                summary=payload.summary,
                description=payload.description,
                priority=payload.priority,
            )
        )
        return TaskResponse(**task)

    @app.post('/api/workspaces/{workspace_id}/chats', response_model=ChatResponse, status_code=201)
    def create_chat(
        workspace_id: str,
        payload: CreateChatRequest,
        service: OrchestratorService = Depends(get_service),
    ) -> ChatResponse:
        chat = service.create_chat(
            workspace_id=workspace_id,
            agent_id=payload.agent_id,
            title=payload.title,
            cli_type=payload.cli_type,
        )
        return ChatResponse(**chat)

    # Tasks

    @app.post('/api/tasks/{task_id}/queue', response_model=QueueItemResponse, status_code=201)
    def queue_task(
        task_id: str,
        payload: QueueTaskRequest | None = None,
        service: OrchestratorService = Depends(get_service),
    ) -> QueueItemResponse:
        item = service.enqueue_task(task_id, priority=bool(payload and payload.priority))
        return QueueItemResponse(**item)

    @app.post('/api/tasks/{task_id}/comments', response_model=CommentResponse, status_code=201)
    def add_comment(
        task_id: str,
        payload: CommentRequest,
        service: OrchestratorService = Depends(get_service),
    ) -> CommentResponse:
        return CommentResponse(**service.submit_task_comment(task_id, payload.content))

    @app.post('/api/tasks/{task_id}/status', response_model=TaskResponse)
    def change_status(
        task_id: str,
        payload: StatusRequest,
        service: OrchestratorService = Depends(get_service),
    ) -> TaskResponse:
        return TaskResponse(**service.change_task_status(task_id, payload.status))

    @app.post('/api/tasks/{task_id}/prioritize', response_model=QueueItemResponse | None)
    def prioritize_task(
        task_id: str,
        payload: PrioritizeRequest | None = None,
        service: OrchestratorService = Depends(get_service),
    ) -> QueueItemResponse | None:
        item = service.prioritize_task(task_id, priority=payload.priority if payload else True)
        return QueueItemResponse(**item) if item else None

    @app.post('/api/tasks/{task_id}/cancel', response_model=CancelResponse)
    def cancel_task(task_id: str, service: OrchestratorService = Depends(get_service)) -> CancelResponse:
        service.get_task(task_id)
        return CancelResponse(entity_id=task_id, cancelled=service.cancel(task_id))

    @app.get('/api/tasks/{task_id}/processing', response_model=ProcessingResponse)
    def task_processing(task_id: str, service: OrchestratorService = Depends(get_service)) -> ProcessingResponse:
        service.get_task(task_id)
        return ProcessingResponse(**service.processing_state(task_id, kind=QueueKind.TASK))

    @app.get('/api/tasks/{task_id}/events', response_model=list[EventResponse])
    def list_events(task_id: str, service: OrchestratorService = Depends(get_service)) -> list[EventResponse]:
        return [
            EventResponse(
                seq=int(row['seq']),
                task_id=str(row['task_id']),
                type=str(row['type']),
                actor_type=str(row['actor_type']),
                actor_id=row.get('actor_id'),
                payload=dict(row.get('payload') or {}),
                created_at=str(row['created_at']),
            )
            for row in service.list_events(task_id)
        ]

    # Chats

    @app.post('/api/chats/{chat_id}/messages', response_model=ChatMessageResponse, status_code=201)
    def send_message(
        chat_id: str,
        payload: ChatMessageRequest,
        service: OrchestratorService = Depends(get_service),
    ) -> ChatMessageResponse:
        return ChatMessageResponse(**service.submit_chat_message(chat_id, payload.content))

    @app.post('/api/chats/{chat_id}/cancel', response_model=CancelResponse)
    def cancel_chat(chat_id: str, service: OrchestratorService = Depends(get_service)) -> CancelResponse:
        service.get_chat(chat_id)
        return CancelResponse(entity_id=chat_id, cancelled=service.cancel(chat_id))

    @app.get('/api/chats/{chat_id}/processing', response_model=ProcessingResponse)
    def chat_processing(chat_id: str, service: OrchestratorService = Depends(get_service)) -> ProcessingResponse:
        service.get_chat(chat_id)
        return ProcessingResponse(**service.processing_state(chat_id, kind=QueueKind.CHAT))

    @app.get('/api/chats/{chat_id}/messages', response_model=list[ChatMessageResponse])
    def list_messages(chat_id: str, service: OrchestratorService = Depends(get_service)) -> list[ChatMessageResponse]:
        return [ChatMessageResponse(**row) for row in service.list_chat_messages(chat_id)]

    @app.get('/api/tasks/{task_id}', response_model=TaskResponse)
    def get_task(task_id: str, service: OrchestratorService = Depends(get_service)) -> TaskResponse:
        return TaskResponse(**service.get_task(task_id))

    @app.get('/api/tasks/{task_id}/comments', response_model=list[CommentResponse])
    def list_comments(task_id: str, service: OrchestratorService = Depends(get_service)) -> list[CommentResponse]:
        return [CommentResponse(**row) for row in service.list_comments(task_id)]

    return app


__all__ = ['AppState', 'create_app']
