from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
from pathlib import Path
import time
from typing import Callable, Iterator, TypeVar
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from awe_agentrelay.domain.events import EventType, normalize_event_type
from awe_agentrelay.domain.models import ActorType, MessageRole, TaskStatus, normalize_cli_type, normalize_task_status
from awe_agentrelay.errors import InputValidationError, NotFoundError


T = TypeVar('T')

_ACTIVE_QUEUE_WHERE = "status IN ('queued', 'in_progress')"


def iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f'{prefix}-{uuid4().hex[:12]}'


class Base(DeclarativeBase):
    pass


class WorkspaceEntity(Base):
    __tablename__ = 'workspaces'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text(), nullable=False, default='')
    working_directory: Mapped[str | None] = mapped_column(Text(), nullable=True)
    notify_on_error: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=True)
    notify_on_in_review: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AgentEntity(Base):
    __tablename__ = 'agents'
    __table_args__ = (
        Index('ix_agents_workspace_position', 'workspace_id', 'position'),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), ForeignKey('workspaces.id'), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    instruction: Mapped[str] = mapped_column(Text(), nullable=False)
    cli_type: Mapped[str] = mapped_column(String(32), nullable=False)
    position: Mapped[int] = mapped_column(Integer(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TaskEntity(Base):
    __tablename__ = 'tasks'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), ForeignKey('workspaces.id'), nullable=False, index=True)
    summary: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text(), nullable=False, default='')
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ChatEntity(Base):
    __tablename__ = 'chats'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), ForeignKey('workspaces.id'), nullable=False, index=True)
    # NULL means the built-in workspace assistant.
    agent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cli_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CommentEntity(Base):
    __tablename__ = 'task_comments'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(64), ForeignKey('tasks.id'), nullable=False, index=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    author_type: Mapped[str] = mapped_column(String(16), nullable=False)
    agent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    content: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ChatMessageEntity(Base):
    __tablename__ = 'chat_messages'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    chat_id: Mapped[str] = mapped_column(String(64), ForeignKey('chats.id'), nullable=False, index=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    agent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    content: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TaskEventEntity(Base):
    __tablename__ = 'task_events'
    __table_args__ = (
        UniqueConstraint('task_id', 'seq', name='uq_task_events_task_id_seq'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(64), ForeignKey('tasks.id'), nullable=False, index=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seq: Mapped[int] = mapped_column(Integer(), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_type: Mapped[str] = mapped_column(String(16), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class QueueItemEntity(Base):
    __tablename__ = 'queue_items'
    __table_args__ = (
        Index('ix_queue_items_pickup', 'workspace_id', 'status', 'is_priority', 'updated_at'),
        Index(
            'uq_queue_items_active_task',
            'task_id',
            unique=True,
            sqlite_where=text(_ACTIVE_QUEUE_WHERE),
            postgresql_where=text(_ACTIVE_QUEUE_WHERE),
        ),
        Index(
            'uq_queue_items_active_chat',
            'chat_id',
            unique=True,
            sqlite_where=text(_ACTIVE_QUEUE_WHERE),
            postgresql_where=text(_ACTIVE_QUEUE_WHERE),
        ),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    task_id: Mapped[str | None] = mapped_column(String(64), ForeignKey('tasks.id'), nullable=True)
    chat_id: Mapped[str | None] = mapped_column(String(64), ForeignKey('chats.id'), nullable=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    is_priority: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    error: Mapped[str | None] = mapped_column(Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {
            'future': True,
        }
        if str(url or '').strip().lower().startswith('sqlite'):
            # Poller threads and API requests share the sqlite file.
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            database = self.engine.url.database
            if database not in (None, '', ':memory:') and not database.startswith('file:'):
                Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def write(self, fn: Callable[[Session], T]) -> T:
        """Run ``fn`` in its own transaction, retrying while sqlite reports a lock."""
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                with self.session() as session:
                    return fn(session)
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError('write_retry_exhausted')

    def _sqlite_lock_retry_attempts(self) -> int:
        return 8 if self.engine.dialect.name == 'sqlite' else 1

    @staticmethod
    def _is_sqlite_lock_error(exc: Exception) -> bool:
        message = str(exc or '').lower()
        return 'database is locked' in message or 'database table is locked' in message

    @staticmethod
    def _sqlite_lock_backoff_seconds(attempt: int) -> float:
        return min(0.2, 0.02 * (2 ** max(0, int(attempt) - 1)))

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            if self.engine.url.database not in (None, '', ':memory:'):
                conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


class SqlCatalog:
    """Workspace, agent, task, chat and log storage consumed by the processing core."""

    def __init__(self, db: Database):
        self.db = db

    # Workspaces

    def create_workspace(
        self,
        *,
        title: str,
        description: str = '',
        working_directory: str | None = None,
        notify_on_error: bool = True,
        notify_on_in_review: bool = True,
    ) -> dict:
        now = _utcnow()

        def _create(session: Session) -> dict:
            row = WorkspaceEntity(
                id=_new_id('ws'),
                title=str(title or '').strip() or 'Untitled workspace',
                description=str(description or ''),
                working_directory=str(working_directory or '').strip() or None,
                notify_on_error=bool(notify_on_error),
                notify_on_in_review=bool(notify_on_in_review),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            return self._workspace_to_dict(row)

        return self.db.write(_create)

    def get_workspace(self, workspace_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(WorkspaceEntity, workspace_id)
            return None if row is None else self._workspace_to_dict(row)

    def update_workspace(
        self,
        workspace_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        working_directory: str | None = None,
        notify_on_error: bool | None = None,
        notify_on_in_review: bool | None = None,
    ) -> dict:
        def _update(session: Session) -> dict:
            row = session.get(WorkspaceEntity, workspace_id)
            if row is None:
                raise NotFoundError('workspace', workspace_id)
            if title is not None:
                cleaned = str(title).strip()
                if not cleaned:
                    raise InputValidationError('title must not be blank', field='title')
                row.title = cleaned
            if description is not None:
                row.description = str(description)
            if working_directory is not None:
                row.working_directory = str(working_directory).strip() or None
            if notify_on_error is not None:
                row.notify_on_error = bool(notify_on_error)
            if notify_on_in_review is not None:
                row.notify_on_in_review = bool(notify_on_in_review)
            row.updated_at = _utcnow()
            session.flush()
            return self._workspace_to_dict(row)

        return self.db.write(_update)

    def list_workspace_entities(self, workspace_id: str) -> dict[str, list[str]]:
        with self.db.session() as session:
            task_ids = session.execute(
                select(TaskEntity.id).where(TaskEntity.workspace_id == workspace_id)
            ).scalars().all()
            chat_ids = session.execute(
                select(ChatEntity.id).where(ChatEntity.workspace_id == workspace_id)
            ).scalars().all()
            return {'task_ids': list(task_ids), 'chat_ids': list(chat_ids)}

    def delete_workspace(self, workspace_id: str) -> bool:
        def _delete(session: Session) -> bool:
            row = session.get(WorkspaceEntity, workspace_id)
            if row is None:
                return False
            task_ids = select(TaskEntity.id).where(TaskEntity.workspace_id == workspace_id)
            chat_ids = select(ChatEntity.id).where(ChatEntity.workspace_id == workspace_id)
            session.execute(delete(QueueItemEntity).where(QueueItemEntity.workspace_id == workspace_id))
            session.execute(delete(TaskEventEntity).where(TaskEventEntity.task_id.in_(task_ids)))
            session.execute(delete(CommentEntity).where(CommentEntity.task_id.in_(task_ids)))
            session.execute(delete(ChatMessageEntity).where(ChatMessageEntity.chat_id.in_(chat_ids)))
            session.execute(delete(TaskEntity).where(TaskEntity.workspace_id == workspace_id))
            session.execute(delete(ChatEntity).where(ChatEntity.workspace_id == workspace_id))
            session.execute(delete(AgentEntity).where(AgentEntity.workspace_id == workspace_id))
            session.delete(row)
            session.flush()
            return True

        return self.db.write(_delete)

    # Agents

    def create_agent(
        self,
        *,
        workspace_id: str,
        name: str,
        instruction: str,
        cli_type: str = 'claude',
        order: int | None = None,
    ) -> dict:
        normalized_cli = normalize_cli_type(cli_type)
        now = _utcnow()

        def _create(session: Session) -> dict:
            if session.get(WorkspaceEntity, workspace_id) is None:
                raise NotFoundError('workspace', workspace_id)
            roster = self._roster(session, workspace_id)
            row = AgentEntity(
                id=_new_id('agent'),
                workspace_id=workspace_id,
                name=str(name or '').strip(),
                instruction=str(instruction or ''),
                cli_type=normalized_cli,
                position=len(roster) + 1,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            roster.append(row)
            if order is not None:
                self._move(roster, row, order)
            self._renumber(roster, now)
            session.flush()
            return self._agent_to_dict(row)

        return self.db.write(_create)

    def get_agent(self, agent_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(AgentEntity, agent_id)
            return None if row is None else self._agent_to_dict(row)

    def list_agents(self, workspace_id: str) -> list[dict]:
        with self.db.session() as session:
            return [self._agent_to_dict(row) for row in self._roster(session, workspace_id)]

    def update_agent(
        self,
        agent_id: str,
        *,
        name: str | None = None,
        instruction: str | None = None,
        cli_type: str | None = None,
        order: int | None = None,
    ) -> dict:
        normalized_cli = normalize_cli_type(cli_type) if cli_type is not None else None

        def _update(session: Session) -> dict:
            row = session.get(AgentEntity, agent_id)
            if row is None:
                raise NotFoundError('agent', agent_id)
            now = _utcnow()
            if name is not None:
                cleaned = str(name).strip()
                if not cleaned:
                    raise InputValidationError('name must not be blank', field='name')
                row.name = cleaned
            if instruction is not None:
                row.instruction = str(instruction)
            if normalized_cli is not None:
                row.cli_type = normalized_cli
            row.updated_at = now
            if order is not None:
                roster = self._roster(session, row.workspace_id)
                self._move(roster, row, order)
                self._renumber(roster, now)
            session.flush()
            return self._agent_to_dict(row)

        return self.db.write(_update)

    def delete_agent(self, agent_id: str) -> bool:
        def _delete(session: Session) -> bool:
            row = session.get(AgentEntity, agent_id)
            if row is None:
                return False
            workspace_id = row.workspace_id
            session.delete(row)
            session.flush()
            self._renumber(self._roster(session, workspace_id), _utcnow())
            session.flush()
            return True

        return self.db.write(_delete)

    def reorder_agents(self, workspace_id: str, agent_ids: list[str]) -> list[dict]:
        wanted = [str(item or '').strip() for item in agent_ids]

        def _reorder(session: Session) -> list[dict]:
            roster = self._roster(session, workspace_id)
            by_id = {row.id: row for row in roster}
            if len(wanted) != len(set(wanted)) or set(wanted) != set(by_id):
                raise InputValidationError(
                    'agent_ids must list every agent of the workspace exactly once',
                    field='agent_ids',
                )
            ordered = [by_id[agent_id] for agent_id in wanted]
            self._renumber(ordered, _utcnow())
            session.flush()
            return [self._agent_to_dict(row) for row in ordered]

        return self.db.write(_reorder)

    @staticmethod
    def _roster(session: Session, workspace_id: str) -> list[AgentEntity]:
        rows = session.execute(
            select(AgentEntity)
            .where(AgentEntity.workspace_id == workspace_id)
            .order_by(AgentEntity.position.asc(), AgentEntity.created_at.asc())
        ).scalars().all()
        return list(rows)

    @staticmethod
    def _move(roster: list[AgentEntity], row: AgentEntity, order: int) -> None:
        roster.remove(row)
        index = min(max(1, int(order)), len(roster) + 1) - 1
        roster.insert(index, row)

    @staticmethod
    def _renumber(roster: list[AgentEntity], now: datetime) -> None:
        for index, row in enumerate(roster, start=1):
            if row.position != index:
                row.position = index
                row.updated_at = now

    # Tasks

    def create_task(self, *, workspace_id: str, summary: str, description: str = '') -> dict:
        now = _utcnow()

        def _create(session: Session) -> dict:
            if session.get(WorkspaceEntity, workspace_id) is None:
                raise NotFoundError('workspace', workspace_id)
            row = TaskEntity(
                id=_new_id('task'),
                workspace_id=workspace_id,
                summary=str(summary or '').strip(),
                description=str(description or ''),
                status=TaskStatus.TODO.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._insert_event(
                session,
                task=row,
                event_type=EventType.TASK_CREATED.value,
                actor_type=ActorType.USER.value,
                actor_id=None,
                payload={},
            )
            return self._task_to_dict(row)

        return self.db.write(_create)

    def get_task(self, task_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(TaskEntity, task_id)
            return None if row is None else self._task_to_dict(row)

    def update_task_status(self, task_id: str, status: str) -> dict:
        normalized = normalize_task_status(status)

        def _update(session: Session) -> dict:
            row = session.get(TaskEntity, task_id)
            if row is None:
                raise NotFoundError('task', task_id)
            row.status = normalized
            row.updated_at = _utcnow()
            session.flush()
            return self._task_to_dict(row)

        return self.db.write(_update)

    def update_task_status_if(self, task_id: str, *, expected_status: str, status: str) -> dict | None:
        normalized = normalize_task_status(status)

        def _update(session: Session) -> dict | None:
            result = session.execute(
                update(TaskEntity)
                .where(TaskEntity.id == task_id, TaskEntity.status == expected_status)
                .values(status=normalized, updated_at=_utcnow())
            )
            session.flush()
            if int(result.rowcount or 0) == 0:
                if session.get(TaskEntity, task_id) is None:
                    raise NotFoundError('task', task_id)
                return None
            row = session.get(TaskEntity, task_id)
            return self._task_to_dict(row)

        return self.db.write(_update)

    # Comments and events

    def append_comment(
        self,
        task_id: str,
        *,
        content: str,
        author_type: str,
        agent_id: str | None = None,
    ) -> dict:
        def _append(session: Session) -> dict:
            task = session.get(TaskEntity, task_id)
            if task is None:
                raise NotFoundError('task', task_id)
            row = CommentEntity(
                task_id=task_id,
                workspace_id=task.workspace_id,
                author_type=str(author_type),
                agent_id=agent_id,
                content=str(content),
                created_at=_utcnow(),
            )
            session.add(row)
            session.flush()
            return self._comment_to_dict(row)

        return self.db.write(_append)

    def list_comments(self, task_id: str) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(
                select(CommentEntity)
                .where(CommentEntity.task_id == task_id)
                .order_by(CommentEntity.created_at.asc(), CommentEntity.id.asc())
            ).scalars().all()
            return [self._comment_to_dict(row) for row in rows]

    def append_event(
        self,
        task_id: str,
        *,
        event_type: str | EventType,
        actor_type: str,
        actor_id: str | None = None,
        payload: dict | None = None,
    ) -> dict:
        normalized = normalize_event_type(event_type)
        max_attempts = 3

        def _append(session: Session) -> dict:
            task = session.get(TaskEntity, task_id)
            if task is None:
                raise NotFoundError('task', task_id)
            return self._insert_event(
                session,
                task=task,
                event_type=normalized,
                actor_type=str(actor_type),
                actor_id=actor_id,
                payload=dict(payload or {}),
            )

        for attempt in range(max_attempts):
            try:
                return self.db.write(_append)
            except IntegrityError:
                # Two writers reserved the same seq; the loser retries.
                if attempt + 1 >= max_attempts:
                    raise
        raise RuntimeError('append_event_retry_exhausted')

    def list_events(self, task_id: str) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(
                select(TaskEventEntity)
                .where(TaskEventEntity.task_id == task_id)
                .order_by(TaskEventEntity.seq.asc())
            ).scalars().all()
            return [self._event_to_dict(row) for row in rows]

    def _insert_event(
        self,
        session: Session,
        *,
        task: TaskEntity,
        event_type: str,
        actor_type: str,
        actor_id: str | None,
        payload: dict,
    ) -> dict:
        next_seq = int(
            session.execute(
                select(func.coalesce(func.max(TaskEventEntity.seq), 0)).where(TaskEventEntity.task_id == task.id)
            ).scalar_one()
        ) + 1
        row = TaskEventEntity(
            task_id=task.id,
            workspace_id=task.workspace_id,
            seq=next_seq,
            event_type=event_type,
            actor_type=actor_type,
            actor_id=actor_id,
            payload_json=json.dumps(payload, ensure_ascii=True),
            created_at=_utcnow(),
        )
        session.add(row)
        session.flush()
        return self._event_to_dict(row)

    # Chats

    def create_chat(
        self,
        *,
        workspace_id: str,
        agent_id: str | None = None,
        title: str = 'New chat',
        cli_type: str | None = None,
    ) -> dict:
        normalized_cli = normalize_cli_type(cli_type) if cli_type else None
        now = _utcnow()

        def _create(session: Session) -> dict:
            if session.get(WorkspaceEntity, workspace_id) is None:
                raise NotFoundError('workspace', workspace_id)
            if agent_id is not None:
                agent = session.get(AgentEntity, agent_id)
                if agent is None or agent.workspace_id != workspace_id:
                    raise NotFoundError('agent', agent_id)
            row = ChatEntity(
                id=_new_id('chat'),
                workspace_id=workspace_id,
                agent_id=agent_id,
                cli_type=normalized_cli,
                title=str(title or '').strip() or 'New chat',
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            return self._chat_to_dict(row)

        return self.db.write(_create)

    def get_chat(self, chat_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(ChatEntity, chat_id)
            return None if row is None else self._chat_to_dict(row)

    def update_chat_title(self, chat_id: str, title: str) -> dict:
        def _update(session: Session) -> dict:
            row = session.get(ChatEntity, chat_id)
            if row is None:
                raise NotFoundError('chat', chat_id)
            row.title = str(title).strip()
            row.updated_at = _utcnow()
            session.flush()
            return self._chat_to_dict(row)

        return self.db.write(_update)

    def rename_chat_if_unanswered(self, chat_id: str, title: str) -> bool:
        """Rename only while the chat has no agent-authored message, in one transaction."""

        def _rename(session: Session) -> bool:
            row = session.get(ChatEntity, chat_id)
            if row is None:
                raise NotFoundError('chat', chat_id)
            if self._count_agent_messages(session, chat_id) > 0:
                return False
            row.title = str(title).strip()
            row.updated_at = _utcnow()
            session.flush()
            return True

        return self.db.write(_rename)

    def append_chat_message(
        self,
        chat_id: str,
        *,
        role: str,
        content: str,
        agent_id: str | None = None,
    ) -> dict:
        def _append(session: Session) -> dict:
            chat = session.get(ChatEntity, chat_id)
            if chat is None:
                raise NotFoundError('chat', chat_id)
            now = _utcnow()
            row = ChatMessageEntity(
                chat_id=chat_id,
                workspace_id=chat.workspace_id,
                role=str(role),
                agent_id=agent_id,
                content=str(content),
                created_at=now,
            )
            session.add(row)
            chat.updated_at = now
            session.flush()
            return self._message_to_dict(row)

        return self.db.write(_append)

    def list_chat_messages(self, chat_id: str) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(
                select(ChatMessageEntity)
                .where(ChatMessageEntity.chat_id == chat_id)
                .order_by(ChatMessageEntity.created_at.asc(), ChatMessageEntity.id.asc())
            ).scalars().all()
            return [self._message_to_dict(row) for row in rows]

    def count_agent_messages(self, chat_id: str) -> int:
        with self.db.session() as session:
            return self._count_agent_messages(session, chat_id)

    @staticmethod
    def _count_agent_messages(session: Session, chat_id: str) -> int:
        return int(
            session.execute(
                select(func.count(ChatMessageEntity.id)).where(
                    ChatMessageEntity.chat_id == chat_id,
                    ChatMessageEntity.role == MessageRole.AGENT.value,
                )
            ).scalar_one()
        )

    # Row conversion

    @staticmethod
    def _workspace_to_dict(row: WorkspaceEntity) -> dict:
        return {
            'id': row.id,
            'title': row.title,
            'description': row.description,
            'working_directory': row.working_directory,
            'notify_on_error': bool(row.notify_on_error),
            'notify_on_in_review': bool(row.notify_on_in_review),
            'created_at': iso_utc(row.created_at),
            'updated_at': iso_utc(row.updated_at),
        }

    @staticmethod
    def _agent_to_dict(row: AgentEntity) -> dict:
        return {
            'id': row.id,
            'workspace_id': row.workspace_id,
            'name': row.name,
            'instruction': row.instruction,
            'cli_type': row.cli_type,
            'order': row.position,
            'created_at': iso_utc(row.created_at),
            'updated_at': iso_utc(row.updated_at),
        }

    @staticmethod
    def _task_to_dict(row: TaskEntity) -> dict:
        return {
            'id': row.id,
            'workspace_id': row.workspace_id,
            'summary': row.summary,
            'description': row.description,
            'status': row.status,
            'created_at': iso_utc(row.created_at),
            'updated_at': iso_utc(row.updated_at),
        }

    @staticmethod
    def _chat_to_dict(row: ChatEntity) -> dict:
        return {
            'id': row.id,
            'workspace_id': row.workspace_id,
            'agent_id': row.agent_id,
            'cli_type': row.cli_type,
            'title': row.title,
            'created_at': iso_utc(row.created_at),
            'updated_at': iso_utc(row.updated_at),
        }

    @staticmethod
    def _comment_to_dict(row: CommentEntity) -> dict:
        return {
            'id': row.id,
            'task_id': row.task_id,
            'workspace_id': row.workspace_id,
            'author_type': row.author_type,
            'agent_id': row.agent_id,
            'content': row.content,
            'created_at': iso_utc(row.created_at),
        }

    @staticmethod
    def _message_to_dict(row: ChatMessageEntity) -> dict:
        return {
            'id': row.id,
            'chat_id': row.chat_id,
            'workspace_id': row.workspace_id,
            'role': row.role,
            'agent_id': row.agent_id,
            'content': row.content,
            'created_at': iso_utc(row.created_at),
        }

    @staticmethod
    def _event_to_dict(row: TaskEventEntity) -> dict:
        return {
            'id': row.id,
            'task_id': row.task_id,
            'workspace_id': row.workspace_id,
            'seq': row.seq,
            'type': row.event_type,
            'actor_type': row.actor_type,
            'actor_id': row.actor_id,
            'payload': json.loads(row.payload_json),
            'created_at': iso_utc(row.created_at),
        }
