from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from awe_agentrelay.db import Database, QueueItemEntity, TaskEntity, iso_utc
from awe_agentrelay.domain.models import (
    ACTIVE_QUEUE_STATUSES,
    RUNNABLE_TASK_STATUSES,
    TERMINAL_QUEUE_STATUSES,
    QueueKind,
    QueueStatus,
)
from awe_agentrelay.errors import InputValidationError, QueueConflictError

# Candidates inspected per claim attempt; losers of the CAS move on to the next row.
_CLAIM_BATCH = 16


class SqlQueueStore:
    """Durable work queue with one active item per task or chat."""

    def __init__(self, db: Database):
        self.db = db

    def enqueue(
        self,
        *,
        kind: str | QueueKind,
        entity_id: str,
        workspace_id: str,
        priority: bool = False,
    ) -> dict:
        kind_value = self._normalize_kind(kind)
        owner_column = self._owner_column(kind_value)
        now = datetime.now(timezone.utc)

        def _enqueue(session: Session) -> dict:
            existing = session.execute(
                select(QueueItemEntity.id)
                .where(owner_column == entity_id, QueueItemEntity.status.in_(ACTIVE_QUEUE_STATUSES))
                .limit(1)
            ).scalar_one_or_none()
            if existing is not None:
                raise QueueConflictError(entity_id, active_item_id=str(existing))
            row = QueueItemEntity(
                kind=kind_value,
                task_id=entity_id if kind_value == QueueKind.TASK.value else None,
                chat_id=entity_id if kind_value == QueueKind.CHAT.value else None,
                workspace_id=workspace_id,
                status=QueueStatus.QUEUED.value,
                is_priority=bool(priority),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            return self._item_to_dict(row)

        try:
            return self.db.write(_enqueue)
        except IntegrityError as exc:
            # A concurrent submission won the partial unique index.
            raise QueueConflictError(entity_id) from exc

    def claim_next(self, workspace_id: str | None = None, *, kind: str | QueueKind | None = None) -> dict | None:
        kind_value = self._normalize_kind(kind) if kind is not None else None

        def _claim(session: Session) -> dict | None:
            stmt = (
                select(QueueItemEntity.id)
                .outerjoin(TaskEntity, TaskEntity.id == QueueItemEntity.task_id)
                .where(
                    QueueItemEntity.status == QueueStatus.QUEUED.value,
                    or_(
                        QueueItemEntity.kind == QueueKind.CHAT.value,
                        and_(
                            QueueItemEntity.kind == QueueKind.TASK.value,
                            TaskEntity.status.in_(RUNNABLE_TASK_STATUSES),
                        ),
                    ),
                )
                .order_by(
                    QueueItemEntity.is_priority.desc(),
                    QueueItemEntity.created_at.asc(),
                    QueueItemEntity.id.asc(),
                )
                .limit(_CLAIM_BATCH)
            )
            if workspace_id is not None:
                stmt = stmt.where(QueueItemEntity.workspace_id == workspace_id)
            if kind_value is not None:
                stmt = stmt.where(QueueItemEntity.kind == kind_value)
            candidates = session.execute(stmt).scalars().all()
            now = datetime.now(timezone.utc)
            for item_id in candidates:
                result = session.execute(
                    update(QueueItemEntity)
                    .where(
                        QueueItemEntity.id == item_id,
                        QueueItemEntity.status == QueueStatus.QUEUED.value,
                    )
                    .values(status=QueueStatus.IN_PROGRESS.value, updated_at=now)
                )
                if int(result.rowcount or 0) == 1:
                    session.flush()
                    row = session.get(QueueItemEntity, item_id, populate_existing=True)
                    return self._item_to_dict(row)
            return None

        return self.db.write(_claim)

    def complete(self, item_id: int) -> bool:
        return self._finish(item_id, status=QueueStatus.COMPLETED.value, error=None)

    def fail(self, item_id: int, error: str | None = None, *, expected_status: str | None = None) -> bool:
        allowed = (expected_status,) if expected_status else ACTIVE_QUEUE_STATUSES
        return self._finish(item_id, status=QueueStatus.FAILED.value, error=error, from_statuses=allowed)

    def requeue(self, item_id: int) -> bool:
        """Hand a claimed item back to the queue, keeping its place in line."""

        def _requeue(session: Session) -> bool:
            result = session.execute(
                update(QueueItemEntity)
                .where(
                    QueueItemEntity.id == item_id,
                    QueueItemEntity.status == QueueStatus.IN_PROGRESS.value,
                )
                .values(status=QueueStatus.QUEUED.value, updated_at=datetime.now(timezone.utc))
            )
            return int(result.rowcount or 0) == 1

        return self.db.write(_requeue)

    def set_priority(self, *, kind: str | QueueKind, entity_id: str, priority: bool) -> dict | None:
        owner_column = self._owner_column(self._normalize_kind(kind))

        def _set(session: Session) -> dict | None:
            row = session.execute(
                select(QueueItemEntity)
                .where(owner_column == entity_id, QueueItemEntity.status.in_(ACTIVE_QUEUE_STATUSES))
                .limit(1)
            ).scalar_one_or_none()
            if row is None:
                return None
            row.is_priority = bool(priority)
            row.updated_at = datetime.now(timezone.utc)
            session.flush()
            return self._item_to_dict(row)

        return self.db.write(_set)

    def get(self, item_id: int) -> dict | None:
        with self.db.session() as session:
            row = session.get(QueueItemEntity, item_id)
            return None if row is None else self._item_to_dict(row)

    def get_active(self, *, kind: str | QueueKind, entity_id: str) -> dict | None:
        owner_column = self._owner_column(self._normalize_kind(kind))
        with self.db.session() as session:
            row = session.execute(
                select(QueueItemEntity)
                .where(owner_column == entity_id, QueueItemEntity.status.in_(ACTIVE_QUEUE_STATUSES))
                .limit(1)
            ).scalar_one_or_none()
            return None if row is None else self._item_to_dict(row)

    def list_items(
        self,
        *,
        kind: str | QueueKind | None = None,
        entity_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[dict]:
        stmt = select(QueueItemEntity)
        if kind is not None:
            kind_value = self._normalize_kind(kind)
            stmt = stmt.where(QueueItemEntity.kind == kind_value)
            if entity_id is not None:
                stmt = stmt.where(self._owner_column(kind_value) == entity_id)
        elif entity_id is not None:
            stmt = stmt.where(or_(QueueItemEntity.task_id == entity_id, QueueItemEntity.chat_id == entity_id))
        if status is not None:
            stmt = stmt.where(QueueItemEntity.status == status)
        stmt = stmt.order_by(QueueItemEntity.created_at.asc(), QueueItemEntity.id.asc()).limit(max(1, int(limit)))
        with self.db.session() as session:
            return [self._item_to_dict(row) for row in session.execute(stmt).scalars().all()]

    def workspaces_with_queued(self, *, kind: str | QueueKind | None = None) -> list[str]:
        stmt = select(QueueItemEntity.workspace_id).where(QueueItemEntity.status == QueueStatus.QUEUED.value)
        if kind is not None:
            stmt = stmt.where(QueueItemEntity.kind == self._normalize_kind(kind))
        with self.db.session() as session:
            return sorted(set(session.execute(stmt.distinct()).scalars().all()))

    def recover_interrupted(self) -> int:
        """Flip items left in_progress by a previous process back to queued."""

        def _recover(session: Session) -> int:
            result = session.execute(
                update(QueueItemEntity)
                .where(QueueItemEntity.status == QueueStatus.IN_PROGRESS.value)
                .values(status=QueueStatus.QUEUED.value, updated_at=datetime.now(timezone.utc))
            )
            return int(result.rowcount or 0)

        return self.db.write(_recover)

    def purge_terminal(self, *, older_than: timedelta) -> int:
        cutoff = datetime.now(timezone.utc) - older_than

        def _purge(session: Session) -> int:
            result = session.execute(
                delete(QueueItemEntity).where(
                    QueueItemEntity.status.in_(TERMINAL_QUEUE_STATUSES),
                    QueueItemEntity.updated_at < cutoff,
                )
            )
            return int(result.rowcount or 0)

        return self.db.write(_purge)

    def _finish(
        self,
        item_id: int,
        *,
        status: str,
        error: str | None,
        from_statuses: tuple[str, ...] = ACTIVE_QUEUE_STATUSES,
    ) -> bool:
        def _update(session: Session) -> bool:
            # Terminal rows are immutable: a second transition is a no-op.
            result = session.execute(
                update(QueueItemEntity)
                .where(
                    QueueItemEntity.id == item_id,
                    QueueItemEntity.status.in_(from_statuses),
                )
                .values(status=status, error=error, updated_at=datetime.now(timezone.utc))
            )
            return int(result.rowcount or 0) == 1

        return self.db.write(_update)

    @staticmethod
    def _normalize_kind(kind: str | QueueKind) -> str:
        if isinstance(kind, QueueKind):
            return kind.value
        text = str(kind or '').strip().lower()
        try:
            return QueueKind(text).value
        except ValueError as exc:
            raise InputValidationError(f'unsupported queue kind: {kind}', field='kind') from exc

    @staticmethod
    def _owner_column(kind: str):
        if kind == QueueKind.TASK.value:
            return QueueItemEntity.task_id
        return QueueItemEntity.chat_id

    @staticmethod
    def _item_to_dict(row: QueueItemEntity) -> dict:
        entity_id = row.task_id if row.kind == QueueKind.TASK.value else row.chat_id
        return {
            'id': row.id,
            'kind': row.kind,
            'entity_id': entity_id,
            'task_id': row.task_id,
            'chat_id': row.chat_id,
            'workspace_id': row.workspace_id,
            'status': row.status,
            'is_priority': bool(row.is_priority),
            'error': row.error,
            'created_at': iso_utc(row.created_at),
            'updated_at': iso_utc(row.updated_at),
        }
