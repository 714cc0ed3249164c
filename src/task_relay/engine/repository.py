"""Durable task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from task_relay.engine.errors import Conflict, InvalidTransition, NotFound, StorageError
from task_relay.engine.models import (
    RECOVERABLE_STATUSES,
    TaskArtifactView,
    TaskDetails,
    TaskEventView,
    TaskRunView,
    TaskStatus,
    can_transition,
)
from task_relay.storage.alembic_runner import upgrade_head
from task_relay.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_relay.storage.sqlmodel_models import TaskArtifact, TaskEvent, TaskRun


class TaskStore:
    """Single source of truth for task runs, their events and artifacts."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            upgrade_head(self.db_path)
        except SQLAlchemyError as error:
            raise StorageError(f"Failed to initialize task store schema: {error}") from error

    def insert(  # noqa: PLR0913
        self,
        *,
        channel: str,
        sender_key: str,
        reply_target: str,
        original_request: str,
        task_id: str | None = None,
    ) -> TaskRunView:
        """Create a queued task run and its ``accepted`` event in one transaction."""

        task_id = task_id or str(uuid4())
        now = to_db_datetime(utc_now())
        with self._session() as session:
            existing = session.exec(select(TaskRun).where(TaskRun.task_id == task_id)).one_or_none()
            if existing is not None:
                raise Conflict(f"Task already exists: {task_id}")
            row = TaskRun(
                task_id=task_id,
                channel=channel,
                sender_key=sender_key,
                reply_target=reply_target,
                status=TaskStatus.QUEUED.value,
                original_request=original_request,
                last_response=None,
                attempt_count=0,
                provider_retry_count=0,
                created_at=now,
                updated_at=now,
                completed_at=None,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise Conflict(f"Task already exists: {task_id}") from error
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="accepted",
                status_from=None,
                status_to=TaskStatus.QUEUED,
                payload={"channel": channel},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def update_status(
        self,
        task_id: str,
        new_status: TaskStatus,
        *,
        event_type: str | None = None,
        payload: dict[str, object] | None = None,
    ) -> TaskRunView:
        """Move a task to ``new_status`` and record exactly one event for it."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = self._get_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if not can_transition(previous, new_status):
                raise InvalidTransition(task_id, previous, new_status)

            result = session.exec(  # type: ignore[call-overload]
                sa_update(TaskRun)
                .where(
                    col(TaskRun.task_id) == task_id,
                    col(TaskRun.status) == previous.value,
                )
                .values(
                    status=new_status.value,
                    updated_at=now,
                    completed_at=now if new_status.is_terminal else None,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransition(
                    task_id,
                    previous,
                    new_status,
                    detail="task state changed concurrently",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type or new_status.value,
                status_from=previous,
                status_to=new_status,
                payload=payload or {},
            )
            session.commit()
            return _to_task_view(self._get_row(session=session, task_id=task_id))

    def set_last_response(self, task_id: str, text: str) -> None:
        """Overwrite the last response without touching status."""

        self._update_columns(task_id, last_response=text)

    def increment_attempt_count(self, task_id: str) -> int:
        """Count one more continuation round and return the new total."""

        return self._bump_counter(task_id, TaskRun.attempt_count)

    def increment_provider_retry_count(self, task_id: str) -> int:
        """Count one more consecutive transport failure and return the new total."""

        return self._bump_counter(task_id, TaskRun.provider_retry_count)

    def reset_provider_retry_count(self, task_id: str) -> None:
        self._update_columns(task_id, provider_retry_count=0)

    def get(self, task_id: str) -> TaskRunView:
        with self._session() as session:
            return _to_task_view(self._get_row(session=session, task_id=task_id))

    def list_recoverable(self) -> list[TaskRunView]:
        """Tasks eligible for resumption after restart, oldest first."""

        with self._session() as session:
            rows = session.exec(
                select(TaskRun)
                .where(col(TaskRun.status).in_([status.value for status in RECOVERABLE_STATUSES]))
                .order_by(col(TaskRun.created_at).asc(), col(TaskRun.task_id).asc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[TaskRunView]:
        """List recent tasks, optionally filtered by status."""

        with self._session() as session:
            statement = select(TaskRun).order_by(col(TaskRun.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(TaskRun.status == status.value)
            rows = session.exec(statement).all()
            return [_to_task_view(row) for row in rows]

    def has_running_task_for_sender(
        self,
        *,
        channel: str,
        sender_key: str,
        exclude_task_id: str,
    ) -> bool:
        """Whether another task of the same principal currently holds ``running``."""

        with self._session() as session:
            row = session.exec(
                select(TaskRun.task_id)
                .where(
                    TaskRun.channel == channel,
                    TaskRun.sender_key == sender_key,
                    TaskRun.status == TaskStatus.RUNNING.value,
                    TaskRun.task_id != exclude_task_id,
                )
                .limit(1),
            ).first()
            return row is not None

    def append_event(
        self,
        task_id: str,
        event_type: str,
        payload: dict[str, object] | None = None,
    ) -> None:
        """Append an immutable audit row that does not change status."""

        with self._session() as session:
            self._get_row(session=session, task_id=task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                payload=payload or {},
            )
            session.commit()

    def list_events(
        self,
        task_id: str,
        *,
        event_types: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[TaskEventView]:
        """Events in append order; with ``limit`` only the most recent ones."""

        with self._session() as session:
            statement = select(TaskEvent).where(TaskEvent.task_id == task_id)
            if event_types:
                statement = statement.where(col(TaskEvent.event_type).in_(list(event_types)))
            if limit is not None:
                statement = statement.order_by(col(TaskEvent.id).desc()).limit(limit)
                rows = list(reversed(session.exec(statement).all()))
            else:
                rows = list(session.exec(statement.order_by(col(TaskEvent.id).asc())).all())
            return [_to_event_view(row) for row in rows]

    def upsert_artifact(
        self,
        task_id: str,
        path: str,
        *,
        verified: bool,
        checksum: str | None,
    ) -> TaskArtifactView:
        """Insert or update the artifact row for ``(task_id, path)``."""

        if verified and not checksum:
            raise ValueError("Verified artifacts require a checksum.")
        verified_at = to_db_datetime(utc_now()) if verified else None
        with self._session() as session:
            self._get_row(session=session, task_id=task_id)
            row = session.exec(
                select(TaskArtifact).where(
                    TaskArtifact.task_id == task_id,
                    TaskArtifact.path == path,
                ),
            ).one_or_none()
            if row is None:
                row = TaskArtifact(task_id=task_id, path=path)
            row.verified = verified
            row.checksum = checksum
            row.verified_at = verified_at
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_artifact_view(row)

    def list_artifacts(self, task_id: str) -> list[TaskArtifactView]:
        with self._session() as session:
            rows = session.exec(
                select(TaskArtifact)
                .where(TaskArtifact.task_id == task_id)
                .order_by(col(TaskArtifact.id).asc()),
            ).all()
            return [_to_artifact_view(row) for row in rows]

    def get_task_details(self, task_id: str) -> TaskDetails:
        """Return task row with its event stream and artifacts."""

        return TaskDetails(
            task=self.get(task_id),
            events=self.list_events(task_id),
            artifacts=self.list_artifacts(task_id),
        )

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise StorageError(f"Task store I/O failed: {error}") from error

    def _get_row(self, *, session: Session, task_id: str) -> TaskRun:
        row = session.exec(select(TaskRun).where(TaskRun.task_id == task_id)).one_or_none()
        if row is None:
            raise NotFound(f"Task not found: {task_id}")
        return row

    def _update_columns(self, task_id: str, **values: object) -> None:
        with self._session() as session:
            result = session.exec(  # type: ignore[call-overload]
                sa_update(TaskRun)
                .where(col(TaskRun.task_id) == task_id)
                .values(updated_at=to_db_datetime(utc_now()), **values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFound(f"Task not found: {task_id}")
            session.commit()

    def _bump_counter(self, task_id: str, column: object) -> int:
        with self._session() as session:
            result = session.exec(  # type: ignore[call-overload]
                sa_update(TaskRun)
                .where(col(TaskRun.task_id) == task_id)
                .values({column: column + 1, TaskRun.updated_at: to_db_datetime(utc_now())}),  # type: ignore[operator]
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFound(f"Task not found: {task_id}")
            session.commit()
            row = self._get_row(session=session, task_id=task_id)
            return int(getattr(row, column.key))  # type: ignore[attr-defined]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        payload: dict[str, object],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                payload_json=json.dumps(payload, ensure_ascii=False, sort_keys=True)
                if payload
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_task_view(row: TaskRun) -> TaskRunView:
    return TaskRunView(
        task_id=row.task_id,
        channel=row.channel,
        sender_key=row.sender_key,
        reply_target=row.reply_target,
        status=TaskStatus(row.status),
        original_request=row.original_request,
        last_response=row.last_response,
        attempt_count=row.attempt_count,
        provider_retry_count=row.provider_retry_count,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
    )


def _to_event_view(row: TaskEvent) -> TaskEventView:
    payload = {}
    if row.payload_json:
        parsed = json.loads(row.payload_json)
        if isinstance(parsed, dict):
            payload = parsed
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        payload=payload,
    )


def _to_artifact_view(row: TaskArtifact) -> TaskArtifactView:
    return TaskArtifactView(
        artifact_id=row.id or 0,
        task_id=row.task_id,
        path=row.path,
        verified=bool(row.verified),
        checksum=row.checksum,
        verified_at=(
            to_utc_aware_datetime(row.verified_at) if row.verified_at is not None else None
        ),
    )
