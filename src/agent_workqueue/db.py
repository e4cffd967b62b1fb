from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
import time
from typing import Callable, Iterator, TypeVar
from uuid import uuid4

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker

from agent_workqueue.domain.events import NoteType, normalize_event_type
from agent_workqueue.domain.models import TaskStatus, ValidationStatus, parse_timestamp
from agent_workqueue.repository import (
    TaskCreateRecord,
    clean_update_fields,
    require_transition,
    status_side_effects,
    unique_task_ids,
)

T = TypeVar('T')


def _iso_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


class Base(DeclarativeBase):
    pass


class TaskEntity(Base):
    __tablename__ = 'tasks'

    task_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(Text(), nullable=False)
    description: Mapped[str | None] = mapped_column(Text(), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    assigned_to: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    owner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_until: Mapped[str | None] = mapped_column(String(64), nullable=True)
    heartbeat_at: Mapped[str | None] = mapped_column(String(64), nullable=True)
    validation_status: Mapped[str] = mapped_column(String(16), nullable=False)
    artifact_path: Mapped[str | None] = mapped_column(Text(), nullable=True)
    blocked_reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(Text(), nullable=True)
    intent_window: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_task_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    retry_count_total: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    events: Mapped[list['TaskEventEntity']] = relationship('TaskEventEntity', back_populates='task', cascade='all,delete-orphan')


class TaskEventEntity(Base):
    __tablename__ = 'task_events'
    __table_args__ = (
        UniqueConstraint('task_id', 'seq', name='uq_task_events_task_id_seq'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(64), ForeignKey('tasks.task_id'), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer(), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    task: Mapped[TaskEntity] = relationship('TaskEntity', back_populates='events')


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {
            'future': True,
        }
        if str(url or '').strip().lower().startswith('sqlite'):
            # Workers, sweeper and API may share one sqlite file.
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
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

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA foreign_keys=ON')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


class SqlTaskRepository:
    def __init__(self, db: Database):
        self.db = db

    def _sqlite_lock_retry_attempts(self) -> int:
        return 8 if self.db.engine.dialect.name == 'sqlite' else 1

    @staticmethod
    def _is_sqlite_lock_error(exc: Exception) -> bool:
        text = str(exc or '').lower()
        return 'database is locked' in text or 'database table is locked' in text

    @staticmethod
    def _sqlite_lock_backoff_seconds(attempt: int) -> float:
        return min(0.2, 0.02 * (2 ** max(0, int(attempt) - 1)))

    def _with_lock_retry(self, label: str, fn: Callable[[], T]) -> T:
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError(f'{label}_retry_exhausted')

    def create_task_record(self, record: TaskCreateRecord) -> dict:
        now = datetime.now(timezone.utc)
        task = TaskEntity(
            task_id=f'task-{uuid4().hex[:12]}',
            title=record.title,
            description=record.description,
            status=str(getattr(record.status, 'value', record.status)),
            assigned_to=str(getattr(record.assigned_to, 'value', record.assigned_to)),
            owner=None,
            lease_until=None,
            heartbeat_at=None,
            validation_status=ValidationStatus.PENDING.value,
            artifact_path=None,
            blocked_reason=None,
            idempotency_key=record.idempotency_key,
            intent_window=record.intent_window,
            source_task_ref=record.source_task_ref,
            retry_count_total=0,
            created_at=parse_timestamp(record.created_at) or now,
            updated_at=now,
        )

        def _run() -> dict:
            with self.db.session() as session:
                session.add(task)
            return self._task_to_dict(task)

        return self._with_lock_retry('create_task_record', _run)

    def list_tasks(self) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(select(TaskEntity).order_by(TaskEntity.created_at.desc())).scalars().all()
            return [self._task_to_dict(r) for r in rows]

    def get_task(self, task_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(TaskEntity, task_id)
            if row is None:
                return None
            return self._task_to_dict(row)

    def update_task_status(self, task_id: str, *, status: str) -> dict:
        status_text = str(getattr(status, 'value', status))

        def _run() -> dict:
            with self.db.session() as session:
                row = session.get(TaskEntity, task_id)
                if row is None:
                    raise KeyError(task_id)
                row.status = status_text
                for key, value in status_side_effects(status_text).items():
                    setattr(row, key, value)
                row.updated_at = datetime.now(timezone.utc)
                session.add(row)
                session.flush()
                return self._task_to_dict(row)

        return self._with_lock_retry('update_task_status', _run)

    def update_task_status_if(
        self,
        task_id: str,
        *,
        expected_status: str,
        status: str,
        require_unowned: bool = False,
        fields: dict | None = None,
    ) -> dict | None:
        status_text = str(getattr(status, 'value', status))
        expected_text = str(getattr(expected_status, 'value', expected_status))
        require_transition(expected_text, status_text)
        extra = clean_update_fields(fields)

        def _run() -> dict | None:
            values: dict[str, object] = {'status': status_text}
            values.update(status_side_effects(status_text))
            values.update(extra)
            values['updated_at'] = datetime.now(timezone.utc)
            conditions = [
                TaskEntity.task_id == task_id,
                TaskEntity.status == expected_text,
            ]
            if require_unowned:
                conditions.append(TaskEntity.owner.is_(None))
            with self.db.session() as session:
                result = session.execute(update(TaskEntity).where(*conditions).values(**values))
                session.flush()
                if int(result.rowcount or 0) == 0:
                    existing = session.get(TaskEntity, task_id)
                    if existing is None:
                        raise KeyError(task_id)
                    return None
                row = session.get(TaskEntity, task_id, populate_existing=True)
                if row is None:
                    raise KeyError(task_id)
                return self._task_to_dict(row)

        return self._with_lock_retry('update_task_status_if', _run)

    def renew_lease(self, task_id: str, *, owner: str, lease_until: str, heartbeat_at: str) -> dict | None:
        def _run() -> dict | None:
            with self.db.session() as session:
                result = session.execute(
                    update(TaskEntity)
                    .where(
                        TaskEntity.task_id == task_id,
                        TaskEntity.status == TaskStatus.IN_PROGRESS.value,
                        TaskEntity.owner == owner,
                    )
                    .values(lease_until=lease_until, heartbeat_at=heartbeat_at, updated_at=datetime.now(timezone.utc))
                )
                session.flush()
                row = session.get(TaskEntity, task_id, populate_existing=True)
                if row is None:
                    raise KeyError(task_id)
                if int(result.rowcount or 0) == 0:
                    return None
                return self._task_to_dict(row)

        return self._with_lock_retry('renew_lease', _run)

    def update_task_fields(self, task_id: str, fields: dict) -> dict:
        values = clean_update_fields(fields)

        def _run() -> dict:
            with self.db.session() as session:
                row = session.get(TaskEntity, task_id)
                if row is None:
                    raise KeyError(task_id)
                for key, value in values.items():
                    setattr(row, key, value)
                row.updated_at = datetime.now(timezone.utc)
                session.add(row)
                session.flush()
                return self._task_to_dict(row)

        return self._with_lock_retry('update_task_fields', _run)

    def append_event(
        self,
        task_id: str,
        *,
        event_type: str | NoteType,
        payload: dict,
        actor: str | None = None,
    ) -> dict:
        now = datetime.now(timezone.utc)
        type_text = normalize_event_type(event_type)
        max_attempts = max(3, self._sqlite_lock_retry_attempts())
        for attempt in range(max_attempts):
            try:
                with self.db.session() as session:
                    task = session.get(TaskEntity, task_id)
                    if task is None:
                        raise KeyError(task_id)
                    max_seq = int(
                        session.execute(
                            select(func.coalesce(func.max(TaskEventEntity.seq), 0))
                            .where(TaskEventEntity.task_id == task_id)
                        ).scalar_one()
                    )
                    event = TaskEventEntity(
                        task_id=task_id,
                        seq=max_seq + 1,
                        event_type=type_text,
                        actor=actor,
                        payload_json=json.dumps(payload, ensure_ascii=True),
                        created_at=now,
                    )
                    session.add(event)
                    session.flush()
                    return self._event_to_dict(event)
            except IntegrityError:
                # Another writer took the same seq; re-read the max and try again.
                if attempt + 1 >= max_attempts:
                    raise
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt + 1 >= max_attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt + 1))
        raise RuntimeError('append_event_retry_exhausted')

    def list_events(self, task_id: str) -> list[dict]:
        with self.db.session() as session:
            task = session.get(TaskEntity, task_id)
            if task is None:
                raise KeyError(task_id)
            rows = session.execute(
                select(TaskEventEntity)
                .where(TaskEventEntity.task_id == task_id)
                .order_by(TaskEventEntity.seq.asc())
            ).scalars().all()
            return [self._event_to_dict(r) for r in rows]

    def delete_tasks(self, task_ids: list[str]) -> int:
        unique_ids = unique_task_ids(task_ids)
        if not unique_ids:
            return 0

        deleted = 0
        with self.db.session() as session:
            session.execute(delete(TaskEventEntity).where(TaskEventEntity.task_id.in_(unique_ids)))
            rows = session.execute(
                select(TaskEntity).where(TaskEntity.task_id.in_(unique_ids))
            ).scalars().all()
            for row in rows:
                session.delete(row)
                deleted += 1
            session.flush()
        return deleted

    @staticmethod
    def _task_to_dict(row: TaskEntity) -> dict:
        return {
            'task_id': row.task_id,
            'title': row.title,
            'description': row.description,
            'status': row.status or TaskStatus.SUGGESTED.value,
            'assigned_to': row.assigned_to,
            'created_at': _iso_utc(row.created_at),
            'updated_at': _iso_utc(row.updated_at),
            'owner': row.owner,
            'lease_until': row.lease_until,
            'heartbeat_at': row.heartbeat_at,
            'validation_status': row.validation_status or ValidationStatus.PENDING.value,
            'artifact_path': row.artifact_path,
            'blocked_reason': row.blocked_reason,
            'idempotency_key': row.idempotency_key,
            'intent_window': row.intent_window,
            'source_task_ref': row.source_task_ref,
            'retry_count_total': int(row.retry_count_total or 0),
        }

    @staticmethod
    def _event_to_dict(row: TaskEventEntity) -> dict:
        return {
            'id': row.id,
            'task_id': row.task_id,
            'seq': row.seq,
            'type': row.event_type,
            'actor': row.actor,
            'payload': json.loads(row.payload_json),
            'created_at': _iso_utc(row.created_at),
        }
