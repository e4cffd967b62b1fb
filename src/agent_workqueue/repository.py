from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol
from uuid import uuid4

from agent_workqueue.domain.events import AuditNote, NoteType, append_note, normalize_event_type
from agent_workqueue.domain.models import TaskStatus, ValidationStatus, can_transition


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# Fields that update_task_fields may touch. status goes through the status operations only.
UPDATABLE_FIELDS = frozenset(
    {
        'title',
        'description',
        'assigned_to',
        'owner',
        'lease_until',
        'heartbeat_at',
        'validation_status',
        'artifact_path',
        'blocked_reason',
        'idempotency_key',
        'intent_window',
        'source_task_ref',
        'retry_count_total',
    }
)

# Cleared whenever a task leaves in_progress.
LEASE_FIELDS = ('owner', 'lease_until', 'heartbeat_at')


@dataclass(frozen=True)
class TaskCreateRecord:
    title: str
    assigned_to: str
    description: str | None = None
    status: str = TaskStatus.SUGGESTED.value
    idempotency_key: str | None = None
    intent_window: str | None = None
    source_task_ref: str | None = None
    created_at: str | None = None


class TaskRepository(Protocol):
    def create_task_record(self, record: TaskCreateRecord) -> dict:
        ...

    def list_tasks(self) -> list[dict]:
        ...

    def get_task(self, task_id: str) -> dict | None:
        ...

    def update_task_status(self, task_id: str, *, status: str) -> dict:
        ...

    def update_task_status_if(
        self,
        task_id: str,
        *,
        expected_status: str,
        status: str,
        require_unowned: bool = False,
        fields: dict | None = None,
    ) -> dict | None:
        """Atomically update status only if current status matches *expected_status*.

        With ``require_unowned`` the row must also have no ``owner``. Returns
        the updated row on success, or ``None`` if the precondition did not
        hold (i.e. a concurrent transition already happened).
        Raises ``ValueError`` when *expected_status* -> *status* is not an edge
        of the task state machine.
        """
        ...

    def renew_lease(self, task_id: str, *, owner: str, lease_until: str, heartbeat_at: str) -> dict | None:
        """Extend the lease of an in_progress task held by *owner*; ``None`` otherwise."""
        ...

    def update_task_fields(self, task_id: str, fields: dict) -> dict:
        """Patch the given fields. ``None`` values are ignored, never written."""
        ...

    def append_event(
        self,
        task_id: str,
        *,
        event_type: str | NoteType,
        payload: dict,
        actor: str | None = None,
    ) -> dict:
        ...

    def list_events(self, task_id: str) -> list[dict]:
        ...

    def delete_tasks(self, task_ids: list[str]) -> int:
        ...


def clean_update_fields(fields: dict | None) -> dict:
    out: dict = {}
    for key, value in dict(fields or {}).items():
        if key not in UPDATABLE_FIELDS:
            raise ValueError(f'field is not updatable: {key}')
        if value is None:
            continue
        out[key] = getattr(value, 'value', value)
    return out


def require_transition(expected_status: str, status: str) -> None:
    if not can_transition(expected_status, status):
        raise ValueError(f'invalid status transition: {expected_status} -> {status}')


def status_side_effects(status: str) -> dict:
    """Field resets implied by entering *status*."""
    if status == TaskStatus.IN_PROGRESS.value:
        return {'blocked_reason': None}
    return {name: None for name in LEASE_FIELDS}


def unique_task_ids(task_ids: list[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for raw in task_ids:
        task_id = str(raw or '').strip()
        if not task_id or task_id in seen:
            continue
        seen.add(task_id)
        out.append(task_id)
    return out


class InMemoryTaskRepository:
    def __init__(self):
        self.items: dict[str, dict] = {}
        self.events: dict[str, list[dict]] = {}

    def create_task_record(self, record: TaskCreateRecord) -> dict:
        task_id = f'task-{uuid4().hex[:12]}'
        now = _utc_now_iso()
        row = {
            'task_id': task_id,
            'title': record.title,
            'description': record.description,
            'status': str(getattr(record.status, 'value', record.status)),
            'assigned_to': str(getattr(record.assigned_to, 'value', record.assigned_to)),
            'created_at': record.created_at or now,
            'updated_at': now,
            'owner': None,
            'lease_until': None,
            'heartbeat_at': None,
            'validation_status': ValidationStatus.PENDING.value,
            'artifact_path': None,
            'blocked_reason': None,
            'idempotency_key': record.idempotency_key,
            'intent_window': record.intent_window,
            'source_task_ref': record.source_task_ref,
            'retry_count_total': 0,
        }
        self.items[task_id] = row
        self.events[task_id] = []
        return dict(row)

    def list_tasks(self) -> list[dict]:
        rows = list(self.items.values())
        rows.sort(key=lambda r: r.get('created_at', ''), reverse=True)
        return [dict(r) for r in rows]

    def get_task(self, task_id: str) -> dict | None:
        row = self.items.get(task_id)
        return dict(row) if row else None

    def update_task_status(self, task_id: str, *, status: str) -> dict:
        if task_id not in self.items:
            raise KeyError(task_id)
        status_text = str(getattr(status, 'value', status))
        row = self.items[task_id]
        row['status'] = status_text
        row.update(status_side_effects(status_text))
        row['updated_at'] = _utc_now_iso()
        return dict(row)

    def update_task_status_if(
        self,
        task_id: str,
        *,
        expected_status: str,
        status: str,
        require_unowned: bool = False,
        fields: dict | None = None,
    ) -> dict | None:
        if task_id not in self.items:
            raise KeyError(task_id)
        expected_text = str(getattr(expected_status, 'value', expected_status))
        status_text = str(getattr(status, 'value', status))
        require_transition(expected_text, status_text)
        values = clean_update_fields(fields)
        row = self.items[task_id]
        if row['status'] != expected_text:
            return None
        if require_unowned and row.get('owner'):
            return None
        row['status'] = status_text
        row.update(status_side_effects(status_text))
        row.update(values)
        row['updated_at'] = _utc_now_iso()
        return dict(row)

    def renew_lease(self, task_id: str, *, owner: str, lease_until: str, heartbeat_at: str) -> dict | None:
        if task_id not in self.items:
            raise KeyError(task_id)
        row = self.items[task_id]
        if row['status'] != TaskStatus.IN_PROGRESS.value or row.get('owner') != owner:
            return None
        row['lease_until'] = lease_until
        row['heartbeat_at'] = heartbeat_at
        row['updated_at'] = _utc_now_iso()
        return dict(row)

    def update_task_fields(self, task_id: str, fields: dict) -> dict:
        if task_id not in self.items:
            raise KeyError(task_id)
        values = clean_update_fields(fields)
        row = self.items[task_id]
        row.update(values)
        row['updated_at'] = _utc_now_iso()
        return dict(row)

    def append_event(
        self,
        task_id: str,
        *,
        event_type: str | NoteType,
        payload: dict,
        actor: str | None = None,
    ) -> dict:
        if task_id not in self.items:
            raise KeyError(task_id)
        event = {
            'seq': len(self.events[task_id]) + 1,
            'task_id': task_id,
            'type': normalize_event_type(event_type),
            'actor': actor,
            'payload': payload,
            'created_at': _utc_now_iso(),
        }
        self.events[task_id].append(event)
        return dict(event)

    def list_events(self, task_id: str) -> list[dict]:
        if task_id not in self.items:
            raise KeyError(task_id)
        return [dict(e) for e in self.events.get(task_id, [])]

    def delete_tasks(self, task_ids: list[str]) -> int:
        deleted = 0
        for task_id in unique_task_ids(task_ids):
            if task_id in self.items:
                del self.items[task_id]
                self.events.pop(task_id, None)
                deleted += 1
        return deleted


def record_note(repository: TaskRepository, task: dict, note: AuditNote, fields: dict | None = None) -> dict:
    """Append *note* to the task description and its event log, patching *fields* in the same write."""
    values = dict(fields or {})
    values['description'] = append_note(task.get('description'), note.message)
    row = repository.update_task_fields(task['task_id'], values)
    repository.append_event(
        task['task_id'],
        event_type=note.type,
        payload=note.to_event_payload(),
        actor=note.actor,
    )
    return row
