from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import re

from agent_workqueue.domain.events import append_note, parse_source_task_id, source_task_line
from agent_workqueue.domain.models import (
    AgentCode,
    TaskStatus,
    normalize_status,
    parse_timestamp,
    resolve_agent,
    sort_oldest_first,
)
from agent_workqueue.observability import get_logger
from agent_workqueue.repository import TaskCreateRecord

_log = get_logger('agent_workqueue.service_layers.intake')

# Statuses a caller may request at creation; anything else is proposed as suggested.
_INTAKE_STATUSES = frozenset({TaskStatus.SUGGESTED, TaskStatus.BACKLOG})
# A re-submission only collapses onto a task that has not been picked up yet.
_DEDUP_STATUSES = frozenset({TaskStatus.SUGGESTED.value, TaskStatus.BACKLOG.value})
_TASK_REF_RE = re.compile(r'^[A-Za-z0-9_-]+$')


@dataclass(frozen=True)
class IntakeRequest:
    title: str
    description: str | None = None
    assigned_to: str | None = None
    status: str | None = None
    intent_window: str | None = None
    source_task_ref: str | None = None


def intent_window_start(now: datetime, *, hours: int = 3) -> datetime:
    """Start of the fixed-width UTC bucket containing *now*."""
    value = now if now.tzinfo is not None else now.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    width = max(1, int(hours))
    midnight = value.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(hours=(value.hour // width) * width)


def dedup_title(value: str) -> str:
    return ' '.join(str(value or '').strip().lower().split())


def idempotency_key(title: str, assigned_to: str, intent_window: str) -> str:
    return f'{dedup_title(title)}|{assigned_to}|{intent_window}'


class IntakeService:
    def __init__(
        self,
        *,
        repository,
        validation_error_cls,
        default_assignee: str | AgentCode = AgentCode.SAM,
        intent_window_hours: int = 3,
    ):
        self.repository = repository
        self._validation_error_cls = validation_error_cls
        self.default_assignee = resolve_agent(default_assignee, fallback=AgentCode.SAM)
        self.intent_window_hours = max(1, int(intent_window_hours))

    def submit(self, request: IntakeRequest, *, now: datetime | None = None) -> dict:
        title = str(request.title or '').strip()
        if not title:
            raise self._validation_error_cls('title is required', field='title')

        source_ref = str(request.source_task_ref or '').strip() or None
        if source_ref is not None and not _TASK_REF_RE.match(source_ref):
            raise self._validation_error_cls(
                'source_task_ref must contain only letters, digits, "-" or "_"',
                field='source_task_ref',
            )

        assignee = resolve_agent(request.assigned_to, fallback=self.default_assignee)
        status = normalize_status(request.status, default=TaskStatus.SUGGESTED)
        if status not in _INTAKE_STATUSES:
            status = TaskStatus.SUGGESTED

        current = now or datetime.now(timezone.utc)
        window_text = str(request.intent_window or '').strip()
        window_start = parse_timestamp(window_text) if window_text else None
        if not window_text:
            window_start = intent_window_start(current, hours=self.intent_window_hours)
            window_text = window_start.isoformat()

        key = idempotency_key(title, assignee.value, window_text)
        existing = self._find_duplicate(
            title=title,
            assignee=assignee.value,
            window_text=window_text,
            window_start=window_start,
        )
        if existing is not None:
            _log.info('intake_deduped task_id=%s assignee=%s', existing['task_id'], assignee.value)
            return {
                'id': existing['task_id'],
                'status': existing['status'],
                'assigned_to': existing['assigned_to'],
                'idempotency_key': key,
                'intent_window': window_text,
                'deduped': True,
            }

        description = str(request.description or '').strip() or None
        if source_ref is not None and parse_source_task_id(description) is None:
            description = append_note(description, source_task_line(source_ref))

        row = self.repository.create_task_record(
            TaskCreateRecord(
                title=title,
                description=description,
                assigned_to=assignee.value,
                status=status.value,
                idempotency_key=key,
                intent_window=window_text,
                source_task_ref=source_ref,
                created_at=current.isoformat(),
            )
        )
        _log.info('intake_created task_id=%s status=%s assignee=%s', row['task_id'], status.value, assignee.value)
        return {
            'id': row['task_id'],
            'status': row['status'],
            'assigned_to': row['assigned_to'],
            'idempotency_key': key,
            'intent_window': window_text,
            'deduped': False,
        }

    def _find_duplicate(
        self,
        *,
        title: str,
        assignee: str,
        window_text: str,
        window_start: datetime | None,
    ) -> dict | None:
        wanted = dedup_title(title)
        matches: list[dict] = []
        for task in self.repository.list_tasks():
            if task.get('status') not in _DEDUP_STATUSES:
                continue
            if task.get('assigned_to') != assignee:
                continue
            if dedup_title(task.get('title', '')) != wanted:
                continue
            if window_start is None:
                # Opaque window label: only the same label counts as the same intent.
                if str(task.get('intent_window') or '') != window_text:
                    continue
            else:
                created = parse_timestamp(task.get('created_at'))
                if created is None or created < window_start:
                    continue
            matches.append(task)
        if not matches:
            return None
        return sort_oldest_first(matches)[0]
