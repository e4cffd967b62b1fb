from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import re


class NoteType(str, Enum):
    EXECUTION_ARTIFACT = 'execution_artifact'
    EVIDENCE_OK = 'evidence_sweeper_ok'
    EVIDENCE_ESCALATE = 'evidence_sweeper_escalate'
    STALE_LEASE_REQUEUED = 'stale_lease_requeued'
    TASK_CLAIMED = 'task_claimed'
    LEASE_HEARTBEAT = 'lease_heartbeat'
    WORKER_FAILURE = 'worker_failure'


def normalize_event_type(value: str | NoteType) -> str:
    if isinstance(value, NoteType):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('event_type is required')
    return text


@dataclass(frozen=True)
class AuditNote:
    """One stamped entry of a task's audit trail.

    ``message`` is the line rendered into the task description; ``payload`` is
    the structured form stored alongside it in the task's event log.
    """

    type: NoteType
    actor: str
    message: str
    timestamp: str = field(default_factory=lambda: utc_now_iso())
    payload: dict = field(default_factory=dict)

    def to_event_payload(self) -> dict:
        out = dict(self.payload)
        out['timestamp'] = self.timestamp
        out['actor'] = self.actor
        out['message'] = self.message
        return out


def utc_now_iso(now: datetime | None = None) -> str:
    value = now or datetime.now(timezone.utc)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def append_note(existing: str | None, line: str) -> str:
    prev = (existing or '').strip()
    if not prev:
        return line
    return f'{prev}\n\n{line}'


_SOURCE_TASK_RE = re.compile(r'Source completed task:\s*([A-Za-z0-9_-]+)', re.IGNORECASE)
_ARTIFACT_LINE_RE = re.compile(r'Artifact:\s*([^\s]+)', re.IGNORECASE)


def source_task_line(task_id: str) -> str:
    return f'Source completed task: {task_id}'


def parse_source_task_id(description: str | None) -> str | None:
    match = _SOURCE_TASK_RE.search(description or '')
    return match.group(1) if match else None


def parse_artifact_path(description: str | None) -> str | None:
    match = _ARTIFACT_LINE_RE.search(description or '')
    return match.group(1) if match else None


VERIFY_TITLE_PREFIX = 'Verify artifact evidence:'


def is_verification_task(task: dict) -> bool:
    return str(task.get('title') or '').startswith(VERIFY_TITLE_PREFIX)
