from agent_workqueue.domain.events import AuditNote, NoteType, append_note, normalize_event_type
from agent_workqueue.domain.models import (
    AgentCode,
    TaskStatus,
    ValidationStatus,
    can_transition,
    normalize_title,
    resolve_agent,
    sort_oldest_first,
)

__all__ = [
    'AgentCode',
    'AuditNote',
    'NoteType',
    'TaskStatus',
    'ValidationStatus',
    'append_note',
    'can_transition',
    'normalize_event_type',
    'normalize_title',
    'resolve_agent',
    'sort_oldest_first',
]
