from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
import re


class TaskStatus(str, Enum):
    SUGGESTED = 'suggested'
    BACKLOG = 'backlog'
    IN_PROGRESS = 'in_progress'
    BLOCKED = 'blocked'
    DONE = 'done'


class ValidationStatus(str, Enum):
    PENDING = 'pending'
    PASS = 'pass'
    FAIL = 'fail'


class AgentCode(str, Enum):
    ME = 'me'
    ALEX = 'alex'
    SAM = 'sam'
    LYRA = 'lyra'
    NOVA = 'nova'
    OPS = 'ops'
    AGENT = 'agent'


# Accepted spellings for each agent. Anything not listed resolves to the caller's fallback.
AGENT_ALIASES: dict[str, AgentCode] = {
    **{code.value: code for code in AgentCode},
}

# Lead agents also drain the queue of the generic legacy alias when their own queue is empty.
LEGACY_FALLBACKS: dict[AgentCode, tuple[AgentCode, ...]] = {
    AgentCode.SAM: (AgentCode.AGENT,),
}

DEFAULT_LEASE_MINUTES = 45
LEASE_MINUTES_BY_AGENT: dict[AgentCode, int] = {
    AgentCode.LYRA: 75,
}

VALID_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.SUGGESTED: frozenset({TaskStatus.BACKLOG}),
    # backlog -> done only for verification tasks closed by the sweeper
    TaskStatus.BACKLOG: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.DONE}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.DONE, TaskStatus.BACKLOG, TaskStatus.BLOCKED}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.BACKLOG}),
    # sweeper escalation reopens unproven work
    TaskStatus.DONE: frozenset({TaskStatus.BACKLOG}),
}

ACTIONABLE_STATUSES = frozenset({TaskStatus.BACKLOG, TaskStatus.IN_PROGRESS, TaskStatus.DONE})


def can_transition(current: TaskStatus | str, target: TaskStatus | str) -> bool:
    try:
        src = TaskStatus(str(getattr(current, 'value', current)))
        dst = TaskStatus(str(getattr(target, 'value', target)))
    except ValueError:
        return False
    return dst in VALID_TRANSITIONS.get(src, frozenset())


def resolve_agent(value: object, *, fallback: AgentCode | str = AgentCode.AGENT) -> AgentCode:
    default = fallback if isinstance(fallback, AgentCode) else AGENT_ALIASES.get(str(fallback).strip().lower(), AgentCode.AGENT)
    if value is None:
        return default
    text = str(getattr(value, 'value', value)).strip().lower()
    return AGENT_ALIASES.get(text, default)


def claimable_assignees(agent: AgentCode) -> tuple[AgentCode, ...]:
    return (agent, *LEGACY_FALLBACKS.get(agent, ()))


def lease_minutes_for(agent: AgentCode, *, default: int = DEFAULT_LEASE_MINUTES) -> int:
    return LEASE_MINUTES_BY_AGENT.get(agent, default)


def normalize_status(value: object, *, default: TaskStatus = TaskStatus.SUGGESTED) -> TaskStatus:
    text = str(getattr(value, 'value', value) or '').strip().lower()
    try:
        return TaskStatus(text)
    except ValueError:
        return default


_NON_ALNUM_RE = re.compile(r'[^a-z0-9\s]')


def normalize_title(value: object) -> str:
    """Lowercase, punctuation to spaces, whitespace collapsed. Used for duplicate detection."""
    text = _NON_ALNUM_RE.sub(' ', str(value or '').strip().lower())
    return ' '.join(text.split())


def parse_timestamp(value: object) -> datetime | None:
    text = str(value or '').strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def sort_oldest_first(tasks: list[dict]) -> list[dict]:
    """Order by created_at ascending, ties by id; rows with unparseable timestamps go last."""

    def _key(task: dict):
        created = parse_timestamp(task.get('created_at'))
        task_id = str(task.get('task_id') or '')
        if created is None:
            return (1, 0.0, task_id)
        return (0, created.timestamp(), task_id)

    return sorted(tasks, key=_key)


def clamp_limit(value: object, *, default: int, cap: int) -> int:
    """Positive integer limit; unparseable or non-positive values fall back to *default*."""
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if parsed <= 0:
        return default
    return min(parsed, cap)
