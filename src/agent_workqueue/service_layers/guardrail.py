from __future__ import annotations

import re
from typing import Callable, Iterable, Optional

from agent_workqueue.domain.models import (
    ACTIONABLE_STATUSES,
    TaskStatus,
    clamp_limit,
    normalize_title,
    sort_oldest_first,
)
from agent_workqueue.observability import get_logger, get_tracer, set_task_context

_log = get_logger('agent_workqueue.service_layers.guardrail')

MAX_GUARDRAIL_PER_RUN = 3

RISKY_KEYWORDS: tuple[str, ...] = (
    'delete',
    'drop database',
    'truncate',
    'rm -rf',
    'exfiltrate',
    'secrets',
    'password',
    'token',
    'credential',
    'ssh',
    'production',
    'billing',
    'payment',
    'wire',
    'lawsuit',
    'legal',
    'root',
    'sudo',
)

VAGUE_KEYWORDS: tuple[str, ...] = (
    'misc',
    'stuff',
    'things',
    'tbd',
    'whatever',
    'help',
    'improve',
    'fix it',
    'work on',
    'do task',
)

# Titles already in (or through) the actionable queue.
_BLOCKLIST_STATUSES = frozenset(s.value for s in ACTIONABLE_STATUSES)

GuardrailCheck = Callable[[str, str], Optional[str]]


def contains_keyword(text: str, keyword: str) -> bool:
    return re.search(rf'\b{re.escape(keyword)}\b', text, re.IGNORECASE) is not None


def check_title_length(title: str, combined: str) -> str | None:
    if len(title.strip()) < 6:
        return 'title_too_short'
    return None


def check_word_count(title: str, combined: str) -> str | None:
    if len(combined.split()) < 3:
        return 'task_too_vague'
    return None


def keyword_check(keywords: Iterable[str], prefix: str) -> GuardrailCheck:
    ordered = tuple(k for k in keywords if k)

    def _check(title: str, combined: str) -> str | None:
        for keyword in ordered:
            if contains_keyword(combined, keyword):
                return f'{prefix}:{keyword}'
        return None

    _check.__name__ = f'check_{prefix}'
    return _check


def default_checks(
    *,
    risky_keywords: Iterable[str] | None = None,
    vague_keywords: Iterable[str] | None = None,
) -> tuple[GuardrailCheck, ...]:
    return (
        check_title_length,
        check_word_count,
        keyword_check(risky_keywords or RISKY_KEYWORDS, 'risky_keyword'),
        keyword_check(vague_keywords or VAGUE_KEYWORDS, 'vague_keyword'),
    )


class GuardrailService:
    def __init__(self, *, repository, checks: tuple[GuardrailCheck, ...] | None = None):
        self.repository = repository
        self.checks = tuple(checks) if checks is not None else default_checks()

    def evaluate(self, task: dict) -> str | None:
        title = str(task.get('title') or '')
        combined = f"{title} {task.get('description') or ''}".strip().lower()
        for check in self.checks:
            reason = check(title, combined)
            if reason:
                return reason
        return None

    def run(self, *, max_items: object = None) -> dict:
        limit = clamp_limit(max_items, default=MAX_GUARDRAIL_PER_RUN, cap=MAX_GUARDRAIL_PER_RUN)
        tracer = get_tracer('agent_workqueue.guardrail')
        with tracer.start_as_current_span('guardrail.run') as span:
            tasks = self.repository.list_tasks()
            blocklist = {
                normalize_title(t.get('title'))
                for t in tasks
                if t.get('status') in _BLOCKLIST_STATUSES
            }
            blocklist.discard('')
            suggested = sort_oldest_first(
                [t for t in tasks if t.get('status') == TaskStatus.SUGGESTED.value]
            )[:limit]

            accepted: list[dict] = []
            rejected: list[dict] = []
            for task in suggested:
                task_id = task['task_id']
                set_task_context(task_id=task_id, stage='guardrail')
                normalized = normalize_title(task.get('title'))
                if normalized and normalized in blocklist:
                    reason = 'duplicate_title'
                else:
                    reason = self.evaluate(task)

                if reason:
                    self.repository.delete_tasks([task_id])
                    rejected.append({'id': task_id, 'title': task.get('title'), 'reason': reason})
                    _log.info('guardrail_rejected task_id=%s reason=%s title=%r', task_id, reason, task.get('title'))
                    continue

                self.repository.update_task_status(task_id, status=TaskStatus.BACKLOG.value)
                if normalized:
                    blocklist.add(normalized)
                accepted.append({'id': task_id, 'title': task.get('title')})
                _log.info('guardrail_accepted task_id=%s', task_id)

            set_task_context(task_id=None, stage='guardrail')
            span.set_attribute('guardrail.processed', len(suggested))
            _log.info(
                'guardrail_run processed=%s accepted=%s rejected=%s',
                len(suggested),
                len(accepted),
                len(rejected),
            )
            return {
                'processed': len(suggested),
                'accepted': accepted,
                'rejected': rejected,
            }
