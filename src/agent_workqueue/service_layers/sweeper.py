from __future__ import annotations

from datetime import datetime

from agent_workqueue.domain.events import (
    AuditNote,
    NoteType,
    is_verification_task,
    parse_source_task_id,
    utc_now_iso,
)
from agent_workqueue.domain.models import TaskStatus, ValidationStatus, sort_oldest_first
from agent_workqueue.observability import get_logger, get_tracer, set_task_context
from agent_workqueue.repository import record_note

_log = get_logger('agent_workqueue.service_layers.sweeper')

SWEEPER_ACTOR = 'evidence_sweeper'


def format_summary(result: dict) -> str:
    return (
        f"evidence_sweeper checked={result['checked']} verified={result['verified']} "
        f"escalated={result['escalated']} source_missing={result['source_missing']}"
    )


class SweeperService:
    """Closes verification tasks once the referenced source task's artifact is provable.

    A done source task without resolvable evidence is reopened to backlog with
    ``validation_status=fail``; a source in any other status only gets the
    failure note. The verification task is closed either way.
    """

    def __init__(self, *, repository, artifact_store):
        self.repository = repository
        self.artifact_store = artifact_store

    def run(self, *, now: datetime | None = None) -> dict:
        tracer = get_tracer('agent_workqueue.sweeper')
        with tracer.start_as_current_span('sweeper.run') as span:
            # A failure here is fatal for the run.
            tasks = self.repository.list_tasks()
            # Rows this run has rewritten replace their snapshot entries so later notes extend them.
            by_id = {t['task_id']: t for t in tasks}
            verify_tasks = sort_oldest_first([
                t for t in tasks
                if t.get('status') == TaskStatus.BACKLOG.value and is_verification_task(t)
            ])

            result = {'checked': 0, 'verified': 0, 'escalated': 0, 'source_missing': 0, 'errors': 0}
            for verify_task in verify_tasks:
                result['checked'] += 1
                verify_id = verify_task['task_id']
                set_task_context(task_id=verify_id, stage='sweeper')
                try:
                    outcome = self._sweep_one(by_id[verify_id], by_id, now=now)
                except Exception:
                    result['errors'] += 1
                    _log.exception('sweeper_task_failed task_id=%s', verify_id)
                    continue
                result[outcome] += 1

            set_task_context(task_id=None, stage='sweeper')
            span.set_attribute('sweeper.checked', result['checked'])
            _log.info('%s errors=%s', format_summary(result), result['errors'])
            return result

    def _sweep_one(self, verify_task: dict, by_id: dict[str, dict], *, now: datetime | None) -> str:
        stamp = utc_now_iso(now)
        source_id = str(verify_task.get('source_task_ref') or '').strip() or parse_source_task_id(
            verify_task.get('description')
        )
        source = by_id.get(source_id) if source_id and source_id != verify_task['task_id'] else None
        if source is None:
            message = f'EVIDENCE_SWEEPER_ESCALATE {stamp} source=missing reason=source_task_not_found'
            self._close_verification(
                verify_task,
                by_id,
                note=self._note(NoteType.EVIDENCE_ESCALATE, message, stamp, {
                    'reason': 'source_task_not_found',
                    'source_task_id': source_id,
                }),
                validation=ValidationStatus.FAIL,
            )
            _log.info('sweeper_source_missing task_id=%s source=%s', verify_task['task_id'], source_id)
            return 'source_missing'

        artifact_path = self.artifact_store.resolve_evidence(source)
        if artifact_path:
            message = f'EVIDENCE_SWEEPER_OK {stamp} source={source_id} artifact={artifact_path}'
            payload = {
                'source_task_id': source_id,
                'verification_task_id': verify_task['task_id'],
                'artifact_path': artifact_path,
            }
            by_id[source_id] = record_note(
                self.repository,
                source,
                self._note(NoteType.EVIDENCE_OK, message, stamp, payload),
                {'artifact_path': artifact_path, 'validation_status': ValidationStatus.PASS.value},
            )
            self._close_verification(
                verify_task,
                by_id,
                note=self._note(NoteType.EVIDENCE_OK, message, stamp, payload),
                validation=ValidationStatus.PASS,
            )
            _log.info('sweeper_verified task_id=%s source=%s artifact=%s', verify_task['task_id'], source_id, artifact_path)
            return 'verified'

        # Only completed work is reopened; anything else keeps its status and owner.
        reopened = None
        if source.get('status') == TaskStatus.DONE.value:
            reopened = self.repository.update_task_status_if(
                source_id,
                expected_status=TaskStatus.DONE.value,
                status=TaskStatus.BACKLOG.value,
            )
        if reopened is not None:
            source = reopened
            outcome = 'source_reopened_backlog'
        else:
            source = self.repository.get_task(source_id) or source
            outcome = f"source_kept_{source.get('status')}"
        message = (
            f'EVIDENCE_SWEEPER_ESCALATE {stamp} source={source_id} '
            f'reason=artifact_missing -> {outcome}'
        )
        payload = {
            'source_task_id': source_id,
            'verification_task_id': verify_task['task_id'],
            'reason': 'artifact_missing',
            'reopened': reopened is not None,
        }
        by_id[source_id] = record_note(
            self.repository,
            source,
            self._note(NoteType.EVIDENCE_ESCALATE, message, stamp, payload),
            {'validation_status': ValidationStatus.FAIL.value, 'blocked_reason': 'artifact_evidence_missing'},
        )
        self._close_verification(
            verify_task,
            by_id,
            note=self._note(NoteType.EVIDENCE_ESCALATE, message, stamp, payload),
            validation=ValidationStatus.FAIL,
        )
        _log.info('sweeper_escalated task_id=%s source=%s outcome=%s', verify_task['task_id'], source_id, outcome)
        return 'escalated'

    def _close_verification(
        self,
        verify_task: dict,
        by_id: dict[str, dict],
        *,
        note: AuditNote,
        validation: ValidationStatus,
    ) -> None:
        record_note(self.repository, verify_task, note, {'validation_status': validation.value})
        by_id[verify_task['task_id']] = self.repository.update_task_status(
            verify_task['task_id'],
            status=TaskStatus.DONE.value,
        )

    @staticmethod
    def _note(note_type: NoteType, message: str, stamp: str, payload: dict) -> AuditNote:
        return AuditNote(type=note_type, actor=SWEEPER_ACTOR, message=message, timestamp=stamp, payload=payload)
