from __future__ import annotations

from datetime import datetime, timezone

import pytest

from agent_workqueue.repository import InMemoryTaskRepository, TaskCreateRecord
from agent_workqueue.service import InputValidationError
from agent_workqueue.service_layers.intake import (
    IntakeRequest,
    IntakeService,
    idempotency_key,
    intent_window_start,
)

NOW = datetime(2026, 3, 10, 13, 45, tzinfo=timezone.utc)


def build_service(repo: InMemoryTaskRepository | None = None, **kwargs) -> IntakeService:
    return IntakeService(
        repository=repo or InMemoryTaskRepository(),
        validation_error_cls=InputValidationError,
        **kwargs,
    )


def test_intent_window_start_buckets_by_hours():
    assert intent_window_start(NOW, hours=3) == datetime(2026, 3, 10, 12, tzinfo=timezone.utc)
    assert intent_window_start(NOW, hours=1) == datetime(2026, 3, 10, 13, tzinfo=timezone.utc)
    assert intent_window_start(datetime(2026, 3, 10, 2, 59), hours=3) == datetime(2026, 3, 10, 0, tzinfo=timezone.utc)


def test_idempotency_key_normalizes_title():
    assert idempotency_key('  Ship   The Report ', 'sam', 'w1') == 'ship the report|sam|w1'


def test_submit_creates_suggested_task_for_default_assignee():
    repo = InMemoryTaskRepository()
    result = build_service(repo).submit(IntakeRequest(title='Draft weekly progress report'), now=NOW)
    assert result['deduped'] is False
    assert result['status'] == 'suggested'
    assert result['assigned_to'] == 'sam'
    assert result['intent_window'] == '2026-03-10T12:00:00+00:00'
    assert result['idempotency_key'] == 'draft weekly progress report|sam|2026-03-10T12:00:00+00:00'
    row = repo.get_task(result['id'])
    assert row['idempotency_key'] == result['idempotency_key']
    assert row['created_at'] == NOW.isoformat()


def test_submit_same_intent_in_window_is_deduped():
    repo = InMemoryTaskRepository()
    service = build_service(repo)
    first = service.submit(IntakeRequest(title='Draft weekly progress report', assigned_to='lyra'), now=NOW)
    second = service.submit(
        IntakeRequest(title='  DRAFT weekly   progress report ', assigned_to='LYRA'),
        now=NOW.replace(minute=59),
    )
    assert second['deduped'] is True
    assert second['id'] == first['id']
    assert len(repo.list_tasks()) == 1


def test_submit_new_window_or_other_assignee_creates_new_task():
    repo = InMemoryTaskRepository()
    service = build_service(repo)
    first = service.submit(IntakeRequest(title='Draft weekly progress report'), now=NOW)
    other_agent = service.submit(IntakeRequest(title='Draft weekly progress report', assigned_to='nova'), now=NOW)
    assert other_agent['deduped'] is False
    assert other_agent['id'] != first['id']

    repo.items[first['id']]['created_at'] = '2026-03-10T11:00:00+00:00'
    repo.items[other_agent['id']]['created_at'] = '2026-03-10T11:00:00+00:00'
    later = service.submit(IntakeRequest(title='Draft weekly progress report'), now=NOW)
    assert later['deduped'] is False


def test_submit_does_not_dedup_against_claimed_work():
    repo = InMemoryTaskRepository()
    service = build_service(repo)
    first = service.submit(IntakeRequest(title='Draft weekly progress report', status='backlog'), now=NOW)
    repo.update_task_status(first['id'], status='in_progress')
    again = service.submit(IntakeRequest(title='Draft weekly progress report'), now=NOW)
    assert again['deduped'] is False


def test_submit_dedup_returns_oldest_match():
    repo = InMemoryTaskRepository()
    older = repo.create_task_record(
        TaskCreateRecord(title='Draft report', assigned_to='sam', created_at='2026-03-10T12:05:00+00:00')
    )
    repo.create_task_record(
        TaskCreateRecord(title='draft  report', assigned_to='sam', created_at='2026-03-10T12:30:00+00:00')
    )
    result = build_service(repo).submit(IntakeRequest(title='Draft Report'), now=NOW)
    assert result['deduped'] is True
    assert result['id'] == older['task_id']


def test_submit_opaque_window_label_matches_only_same_label():
    repo = InMemoryTaskRepository()
    service = build_service(repo)
    first = service.submit(IntakeRequest(title='Review the backlog', intent_window='sprint-12'), now=NOW)
    same = service.submit(IntakeRequest(title='Review the backlog', intent_window='sprint-12'), now=NOW)
    other = service.submit(IntakeRequest(title='Review the backlog', intent_window='sprint-13'), now=NOW)
    assert same['id'] == first['id']
    assert same['deduped'] is True
    assert other['deduped'] is False


def test_submit_status_outside_intake_set_falls_back_to_suggested():
    result = build_service().submit(IntakeRequest(title='Archive old notes', status='done'), now=NOW)
    assert result['status'] == 'suggested'
    result = build_service().submit(IntakeRequest(title='Archive old notes', status='backlog'), now=NOW)
    assert result['status'] == 'backlog'


def test_submit_unknown_assignee_uses_configured_default():
    result = build_service(default_assignee='ops').submit(
        IntakeRequest(title='Rotate the logs', assigned_to='somebody'), now=NOW,
    )
    assert result['assigned_to'] == 'ops'


def test_submit_requires_title():
    with pytest.raises(InputValidationError) as exc:
        build_service().submit(IntakeRequest(title='   '), now=NOW)
    assert exc.value.field == 'title'


def test_submit_validates_source_task_ref():
    with pytest.raises(InputValidationError) as exc:
        build_service().submit(IntakeRequest(title='Verify artifact evidence: x', source_task_ref='bad ref!'), now=NOW)
    assert exc.value.field == 'source_task_ref'


def test_submit_source_task_ref_is_written_into_description_once():
    repo = InMemoryTaskRepository()
    service = build_service(repo)
    result = service.submit(
        IntakeRequest(title='Verify artifact evidence: ship', description='Check it', source_task_ref='task-abc'),
        now=NOW,
    )
    row = repo.get_task(result['id'])
    assert row['source_task_ref'] == 'task-abc'
    assert row['description'] == 'Check it\n\nSource completed task: task-abc'

    result = service.submit(
        IntakeRequest(
            title='Verify artifact evidence: other',
            description='Source completed task: task-abc',
            source_task_ref='task-abc',
        ),
        now=NOW,
    )
    assert repo.get_task(result['id'])['description'] == 'Source completed task: task-abc'


def test_clean_up_log_rotation_twice_in_one_bucket():
    service = build_service()
    first = service.submit(IntakeRequest(title='Clean up log rotation', assigned_to='sam'), now=NOW)
    second = service.submit(IntakeRequest(title='Clean up log rotation', assigned_to='sam'), now=NOW.replace(hour=14))
    assert second == {**first, 'deduped': True}
