from __future__ import annotations

from agent_workqueue.repository import InMemoryTaskRepository, TaskCreateRecord
from agent_workqueue.service_layers.guardrail import (
    GuardrailService,
    check_title_length,
    contains_keyword,
    default_checks,
)


def _add(repo: InMemoryTaskRepository, title: str, *, status: str = 'suggested', description: str | None = None, created_at: str) -> dict:
    return repo.create_task_record(
        TaskCreateRecord(title=title, assigned_to='sam', description=description, status=status, created_at=created_at)
    )


def test_contains_keyword_matches_whole_words():
    assert contains_keyword('please rotate the ssh keys', 'ssh')
    assert not contains_keyword('sshd config review', 'ssh')
    assert contains_keyword('then rm -rf the tmp dir', 'rm -rf')
    assert not contains_keyword('a tokenizer benchmark', 'token')


def test_evaluate_reasons():
    service = GuardrailService(repository=InMemoryTaskRepository())
    assert service.evaluate({'title': 'Fix'}) == 'title_too_short'
    assert service.evaluate({'title': 'Refactor parser'}) == 'task_too_vague'
    assert service.evaluate({'title': 'Refactor parser', 'description': 'split modules'}) is None
    assert service.evaluate({'title': 'Rotate production database keys'}) == 'risky_keyword:production'
    assert service.evaluate({'title': 'Do some misc cleanup work'}) == 'vague_keyword:misc'
    assert check_title_length('  Rotate ', '') is None
    assert check_title_length('  short ', '') == 'title_too_short'


def test_custom_keyword_lists_replace_defaults():
    service = GuardrailService(
        repository=InMemoryTaskRepository(),
        checks=default_checks(risky_keywords=('deploy',), vague_keywords=('maybe',)),
    )
    assert service.evaluate({'title': 'Deploy the new release tonight'}) == 'risky_keyword:deploy'
    assert service.evaluate({'title': 'Rotate production database keys'}) is None


def test_run_accepts_rejects_and_caps_at_three():
    repo = InMemoryTaskRepository()
    good = _add(repo, 'Write weekly progress report', created_at='2026-01-01T00:00:00+00:00')
    risky = _add(repo, 'Share the admin password today', created_at='2026-01-01T00:01:00+00:00')
    short = _add(repo, 'Todo', created_at='2026-01-01T00:02:00+00:00')
    later = _add(repo, 'Summarize customer ticket triage', created_at='2026-01-01T00:03:00+00:00')

    result = GuardrailService(repository=repo).run()

    assert result['processed'] == 3
    assert result['accepted'] == [{'id': good['task_id'], 'title': 'Write weekly progress report'}]
    assert [(r['id'], r['reason']) for r in result['rejected']] == [
        (risky['task_id'], 'risky_keyword:password'),
        (short['task_id'], 'title_too_short'),
    ]
    assert repo.get_task(good['task_id'])['status'] == 'backlog'
    assert repo.get_task(risky['task_id']) is None
    assert repo.get_task(short['task_id']) is None
    assert repo.get_task(later['task_id'])['status'] == 'suggested'


def test_run_max_items_is_clamped():
    repo = InMemoryTaskRepository()
    for i in range(5):
        _add(repo, f'Write chapter {i} of the guide', created_at=f'2026-01-01T00:0{i}:00+00:00')
    assert GuardrailService(repository=repo).run(max_items=1)['processed'] == 1
    assert GuardrailService(repository=repo).run(max_items=99)['processed'] == 3
    assert GuardrailService(repository=repo).run(max_items=0)['processed'] == 1


def test_run_rejects_duplicates_of_actionable_and_same_run_titles():
    repo = InMemoryTaskRepository()
    _add(repo, 'Write weekly progress report', status='done', created_at='2025-12-01T00:00:00+00:00')
    dup = _add(repo, 'write weekly progress-report!', created_at='2026-01-01T00:00:00+00:00')
    first = _add(repo, 'Summarize customer ticket triage', created_at='2026-01-01T00:01:00+00:00')
    second = _add(repo, 'Summarize  customer ticket triage', created_at='2026-01-01T00:02:00+00:00')

    result = GuardrailService(repository=repo).run()

    reasons = {r['id']: r['reason'] for r in result['rejected']}
    assert reasons == {dup['task_id']: 'duplicate_title', second['task_id']: 'duplicate_title'}
    assert [a['id'] for a in result['accepted']] == [first['task_id']]


def test_run_does_not_block_on_blocked_titles():
    repo = InMemoryTaskRepository()
    _add(repo, 'Write weekly progress report', status='blocked', created_at='2025-12-01T00:00:00+00:00')
    fresh = _add(repo, 'Write weekly progress report', created_at='2026-01-01T00:00:00+00:00')
    result = GuardrailService(repository=repo).run()
    assert [a['id'] for a in result['accepted']] == [fresh['task_id']]


def test_run_with_nothing_suggested():
    result = GuardrailService(repository=InMemoryTaskRepository()).run()
    assert result == {'processed': 0, 'accepted': [], 'rejected': []}


def test_destructive_request_is_rejected_and_second_pass_is_noop():
    repo = InMemoryTaskRepository()
    task = _add(repo, 'delete prod db', created_at='2026-01-01T00:00:00+00:00')
    service = GuardrailService(repository=repo)
    first = service.run()
    assert first['rejected'] == [{'id': task['task_id'], 'title': 'delete prod db', 'reason': 'risky_keyword:delete'}]
    assert service.run() == {'processed': 0, 'accepted': [], 'rejected': []}
