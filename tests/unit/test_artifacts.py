from __future__ import annotations

import json
from pathlib import Path

import pytest

from agent_workqueue.storage.artifacts import ArtifactStore, file_exists, safe_slug


def test_safe_slug():
    assert safe_slug('Weekly Progress Report!') == 'weekly-progress-report'
    assert safe_slug('') == 'task'
    assert safe_slug('***') == 'task'
    assert len(safe_slug('x' * 200)) == 60


def test_execution_path_rejects_traversal(tmp_path: Path):
    store = ArtifactStore(tmp_path)
    assert store.execution_path('task-abc') == (tmp_path / 'executions' / 'task-abc.md').resolve()
    with pytest.raises(ValueError, match='task_id is required'):
        store.execution_path('  ')
    with pytest.raises(ValueError, match='invalid task_id'):
        store.execution_path('../../escape')


def test_write_execution_artifact_creates_directories(tmp_path: Path):
    store = ArtifactStore(tmp_path / 'agents')
    path = store.write_execution_artifact('task-1', '# Execution Artifact\n')
    assert path.read_text(encoding='utf-8') == '# Execution Artifact\n'
    assert path.parent == (tmp_path / 'agents' / 'executions').resolve()


def test_write_plugin_file_flattens_separators(tmp_path: Path):
    store = ArtifactStore(tmp_path)
    path = store.write_plugin_file('../nested/name.md', 'x')
    assert path.parent == store.plugins_dir.resolve()
    assert path.name == '.._nested_name.md'
    for bad in ('', '..', '.', 'a\x00b'):
        with pytest.raises(ValueError):
            store.write_plugin_file(bad, 'x')


def test_run_log_appends_one_json_line_per_entry(tmp_path: Path):
    store = ArtifactStore(tmp_path)
    store.append_run_log({'status': 'success', 'task_id': 'task-1'})
    store.append_run_log({'status': 'failed', 'task_id': 'task-2'})
    assert store.run_log_path == tmp_path / 'metrics' / 'executor-runs.jsonl'
    lines = store.run_log_path.read_text(encoding='utf-8').splitlines()
    assert [json.loads(line)['status'] for line in lines] == ['success', 'failed']


def test_resolve_evidence_prefers_recorded_path(tmp_path: Path):
    store = ArtifactStore(tmp_path)
    recorded = tmp_path / 'recorded.md'
    recorded.write_text('x', encoding='utf-8')
    described = tmp_path / 'described.md'
    described.write_text('x', encoding='utf-8')
    task = {
        'task_id': 'task-1',
        'title': 'Anything',
        'artifact_path': str(recorded),
        'description': f'Artifact: {described}',
    }
    assert store.resolve_evidence(task) == str(recorded)

    task['artifact_path'] = str(tmp_path / 'gone.md')
    assert store.resolve_evidence(task) == str(described)


def test_resolve_evidence_falls_back_to_plugin_then_execution_files(tmp_path: Path):
    store = ArtifactStore(tmp_path)
    task = {'task_id': 'task-9', 'title': 'Research Market Trends', 'description': None}
    assert store.resolve_evidence(task) is None

    execution = store.write_execution_artifact('task-9', 'done')
    assert store.resolve_evidence(task) == str(execution)

    plugin = store.write_plugin_file('web-research-research-market-trends.md', 'notes')
    assert Path(store.resolve_evidence(task)).resolve() == plugin


def test_evidence_candidates_order(tmp_path: Path):
    store = ArtifactStore(tmp_path)
    names = [p.name for p in store.evidence_candidates({'task_id': 'task-3', 'title': 'Do It'})]
    assert names == [
        'execution-note-do-it.md',
        'capital-trade-do-it.md',
        'web-research-do-it.md',
        'x-scout-do-it.md',
        'task-3.md',
    ]


def test_file_exists_handles_empty_and_directories(tmp_path: Path):
    assert file_exists(None) is False
    assert file_exists('') is False
    assert file_exists(tmp_path) is False
