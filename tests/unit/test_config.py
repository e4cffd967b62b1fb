from __future__ import annotations

from pathlib import Path

from agent_workqueue.config import load_settings


def _clear_env(monkeypatch):
    for name in (
        'AWQ_DATABASE_URL',
        'AWQ_ARTIFACT_ROOT',
        'AWQ_SERVICE_NAME',
        'AWQ_INTENT_WINDOW_HOURS',
        'AWQ_DEFAULT_ASSIGNEE',
        'AWQ_LEASE_MINUTES',
        'AWQ_GUARDRAIL_RISKY_KEYWORDS',
        'AWQ_GUARDRAIL_VAGUE_KEYWORDS',
        'AWQ_LOG_LEVEL',
    ):
        monkeypatch.delenv(name, raising=False)


def test_load_settings_defaults(monkeypatch):
    _clear_env(monkeypatch)
    settings = load_settings()
    assert settings.database_url is None
    assert settings.artifact_root == Path('.agents').resolve()
    assert settings.service_name == 'agent-workqueue'
    assert settings.intent_window_hours == 3
    assert settings.default_assignee == 'sam'
    assert settings.lease_minutes == 45
    assert settings.risky_keywords is None
    assert settings.vague_keywords is None
    assert settings.log_level == 'INFO'


def test_load_settings_blank_database_url_is_unset(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv('AWQ_DATABASE_URL', '   ')
    assert load_settings().database_url is None


def test_load_settings_reads_overrides(monkeypatch, tmp_path: Path):
    _clear_env(monkeypatch)
    monkeypatch.setenv('AWQ_DATABASE_URL', 'sqlite:///queue.sqlite3')
    monkeypatch.setenv('AWQ_ARTIFACT_ROOT', str(tmp_path / 'artifacts'))
    monkeypatch.setenv('AWQ_INTENT_WINDOW_HOURS', '6')
    monkeypatch.setenv('AWQ_DEFAULT_ASSIGNEE', ' Lyra ')
    monkeypatch.setenv('AWQ_LEASE_MINUTES', '90')
    settings = load_settings()
    assert settings.database_url == 'sqlite:///queue.sqlite3'
    assert settings.artifact_root == (tmp_path / 'artifacts').resolve()
    assert settings.intent_window_hours == 6
    assert settings.default_assignee == 'lyra'
    assert settings.lease_minutes == 90


def test_load_settings_invalid_ints_fall_back_and_small_values_clamp(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv('AWQ_INTENT_WINDOW_HOURS', 'soon')
    monkeypatch.setenv('AWQ_LEASE_MINUTES', '1')
    settings = load_settings()
    assert settings.intent_window_hours == 3
    assert settings.lease_minutes == 5


def test_load_settings_keyword_lists_are_normalized(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv('AWQ_GUARDRAIL_RISKY_KEYWORDS', 'Delete, DROP   table,,delete')
    monkeypatch.setenv('AWQ_GUARDRAIL_VAGUE_KEYWORDS', ' , ')
    settings = load_settings()
    assert settings.risky_keywords == ('delete', 'drop table')
    assert settings.vague_keywords is None


def test_load_settings_log_level(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv('AWQ_LOG_LEVEL', ' debug ')
    assert load_settings().log_level == 'DEBUG'
