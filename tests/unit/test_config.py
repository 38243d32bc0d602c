from __future__ import annotations

from pathlib import Path

from awe_agentrelay.config import TOOL_PATH_ENV, load_settings


def _clear_env(monkeypatch) -> None:
    for name in (
        'AWE_RELAY_DATABASE_URL',
        'AWE_RELAY_POLL_INTERVAL_MS',
        'AWE_RELAY_RUN_TIMEOUT_SECONDS',
        'AWE_RELAY_MAX_TASK_RUNS_PER_WORKSPACE',
        'AWE_RELAY_QUEUE_RETENTION_DAYS',
        'AWE_RELAY_TEMP_ROOT',
        *TOOL_PATH_ENV.values(),
    ):
        monkeypatch.delenv(name, raising=False)


def test_load_settings_defaults(monkeypatch):
    _clear_env(monkeypatch)
    settings = load_settings()
    assert settings.database_url == 'sqlite:///./.agentrelay/relay.db'
    assert settings.poll_interval_seconds == 1.0
    assert settings.run_timeout_seconds == 1800
    assert settings.max_task_runs_per_workspace == 1
    assert settings.queue_retention_days == 7
    assert settings.tool_paths == {}


def test_load_settings_reads_overrides(monkeypatch, tmp_path: Path):
    _clear_env(monkeypatch)
    monkeypatch.setenv('AWE_RELAY_POLL_INTERVAL_MS', '250')
    monkeypatch.setenv('AWE_RELAY_MAX_TASK_RUNS_PER_WORKSPACE', '3')
    monkeypatch.setenv('AWE_RELAY_TEMP_ROOT', str(tmp_path))
    monkeypatch.setenv('AWE_RELAY_CODEX_PATH', '/opt/bin/codex')
    settings = load_settings()
    assert settings.poll_interval_seconds == 0.25
    assert settings.max_task_runs_per_workspace == 3
    assert settings.temp_root == tmp_path.resolve()
    assert settings.tool_paths == {'codex': '/opt/bin/codex'}


def test_load_settings_invalid_or_low_values_fall_back(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv('AWE_RELAY_RUN_TIMEOUT_SECONDS', 'soon')
    monkeypatch.setenv('AWE_RELAY_POLL_INTERVAL_MS', '1')
    monkeypatch.setenv('AWE_RELAY_QUEUE_RETENTION_DAYS', '0')
    settings = load_settings()
    assert settings.run_timeout_seconds == 1800
    assert settings.poll_interval_seconds == 0.05
    assert settings.queue_retention_days == 1
