"""Tests for engine settings."""

from pathlib import Path

import pytest
from pydantic import ValidationError as ModelValidationError

from cloud_backup.config.settings import EngineSettings, RetrySettings


class TestEngineSettings:
    """Tests for EngineSettings."""

    def test_defaults(self):
        settings = EngineSettings()

        assert settings.task_file == Path("backup_tasks.json")
        assert settings.retry.max_attempts == 5
        assert settings.timeouts.one_shot == 1800
        assert settings.timeouts.upload == 7200
        assert settings.logging.level == "INFO"

    def test_resolved_paths(self, tmp_path):
        settings = EngineSettings(config_dir=tmp_path)

        assert settings.resolved_vault_file == tmp_path / "credentials.enc"
        assert settings.resolved_state_dir == tmp_path / "sync"

    def test_explicit_paths_win(self, tmp_path):
        settings = EngineSettings(
            config_dir=tmp_path, vault_file=tmp_path / "v.enc", state_dir=tmp_path / "state"
        )

        assert settings.resolved_vault_file == tmp_path / "v.enc"
        assert settings.resolved_state_dir == tmp_path / "state"

    def test_yaml_round_trip(self, tmp_path):
        original = EngineSettings(
            task_file=tmp_path / "tasks.json",
            max_workers=2,
            retry=RetrySettings(max_attempts=7, jitter=0.2),
        )
        config_path = tmp_path / "conf" / "settings.yaml"

        original.to_yaml(config_path)
        loaded = EngineSettings.from_yaml(config_path)

        assert loaded.task_file == tmp_path / "tasks.json"
        assert loaded.max_workers == 2
        assert loaded.retry.max_attempts == 7
        assert loaded.retry.jitter == 0.2

    def test_missing_yaml(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            EngineSettings.from_yaml(tmp_path / "missing.yaml")

    def test_env_overrides(self):
        settings = EngineSettings.from_env(environ={
            "CLOUD_BACKUP_MAX_WORKERS": "8",
            "CLOUD_BACKUP_RETRY__MAX_ATTEMPTS": "2",
            "CLOUD_BACKUP_LOGGING__LEVEL": "debug",
            "CLOUD_BACKUP_MASTER_PASSWORD": "ignored",
            "UNRELATED": "x",
        })

        assert settings.max_workers == 8
        assert settings.retry.max_attempts == 2
        assert settings.logging.level == "DEBUG"

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        config_path = tmp_path / "settings.yaml"
        config_path.write_text("max_workers: 3\nretry:\n  initial_delay: 1.5\n")
        monkeypatch.setenv("CLOUD_BACKUP_MAX_WORKERS", "6")

        settings = EngineSettings.load(config_path)

        assert settings.max_workers == 6
        assert settings.retry.initial_delay == 1.5

    @pytest.mark.parametrize("fields", [
        {"retry": {"jitter": 1.5}},
        {"retry": {"max_attempts": 0}},
        {"max_workers": 0},
        {"logging": {"level": "LOUD"}},
    ])
    def test_invalid_values(self, fields):
        with pytest.raises(ModelValidationError):
            EngineSettings(**fields)

    def test_to_policy(self):
        policy = RetrySettings(initial_delay=0.5, max_delay=4, max_attempts=3, jitter=0).to_policy()

        assert (policy.initial_delay, policy.max_delay, policy.max_attempts) == (0.5, 4, 3)
        assert policy.compute_delay(5) == 4
