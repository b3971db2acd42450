"""Tests for configuration module."""

import json
from pathlib import Path

import pytest
from pydantic import SecretStr, ValidationError

from sync_bridge.config import Settings, load_settings


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Test default settings creation."""
        settings = Settings()
        assert settings.queue.max_attempts == 3
        assert settings.queue.default_priority == 5
        assert settings.queue.push_debounce_seconds == 5
        assert settings.queue.database_path == Path(".sync-bridge.db")
        assert settings.breaker.failure_ratio == 0.8
        assert settings.breaker.recovery_delay_seconds == 300

    def test_settings_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test settings loading from nested environment variables."""
        monkeypatch.setenv("SYNC_BRIDGE_REMOTE__URL", "https://erp.example.com")
        monkeypatch.setenv("SYNC_BRIDGE_REMOTE__API_KEY", "env-secret")
        monkeypatch.setenv("SYNC_BRIDGE_QUEUE__MAX_ATTEMPTS", "7")

        settings = Settings()
        assert settings.remote.url == "https://erp.example.com"
        assert settings.remote.api_key.get_secret_value() == "env-secret"
        assert settings.queue.max_attempts == 7

    def test_settings_validate_credentials_missing(self) -> None:
        """Test credential validation with missing values."""
        settings = Settings()
        errors = settings.validate_credentials()
        assert "remote.url is required" in errors
        assert any("api_key" in e for e in errors)

    def test_settings_validate_credentials_complete(self) -> None:
        """Test credential validation with all values."""
        settings = Settings(
            remote={
                "url": "https://erp.example.com",
                "database": "prod",
                "username": "sync",
                "api_key": SecretStr("key"),
            }
        )
        assert settings.validate_credentials() == []

    def test_backoff_cap_below_base_rejected(self) -> None:
        """Test that the backoff cap must not be below the base delay."""
        with pytest.raises(ValidationError):
            Settings(queue={"backoff_base_seconds": 120, "backoff_max_seconds": 60})

    def test_settings_to_file_json(self, tmp_path: Path) -> None:
        """Test saving settings to JSON file."""
        settings = Settings(remote={"url": "https://erp.example.com", "api_key": "secret"})
        output_path = tmp_path / "config.json"
        settings.to_file(output_path)

        data = json.loads(output_path.read_text())
        assert data["remote"]["url"] == "https://erp.example.com"
        assert data["remote"]["api_key"] == "***REDACTED***"
        assert "secret" not in output_path.read_text()

    def test_settings_from_toml(self, tmp_path: Path) -> None:
        """Test loading settings from a TOML file."""
        config = tmp_path / "config.toml"
        config.write_text(
            '[remote]\nurl = "https://erp.example.com"\n\n'
            "[queue]\nbatch_size = 10\n\n"
            '[sync]\ndisabled_modules = ["legacy"]\n'
        )
        settings = Settings.from_file(config)
        assert settings.remote.url == "https://erp.example.com"
        assert settings.queue.batch_size == 10
        assert settings.sync.disabled_modules == ["legacy"]

    def test_toml_round_trip_through_to_file(self, tmp_path: Path) -> None:
        """Test that a generated TOML file loads back."""
        path = tmp_path / "config.toml"
        Settings(queue={"batch_size": 25}).to_file(path)
        assert Settings.from_file(path).queue.batch_size == 25

    def test_from_file_unsupported_suffix(self, tmp_path: Path) -> None:
        """Test that unknown config formats are rejected."""
        path = tmp_path / "config.yaml"
        path.write_text("remote: {}")
        with pytest.raises(ValueError):
            Settings.from_file(path)

    def test_from_file_missing(self, tmp_path: Path) -> None:
        """Test that a missing config file raises."""
        with pytest.raises(FileNotFoundError):
            Settings.from_file(tmp_path / "nope.toml")


class TestLoadSettings:
    """Test load_settings helper."""

    def test_overrides_replace_sections(self, tmp_path: Path) -> None:
        """Test overrides on top of a config file."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"queue": {"batch_size": 10}}))

        settings = load_settings(path, sync={"dry_run": True})
        assert settings.queue.batch_size == 10
        assert settings.sync.dry_run is True

    def test_without_file(self) -> None:
        """Test defaults when no file is given."""
        settings = load_settings()
        assert settings.sync.dry_run is False

    def test_sync_options_modification(self) -> None:
        """Test modifying options in place."""
        settings = Settings()
        settings.sync.dry_run = True
        settings.queue.batch_size = 5

        assert settings.sync.dry_run is True
        assert settings.queue.batch_size == 5
