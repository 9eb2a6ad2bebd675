"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest

from mailrelay.config import get_config_path, load_config, validate_config_file
from mailrelay.config_schema import AppConfig, SmtpConfig
from mailrelay.core.errors import ConfigLoadError, ConfigValidationError


class TestLoadConfig:
    def test_load_valid_config(self, config_file: Path) -> None:
        config = load_config(config_file)

        assert config.database.path == "data/test.db"
        assert config.threading.min_subject_length == 5
        assert config.rate_limit.enabled is False
        # Unset sections fall back to defaults
        assert config.delivery.max_payload_bytes == 1_000_000
        assert config.threading.require_participant_overlap is True

    def test_empty_file_gives_defaults(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("")

        config = load_config(path)

        assert config == AppConfig()

    def test_missing_file(self, temp_config_dir: Path) -> None:
        with pytest.raises(ConfigLoadError, match="not found"):
            load_config(temp_config_dir / "missing.yaml")

    def test_invalid_yaml(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("database: [unclosed")

        with pytest.raises(ConfigLoadError):
            load_config(path)

    def test_top_level_must_be_mapping(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigLoadError, match="mapping"):
            load_config(path)

    def test_field_errors_are_listed(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("server:\n  port: 70000\ndatabase:\n  path: ../escape.db\n")

        with pytest.raises(ConfigValidationError) as exc_info:
            load_config(path)

        message = str(exc_info.value)
        assert "server.port" in message
        assert "database.path" in message

    def test_newer_schema_version_rejected(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "config.yaml"
        path.write_text("schema_version: 99\n")

        with pytest.raises(ConfigValidationError, match="newer"):
            load_config(path)

    def test_env_path(self, set_config_env, config_file: Path) -> None:
        assert get_config_path() == config_file
        assert load_config().database.path == "data/test.db"


class TestValidateConfigFile:
    def test_valid(self, config_file: Path) -> None:
        is_valid, message = validate_config_file(config_file)
        assert is_valid is True
        assert "rate limit: disabled" in message

    def test_invalid(self, temp_config_dir: Path) -> None:
        is_valid, message = validate_config_file(temp_config_dir / "missing.yaml")
        assert is_valid is False
        assert message.startswith("Load error")


class TestSmtpPassword:
    def test_password_read_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RELAY_TEST_SMTP_PASSWORD", "s3cret")
        config = SmtpConfig(password_env="RELAY_TEST_SMTP_PASSWORD")
        assert config.password == "s3cret"

    def test_password_absent(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("RELAY_TEST_SMTP_PASSWORD", raising=False)
        assert SmtpConfig(password_env="RELAY_TEST_SMTP_PASSWORD").password is None
