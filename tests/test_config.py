"""Tests for Config defaults, overrides and env precedence."""

from unittest.mock import patch

import pytest

from botalto.config import DEFAULT_START_SOURCE, Config
from botalto.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("PORT", "BOTALTO_HOST", "TELEGRAM_API_URL"):
        monkeypatch.delenv(name, raising=False)


def test_defaults(tmp_path):
    """An empty config dir yields the documented defaults."""
    config = Config(tmp_path)
    assert config.settings == {}
    assert config.api_host == "0.0.0.0"
    assert config.api_port == 3000
    assert config.provider_api_url == "https://api.telegram.org"
    assert config.executor_timeout == 9.0
    assert config.executor_max_concurrent == 4
    assert config.provider_retry_backoff == 1.0
    assert config.default_start_source == DEFAULT_START_SOURCE
    assert config.logging_level == "INFO"


def test_yaml_settings_are_loaded(tmp_path):
    """Values from settings.yaml override the defaults."""
    (tmp_path / "settings.yaml").write_text(
        "api:\n"
        "  port: 8080\n"
        "executor:\n"
        "  timeout: 2\n"
        "  max_replies: 3\n"
        "provider:\n"
        "  api_url: http://localhost:8081/\n"
        "default_start_source: ctx.reply('hi')\n"
    )
    config = Config(tmp_path)
    assert config.api_port == 8080
    assert config.executor_timeout == 2
    assert config.executor_max_replies == 3
    assert config.provider_api_url == "http://localhost:8081"
    assert config.default_start_source == "ctx.reply('hi')"


def test_env_takes_precedence(tmp_path, monkeypatch):
    """PORT and BOTALTO_HOST beat the YAML values."""
    monkeypatch.setenv("PORT", "4567")
    monkeypatch.setenv("BOTALTO_HOST", "127.0.0.1")
    config = Config(tmp_path, settings={"api": {"port": 9999, "host": "10.0.0.1"}})
    assert config.api_port == 4567
    assert config.api_host == "127.0.0.1"


def test_dotenv_file_is_read(tmp_path, monkeypatch):
    """Variables from config/.env are loaded."""
    # Registers the variable with monkeypatch so the value load_dotenv sets is undone
    monkeypatch.setenv("TELEGRAM_API_URL", "unset")
    monkeypatch.delenv("TELEGRAM_API_URL")
    (tmp_path / ".env").write_text("TELEGRAM_API_URL=http://bot-api.internal\n")
    config = Config(tmp_path, settings={})
    assert config.provider_api_url == "http://bot-api.internal"


def test_bad_port_raises(tmp_path, monkeypatch):
    """A non-numeric port raises ConfigurationError."""
    monkeypatch.setenv("PORT", "not-a-port")
    config = Config(tmp_path, settings={})
    with pytest.raises(ConfigurationError) as excinfo:
        config.api_port
    assert excinfo.value.setting_name == "api.port"


def test_non_dict_section_falls_back_to_defaults(tmp_path):
    """A section that is not a mapping is ignored."""
    config = Config(tmp_path, settings={"executor": "fast"})
    assert config.executor_timeout == 9.0


def test_validate_does_not_raise(tmp_path):
    """validate() only logs bad values."""
    config = Config(tmp_path, settings={
        "executor": {"timeout": -1, "max_replies": "many"},
        "provider": {"retry_backoff": -5, "api_url": "http://insecure"},
    })
    config.validate()


def test_log_dir_setting(tmp_path):
    """log_dir comes from settings when given."""
    config = Config(tmp_path, settings={"log_dir": str(tmp_path / "logs")})
    assert config.log_dir == tmp_path / "logs"


def test_unusable_numbers_fall_back_to_defaults(tmp_path):
    """Out-of-range or non-numeric values are replaced by the defaults."""
    config = Config(tmp_path, settings={
        "executor": {"max_concurrent": 0, "timeout": "slow", "max_pending": 0.5, "max_replies": True},
        "provider": {"retry_backoff": -1, "request_timeout": float("nan")},
    })
    assert config.executor_max_concurrent == 4
    assert config.executor_timeout == 9.0
    assert config.executor_max_pending == 32
    assert config.executor_max_replies == 20
    assert config.provider_retry_backoff == 1.0
    assert config.provider_request_timeout == 3.0


def test_zero_is_allowed_where_meaningful(tmp_path):
    """retry_backoff and poll_timeout accept 0."""
    config = Config(tmp_path, settings={"provider": {"retry_backoff": 0, "poll_timeout": 0}})
    assert config.provider_retry_backoff == 0.0
    assert config.provider_poll_timeout == 0


def test_validate_logs_unusable_values(tmp_path):
    """validate() reports each bad value together with the default used."""
    config = Config(tmp_path, settings={"executor": {"max_concurrent": 0}})
    with patch("botalto.config.logger") as mock_logger:
        config.validate()
    keys = [c.kwargs["key"] for c in mock_logger.error.call_args_list]
    assert keys == ["executor.max_concurrent"]
    assert mock_logger.error.call_args.kwargs["using"] == 4
