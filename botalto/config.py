"""Configuration management for botalto.

Loads YAML settings (settings.yaml) and environment variables (.env)
into a typed Config object. Property getters provide safe access with
sensible defaults for every subsystem: control API, messaging provider,
sandboxed executor, and logging.

Key classes:
    Config: Central configuration manager.

Key functions:
    get_config: Singleton accessor for the global Config instance.
"""

import math
import os
from pathlib import Path
from typing import Optional

import structlog
import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError

logger = structlog.get_logger("botalto.manager")

DEFAULT_START_SOURCE = "ctx.reply('🚀 BotAlto bot online!')"

# (section, key) -> (default, zero allowed)
NUMERIC_SETTINGS = {
    ("provider", "request_timeout"): (3.0, False),
    ("provider", "poll_timeout"): (3, True),
    ("provider", "retry_backoff"): (1.0, True),
    ("executor", "timeout"): (9.0, False),
    ("executor", "cpu_seconds"): (5, False),
    ("executor", "memory_mb"): (256, False),
    ("executor", "max_concurrent"): (4, False),
    ("executor", "max_pending"): (32, False),
    ("executor", "max_replies"): (20, False),
    ("executor", "max_reply_chars"): (4096, False),
    ("executor", "max_output_bytes"): (65536, False),
    ("logging", "max_file_size_mb"): (10, False),
    ("logging", "backup_count"): (5, True),
}


def _coerce(value, default, allow_zero: bool):
    """value converted to the type of default, or None if not a finite number in range."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return None
    value = type(default)(value)
    if value < 0 or (value == 0 and not allow_zero):
        return None
    return value


class Config:
    """Central configuration manager for botalto.

    Loads settings.yaml and .env from the config directory. Provides
    typed property accessors for every configurable subsystem. Settings
    are read-only after __init__.

    Args:
        config_dir: Path to the config directory. Defaults to
            ``<repo_root>/config/``.
        settings: Optional pre-built settings dict. When given, no
            settings.yaml is read (used by tests and embedding callers).
    """

    def __init__(
        self,
        config_dir: Optional[Path] = None,
        settings: Optional[dict] = None,
    ):
        if config_dir is None:
            config_dir = Path(__file__).parent.parent / "config"
        self.config_dir = config_dir

        # Load environment variables
        env_file = config_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        if settings is None:
            settings = self._load_yaml("settings.yaml")
        self.settings = settings

    def _load_yaml(self, filename: str) -> dict:
        """Load a YAML configuration file."""
        filepath = self.config_dir / filename
        if filepath.exists():
            with open(filepath, "r") as f:
                return yaml.safe_load(f) or {}
        return {}

    def _section(self, name: str) -> dict:
        section = self.settings.get(name, {})
        if not isinstance(section, dict):
            logger.error("config_section_invalid_type", section=name, type=type(section).__name__)
            return {}
        return section

    def _number(self, section: str, key: str):
        """Numeric setting, or its default when missing or out of range."""
        default, allow_zero = NUMERIC_SETTINGS[(section, key)]
        value = _coerce(self._section(section).get(key), default, allow_zero)
        return default if value is None else value

    def validate(self):
        """Validate critical settings at startup.

        Logs every numeric setting that is not a number in range. Does
        not raise: the numeric properties return their default for such
        values, so the host still starts.
        """
        for (section, key), (default, allow_zero) in NUMERIC_SETTINGS.items():
            value = self._section(section).get(key)
            if value is not None and _coerce(value, default, allow_zero) is None:
                logger.error(
                    "config_invalid_value",
                    key=f"{section}.{key}",
                    value=value,
                    valid=">= 0" if allow_zero else "> 0",
                    using=default,
                )

        api_url = self.provider_api_url
        if not api_url.startswith("https://"):
            logger.warning(
                "insecure_provider_api_url", url=api_url,
                msg="Bot tokens are sent in the URL path; use HTTPS",
            )

    # --- control API ---

    @property
    def api_host(self) -> str:
        """Bind address for the control API. Env var BOTALTO_HOST takes precedence."""
        return os.environ.get("BOTALTO_HOST") or self._section("api").get("host", "0.0.0.0")

    @property
    def api_port(self) -> int:
        """Port for the control API. Env var PORT takes precedence (default 3000)."""
        raw = os.environ.get("PORT") or self._section("api").get("port", 3000)
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Invalid control API port: {raw!r}", setting_name="api.port"
            )

    # --- messaging provider ---

    @property
    def provider_api_url(self) -> str:
        """Telegram Bot API base URL. Env var TELEGRAM_API_URL takes precedence."""
        return (
            os.environ.get("TELEGRAM_API_URL")
            or self._section("provider").get("api_url", "https://api.telegram.org")
        ).rstrip("/")

    @property
    def provider_request_timeout(self) -> float:
        """Timeout in seconds for a single provider API call (default 3)."""
        return self._number("provider", "request_timeout")

    @property
    def provider_poll_timeout(self) -> int:
        """Long-poll timeout in seconds for getUpdates (default 3)."""
        return self._number("provider", "poll_timeout")

    @property
    def provider_retry_backoff(self) -> float:
        """Delay before the single connect/disconnect retry (default 1s)."""
        return self._number("provider", "retry_backoff")

    # --- sandboxed executor ---

    @property
    def executor_timeout(self) -> float:
        """Wall-clock deadline per handler invocation in seconds (default 9)."""
        return self._number("executor", "timeout")

    @property
    def executor_cpu_seconds(self) -> int:
        """CPU-time rlimit for a handler process (default 5)."""
        return self._number("executor", "cpu_seconds")

    @property
    def executor_memory_mb(self) -> int:
        """Address-space rlimit for a handler process in MB (default 256)."""
        return self._number("executor", "memory_mb")

    @property
    def executor_max_concurrent(self) -> int:
        """Max concurrent handler invocations per bot (default 4)."""
        return self._number("executor", "max_concurrent")

    @property
    def executor_max_pending(self) -> int:
        """Queued plus running messages per bot before new ones are dropped (default 32)."""
        return self._number("executor", "max_pending")

    @property
    def executor_max_replies(self) -> int:
        """Max replies a single invocation may send (default 20)."""
        return self._number("executor", "max_replies")

    @property
    def executor_max_reply_chars(self) -> int:
        """Replies longer than this are truncated (default 4096, Telegram's cap)."""
        return self._number("executor", "max_reply_chars")

    @property
    def executor_max_output_bytes(self) -> int:
        """Max size of one protocol line from a handler process (default 64 KiB)."""
        return self._number("executor", "max_output_bytes")

    @property
    def default_start_source(self) -> str:
        """Handler source used for /start when a bot has no override."""
        return self.settings.get("default_start_source", DEFAULT_START_SOURCE)

    # --- logging ---

    @property
    def log_dir(self) -> Path:
        """Get log directory path."""
        configured = self.settings.get("log_dir")
        if configured:
            return Path(configured).expanduser()
        return Path(__file__).parent.parent / "logs"

    @property
    def logging_level(self) -> str:
        """Global log level (default INFO). Controls console and combined file."""
        return self._section("logging").get("level", "INFO")

    @property
    def logging_subsystem_levels(self) -> dict:
        """Per-subsystem log level overrides. E.g. {"executor": "DEBUG"}."""
        return self._section("logging").get("subsystem_levels", {})

    @property
    def logging_max_file_size_mb(self) -> int:
        """Max size per log file in MB before rotation (default 10)."""
        return self._number("logging", "max_file_size_mb")

    @property
    def logging_backup_count(self) -> int:
        """Number of rotated log files to keep (default 5)."""
        return self._number("logging", "backup_count")


_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
