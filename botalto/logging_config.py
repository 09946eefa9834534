"""Logging setup for botalto.

Modules log through structlog under ``botalto.<subsystem>``. Every event
reaches the console and the combined ``botalto.log``; each subsystem
also writes its own rotating file, so sandbox noise in executor.log can
be read apart from lifecycle events in manager.log.

Bot tokens are scrubbed from every event before it is rendered.
"""

import logging
import logging.handlers
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import structlog

SUBSYSTEMS = ("manager", "session", "executor", "provider", "api")

LOGGER_PREFIX = "botalto"

# <bot id>:<secret>, as it appears bare or inside /bot<token>/ API URLs
_TOKEN_PATTERN = re.compile(r"\d{5,}:[A-Za-z0-9_-]{30,}")
_REDACTED = "***REDACTED***"


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return _TOKEN_PATTERN.sub(_REDACTED, value)
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(v) for v in value)
    if isinstance(value, dict):
        return {k: _scrub(v) for k, v in value.items()}
    return value


def sanitize_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """structlog processor that redacts bot tokens anywhere in an event.

    aiohttp exceptions quote the request URL, and Bot API URLs carry
    the token in their path.
    """
    return {key: _scrub(value) for key, value in event_dict.items()}


def _level(name: Any, fallback: int) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else fallback


@dataclass
class LogSettings:
    log_dir: Path = field(default_factory=lambda: Path(__file__).parent.parent / "logs")
    level: int = logging.INFO
    subsystem_levels: Dict[str, int] = field(default_factory=dict)
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5

    @classmethod
    def from_config(cls, config) -> "LogSettings":
        level = _level(config.logging_level, logging.INFO)
        overrides = config.logging_subsystem_levels or {}
        return cls(
            log_dir=config.log_dir,
            level=level,
            subsystem_levels={
                name: _level(overrides[name], level) for name in SUBSYSTEMS if name in overrides
            },
            max_bytes=config.logging_max_file_size_mb * 1024 * 1024,
            backup_count=config.logging_backup_count,
        )


def _file_handler(path: Path, level: int, settings: LogSettings, formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=settings.max_bytes,
        backupCount=settings.backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(config=None) -> None:
    """Route structlog output to the console and rotating log files.

    main() calls this twice: first without a config so that import-time
    loggers have somewhere to write, then with the loaded Config. Loggers
    are only cached after the second call.
    """
    settings = LogSettings.from_config(config) if config is not None else LogSettings()

    try:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        files_enabled = True
    except OSError as exc:
        print(
            f"WARNING: cannot create log directory {settings.log_dir} ({exc}); "
            "logging to the console only",
            file=sys.stderr,
        )
        files_enabled = False

    file_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
    )

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(settings.level)
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers[:] = [console]
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

    # "botalto" writes the combined file; each child writes its own and
    # propagates upward
    for subsystem in ("", *SUBSYSTEMS):
        name = f"{LOGGER_PREFIX}.{subsystem}" if subsystem else LOGGER_PREFIX
        level = settings.subsystem_levels.get(subsystem, settings.level)
        target = logging.getLogger(name)
        target.setLevel(level if subsystem else logging.DEBUG)
        target.propagate = True
        target.handlers.clear()
        if files_enabled:
            path = settings.log_dir / f"{subsystem or LOGGER_PREFIX}.log"
            target.addHandler(_file_handler(path, level, settings, file_formatter))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            sanitize_secrets,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=config is not None,
    )
