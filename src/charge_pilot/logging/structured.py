"""structlog-backed logging for the daemon.

Modules log through plain ``logging.getLogger(__name__)``; the root handlers
installed here render those records with structlog so they pick up the
per-cycle context bound in :mod:`charge_pilot.logging.context`.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any

import structlog

SERVICE_NAME = "charge-pilot"

FORMATS = ("json", "console")

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite")

_FILE_MAX_BYTES = 5 * 1024 * 1024
_FILE_BACKUPS = 3


def add_service(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _pre_chain() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        add_service,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def build_formatter(fmt: str, colors: bool = True) -> structlog.stdlib.ProcessorFormatter:
    """Formatter for stdlib handlers. ``fmt`` is "json" or "console"."""
    if fmt == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    elif fmt == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=colors)
    else:
        raise ValueError(f"Unknown log format {fmt!r}, expected one of {FORMATS}")
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain(),
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )


def resolve_level(level: str) -> int:
    value = logging.getLevelName(level.strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level {level!r}")
    return value


def setup_logging(level: str = "INFO", fmt: str = "json", log_file: str = "") -> None:
    """Install root handlers: stdout always, plus a rotating file if ``log_file`` is set.

    The file handler always writes JSON so logs stay machine readable even
    when the console is in development mode.
    """
    root_level = resolve_level(level)
    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(build_formatter(fmt, colors=sys.stdout.isatty()))
    handlers: list[logging.Handler] = [stream]

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            path, maxBytes=_FILE_MAX_BYTES, backupCount=_FILE_BACKUPS, encoding="utf-8",
        )
        rotating.setFormatter(build_formatter("json"))
        handlers.append(rotating)

    structlog.configure(
        processors=[*_pre_chain(), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(root_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(root_level, logging.WARNING))
