"""Structured logging for MCP Warden.

Every module logs through a structlog logger bound to its dotted name::

    log = get_logger("mcp_warden.sandbox.manager")
    log.warning("sandbox_escalated", server_id=server_id, level="strict")

Records go to stdout (console renderer in development, JSON otherwise) and,
with ``log_to_file``, to a rotating file that is always JSON. Records
logged inside :func:`server_context` carry the bound ``server_id``.
"""

from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from mcp_warden.config import Settings, get_settings

_SHARED_PROCESSORS: list[Any] = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.StackInfoRenderer(),
    structlog.dev.set_exc_info,
    structlog.processors.TimeStamper(fmt="iso"),
]

# Handlers installed by setup_logging, replaced on every call.
_installed: list[logging.Handler] = []


def _formatter(renderer: Any) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer]
    )


def _file_handler(settings: Settings, level: int) -> logging.Handler | None:
    """Rotating JSON file handler, or None if the log directory is unusable."""
    try:
        Path(settings.log_directory).mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            filename=settings.log_file_path,
            maxBytes=settings.log_file_max_bytes,
            backupCount=settings.log_file_backup_count,
            encoding="utf-8",
        )
    except OSError as e:
        print(f"Warning: file logging disabled ({settings.log_file_path}): {e}", file=sys.stderr)
        return None
    handler.setLevel(level)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
    return handler


def setup_logging(settings: Settings | None = None) -> None:
    """Route structlog through stdlib logging using *settings*.

    Safe to call more than once: handlers from an earlier call are removed
    before the new ones are attached.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(
        _formatter(
            structlog.dev.ConsoleRenderer(colors=True)
            if settings.is_development
            else structlog.processors.JSONRenderer()
        )
    )
    handlers: list[logging.Handler] = [console]
    if settings.log_to_file:
        file_handler = _file_handler(settings, level)
        if file_handler is not None:
            handlers.append(file_handler)

    root = logging.getLogger()
    for handler in _installed:
        root.removeHandler(handler)
        handler.close()
    _installed[:] = handlers
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)

    structlog.configure(
        processors=[*_SHARED_PROCESSORS, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # aiohttp logs every proxied request at INFO
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def server_context(server_id: str, **extra: Any) -> AbstractContextManager[None]:
    """Bind *server_id* (and *extra*) to every record logged inside the block."""
    return structlog.contextvars.bound_contextvars(server_id=server_id, **extra)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
