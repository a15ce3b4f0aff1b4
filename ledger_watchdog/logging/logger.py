"""
structlog setup for Ledger Watchdog.

Every line is one JSON object keyed by event_type (snake_case) with slot,
signature or window context passed as key/value pairs. LOG_FORMAT=console
switches to the human-readable renderer for local runs.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO, Any

import structlog


def _env_level() -> int:
    return getattr(logging, os.getenv("LOG_LEVEL", "INFO").strip().upper(), logging.INFO)


def _env_format() -> str:
    return os.getenv("LOG_FORMAT", "json").strip().lower()


def configure_structlog(
    level: int | None = None,
    fmt: str | None = None,
    stream: IO[str] | None = None,
) -> None:
    """(Re)configure structlog; unset arguments come from LOG_LEVEL / LOG_FORMAT."""
    level = _env_level() if level is None else level
    fmt = _env_format() if fmt is None else fmt
    renderer: Any
    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty(), event_key="event_type")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.EventRenamer("event_type"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stdout),
        cache_logger_on_first_use=stream is None,
    )


if not structlog.is_configured():
    configure_structlog()


def get_logger(name: str) -> structlog.BoundLogger:
    """Logger bound to the module name: get_logger(__name__).info("slot_scanned", slot=...)."""
    return structlog.get_logger(name).bind(logger=name)


def bind_source(source: str) -> structlog.BoundLogger:
    """Logger with the ingestion source bound to every call."""
    return get_logger("ledger_watchdog").bind(source=source)
