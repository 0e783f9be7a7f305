"""Structured logging for the trading pipeline (structlog over stdlib logging)."""

from __future__ import annotations

import logging
import sys
from typing import IO, Any

import structlog

# Chatty at INFO; only interesting when debugging a gateway or feed.
QUIET_LOGGERS = ("httpx", "httpcore", "websockets", "uvicorn.access")


def _drop_unset(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Omit keys whose value is None (unset stop-loss, missing limit price...)."""
    return {k: v for k, v in event_dict.items() if v is not None}


def _service_tagger(service: str) -> structlog.types.Processor:
    def tag(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("service", service)
        return event_dict

    return tag


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    service: str = "autotrade",
    stream: IO[str] | None = None,
) -> None:
    """Route structlog and stdlib records through one renderer.

    Args:
        level: Root log level name.
        log_format: "json" for deployments, "console" for a terminal.
        service: Tag added to every record so several engines can share a sink.
        stream: Output stream, stderr by default.
    """
    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _service_tagger(service),
        _drop_unset,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer: structlog.types.Processor
    if log_format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    # Module-level loggers are created at import time, before this runs,
    # so loggers must not be cached on first use.
    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    ))

    root_level = logging.getLevelName(level.upper())
    if not isinstance(root_level, int):
        root_level = logging.INFO
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(root_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(root_level, logging.WARNING))


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.stdlib.BoundLogger:
    """Logger pre-bound with context, e.g. ``get_logger("queue", instrument="BTC")``."""
    logger = structlog.get_logger(name)
    return logger.bind(**initial_context) if initial_context else logger
