"""Structured logging setup (structlog)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, TextIO

import structlog

from code_sandbox.config.settings import LoggingSettings, get_settings
from code_sandbox.execution.capture import original_stream

_log_file: Optional[TextIO] = None


def configure_logging(settings: Optional[LoggingSettings] = None, **overrides: Any) -> None:
    """
    Configure application logging from LoggingSettings.

    Output goes to settings.log_file when set, otherwise to the process's real
    stderr underneath any capture routing, so log lines never end up in
    captured snippet output. Keyword overrides (log_level, log_format,
    log_file) take precedence over settings.
    """
    global _log_file
    base = settings or get_settings().logging
    if overrides:
        base = LoggingSettings(**{**base.model_dump(), **overrides})

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if base.log_format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    if _log_file is not None:
        _log_file.close()
        _log_file = None
    if base.log_file:
        path = Path(base.log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        _log_file = open(path, "a", encoding="utf-8")
        factory = structlog.WriteLoggerFactory(file=_log_file)
    else:
        factory = structlog.PrintLoggerFactory(file=original_stream("stderr"))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(base.log_level)),
        logger_factory=factory,
        cache_logger_on_first_use=False,
    )
