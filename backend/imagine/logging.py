"""structlog setup for the Imagine service.

Console output in development, JSON lines everywhere else. When LOG_FILE is
set every rendered line is also appended to that file so a pipeline run can be
replayed attempt by attempt after the fact.
"""

from __future__ import annotations

import logging
import sys
from typing import IO

import structlog

from imagine.config import settings


class _FileMirror:
    """stdout writer that mirrors each line into an append-only file.

    If the file cannot be opened, or a later write fails, mirroring is switched
    off and stdout keeps working.
    """

    def __init__(self, file_path: str) -> None:
        self._path = file_path
        self._file: IO[str] | None = None
        try:
            self._file = open(file_path, "a")  # noqa: SIM115
        except OSError as exc:
            # structlog is not configured yet at this point
            print(f"WARNING: log file {file_path!r} unavailable: {exc}", file=sys.stderr)

    def _disable(self, reason: str) -> None:
        self._file = None
        print(f"WARNING: {reason}; mirroring to {self._path!r} stopped.", file=sys.stderr)

    def write(self, data: str) -> None:
        sys.stdout.write(data)
        if self._file is None:
            return
        try:
            self._file.write(data)
            self._file.flush()
        except (OSError, ValueError):
            self._disable("log file write failed")

    def flush(self) -> None:
        sys.stdout.flush()
        if self._file is None:
            return
        try:
            self._file.flush()
        except (OSError, ValueError):
            self._disable("log file flush failed")


def _redact_bytes(
    logger: structlog.types.WrappedLogger, method: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Replace raw bytes values (photos, renders) with their size."""
    for key, value in event_dict.items():
        if isinstance(value, bytes | bytearray):
            event_dict[key] = f"<{len(value)} bytes>"
    return event_dict


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging() -> None:
    """Configure structlog once per process from settings."""
    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.environment == "development"
        else structlog.processors.JSONRenderer()
    )

    if settings.log_file:
        mirror = _FileMirror(settings.log_file)
        logger_factory = structlog.PrintLoggerFactory(file=mirror)  # type: ignore[arg-type]
    else:
        logger_factory = structlog.PrintLoggerFactory()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _redact_bytes,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_level(settings.log_level)),
        context_class=dict,
        logger_factory=logger_factory,
        cache_logger_on_first_use=True,
    )
