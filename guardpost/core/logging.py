"""Structured logging setup using structlog.

stderr gets the configured renderer (JSON or console); the optional
persistent file always gets JSON lines so it can be grepped after an
outage. Durable records get their own fsynced JSON-lines logger.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from pathlib import Path

import structlog

from guardpost.core.config import get_settings

# Third-party loggers that are noisy at INFO.
_QUIET_LOGGERS = ("aiohttp.access", "httpx", "httpcore")

_PRE_CHAIN: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def _formatter(renderer: structlog.types.Processor) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def _renderer(fmt: str) -> structlog.types.Processor:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def setup_logging(
    level: str | None = None,
    fmt: str | None = None,
    log_file: str | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level override (e.g. "DEBUG"). Uses config if None.
        fmt: stderr format override ("json" or "console"). Uses config if None.
        log_file: Persistent log file override. Uses config if None; an
            empty string disables the file handler.
    """
    cfg = get_settings().logging
    log_level = getattr(logging, (level or cfg.level).upper(), logging.INFO)
    file_path = cfg.file if log_file is None else log_file

    structlog.configure(
        processors=[*_PRE_CHAIN, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = []

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(_formatter(_renderer(fmt or cfg.format)))
    handlers.append(stderr_handler)

    if file_path:
        Path(file_path).parent.mkdir(parents=True, exist_ok=True)
        # WatchedFileHandler reopens the file after logrotate moves it.
        file_handler = logging.handlers.WatchedFileHandler(file_path)
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers.clear()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(log_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


class _SyncedFileHandler(logging.handlers.WatchedFileHandler):
    """WatchedFileHandler that fsyncs after every record."""

    def emit(self, record: logging.LogRecord) -> None:
        super().emit(record)
        if self.stream is not None:
            try:
                os.fsync(self.stream.fileno())
            except OSError:
                self.handleError(record)


def record_logger(name: str, path: str | Path) -> structlog.stdlib.BoundLogger:
    """Logger that writes JSON lines to ``path`` and nowhere else.

    For durable records (undeliverable alerts) that must survive whatever
    the root logger is configured to do. The file is opened on first use.
    """
    std = logging.getLogger(name)
    std.propagate = False
    std.setLevel(logging.INFO)
    if not std.handlers:
        handler = _SyncedFileHandler(path, encoding="utf-8", delay=True)
        handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
        std.addHandler(handler)
    return structlog.wrap_logger(
        std,
        processors=[*_PRE_CHAIN, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
    )


def close_record_logger(name: str) -> None:
    std = logging.getLogger(name)
    for handler in list(std.handlers):
        std.removeHandler(handler)
        handler.close()
