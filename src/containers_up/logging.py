"""Logging configuration for Containers Up."""

from __future__ import annotations

import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from containers_up.config import get_settings
from containers_up.models import LogEntry


def setup_logging() -> None:
    """Configure structured logging."""
    settings = get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer(colors=True)
                if settings.is_development
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Rendering happens in structlog; stdlib handlers only write the line
    logging.basicConfig(format="%(message)s", level=log_level, handlers=[])

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter("%(message)s"))
    logging.root.addHandler(console)

    if settings.log_to_file:
        path = Path(settings.log_file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.root.addHandler(file_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class EventLogger:
    """A structlog logger bound to one event tag that also keeps what it logged.

    Every admission, squash and scan run logs through one of these so the
    lines can be written to the Log Store when the run ends, whatever the
    outcome.
    """

    def __init__(self, tag: str, name: str = "containers_up.events", **context: Any) -> None:
        self.tag = tag
        self._log = get_logger(name).bind(tag=tag, **context)
        self._entries: list[tuple[int, datetime, str]] = []

    def _record(self, level: int, event: str, fields: dict[str, Any]) -> None:
        details = " ".join(f"{key}={value}" for key, value in fields.items())
        msg = f"{event} {details}" if details else event
        self._entries.append((level, datetime.now(UTC), msg))

    def debug(self, event: str, **fields: Any) -> None:
        self._record(logging.DEBUG, event, fields)
        self._log.debug(event, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self._record(logging.INFO, event, fields)
        self._log.info(event, **fields)

    def warning(self, event: str, **fields: Any) -> None:
        self._record(logging.WARNING, event, fields)
        self._log.warning(event, **fields)

    def error(self, event: str, **fields: Any) -> None:
        self._record(logging.ERROR, event, fields)
        self._log.error(event, **fields)

    def exception(self, event: str, **fields: Any) -> None:
        exc = sys.exc_info()[1]
        if exc is not None:
            fields = {**fields, "error": str(exc) or type(exc).__name__}
        self._record(logging.ERROR, event, fields)
        self._log.error(event, exc_info=True, **fields)

    def __len__(self) -> int:
        return len(self._entries)

    def drain(self, host_id: int, job_id: int | None = None) -> list[LogEntry]:
        """Return captured lines as log entries and forget them."""
        entries = [
            LogEntry(
                job_id=job_id,
                host_id=host_id,
                level=level,
                time=time,
                event=self.tag,
                msg=msg,
            )
            for level, time, msg in self._entries
        ]
        self._entries.clear()
        return entries
