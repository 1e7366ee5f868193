from __future__ import annotations

import logging
import sys
from typing import Any, Callable

import structlog


# A Logf is a line-formatted log sink: it receives one fully formatted line.
Logf = Callable[[str], None]

# Server loggers that should write through our handler instead of their own.
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

_CONFIGURED = False


def _level_number(level: int | str) -> int:
    if isinstance(level, int):
        return level
    number = logging.getLevelName(level.upper())
    if not isinstance(number, int):
        raise ValueError(f"unknown log level {level!r}")
    return number


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]


def configure_logging(level: int | str = logging.INFO, stream: Any = None) -> None:
    """Route structlog and stdlib records (access lines included) to one JSON handler.

    Only the first call has any effect.
    """

    global _CONFIGURED
    if _CONFIGURED:
        return

    level = _level_number(level)
    shared = _shared_processors()

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=shared,
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False
        server_logger.setLevel(level)

    _CONFIGURED = True


def structlog_logf(name: str = "access") -> Logf:
    """Return a Logf that emits each line as an info event on a structlog logger."""

    log = structlog.get_logger(name)

    def logf(line: str) -> None:
        if line.startswith("[unexpected]"):
            log.warning(line)
        else:
            log.info(line)

    return logf


def discard_logf(line: str) -> None:
    _ = line
