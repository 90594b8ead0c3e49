import logging
import sys
from pathlib import Path

import structlog

shared_processors = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="%H:%M:%S"),
]


def configure_logging(level: str = "INFO", log_file: Path | None = None):
    """Log to stderr, or to `log_file` while a live display owns the terminal."""
    if log_file is None:
        renderer = structlog.dev.ConsoleRenderer(colors=True)
        factory = structlog.WriteLoggerFactory(file=sys.stderr)
    else:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        renderer = structlog.dev.ConsoleRenderer(colors=False)
        factory = structlog.WriteLoggerFactory(file=log_file.open("a", encoding="utf-8"))

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level)),
        logger_factory=factory,
    )
    for name in ("aiosqlite", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_session(session_id: str | None) -> None:
    if session_id is None:
        structlog.contextvars.unbind_contextvars("session")
    else:
        structlog.contextvars.bind_contextvars(session=session_id[:8])


def get_logger(name: str | None = None):
    return structlog.get_logger(name or "hourglass")
