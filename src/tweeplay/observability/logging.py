"""Logging setup for tweeplay.

Every module logs named events through structlog::

    log = get_logger(__name__)
    log.info("story_loaded", story_id=story_id, passages=12)

The events are routed through the stdlib root logger to two sinks:

- the terminal, on stderr through rich, filtered by ``-v``
- an optional JSONL event log (``--log FILE``) that records everything
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path  # noqa: TC003 - Used at runtime for path operations
from typing import TYPE_CHECKING, Any

import structlog
from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from structlog.typing import Processor

# Keys structlog adds that the JSONL entry already carries
_STRUCTLOG_KEYS = ("level", "timestamp")


@dataclass
class _LoggingState:
    configured: bool = False
    file_handler: logging.FileHandler | None = None
    log_file: Path | None = None


_state = _LoggingState()


class JSONLFormatter(logging.Formatter):
    """Render a record as one JSON object: timestamp, level, logger, event, context."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        if isinstance(record.msg, dict):
            context = {k: v for k, v in record.msg.items() if k not in _STRUCTLOG_KEYS}
            entry["event"] = context.pop("event", "")
            entry.update((str(k), _jsonable(v)) for k, v in context.items())
        else:
            entry["event"] = record.getMessage()
        return json.dumps(entry)


def _jsonable(value: object) -> object:
    if isinstance(value, str | int | float | bool) or value is None:
        return value
    if isinstance(value, list | tuple):
        return [_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    return str(value)


def console_level(verbosity: int) -> int:
    """Map the ``-v`` count to a console level: WARNING, INFO, then DEBUG."""
    if verbosity <= 0:
        return logging.WARNING
    return logging.INFO if verbosity == 1 else logging.DEBUG


def _open_event_log(log_file: Path) -> logging.FileHandler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    handler.setFormatter(JSONLFormatter())
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(verbosity: int = 0, log_file: Path | None = None) -> None:
    """Configure logging for tweeplay.

    Safe to call again; a previously opened event log is closed first.

    Args:
        verbosity: 0=WARNING (default), 1=INFO, 2+=DEBUG
        log_file: If given, every event (DEBUG and up) is also appended to
            this file as JSONL.
    """
    close_file_logging()

    handlers: list[logging.Handler] = [
        RichHandler(
            console=Console(stderr=True),
            rich_tracebacks=True,
            tracebacks_show_locals=verbosity >= 2,
            show_time=verbosity >= 1,
            show_path=verbosity >= 2,
            markup=False,
            level=console_level(verbosity),
        )
    ]
    if log_file is not None:
        _state.file_handler = _open_event_log(log_file)
        _state.log_file = log_file
        handlers.append(_state.file_handler)

    # The root stays open to DEBUG whenever some sink wants more than warnings
    root_level = logging.DEBUG if (verbosity > 0 or log_file is not None) else logging.WARNING
    logging.basicConfig(level=root_level, format="%(message)s", handlers=handlers, force=True)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]
    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(root_level),
        cache_logger_on_first_use=False,
    )
    _state.configured = True


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    """Return a structlog logger, configuring defaults on first use."""
    if not _state.configured:
        configure_logging()

    logger: structlog.typing.FilteringBoundLogger = structlog.get_logger(name)
    return logger


def get_log_file() -> Path | None:
    """Return the JSONL event log, if one is open."""
    return _state.log_file


def close_file_logging() -> None:
    """Close the JSONL event log, if one is open."""
    if _state.file_handler is not None:
        logging.getLogger().removeHandler(_state.file_handler)
        _state.file_handler.close()
    _state.file_handler = None
    _state.log_file = None
