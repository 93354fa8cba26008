"""Logging for the festival-ingest commands.

A configured process writes to three places:

* stderr, at ``log_level``, so stdout stays free for command summaries;
* ``festival-ingest.log``, every ``festival_ingest.*`` record as one JSON
  object per line, DEBUG and up;
* ``festival-ingest-telemetry.log``, telemetry events only.

Values bound with :func:`log_context` ride along on every record and
telemetry event emitted inside the block. Ingest runs bind ``run_id`` and
enrichment binds ``film_id`` per film, so message text does not repeat them.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import structlog
from structlog.typing import EventDict, Processor

from festival_ingest.config import AppSettings
from festival_ingest.telemetry import TELEMETRY_LOGGER_NAME

ROOT_LOGGER_NAME = "festival_ingest"
LOG_FILE_NAME = "festival-ingest.log"
TELEMETRY_LOG_FILE_NAME = "festival-ingest-telemetry.log"

LOGGER = logging.getLogger(ROOT_LOGGER_NAME)

_TIMESTAMPER = structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp")


@contextmanager
def log_context(**values: Any) -> Iterator[None]:
    """Bind ``values`` to log records and telemetry events for the block."""
    with structlog.contextvars.bound_contextvars(**values):
        yield


def configure_application_logging(settings: AppSettings) -> Path:
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / LOG_FILE_NAME
    telemetry_log_file = settings.log_dir / TELEMETRY_LOG_FILE_NAME

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            _TIMESTAMPER,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    console = logging.StreamHandler(stream=sys.stderr)
    console.setLevel(_resolve_log_level(settings.log_level))
    console.setFormatter(
        _formatter(structlog.dev.ConsoleRenderer(colors=_stream_supports_color(sys.stderr)))
    )
    _install_handlers(ROOT_LOGGER_NAME, console, _json_file_handler(log_file, logging.DEBUG))
    _install_handlers(
        TELEMETRY_LOGGER_NAME,
        _json_file_handler(telemetry_log_file, logging.INFO),
    )

    LOGGER.debug(
        "logging configured console_level=%s path=%s telemetry_path=%s",
        logging.getLevelName(console.level),
        log_file,
        telemetry_log_file,
    )
    return log_file


def _install_handlers(logger_name: str, *handlers: logging.Handler) -> None:
    # Reconfiguring replaces handlers instead of stacking them.
    logger = logging.getLogger(logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(min(handler.level for handler in handlers))
    logger.propagate = False
    for handler in handlers:
        logger.addHandler(handler)


def _json_file_handler(path: Path, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        _formatter(
            _add_source_location,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        )
    )
    return handler


def _formatter(*render_chain: Processor) -> structlog.stdlib.ProcessorFormatter:
    # foreign_pre_chain only runs for records from stdlib loggers.
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ExtraAdder(),
            _TIMESTAMPER,
        ],
        processors=[
            *render_chain[:-1],
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            render_chain[-1],
        ],
    )


def _add_source_location(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict.setdefault("pathname", record.pathname)
        event_dict.setdefault("lineno", record.lineno)
        event_dict.setdefault("func_name", record.funcName)
    return event_dict


def _resolve_log_level(raw_level: str) -> int:
    level = logging.getLevelName(raw_level.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _stream_supports_color(stream: object) -> bool:
    try:
        return bool(stream.isatty())  # type: ignore[attr-defined]
    except (AttributeError, OSError, ValueError):
        return False
