"""Structured events for ingest runs and enrichment batches.

An event is a name plus flat scalar attributes. Values bound through
``festival_ingest.logging_config.log_context`` (``run_id``, ``film_id``) are
folded in at emit time, explicit attributes win on conflict. Raw feed
payloads, page HTML and synopses never leave the process: any attribute
whose key mentions them is replaced with ``[redacted]``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import structlog

TELEMETRY_LOGGER_NAME = "festival_ingest.telemetry"

TelemetryEvent = Literal[
    "ingest.run.started",
    "ingest.run.finished",
    "ingest.run.failed",
    "ingest.page.persisted",
    "enrich.film.matched",
    "enrich.film.unmatched",
    "enrich.film.collision",
    "enrich.film.error",
    "enrich.batch.finished",
]
TelemetryValue = bool | int | float | str | None

REDACTED = "[redacted]"
_REDACTED_KEY_FRAGMENTS = (
    "api_key",
    "authorization",
    "cookie",
    "html",
    "payload",
    "secret",
    "synopsis",
    "token",
)
_MAX_TEXT_LENGTH = 160


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        ...


class StructuredLogTelemetrySink:
    """Writes each event as one line on the telemetry logger."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger(TELEMETRY_LOGGER_NAME)

    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **attributes)


@dataclass(frozen=True)
class TelemetryClient:
    enabled: bool
    sink: TelemetrySink | None = None

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False)

    def emit(self, event_name: TelemetryEvent, **attributes: Any) -> None:
        if not self.enabled or self.sink is None:
            return
        bound = structlog.contextvars.get_contextvars()
        self.sink.emit(
            event_name=event_name,
            attributes=sanitize_attributes({**bound, **attributes}),
        )


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if enabled and sink == "log":
        return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())
    return TelemetryClient.disabled()


def sanitize_attributes(attributes: Mapping[str, Any]) -> dict[str, TelemetryValue]:
    sanitized: dict[str, TelemetryValue] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if key:
            sanitized[key] = REDACTED if _is_redacted(key) else _flatten(raw_value)
    return sanitized


def _is_redacted(key: str) -> bool:
    return any(fragment in key for fragment in _REDACTED_KEY_FRAGMENTS)


def _flatten(value: Any) -> TelemetryValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, str):
        text = " ".join(value.split())
        return text if len(text) <= _MAX_TEXT_LENGTH else f"{text[:_MAX_TEXT_LENGTH]}..."
    # Containers and records are summarised by type name only.
    return type(value).__name__
