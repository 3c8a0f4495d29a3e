from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import structlog

TELEMETRY_LOGGER_NAME = "content_pulse.telemetry"

# Owner-supplied text and provider credentials never leave the process.
_SENSITIVE_ATTRIBUTE_TOKENS: frozenset[str] = frozenset(
    {
        "api_key",
        "authorization",
        "caption",
        "cookie",
        "link",
        "payload",
        "secret",
        "token",
        "url",
    }
)
_MAX_STRING_LENGTH = 160


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        ...


class NoOpTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        _ = (event_name, attributes)


class StructuredLogTelemetrySink:
    def __init__(self) -> None:
        self._logger = structlog.get_logger(TELEMETRY_LOGGER_NAME)

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **dict(attributes))


@dataclass(frozen=True)
class TelemetryClient:
    enabled: bool
    sink: TelemetrySink

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NoOpTelemetrySink())

    def emit(self, event_name: str, **attributes: Any) -> None:
        if not self.enabled:
            return
        self.sink.emit(event_name=event_name, attributes=_sanitize_attributes(attributes))

    @contextmanager
    def span(self, event_prefix: str, **attributes: Any) -> Iterator[dict[str, Any]]:
        """Emit ``<prefix>.start`` / ``.finish`` / ``.error`` around a block.

        Keys the block adds to the yielded dict are attached to the finish event.
        """
        started_at = time.perf_counter()
        extra: dict[str, Any] = {}
        self.emit(f"{event_prefix}.start", **attributes)
        try:
            yield extra
        except Exception as exc:
            self.emit(
                f"{event_prefix}.error",
                **attributes,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            raise
        self.emit(
            f"{event_prefix}.finish",
            **attributes,
            **extra,
            duration_ms=int((time.perf_counter() - started_at) * 1000),
        )


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if not enabled or sink == "none":
        return TelemetryClient.disabled()
    if sink == "log":
        return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())

    logging.getLogger(TELEMETRY_LOGGER_NAME).warning(
        "unsupported telemetry sink requested; disabling telemetry sink=%s",
        sink,
    )
    return TelemetryClient.disabled()


def _sanitize_attributes(
    attributes: Mapping[str, Any],
) -> dict[str, bool | int | float | str | None]:
    sanitized: dict[str, bool | int | float | str | None] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        if any(token in key for token in _SENSITIVE_ATTRIBUTE_TOKENS):
            sanitized[key] = "[redacted]"
            continue
        sanitized[key] = _sanitize_value(raw_value)
    return sanitized


def _sanitize_value(value: Any) -> bool | int | float | str | None:
    if value is None:
        return None
    if isinstance(value, bool | int | float):
        return value
    if isinstance(value, str):
        compact = " ".join(value.split())
        if len(compact) <= _MAX_STRING_LENGTH:
            return compact
        return f"{compact[:_MAX_STRING_LENGTH]}..."
    return str(type(value).__name__)
