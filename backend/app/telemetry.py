from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

import structlog

TelemetryValue = bool | int | float | str | None

# Video descriptions carry maps links and admin credentials must never reach the log.
_REDACTED_KEY_PARTS = (
    "api_key", "authorization", "cookie", "cron", "description", "secret", "session", "token"
)
_MAX_STRING_LENGTH = 160


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        ...


class StructuredLogTelemetrySink:
    """Writes each event to the `mangan.telemetry` logger, which has its own file."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger("mangan.telemetry")

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **attributes)


@dataclass(frozen=True)
class TelemetryClient:
    enabled: bool
    sink: TelemetrySink | None
    context: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=None)

    def bind(self, **attributes: Any) -> TelemetryClient:
        """Return a client that adds `attributes` to every event it emits."""
        return TelemetryClient(
            enabled=self.enabled,
            sink=self.sink,
            context={**self.context, **attributes},
        )

    def emit(self, event_name: str, **attributes: Any) -> None:
        if not self.enabled or self.sink is None:
            return
        merged = {**self.context, **attributes}
        self.sink.emit(event_name=event_name, attributes=_clean_attributes(merged))


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if enabled and sink == "log":
        return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())
    return TelemetryClient.disabled()


def _clean_attributes(attributes: Mapping[str, Any]) -> dict[str, TelemetryValue]:
    cleaned: dict[str, TelemetryValue] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        if any(part in key for part in _REDACTED_KEY_PARTS):
            cleaned[key] = "[redacted]"
        elif raw_value is None or isinstance(raw_value, bool | int | float):
            cleaned[key] = raw_value
        elif isinstance(raw_value, str):
            text = " ".join(raw_value.split())
            if len(text) > _MAX_STRING_LENGTH:
                text = f"{text[:_MAX_STRING_LENGTH]}..."
            cleaned[key] = text
        else:
            # Containers and models are reduced to their type name.
            cleaned[key] = type(raw_value).__name__
    return cleaned
