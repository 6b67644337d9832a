"""
Security telemetry: non-per-record events such as denials and tamper.

Emission is fire-and-forget. A sink must never raise into the request path;
failures inside a sink are logged and dropped.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

import structlog
from prometheus_client import Counter

_log = structlog.get_logger(__name__)

SECURITY_EVENTS = Counter(
    "echovault_security_events_total",
    "Security telemetry events by kind",
    ["kind"],
)


class SecurityEventKind(StrEnum):
    ACCESS_DENIED = "access_denied"
    INTEGRITY_FAILURE = "integrity_failure"
    KEY_NOT_FOUND = "key_not_found"
    AUDIT_WRITE_FAILED = "audit_write_failed"


@dataclass(frozen=True)
class SecurityEvent:
    kind: SecurityEventKind
    actor_id: str | None = None
    resource_id: str | None = None
    reason: str | None = None
    correlation_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class TelemetrySink(Protocol):
    def emit(self, event: SecurityEvent) -> None: ...


class LogTelemetrySink:
    """Writes events to the security log and bumps a Prometheus counter."""

    def __init__(self, logger_name: str = "echovault.security") -> None:
        self._log = structlog.get_logger(logger_name)

    def emit(self, event: SecurityEvent) -> None:
        try:
            SECURITY_EVENTS.labels(kind=event.kind.value).inc()
            payload = asdict(event)
            payload["kind"] = event.kind.value
            payload["occurred_at"] = event.occurred_at.isoformat()
            self._log.warning("security_event", **payload)
        except Exception as exc:  # noqa: BLE001
            _log.error("telemetry_emit_failed", kind=event.kind.value, error=str(exc))


class MemoryTelemetrySink:
    """Keeps events in memory; used by tests and local tooling."""

    def __init__(self) -> None:
        self.events: list[SecurityEvent] = []

    def emit(self, event: SecurityEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: SecurityEventKind) -> list[SecurityEvent]:
        return [e for e in self.events if e.kind == kind]

    def clear(self) -> None:
        self.events.clear()
