"""Security event sinks."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

AUDIT_LOGGER_NAME = "tracas_guard.audit"

_SEVERITY_LEVELS = {
    "info": logging.INFO,
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


@dataclass(frozen=True)
class SecurityEvent:
    """One auditable security decision."""

    event_kind: str
    severity: str = "info"
    address: str | None = None
    path: str | None = None
    method: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class AuditSink(Protocol):
    """Anything that accepts security events."""

    def emit(self, event: SecurityEvent) -> None: ...


class LoggingAuditSink:
    """Writes events to the audit logger at a level derived from severity."""

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME) -> None:
        self._logger = logging.getLogger(logger_name)

    def emit(self, event: SecurityEvent) -> None:
        level = _SEVERITY_LEVELS.get(event.severity, logging.WARNING)
        self._logger.log(
            level,
            "%s severity=%s address=%s method=%s path=%s detail=%s",
            event.event_kind,
            event.severity,
            event.address,
            event.method,
            event.path,
            event.detail,
            extra={"security_event": event.as_dict()},
        )


class MemoryAuditSink:
    """Keeps the most recent events in memory for inspection."""

    def __init__(self, maxlen: int = 1000) -> None:
        self._events: deque[SecurityEvent] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def emit(self, event: SecurityEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[SecurityEvent]:
        with self._lock:
            return list(self._events)

    def of_kind(self, event_kind: str) -> list[SecurityEvent]:
        return [event for event in self.events if event.event_kind == event_kind]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class FanOutAuditSink:
    """Forwards each event to several sinks."""

    def __init__(self, *sinks: AuditSink) -> None:
        self._sinks = sinks

    def emit(self, event: SecurityEvent) -> None:
        for sink in self._sinks:
            sink.emit(event)
