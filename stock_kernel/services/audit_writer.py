"""
Audit writers -- default ``AuditWriter`` implementations.

``LoggingAuditWriter`` emits each committed audit event as one structured
``audit_event`` log record.  It is the default when the embedding
application supplies no writer of its own.  ``InMemoryAuditWriter``
keeps events in a list for inspection.
"""

from __future__ import annotations

import logging
from threading import Lock

from stock_kernel.domain.audit import AuditEvent, snapshot_to_dict
from stock_kernel.logging_config import get_logger


def audit_event_to_dict(event: AuditEvent) -> dict:
    return {
        "tenant_id": str(event.tenant_id),
        "actor_user_id": str(event.actor_user_id),
        "entity_type": event.entity_type.value,
        "entity_id": str(event.entity_id),
        "entity_name": event.entity_name,
        "action": event.action.value,
        "before": snapshot_to_dict(event.before),
        "after": snapshot_to_dict(event.after),
        "changed_fields": list(event.changed_fields),
        "occurred_at": event.occurred_at.isoformat(),
        "correlation_id": event.correlation_id,
    }


class LoggingAuditWriter:
    def __init__(self, logger: logging.Logger | None = None):
        self._logger = logger or get_logger("audit")

    def write_audit_event(self, event: AuditEvent) -> None:
        self._logger.info("audit_event", extra=audit_event_to_dict(event))


class InMemoryAuditWriter:
    """Thread-safe list of delivered events."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._events: list[AuditEvent] = []

    def write_audit_event(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> tuple[AuditEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
