"""
Module: stock_kernel.db.unit_of_work
Responsibility: The transaction-scoped handle passed to every service
    call.  Wraps one SQLAlchemy ``Session`` and buffers audit events
    until the transaction has committed.
Architecture position: Kernel > DB.  Created only by
    ``Storage.unit_of_work()``; services receive ``uow.session``.

Invariants enforced:
    - Audit events recorded during a transaction are delivered to the
      AuditWriter only after COMMIT succeeds.  A rolled-back transaction
      delivers nothing, so rejected attempts never produce audit rows.
    - Buffered events are delivered in recording order.

Failure modes:
    - An AuditWriter exception during delivery propagates to the caller.
      The state change is already durable at that point.
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from stock_kernel.domain.audit import AuditEvent
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.ports import AuditWriter
from stock_kernel.logging_config import get_logger

logger = get_logger("db.unit_of_work")


class UnitOfWork:
    """
    One atomic unit of work.

    Contract:
        Everything done through ``session`` commits or rolls back as one.
        The owning ``Storage.unit_of_work()`` context manager decides
        which; the UnitOfWork itself never commits.
    """

    def __init__(
        self,
        session: Session,
        audit_writer: AuditWriter | None = None,
        clock: Clock | None = None,
    ):
        self.session = session
        self.clock = clock or SystemClock()
        self._audit_writer = audit_writer
        self._pending: list[AuditEvent] = []

    @property
    def pending_audit_events(self) -> tuple[AuditEvent, ...]:
        return tuple(self._pending)

    def record_audit(self, event: AuditEvent) -> None:
        """Buffer an audit event for delivery after commit."""
        self._pending.append(event)

    def publish(self) -> int:
        """Deliver buffered events.  Called once, after COMMIT."""
        events, self._pending = self._pending, []
        if self._audit_writer is None:
            return 0
        for event in events:
            self._audit_writer.write_audit_event(event)
        if events:
            logger.debug("audit_events_published", extra={"count": len(events)})
        return len(events)

    def discard(self) -> None:
        """Drop buffered events.  Called on rollback."""
        if self._pending:
            logger.debug("audit_events_discarded", extra={"count": len(self._pending)})
        self._pending.clear()
