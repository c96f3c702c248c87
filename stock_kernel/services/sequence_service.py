"""
SequenceService -- gap-tolerant counters kept in locked rows.

Transfer numbers come from one counter row per tenant per calendar year
(``transfer_number:{tenant}:{year}``).  The row is read ``FOR UPDATE``, so
two transfers raised at the same moment queue on it and receive
consecutive values; a rolled-back transaction hands its value back.

The counter row is the only source of the next value.  Numbers are never
derived from ``MAX(transfer_number)``.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_kernel.logging_config import get_logger
from stock_kernel.models.sequence import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    """Allocates values from named counters.  Flushes, never commits."""

    TRANSFER_NUMBER = "transfer_number"

    def __init__(self, session: Session):
        self._session = session

    @classmethod
    def transfer_number_sequence(cls, tenant_id: UUID, year: int) -> str:
        return f"{cls.TRANSFER_NUMBER}:{tenant_id}:{year}"

    def next_transfer_value(self, tenant_id: UUID, year: int) -> int:
        return self.next_value(self.transfer_number_sequence(tenant_id, year))

    def next_value(self, sequence_name: str) -> int:
        """Increment ``sequence_name`` under a row lock and return the new value."""
        counter = self._lock(sequence_name) or self._create(sequence_name)
        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def _lock(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _create(self, sequence_name: str) -> SequenceCounter:
        """
        Insert a zeroed counter inside a savepoint.

        Two transactions can both miss the row on first use.  The loser's
        insert fails on the unique name; its savepoint is rolled back and
        it waits on the winner's row instead.
        """
        savepoint = self._session.begin_nested()
        try:
            counter = SequenceCounter(name=sequence_name, current_value=0)
            self._session.add(counter)
            self._session.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("sequence_counter_race_retry", extra={"sequence_name": sequence_name})
            counter = self._lock(sequence_name)
            if counter is None:
                raise
            return counter
        savepoint.commit()
        return counter
