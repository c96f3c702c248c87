"""
Sequence counter table.

Each row is a named counter with its current value.  The row is locked
``FOR UPDATE`` on every allocation so numbers are strictly monotonic
under concurrency; see ``services/sequence_service.py``.
"""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    # e.g. "transfer_number:<tenant_id>:2025"
    name: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(nullable=False, default=0)
