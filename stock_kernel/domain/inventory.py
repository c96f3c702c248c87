"""
Inventory ledger value objects (``stock_kernel.domain.inventory``).

Responsibility
--------------
Frozen DTOs returned by the Branch Inventory Ledger: lots, ledger
entries, consumption results and stock levels.  ORM models convert to
these via ``to_dto()``; nothing outside ``services/`` and ``selectors/``
ever sees an ORM object.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from stock_kernel.domain.values import MovementKind


@dataclass(frozen=True, slots=True)
class StockLot:
    """A FIFO cost layer at one branch for one product."""

    id: UUID
    tenant_id: UUID
    branch_id: UUID
    product_id: UUID
    lot_sequence: int
    received_at: datetime
    original_qty: int
    remaining_qty: int
    unit_cost_minor: int
    source_reference_id: UUID | None = None

    @property
    def is_dormant(self) -> bool:
        return self.remaining_qty == 0


@dataclass(frozen=True, slots=True)
class LotRef:
    """Handle to a newly created lot."""

    lot_id: UUID
    branch_id: UUID
    product_id: UUID
    qty: int
    unit_cost_minor: int
    ledger_entry_id: UUID


@dataclass(frozen=True, slots=True)
class ConsumptionLine:
    """Quantity taken from one lot by a single consume call."""

    lot_id: UUID
    qty: int
    unit_cost_minor: int

    @property
    def cost_minor(self) -> int:
        return self.qty * self.unit_cost_minor


@dataclass(frozen=True, slots=True)
class ConsumptionResult:
    """Outcome of a FIFO consume: one line per lot touched, oldest first."""

    lines: tuple[ConsumptionLine, ...]
    total_cost_minor: int
    ledger_entry_ids: tuple[UUID, ...] = ()

    @property
    def total_qty(self) -> int:
        return sum(line.qty for line in self.lines)


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """Immutable record of one stock movement against one lot."""

    id: UUID
    tenant_id: UUID
    branch_id: UUID
    product_id: UUID
    kind: MovementKind
    qty_delta: int
    unit_cost_minor: int | None
    lot_id: UUID | None
    occurred_at: datetime
    reference_id: UUID | None = None
    reason: str | None = None
    actor_user_id: UUID | None = None


@dataclass(frozen=True, slots=True)
class StockLevel:
    """On-hand quantity and open lots for one branch/product."""

    branch_id: UUID
    product_id: UUID
    qty_on_hand: int
    open_lots: tuple[StockLot, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class AdjustmentResult:
    """Outcome of ``adjust_stock``: exactly one of the two is populated."""

    qty_delta: int
    lot: LotRef | None = None
    consumption: ConsumptionResult | None = None


@dataclass(frozen=True)
class LedgerFilters:
    branch_id: UUID | None = None
    product_id: UUID | None = None
    kinds: tuple[MovementKind, ...] = ()
    occurred_from: datetime | None = None
    occurred_to: datetime | None = None
