"""
FIFO allocation and cost-basis arithmetic.

Responsibility:
    Pure functions that decide WHICH lots a consume call draws from and
    what cost flows with the goods.  The ledger service does the locking
    and the writes; this module does the arithmetic.

Invariants enforced:
    - FIFO: lots are drawn strictly oldest ``received_at`` first, ties
      broken by the per-aggregate lot sequence.
    - All-or-nothing: ``plan_fifo_consumption`` raises before producing
      any line when the eligible remainder is short.
    - Costs are integer minor units.  Averages round half-up, never
      banker's rounding.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Sequence

from stock_kernel.domain.inventory import ConsumptionLine, StockLot
from stock_kernel.exceptions import InsufficientStockError, ValidationError


def fifo_order(lots: Iterable[StockLot]) -> list[StockLot]:
    """Return lots in consumption order."""
    return sorted(lots, key=lambda lot: (lot.received_at, lot.lot_sequence))


def plan_fifo_consumption(
    lots: Sequence[StockLot],
    qty: int,
    *,
    branch_id: object,
    product_id: object,
) -> tuple[ConsumptionLine, ...]:
    """
    Decide how ``qty`` is drawn from ``lots``.

    Preconditions:
        ``lots`` all belong to the same branch/product.
    Postconditions:
        The returned lines sum to ``qty`` exactly and touch lots oldest
        first; dormant lots are skipped.
    Raises:
        ValidationError: qty is not positive.
        InsufficientStockError: total remainder is below ``qty``.
    """
    if qty <= 0:
        raise ValidationError(f"Quantity to consume must be positive, got {qty}", field="qty")

    ordered = [lot for lot in fifo_order(lots) if lot.remaining_qty > 0]
    available = sum(lot.remaining_qty for lot in ordered)
    if available < qty:
        raise InsufficientStockError(
            branch_id=str(branch_id),
            product_id=str(product_id),
            requested=qty,
            available=available,
        )

    lines: list[ConsumptionLine] = []
    outstanding = qty
    for lot in ordered:
        if outstanding == 0:
            break
        take = min(lot.remaining_qty, outstanding)
        lines.append(
            ConsumptionLine(lot_id=lot.id, qty=take, unit_cost_minor=lot.unit_cost_minor)
        )
        outstanding -= take
    return tuple(lines)


def total_cost(lines: Iterable[ConsumptionLine]) -> int:
    return sum(line.cost_minor for line in lines)


def weighted_average_cost(lines: Iterable[ConsumptionLine]) -> int:
    """round(sum(qty * cost) / sum(qty)), half-up.  Zero when empty."""
    qty = 0
    cost = 0
    for line in lines:
        qty += line.qty
        cost += line.cost_minor
    return average_unit_cost(cost, qty)


def average_unit_cost(total_cost_minor: int, qty: int) -> int:
    if qty <= 0:
        return 0
    return int(
        (Decimal(total_cost_minor) / Decimal(qty)).quantize(
            Decimal(1), rounding=ROUND_HALF_UP
        )
    )
