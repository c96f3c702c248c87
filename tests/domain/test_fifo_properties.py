"""
Property-based checks for FIFO planning.

Random lot layers and draw sizes; for every draw that fits:
- lines sum to the requested quantity
- no lot gives more than it holds
- only the last lot touched may be drawn partially
- a draw larger than the remainder raises and yields nothing
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from hypothesis import assume, given, settings
from hypothesis import strategies as st

from stock_kernel.domain.costing import fifo_order, plan_fifo_consumption, total_cost
from stock_kernel.domain.inventory import StockLot
from stock_kernel.exceptions import InsufficientStockError

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
TENANT = uuid4()
BRANCH = uuid4()
PRODUCT = uuid4()


@st.composite
def lot_layers(draw):
    """A list of lots with random age offsets, remainders and costs."""
    specs = draw(
        st.lists(
            st.tuples(
                st.integers(min_value=0, max_value=48),
                st.integers(min_value=0, max_value=50),
                st.integers(min_value=0, max_value=10_000),
            ),
            min_size=1,
            max_size=8,
        )
    )
    lots = []
    for sequence, (hours, remaining, cost) in enumerate(specs, start=1):
        lots.append(
            StockLot(
                id=uuid4(),
                tenant_id=TENANT,
                branch_id=BRANCH,
                product_id=PRODUCT,
                lot_sequence=sequence,
                received_at=T0 + timedelta(hours=hours),
                original_qty=remaining + 5,
                remaining_qty=remaining,
                unit_cost_minor=cost,
            )
        )
    return lots


@settings(max_examples=200, deadline=None)
@given(lots=lot_layers(), data=st.data())
def test_plan_covers_request_oldest_first(lots, data):
    available = sum(lot.remaining_qty for lot in lots)
    assume(available > 0)
    qty = data.draw(st.integers(min_value=1, max_value=available))

    lines = plan_fifo_consumption(lots, qty, branch_id=BRANCH, product_id=PRODUCT)

    assert sum(line.qty for line in lines) == qty
    by_id = {lot.id: lot for lot in lots}
    assert all(0 < line.qty <= by_id[line.lot_id].remaining_qty for line in lines)

    eligible = [lot for lot in fifo_order(lots) if lot.remaining_qty > 0]
    assert [line.lot_id for line in lines] == [lot.id for lot in eligible[: len(lines)]]
    for line in lines[:-1]:
        assert line.qty == by_id[line.lot_id].remaining_qty

    assert total_cost(lines) == sum(
        line.qty * by_id[line.lot_id].unit_cost_minor for line in lines
    )


@settings(max_examples=100, deadline=None)
@given(lots=lot_layers(), excess=st.integers(min_value=1, max_value=100))
def test_shortfall_always_raises(lots, excess):
    available = sum(lot.remaining_qty for lot in lots)

    with pytest.raises(InsufficientStockError) as exc_info:
        plan_fifo_consumption(
            lots, available + excess, branch_id=BRANCH, product_id=PRODUCT,
        )

    assert exc_info.value.available == available
    assert exc_info.value.requested == available + excess
