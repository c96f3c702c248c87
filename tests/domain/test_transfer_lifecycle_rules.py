"""
Pure transfer lifecycle rules.

Tests cover:
- Legal transitions and terminal states
- Fulfilment status derivation after shipment and receipt batches
- Batch line resolution (defaults, bounds, duplicates)
- Approved quantity overrides
- Branch roles for PUSH and PULL
- Transfer number formatting
"""

from dataclasses import dataclass
from uuid import UUID, uuid4

import pytest

from stock_kernel.domain.transfer import (
    TERMINAL_STATUSES,
    ApprovedQty,
    BatchLine,
    NewTransfer,
    TransferItemRequest,
    can_transition,
    derive_fulfilment_status,
    format_transfer_number,
    initiating_branch,
    require_status,
    resolve_approved_quantities,
    resolve_receive_lines,
    resolve_ship_lines,
    reviewing_branch,
    validate_new_transfer,
)
from stock_kernel.domain.values import InitiationType, TransferStatus
from stock_kernel.exceptions import IllegalTransitionError, ValidationError


@dataclass
class Item:
    id: UUID
    qty_requested: int
    qty_approved: int | None = None
    qty_shipped: int = 0
    qty_received: int = 0


def item(requested=10, approved=None, shipped=0, received=0):
    return Item(uuid4(), requested, approved, shipped, received)


class TestTransitions:
    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_states_have_no_exits(self, terminal):
        for target in TransferStatus:
            assert not can_transition(terminal, target)

    def test_requested_exits(self):
        assert can_transition(TransferStatus.REQUESTED, TransferStatus.APPROVED)
        assert can_transition(TransferStatus.REQUESTED, TransferStatus.REJECTED)
        assert can_transition(TransferStatus.REQUESTED, TransferStatus.CANCELLED)
        assert not can_transition(TransferStatus.REQUESTED, TransferStatus.IN_TRANSIT)

    def test_in_transit_cannot_be_cancelled(self):
        assert not can_transition(TransferStatus.IN_TRANSIT, TransferStatus.CANCELLED)

    def test_require_status_raises_with_context(self):
        tid = uuid4()
        with pytest.raises(IllegalTransitionError) as exc_info:
            require_status(tid, TransferStatus.COMPLETED, {TransferStatus.APPROVED}, "ship")
        assert exc_info.value.current_status == "COMPLETED"
        assert exc_info.value.operation == "ship"


class TestFulfilmentStatus:
    def test_partial_shipment_stays_approved(self):
        items = [item(approved=10, shipped=4)]
        assert derive_fulfilment_status(TransferStatus.APPROVED, items) == TransferStatus.APPROVED

    def test_full_shipment_is_in_transit(self):
        items = [item(approved=10, shipped=10)]
        assert (
            derive_fulfilment_status(TransferStatus.APPROVED, items)
            == TransferStatus.IN_TRANSIT
        )

    def test_full_shipment_and_receipt_completes(self):
        items = [item(approved=10, shipped=10, received=10)]
        assert (
            derive_fulfilment_status(TransferStatus.IN_TRANSIT, items)
            == TransferStatus.COMPLETED
        )

    def test_receipt_before_full_shipment_does_not_complete(self):
        items = [item(approved=10, shipped=4, received=4)]
        assert derive_fulfilment_status(TransferStatus.APPROVED, items) == TransferStatus.APPROVED

    def test_zero_approved_item_counts_as_shipped(self):
        items = [item(approved=0), item(approved=5, shipped=5)]
        assert (
            derive_fulfilment_status(TransferStatus.APPROVED, items)
            == TransferStatus.IN_TRANSIT
        )

    def test_other_statuses_unchanged(self):
        items = [item(approved=10, shipped=10, received=10)]
        assert derive_fulfilment_status(TransferStatus.REQUESTED, items) == TransferStatus.REQUESTED


class TestResolveLines:
    def test_default_ships_everything_remaining(self):
        a = item(approved=10, shipped=3)
        b = item(approved=5, shipped=5)
        assert resolve_ship_lines([a, b], None) == [(a, 7)]

    def test_default_with_nothing_remaining(self):
        with pytest.raises(ValidationError):
            resolve_ship_lines([item(approved=5, shipped=5)], None)

    def test_explicit_line_within_remainder(self):
        a = item(approved=10, shipped=3)
        assert resolve_ship_lines([a], [BatchLine(a.id, 7)]) == [(a, 7)]

    def test_over_shipment_rejected(self):
        a = item(approved=10, shipped=3)
        with pytest.raises(ValidationError) as exc_info:
            resolve_ship_lines([a], [BatchLine(a.id, 8)])
        assert exc_info.value.field == "lines.qty"

    def test_unknown_item_rejected(self):
        with pytest.raises(ValidationError):
            resolve_ship_lines([item(approved=10)], [BatchLine(uuid4(), 1)])

    def test_duplicate_item_rejected(self):
        a = item(approved=10)
        with pytest.raises(ValidationError):
            resolve_ship_lines([a], [BatchLine(a.id, 1), BatchLine(a.id, 1)])

    def test_empty_explicit_lines_rejected(self):
        with pytest.raises(ValidationError):
            resolve_ship_lines([item(approved=10)], [])

    @pytest.mark.parametrize("qty", [0, -1])
    def test_non_positive_line_rejected(self, qty):
        a = item(approved=10)
        with pytest.raises(ValidationError):
            resolve_ship_lines([a], [BatchLine(a.id, qty)])

    def test_over_receipt_rejected(self):
        a = item(approved=10, shipped=4, received=1)
        with pytest.raises(ValidationError):
            resolve_receive_lines([a], [BatchLine(a.id, 4)])

    def test_default_receives_in_transit_quantity(self):
        a = item(approved=10, shipped=4, received=1)
        assert resolve_receive_lines([a], None) == [(a, 3)]


class TestApprovedQuantities:
    def test_defaults_to_requested(self):
        a, b = item(requested=10), item(requested=3)
        assert resolve_approved_quantities([a, b], None) == {a.id: 10, b.id: 3}

    def test_override_within_bounds(self):
        a, b = item(requested=10), item(requested=3)
        approved = resolve_approved_quantities([a, b], [ApprovedQty(a.id, 6)])
        assert approved == {a.id: 6, b.id: 3}

    def test_override_above_requested_rejected(self):
        a = item(requested=10)
        with pytest.raises(ValidationError):
            resolve_approved_quantities([a], [ApprovedQty(a.id, 11)])

    def test_everything_zero_rejected(self):
        a = item(requested=10)
        with pytest.raises(ValidationError):
            resolve_approved_quantities([a], [ApprovedQty(a.id, 0)])


class TestNewTransferValidation:
    def _request(self, **kwargs):
        defaults = dict(
            source_branch_id=uuid4(),
            destination_branch_id=uuid4(),
            items=(TransferItemRequest(uuid4(), 1),),
        )
        defaults.update(kwargs)
        return NewTransfer(**defaults)

    def test_same_branch_rejected(self):
        branch = uuid4()
        with pytest.raises(ValidationError) as exc_info:
            validate_new_transfer(
                self._request(source_branch_id=branch, destination_branch_id=branch)
            )
        assert exc_info.value.field == "destination_branch_id"

    def test_no_items_rejected(self):
        with pytest.raises(ValidationError):
            validate_new_transfer(self._request(items=()))

    def test_duplicate_product_rejected(self):
        pid = uuid4()
        with pytest.raises(ValidationError):
            validate_new_transfer(
                self._request(items=(TransferItemRequest(pid, 1), TransferItemRequest(pid, 2)))
            )

    def test_non_positive_qty_rejected(self):
        with pytest.raises(ValidationError):
            validate_new_transfer(self._request(items=(TransferItemRequest(uuid4(), 0),)))


class TestBranchRoles:
    def test_push_is_reviewed_by_destination(self):
        src, dst = uuid4(), uuid4()
        assert initiating_branch(InitiationType.PUSH, src, dst) == src
        assert reviewing_branch(InitiationType.PUSH, src, dst) == dst

    def test_pull_is_reviewed_by_source(self):
        src, dst = uuid4(), uuid4()
        assert initiating_branch(InitiationType.PULL, src, dst) == dst
        assert reviewing_branch(InitiationType.PULL, src, dst) == src


def test_transfer_number_format():
    assert format_transfer_number("TRF", 2025, 1) == "TRF-2025-0001"
    assert format_transfer_number("TRF", 2025, 12345) == "TRF-2025-12345"
