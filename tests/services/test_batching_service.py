"""
BatchingService tests.

Tests cover:
- Multi-batch shipment with sequential batch numbers
- Status derivation: APPROVED until fully shipped, IN_TRANSIT, COMPLETED
- Receiving after a partial shipment
- Cost flow from source lots to destination lots
- All-or-nothing batches on insufficient stock
- Idempotent replay by key, even with an out-of-date version
- Membership, quantity and key validation
"""

import pytest

from stock_kernel.domain.transfer import BatchLine
from stock_kernel.domain.values import TransferStatus
from stock_kernel.exceptions import (
    IllegalTransitionError,
    InsufficientStockError,
    PermissionDeniedError,
    StaleVersionError,
    ValidationError,
)
from stock_kernel.selectors.ledger_selector import LedgerSelector


@pytest.fixture
def approved(world, seed_stock, create_transfer, approve_transfer):
    """10 widgets approved; source holds lots [5 @ 100, 10 @ 120]."""
    seed_stock(world.source, world.widget, 5, 100)
    seed_stock(world.source, world.widget, 10, 120)
    return approve_transfer(create_transfer(items=[(world.widget, 10)]))


@pytest.fixture
def open_lots(run, world):
    def _lots(branch_id, product_id):
        return run(
            lambda uow: LedgerSelector(uow.session).get_stock_level(
                world.tenant_id, branch_id, product_id,
            )
        ).open_lots

    return _lots


class TestShip:
    def test_partial_batches_are_numbered(self, world, approved, ship, stock_level):
        item = approved.items[0]

        first = ship(approved, lines=[BatchLine(item.id, 4)])
        assert first.batch.batch_number == 1
        assert first.transfer.status == TransferStatus.APPROVED
        assert first.transfer.items[0].qty_shipped == 4

        second = ship(first.transfer)
        assert second.batch.batch_number == 2
        assert second.batch.lines[0].qty == 6
        assert second.transfer.status == TransferStatus.IN_TRANSIT
        assert len(second.transfer.shipment_batches) == 2
        assert stock_level(world.source, world.widget) == 5

    def test_batch_records_lots_drawn(self, approved, ship):
        item = approved.items[0]
        result = ship(approved, lines=[BatchLine(item.id, 7)])

        line = result.batch.lines[0]
        assert [(lot.qty, lot.unit_cost_minor) for lot in line.lots] == [(5, 100), (2, 120)]
        # 740 / 7 rounds half-up to 106
        assert line.unit_cost_minor == 106
        assert result.transfer.items[0].avg_unit_cost_minor == 106

    def test_insufficient_stock_rolls_back_batch(
        self, world, seed_stock, create_transfer, approve_transfer, ship, fetch, stock_level,
    ):
        seed_stock(world.source, world.widget, 20, 100)
        transfer = approve_transfer(
            create_transfer(items=[(world.widget, 10), (world.gadget, 2)])
        )

        with pytest.raises(InsufficientStockError) as exc_info:
            ship(transfer)
        assert exc_info.value.product_id == str(world.gadget)

        assert stock_level(world.source, world.widget) == 20
        reloaded = fetch(transfer.id)
        assert reloaded.entity_version == transfer.entity_version
        assert all(item.qty_shipped == 0 for item in reloaded.items)
        assert reloaded.shipment_batches == ()

    def test_cannot_ship_before_approval(self, world, create_transfer, ship):
        with pytest.raises(IllegalTransitionError):
            ship(create_transfer())

    def test_over_shipment_rejected(self, approved, ship):
        with pytest.raises(ValidationError) as exc_info:
            ship(approved, lines=[BatchLine(approved.items[0].id, 11)])
        assert exc_info.value.field == "lines.qty"

    def test_destination_member_cannot_ship(self, world, approved, ship):
        with pytest.raises(PermissionDeniedError):
            ship(approved, actor=world.destination_user)

    def test_stale_version(self, approved, ship):
        with pytest.raises(StaleVersionError):
            ship(approved, version=approved.entity_version - 1)

    @pytest.mark.parametrize("key", ["", "   ", "k" * 201])
    def test_bad_idempotency_key(self, approved, ship, key):
        with pytest.raises(ValidationError) as exc_info:
            ship(approved, idempotency_key=key)
        assert exc_info.value.field == "idempotency_key"


class TestShipReplay:
    def test_repeated_key_returns_original_batch(self, world, approved, ship, stock_level):
        first = ship(approved, lines=[BatchLine(approved.items[0].id, 3)], idempotency_key="k-1")

        # Same request retried with the version it originally carried.
        again = ship(approved, lines=[BatchLine(approved.items[0].id, 3)], idempotency_key="k-1")

        assert again.replayed
        assert again.batch.id == first.batch.id
        assert again.transfer.entity_version == first.transfer.entity_version
        assert stock_level(world.source, world.widget) == 12

    def test_new_key_is_a_new_batch(self, approved, ship):
        first = ship(approved, lines=[BatchLine(approved.items[0].id, 3)], idempotency_key="a")
        second = ship(
            first.transfer, lines=[BatchLine(approved.items[0].id, 3)], idempotency_key="b",
        )
        assert not second.replayed
        assert second.batch.batch_number == 2

    def test_replay_logged(self, approved, ship, captured_logs):
        ship(approved, idempotency_key="k-1")
        ship(approved, idempotency_key="k-1")
        messages = [r["message"] for r in captured_logs()]
        assert "transfer_shipped" in messages
        assert "shipment_replayed" in messages


class TestReceive:
    def test_receive_after_partial_shipment(self, world, approved, ship, receive, stock_level):
        shipped = ship(approved, lines=[BatchLine(approved.items[0].id, 4)])

        received = receive(shipped.transfer)

        assert received.batch.batch_number == 1
        assert received.transfer.status == TransferStatus.APPROVED
        assert received.transfer.items[0].qty_received == 4
        assert stock_level(world.destination, world.widget) == 4

    def test_full_flow_completes(self, world, approved, ship, receive):
        shipped = ship(approved)
        assert shipped.transfer.status == TransferStatus.IN_TRANSIT

        partial = receive(shipped.transfer, lines=[BatchLine(approved.items[0].id, 3)])
        assert partial.transfer.status == TransferStatus.IN_TRANSIT
        assert partial.transfer.completed_at is None

        done = receive(partial.transfer)
        assert done.batch.batch_number == 2
        assert done.transfer.status == TransferStatus.COMPLETED
        assert done.transfer.completed_at is not None

    def test_receipt_lot_priced_at_shipped_average(
        self, world, approved, ship, receive, open_lots,
    ):
        shipped = ship(approved, lines=[BatchLine(approved.items[0].id, 7)])
        received = receive(shipped.transfer)

        lots = open_lots(world.destination, world.widget)
        assert [(lot.remaining_qty, lot.unit_cost_minor) for lot in lots] == [(7, 106)]
        assert received.batch.lines[0].lot_id == lots[0].id
        assert lots[0].source_reference_id == approved.id

    def test_nothing_outstanding(self, approved, receive):
        with pytest.raises(IllegalTransitionError):
            receive(approved)

    def test_over_receipt_rejected(self, approved, ship, receive):
        shipped = ship(approved, lines=[BatchLine(approved.items[0].id, 2)])
        with pytest.raises(ValidationError):
            receive(shipped.transfer, lines=[BatchLine(approved.items[0].id, 3)])

    def test_source_member_cannot_receive(self, world, approved, ship, receive):
        shipped = ship(approved)
        with pytest.raises(PermissionDeniedError):
            receive(shipped.transfer, actor=world.source_user)

    def test_receipt_keys_are_separate_from_shipment_keys(self, approved, ship, receive):
        shipped = ship(approved, idempotency_key="same")
        received = receive(shipped.transfer, idempotency_key="same")
        assert not received.replayed

    def test_receipt_replay(self, world, approved, ship, receive, stock_level):
        shipped = ship(approved)
        first = receive(shipped.transfer, idempotency_key="r-1")
        again = receive(shipped.transfer, idempotency_key="r-1")

        assert again.replayed
        assert again.batch.id == first.batch.id
        assert stock_level(world.destination, world.widget) == 10
