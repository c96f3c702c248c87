"""
BatchingService -- partial, multi-batch shipment and receipt.

Responsibility:
    Records shipment and receipt batches against a transfer's items and
    moves the stock through the Branch Inventory Ledger in the same
    transaction: FIFO consumption at the source on ship, new cost lots at
    the destination on receive.

Architecture position:
    Kernel > Services -- imperative shell.  Called by the API facade.
    Line resolution and status derivation are pure functions in
    ``domain/transfer.py``; FIFO arithmetic is in ``domain/costing.py``.

Invariants enforced:
    - All-or-nothing batches: every line is resolved and validated before
      the ledger is touched, and any ledger failure aborts the whole unit
      of work.  No item quantity changes unless the batch commits.
    - Batch numbers start at 1 and increase by one per transfer and kind.
    - Cost flows with the goods: a receipt creates lots at the weighted
      average cost of the source lots the item was shipped from.
    - Idempotency: a batch carries an optional key, unique per transfer
      and kind.  A repeated key returns the original batch and writes
      nothing.  The key lookup happens under the transfer lock and before
      the version check, so a retried request still carrying the old
      version is answered rather than rejected.
    - Status is recomputed after every batch; COMPLETED requires full
      shipment AND full receipt.

Failure modes:
    - StaleVersionError, IllegalTransitionError (409).
    - ValidationError: unknown item, duplicate item, non-positive or
      excessive quantity.
    - InsufficientStockError: source branch cannot cover a line.
    - PermissionDeniedError: shipper not in source branch, receiver not
      in destination branch.
"""

from __future__ import annotations

from typing import Sequence
from uuid import UUID, uuid4

from sqlalchemy import select

from stock_kernel.db.unit_of_work import UnitOfWork
from stock_kernel.domain.audit import AuditAction
from stock_kernel.domain.costing import average_unit_cost, weighted_average_cost
from stock_kernel.domain.ports import Actor, Directory
from stock_kernel.domain.transfer import (
    RECEIVABLE_STATUSES,
    SHIPPABLE_STATUSES,
    BatchLine,
    ReceiptResult,
    ShipmentResult,
    derive_fulfilment_status,
    require_status,
    resolve_receive_lines,
    resolve_ship_lines,
)
from stock_kernel.domain.values import MovementKind, TransferStatus
from stock_kernel.exceptions import IllegalTransitionError, ValidationError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.transfer import (
    ReceiptBatchLineModel,
    ReceiptBatchModel,
    ShipmentBatchLineModel,
    ShipmentBatchModel,
    ShipmentLotLineModel,
    StockTransferModel,
)
from stock_kernel.services.base import BaseService
from stock_kernel.services.inventory_ledger_service import InventoryLedgerService
from stock_kernel.services.transfer_service import ENTITY, TransferService, transfer_snapshot

logger = get_logger("services.batching")

_MAX_IDEMPOTENCY_KEY = 200


def _check_key(idempotency_key: str | None) -> str | None:
    if idempotency_key is None:
        return None
    key = idempotency_key.strip()
    if not key or len(key) > _MAX_IDEMPOTENCY_KEY:
        raise ValidationError(
            f"idempotency_key must be 1..{_MAX_IDEMPOTENCY_KEY} characters",
            field="idempotency_key",
        )
    return key


class BatchingService(BaseService[StockTransferModel]):
    """
    Service for shipment and receipt batches.

    Contract:
        ``ship`` and ``receive`` take the caller's ``entity_version``, an
        optional list of ``BatchLine`` (``None`` means "everything that
        remains") and an optional idempotency key.  They return the
        hydrated transfer plus the batch.
    """

    def __init__(self, uow: UnitOfWork, directory: Directory):
        super().__init__(uow)
        self._directory = directory
        self._transfers = TransferService(uow, directory)
        self._ledger = InventoryLedgerService(uow, directory)

    def _replayed_shipment(self, transfer: StockTransferModel, key: str | None):
        if key is None:
            return None
        return self.session.execute(
            select(ShipmentBatchModel).where(
                ShipmentBatchModel.transfer_id == transfer.id,
                ShipmentBatchModel.idempotency_key == key,
            )
        ).scalar_one_or_none()

    def _replayed_receipt(self, transfer: StockTransferModel, key: str | None):
        if key is None:
            return None
        return self.session.execute(
            select(ReceiptBatchModel).where(
                ReceiptBatchModel.transfer_id == transfer.id,
                ReceiptBatchModel.idempotency_key == key,
            )
        ).scalar_one_or_none()

    def _require_member(self, actor: Actor, branch_id: UUID, role: str) -> None:
        self._transfers._require_member(actor, branch_id, role)

    # ------------------------------------------------------------------
    # Ship
    # ------------------------------------------------------------------

    def ship(
        self,
        actor: Actor,
        transfer_id: UUID,
        expected_version: int,
        lines: Sequence[BatchLine] | None = None,
        idempotency_key: str | None = None,
    ) -> ShipmentResult:
        """
        Ship one batch from the source branch.

        Postconditions:
            Every line's quantity has left the source FIFO; each item's
            ``qty_shipped`` and shipped cost have grown; status is
            APPROVED while anything remains to ship, else IN_TRANSIT.
        """
        key = _check_key(idempotency_key)
        transfer = self._transfers.lock_transfer(actor.tenant_id, transfer_id)

        existing = self._replayed_shipment(transfer, key)
        if existing is not None:
            logger.info(
                "shipment_replayed",
                extra={"transfer_id": str(transfer.id), "batch_number": existing.batch_number},
            )
            return ShipmentResult(transfer.to_dto(), existing.to_dto(), replayed=True)

        self._check_version(transfer, expected_version, ENTITY)
        require_status(transfer.id, TransferStatus(transfer.status), SHIPPABLE_STATUSES, "ship")
        self._require_member(actor, transfer.source_branch_id, "source")

        resolved = resolve_ship_lines(transfer.items, lines)
        before = transfer_snapshot(transfer)
        now = self._now()

        batch = ShipmentBatchModel(
            id=uuid4(),
            tenant_id=transfer.tenant_id,
            batch_number=max((b.batch_number for b in transfer.shipment_batches), default=0) + 1,
            shipped_at=now,
            shipped_by_user_id=actor.user_id,
            idempotency_key=key,
        )
        for item, qty in resolved:
            consumption = self._ledger.consume(
                transfer.tenant_id,
                transfer.source_branch_id,
                item.product_id,
                qty,
                kind=MovementKind.TRANSFER_OUT,
                reference_id=transfer.id,
                actor_user_id=actor.user_id,
            )
            batch.lines.append(
                ShipmentBatchLineModel(
                    tenant_id=transfer.tenant_id,
                    item_id=item.id,
                    product_id=item.product_id,
                    qty=qty,
                    unit_cost_minor=weighted_average_cost(consumption.lines),
                    lots=[
                        ShipmentLotLineModel(
                            tenant_id=transfer.tenant_id,
                            lot_id=line.lot_id,
                            qty=line.qty,
                            unit_cost_minor=line.unit_cost_minor,
                        )
                        for line in consumption.lines
                    ],
                )
            )
            item.qty_shipped += qty
            item.shipped_cost_minor += consumption.total_cost_minor
            item.avg_unit_cost_minor = average_unit_cost(
                item.shipped_cost_minor, item.qty_shipped,
            )

        transfer.shipment_batches.append(batch)
        transfer.status = derive_fulfilment_status(
            TransferStatus(transfer.status), transfer.items,
        ).value
        transfer.shipped_by_user_id = actor.user_id
        transfer.shipped_at = now
        self._bump(transfer)

        self._transfers._audit_transfer(actor, transfer, AuditAction.TRANSFER_SHIP, before)
        logger.info(
            "transfer_shipped",
            extra={
                "transfer_id": str(transfer.id),
                "batch_number": batch.batch_number,
                "line_count": len(resolved),
                "qty": sum(qty for _, qty in resolved),
                "status": transfer.status,
                "entity_version": transfer.entity_version,
            },
        )
        return ShipmentResult(transfer.to_dto(), batch.to_dto())

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    def receive(
        self,
        actor: Actor,
        transfer_id: UUID,
        expected_version: int,
        lines: Sequence[BatchLine] | None = None,
        idempotency_key: str | None = None,
    ) -> ReceiptResult:
        """
        Receive one batch at the destination branch.

        Legal once shipped quantity is outstanding: IN_TRANSIT, or
        APPROVED after a partial shipment.  Each line appends a new lot at
        the destination priced at the item's shipped average cost.
        """
        key = _check_key(idempotency_key)
        transfer = self._transfers.lock_transfer(actor.tenant_id, transfer_id)

        existing = self._replayed_receipt(transfer, key)
        if existing is not None:
            logger.info(
                "receipt_replayed",
                extra={"transfer_id": str(transfer.id), "batch_number": existing.batch_number},
            )
            return ReceiptResult(transfer.to_dto(), existing.to_dto(), replayed=True)

        self._check_version(transfer, expected_version, ENTITY)
        status = TransferStatus(transfer.status)
        require_status(transfer.id, status, RECEIVABLE_STATUSES, "receive")
        if not any(item.qty_shipped > item.qty_received for item in transfer.items):
            raise IllegalTransitionError(str(transfer.id), status.value, "receive")
        self._require_member(actor, transfer.destination_branch_id, "destination")

        resolved = resolve_receive_lines(transfer.items, lines)
        before = transfer_snapshot(transfer)
        now = self._now()

        batch = ReceiptBatchModel(
            id=uuid4(),
            tenant_id=transfer.tenant_id,
            batch_number=max((b.batch_number for b in transfer.receipt_batches), default=0) + 1,
            received_at=now,
            received_by_user_id=actor.user_id,
            idempotency_key=key,
        )
        for item, qty in resolved:
            unit_cost = item.avg_unit_cost_minor or 0
            lot = self._ledger.increase(
                transfer.tenant_id,
                transfer.destination_branch_id,
                item.product_id,
                qty,
                unit_cost,
                kind=MovementKind.TRANSFER_IN,
                reference_id=transfer.id,
                received_at=now,
                actor_user_id=actor.user_id,
            )
            batch.lines.append(
                ReceiptBatchLineModel(
                    tenant_id=transfer.tenant_id,
                    item_id=item.id,
                    product_id=item.product_id,
                    qty=qty,
                    unit_cost_minor=unit_cost,
                    lot_id=lot.lot_id,
                )
            )
            item.qty_received += qty

        transfer.receipt_batches.append(batch)
        new_status = derive_fulfilment_status(status, transfer.items)
        transfer.status = new_status.value
        if new_status == TransferStatus.COMPLETED:
            transfer.completed_at = now
        self._bump(transfer)

        self._transfers._audit_transfer(actor, transfer, AuditAction.TRANSFER_RECEIVE, before)
        logger.info(
            "transfer_received",
            extra={
                "transfer_id": str(transfer.id),
                "batch_number": batch.batch_number,
                "line_count": len(resolved),
                "qty": sum(qty for _, qty in resolved),
                "status": transfer.status,
                "entity_version": transfer.entity_version,
            },
        )
        return ReceiptResult(transfer.to_dto(), batch.to_dto())
