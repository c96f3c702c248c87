"""
InventoryLedgerService -- the Branch Inventory Ledger write side.

Responsibility:
    Owns every mutation of FIFO cost lots and the append-only movement
    ledger for a (branch, product) pair: appending lots, FIFO
    consumption, restoring previously consumed lots on reversal, and
    reconciling lots against the ledger.

Architecture position:
    Kernel > Services -- imperative shell.  Called by BatchingService
    (ship/receive), TransferService (reversal) and the API facade (manual
    receipts, adjustments and consumption).  Pure FIFO arithmetic lives
    in ``domain/costing.py``.

Invariants enforced:
    - Serialization: every write first locks the aggregate's
      ProductStock row ``FOR UPDATE``.  Two concurrent consumers of the
      same (branch, product) therefore never read the same lot remainder.
    - All-or-nothing: consumption is planned in full before any lot is
      touched.  An InsufficientStockError leaves every lot unchanged.
    - ``increase`` always appends a new lot, even when the unit cost
      matches an existing one.
    - One ledger entry per lot touched.  ``ProductStock.qty_on_hand``,
      the sum of lot remainders and the sum of ledger deltas agree.

Failure modes:
    - ValidationError: non-positive quantity, negative cost, restore
      above a lot's original quantity.
    - InsufficientStockError: FIFO remainder below the requested qty.
    - NotFoundError: unknown branch/product (Directory) or lot.
    - LedgerReconciliationError: ``reconcile`` found a mismatch.
"""

from __future__ import annotations

from datetime import datetime
from typing import Sequence
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from stock_kernel.db.unit_of_work import UnitOfWork
from stock_kernel.domain.audit import (
    AuditAction,
    AuditEntityType,
    LedgerSnapshot,
)
from stock_kernel.domain.costing import plan_fifo_consumption, total_cost
from stock_kernel.domain.inventory import (
    AdjustmentResult,
    ConsumptionLine,
    ConsumptionResult,
    LotRef,
)
from stock_kernel.domain.ports import Actor, Directory
from stock_kernel.domain.values import MovementKind
from stock_kernel.exceptions import (
    InsufficientStockError,
    LedgerReconciliationError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.inventory import LedgerEntryModel, ProductStockModel, StockLotModel
from stock_kernel.services.base import BaseService

logger = get_logger("services.inventory_ledger")


class InventoryLedgerService(BaseService[ProductStockModel]):
    """
    Service for FIFO lot and ledger mutation.

    Contract:
        ``increase``/``consume``/``restore_lots``/``reconcile`` are the
        movement primitives and take no actor; the transfer workflow
        audits them at the transfer level.  ``receive_stock``,
        ``adjust_stock`` and ``consume_stock`` are the actor-facing
        operations: they check the Directory and branch membership and
        record a PRODUCT_STOCK audit event.

    Non-goals:
        - Does NOT commit.
        - Does NOT re-price lots.  A lot's unit cost never changes.
    """

    def __init__(self, uow: UnitOfWork, directory: Directory | None = None):
        super().__init__(uow)
        self._directory = directory

    # ------------------------------------------------------------------
    # Aggregate lock
    # ------------------------------------------------------------------

    def _select_stock(self, tenant_id: UUID, branch_id: UUID, product_id: UUID):
        return self.session.execute(
            select(ProductStockModel)
            .where(
                ProductStockModel.tenant_id == tenant_id,
                ProductStockModel.branch_id == branch_id,
                ProductStockModel.product_id == product_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _lock_stock(
        self,
        tenant_id: UUID,
        branch_id: UUID,
        product_id: UUID,
        create: bool = True,
    ) -> ProductStockModel | None:
        """Lock the aggregate row, creating it on first use when asked."""
        stock = self._select_stock(tenant_id, branch_id, product_id)
        if stock is not None or not create:
            return stock

        savepoint = self.session.begin_nested()
        try:
            stock = ProductStockModel(
                tenant_id=tenant_id,
                branch_id=branch_id,
                product_id=product_id,
                qty_on_hand=0,
                next_lot_sequence=1,
                updated_at=self._now(),
            )
            self.session.add(stock)
            self.session.flush()
            savepoint.commit()
            return stock
        except IntegrityError:
            logger.debug(
                "product_stock_create_race_retry",
                extra={"branch_id": str(branch_id), "product_id": str(product_id)},
            )
            savepoint.rollback()
            stock = self._select_stock(tenant_id, branch_id, product_id)
            if stock is None:
                raise
            return stock

    def _open_lots(self, stock: ProductStockModel) -> list[StockLotModel]:
        return list(
            self.session.execute(
                select(StockLotModel)
                .where(
                    StockLotModel.tenant_id == stock.tenant_id,
                    StockLotModel.branch_id == stock.branch_id,
                    StockLotModel.product_id == stock.product_id,
                    StockLotModel.remaining_qty > 0,
                )
                .order_by(StockLotModel.received_at, StockLotModel.lot_sequence)
                .execution_options(populate_existing=True)
            ).scalars()
        )

    def _entry(
        self,
        stock: ProductStockModel,
        kind: MovementKind,
        qty_delta: int,
        unit_cost_minor: int | None,
        lot_id: UUID | None,
        reference_id: UUID | None,
        reason: str | None,
        actor_user_id: UUID | None,
    ) -> LedgerEntryModel:
        entry = LedgerEntryModel(
            id=uuid4(),
            tenant_id=stock.tenant_id,
            branch_id=stock.branch_id,
            product_id=stock.product_id,
            kind=kind.value,
            qty_delta=qty_delta,
            unit_cost_minor=unit_cost_minor,
            lot_id=lot_id,
            occurred_at=self._now(),
            reference_id=reference_id,
            reason=reason,
            actor_user_id=actor_user_id,
        )
        self.session.add(entry)
        return entry

    # ------------------------------------------------------------------
    # Movement primitives
    # ------------------------------------------------------------------

    def increase(
        self,
        tenant_id: UUID,
        branch_id: UUID,
        product_id: UUID,
        qty: int,
        unit_cost_minor: int,
        *,
        kind: MovementKind = MovementKind.ADJUSTMENT,
        reason: str | None = None,
        reference_id: UUID | None = None,
        received_at: datetime | None = None,
        actor_user_id: UUID | None = None,
    ) -> LotRef:
        """
        Append a brand-new lot and its ledger entry.

        Preconditions:
            ``qty > 0`` and ``unit_cost_minor >= 0``.
        Postconditions:
            One new lot with ``remaining_qty == original_qty == qty``; the
            aggregate's on-hand grows by ``qty``.
        """
        if qty <= 0:
            raise ValidationError(f"Quantity to add must be positive, got {qty}", field="qty")
        if unit_cost_minor < 0:
            raise ValidationError(
                f"Unit cost must not be negative, got {unit_cost_minor}",
                field="unit_cost_minor",
            )

        stock = self._lock_stock(tenant_id, branch_id, product_id)
        now = self._now()
        sequence = stock.next_lot_sequence
        stock.next_lot_sequence = sequence + 1

        lot = StockLotModel(
            id=uuid4(),
            tenant_id=tenant_id,
            branch_id=branch_id,
            product_id=product_id,
            lot_sequence=sequence,
            received_at=received_at or now,
            original_qty=qty,
            remaining_qty=qty,
            unit_cost_minor=unit_cost_minor,
            source_reference_id=reference_id,
            created_at=now,
        )
        self.session.add(lot)
        entry = self._entry(
            stock, kind, qty, unit_cost_minor, lot.id, reference_id, reason, actor_user_id,
        )
        stock.qty_on_hand += qty
        stock.updated_at = now
        self.session.flush()

        logger.info(
            "lot_created",
            extra={
                "branch_id": str(branch_id),
                "product_id": str(product_id),
                "lot_id": str(lot.id),
                "lot_sequence": sequence,
                "qty": qty,
                "unit_cost_minor": unit_cost_minor,
                "kind": kind.value,
            },
        )
        return LotRef(
            lot_id=lot.id,
            branch_id=branch_id,
            product_id=product_id,
            qty=qty,
            unit_cost_minor=unit_cost_minor,
            ledger_entry_id=entry.id,
        )

    def consume(
        self,
        tenant_id: UUID,
        branch_id: UUID,
        product_id: UUID,
        qty: int,
        *,
        kind: MovementKind = MovementKind.TRANSFER_OUT,
        reason: str | None = None,
        reference_id: UUID | None = None,
        actor_user_id: UUID | None = None,
    ) -> ConsumptionResult:
        """
        Draw ``qty`` from the aggregate's lots, oldest first.

        Raises:
            ValidationError: qty is not positive.
            InsufficientStockError: open lots hold less than ``qty``.
                Nothing is written.
        """
        if qty <= 0:
            raise ValidationError(f"Quantity to consume must be positive, got {qty}", field="qty")

        stock = self._lock_stock(tenant_id, branch_id, product_id, create=False)
        if stock is None:
            raise InsufficientStockError(
                branch_id=str(branch_id),
                product_id=str(product_id),
                requested=qty,
                available=0,
            )

        lots = self._open_lots(stock)
        plan = plan_fifo_consumption(
            [lot.to_dto() for lot in lots],
            qty,
            branch_id=branch_id,
            product_id=product_id,
        )

        by_id = {lot.id: lot for lot in lots}
        entry_ids: list[UUID] = []
        for line in plan:
            lot = by_id[line.lot_id]
            lot.remaining_qty -= line.qty
            entry = self._entry(
                stock, kind, -line.qty, line.unit_cost_minor, lot.id,
                reference_id, reason, actor_user_id,
            )
            entry_ids.append(entry.id)
        stock.qty_on_hand -= qty
        stock.updated_at = self._now()
        self.session.flush()

        result = ConsumptionResult(
            lines=plan,
            total_cost_minor=total_cost(plan),
            ledger_entry_ids=tuple(entry_ids),
        )
        logger.info(
            "stock_consumed",
            extra={
                "branch_id": str(branch_id),
                "product_id": str(product_id),
                "qty": qty,
                "lots_touched": len(plan),
                "total_cost_minor": result.total_cost_minor,
                "kind": kind.value,
            },
        )
        return result

    def restore_lots(
        self,
        tenant_id: UUID,
        branch_id: UUID,
        product_id: UUID,
        lines: Sequence[ConsumptionLine],
        *,
        reference_id: UUID | None = None,
        reason: str | None = None,
        actor_user_id: UUID | None = None,
    ) -> tuple[UUID, ...]:
        """
        Put quantity back into the exact lots it was consumed from.

        Used by transfer reversal so the source branch regains its
        original cost layers instead of a re-priced new lot.

        Raises:
            ValidationError: a line would lift a lot above its original
                quantity, or names a non-positive quantity.
            NotFoundError: a lot does not belong to this aggregate.
        """
        if not lines:
            return ()
        stock = self._lock_stock(tenant_id, branch_id, product_id)
        entry_ids: list[UUID] = []
        restored = 0
        for line in lines:
            if line.qty <= 0:
                raise ValidationError(
                    f"Quantity to restore must be positive, got {line.qty}", field="qty",
                )
            lot = self.session.execute(
                select(StockLotModel)
                .where(
                    StockLotModel.id == line.lot_id,
                    StockLotModel.tenant_id == tenant_id,
                    StockLotModel.branch_id == branch_id,
                    StockLotModel.product_id == product_id,
                )
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if lot is None:
                raise NotFoundError("StockLot", str(line.lot_id))
            if lot.remaining_qty + line.qty > lot.original_qty:
                raise ValidationError(
                    f"Restoring {line.qty} to lot {lot.id} would exceed its "
                    f"original quantity {lot.original_qty}",
                    field="qty",
                )
            lot.remaining_qty += line.qty
            entry = self._entry(
                stock, MovementKind.REVERSAL, line.qty, lot.unit_cost_minor, lot.id,
                reference_id, reason, actor_user_id,
            )
            entry_ids.append(entry.id)
            restored += line.qty
        stock.qty_on_hand += restored
        stock.updated_at = self._now()
        self.session.flush()

        logger.info(
            "lots_restored",
            extra={
                "branch_id": str(branch_id),
                "product_id": str(product_id),
                "qty": restored,
                "lots_touched": len(lines),
            },
        )
        return tuple(entry_ids)

    def reconcile(self, tenant_id: UUID, branch_id: UUID, product_id: UUID) -> int:
        """
        Check lots, ledger and on-hand agree; return on-hand quantity.

        Raises:
            LedgerReconciliationError: any of the three totals differ.
        """
        aggregate = (
            StockLotModel.tenant_id == tenant_id,
            StockLotModel.branch_id == branch_id,
            StockLotModel.product_id == product_id,
        )
        lot_total = self.session.execute(
            select(func.coalesce(func.sum(StockLotModel.remaining_qty), 0)).where(*aggregate)
        ).scalar_one()
        ledger_total = self.session.execute(
            select(func.coalesce(func.sum(LedgerEntryModel.qty_delta), 0)).where(
                LedgerEntryModel.tenant_id == tenant_id,
                LedgerEntryModel.branch_id == branch_id,
                LedgerEntryModel.product_id == product_id,
            )
        ).scalar_one()
        stock = self.session.execute(
            select(ProductStockModel).where(
                ProductStockModel.tenant_id == tenant_id,
                ProductStockModel.branch_id == branch_id,
                ProductStockModel.product_id == product_id,
            )
        ).scalar_one_or_none()
        on_hand = stock.qty_on_hand if stock is not None else 0

        if not (int(lot_total) == int(ledger_total) == on_hand):
            logger.error(
                "ledger_reconciliation_failed",
                extra={
                    "branch_id": str(branch_id),
                    "product_id": str(product_id),
                    "lot_total": int(lot_total),
                    "ledger_total": int(ledger_total),
                    "on_hand": on_hand,
                },
            )
            raise LedgerReconciliationError(
                branch_id=str(branch_id),
                product_id=str(product_id),
                lot_total=int(lot_total),
                ledger_total=int(ledger_total),
                on_hand=on_hand,
            )
        return on_hand

    # ------------------------------------------------------------------
    # Actor-facing operations
    # ------------------------------------------------------------------

    def _require_branch_product(self, actor: Actor, branch_id: UUID, product_id: UUID) -> None:
        directory = self._directory
        if directory is None:
            raise RuntimeError("InventoryLedgerService needs a Directory for actor operations")
        if not directory.branch_exists(actor.tenant_id, branch_id):
            raise NotFoundError("Branch", str(branch_id))
        if not directory.product_exists(actor.tenant_id, product_id):
            raise NotFoundError("Product", str(product_id))
        if not directory.is_branch_member(actor.tenant_id, actor.user_id, branch_id):
            raise PermissionDeniedError(
                f"not a member of branch {branch_id}", str(actor.user_id),
            )

    def _on_hand(self, actor: Actor, branch_id: UUID, product_id: UUID) -> int:
        stock = self._lock_stock(actor.tenant_id, branch_id, product_id)
        return stock.qty_on_hand

    def _audit_stock(
        self,
        actor: Actor,
        branch_id: UUID,
        product_id: UUID,
        action: AuditAction,
        before_qty: int,
    ) -> None:
        stock = self._select_stock(actor.tenant_id, branch_id, product_id)
        self._audit(
            actor,
            AuditEntityType.PRODUCT_STOCK,
            stock.id,
            action,
            LedgerSnapshot(qty_on_hand=before_qty),
            LedgerSnapshot(qty_on_hand=stock.qty_on_hand),
        )

    def receive_stock(
        self,
        actor: Actor,
        branch_id: UUID,
        product_id: UUID,
        qty: int,
        unit_cost_minor: int,
        received_at: datetime | None = None,
        reason: str | None = None,
    ) -> LotRef:
        """Goods arriving from outside the transfer workflow (kind RECEIPT)."""
        self._require_branch_product(actor, branch_id, product_id)
        before = self._on_hand(actor, branch_id, product_id)
        lot = self.increase(
            actor.tenant_id, branch_id, product_id, qty, unit_cost_minor,
            kind=MovementKind.RECEIPT,
            reason=reason,
            received_at=received_at,
            actor_user_id=actor.user_id,
        )
        self._audit_stock(actor, branch_id, product_id, AuditAction.STOCK_RECEIVE, before)
        return lot

    def adjust_stock(
        self,
        actor: Actor,
        branch_id: UUID,
        product_id: UUID,
        qty_delta: int,
        reason: str,
        unit_cost_minor: int | None = None,
    ) -> AdjustmentResult:
        """
        Manual stock correction (kind ADJUSTMENT).

        A positive delta appends a lot at ``unit_cost_minor``; a negative
        delta consumes FIFO.  Zero is rejected.
        """
        if qty_delta == 0:
            raise ValidationError("Adjustment quantity must not be zero", field="qty_delta")
        if not reason or not reason.strip():
            raise ValidationError("An adjustment reason is required", field="reason")
        if qty_delta > 0 and unit_cost_minor is None:
            raise ValidationError(
                "unit_cost_minor is required when increasing stock",
                field="unit_cost_minor",
            )
        self._require_branch_product(actor, branch_id, product_id)
        before = self._on_hand(actor, branch_id, product_id)

        if qty_delta > 0:
            lot = self.increase(
                actor.tenant_id, branch_id, product_id, qty_delta, unit_cost_minor,
                kind=MovementKind.ADJUSTMENT,
                reason=reason,
                actor_user_id=actor.user_id,
            )
            result = AdjustmentResult(qty_delta=qty_delta, lot=lot)
        else:
            consumption = self.consume(
                actor.tenant_id, branch_id, product_id, -qty_delta,
                kind=MovementKind.ADJUSTMENT,
                reason=reason,
                actor_user_id=actor.user_id,
            )
            result = AdjustmentResult(qty_delta=qty_delta, consumption=consumption)

        self._audit_stock(actor, branch_id, product_id, AuditAction.STOCK_ADJUST, before)
        return result

    def consume_stock(
        self,
        actor: Actor,
        branch_id: UUID,
        product_id: UUID,
        qty: int,
        reason: str | None = None,
    ) -> ConsumptionResult:
        """Stock used or sold at the branch (kind CONSUMPTION)."""
        self._require_branch_product(actor, branch_id, product_id)
        before = self._on_hand(actor, branch_id, product_id)
        result = self.consume(
            actor.tenant_id, branch_id, product_id, qty,
            kind=MovementKind.CONSUMPTION,
            reason=reason,
            actor_user_id=actor.user_id,
        )
        self._audit_stock(actor, branch_id, product_id, AuditAction.STOCK_CONSUME, before)
        return result
