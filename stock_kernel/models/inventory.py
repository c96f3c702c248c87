"""
Module: stock_kernel.models.inventory
Responsibility: ORM persistence for the Branch Inventory Ledger --
    per-branch/per-product stock aggregates, FIFO cost lots and the
    append-only movement ledger.

Architecture position: Kernel > Models.  May import from db/base.py,
    domain/ and exceptions.py only.

Invariants enforced:
    - 0 <= remaining_qty <= original_qty on every lot (CHECK).
    - One ProductStock row per (tenant, branch, product) (UNIQUE).  That
      row is the lock target that serializes FIFO consumption.
    - Lot sequence unique per (tenant, branch, product): the FIFO
      tie-break after ``received_at``.
    - Ledger entries are append-only: UPDATE and DELETE raise
      ImmutabilityViolationError via ORM listeners.

Failure modes:
    - IntegrityError on a duplicate ProductStock row (creation race,
      handled by the ledger service with a savepoint retry).
    - ImmutabilityViolationError on any ledger entry mutation.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, Index, String, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import TenantScopedBase, UUIDString
from stock_kernel.domain.inventory import LedgerEntry, StockLot
from stock_kernel.domain.values import MovementKind
from stock_kernel.exceptions import ImmutabilityViolationError
from stock_kernel.logging_config import get_logger

logger = get_logger("models.inventory")


class ProductStockModel(TenantScopedBase):
    """
    Stock aggregate root for one product at one branch.

    Contract:
        ``qty_on_hand`` always equals the sum of ``remaining_qty`` across
        the aggregate's lots.  ``next_lot_sequence`` hands out the FIFO
        tie-break for new lots.  Both change only while the row is locked.
    """

    __tablename__ = "product_stocks"

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "branch_id", "product_id",
            name="uq_product_stocks_branch_product",
        ),
        CheckConstraint("qty_on_hand >= 0", name="ck_product_stocks_on_hand"),
    )

    branch_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    qty_on_hand: Mapped[int] = mapped_column(nullable=False, default=0)
    next_lot_sequence: Mapped[int] = mapped_column(nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ProductStock branch={self.branch_id} product={self.product_id} "
            f"on_hand={self.qty_on_hand}>"
        )


class StockLotModel(TenantScopedBase):
    """
    A FIFO cost layer.

    Contract:
        Lots are never deleted.  ``remaining_qty`` moves down on consume
        and back up (never above ``original_qty``) on reversal restore.
        All other columns are write-once.
    """

    __tablename__ = "stock_lots"

    __table_args__ = (
        CheckConstraint(
            "remaining_qty >= 0 AND remaining_qty <= original_qty",
            name="ck_stock_lots_remaining_bounds",
        ),
        CheckConstraint("original_qty > 0", name="ck_stock_lots_original_positive"),
        CheckConstraint("unit_cost_minor >= 0", name="ck_stock_lots_cost_non_negative"),
        UniqueConstraint(
            "tenant_id", "branch_id", "product_id", "lot_sequence",
            name="uq_stock_lots_sequence",
        ),
        Index(
            "ix_stock_lots_fifo",
            "tenant_id", "branch_id", "product_id", "received_at", "lot_sequence",
        ),
    )

    branch_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    lot_sequence: Mapped[int] = mapped_column(nullable=False)
    received_at: Mapped[datetime] = mapped_column(nullable=False)
    original_qty: Mapped[int] = mapped_column(nullable=False)
    remaining_qty: Mapped[int] = mapped_column(nullable=False)
    unit_cost_minor: Mapped[int] = mapped_column(nullable=False)
    source_reference_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return (
            f"<StockLot #{self.lot_sequence} {self.remaining_qty}/{self.original_qty} "
            f"@ {self.unit_cost_minor}>"
        )

    def to_dto(self) -> StockLot:
        return StockLot(
            id=self.id,
            tenant_id=self.tenant_id,
            branch_id=self.branch_id,
            product_id=self.product_id,
            lot_sequence=self.lot_sequence,
            received_at=self.received_at,
            original_qty=self.original_qty,
            remaining_qty=self.remaining_qty,
            unit_cost_minor=self.unit_cost_minor,
            source_reference_id=self.source_reference_id,
        )


class LedgerEntryModel(TenantScopedBase):
    """Append-only stock movement.  One row per lot touched."""

    __tablename__ = "ledger_entries"

    __table_args__ = (
        CheckConstraint(
            "kind IN ('RECEIPT', 'ADJUSTMENT', 'CONSUMPTION', "
            "'TRANSFER_OUT', 'TRANSFER_IN', 'REVERSAL')",
            name="ck_ledger_entries_kind",
        ),
        CheckConstraint("qty_delta <> 0", name="ck_ledger_entries_nonzero"),
        Index("ix_ledger_entries_aggregate", "tenant_id", "branch_id", "product_id"),
        Index("ix_ledger_entries_occurred", "tenant_id", "occurred_at"),
        Index("ix_ledger_entries_reference", "reference_id"),
    )

    branch_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    qty_delta: Mapped[int] = mapped_column(nullable=False)
    unit_cost_minor: Mapped[int | None] = mapped_column(nullable=True)
    lot_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    reference_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    actor_user_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return f"<LedgerEntry {self.kind} {self.qty_delta:+d} lot={self.lot_id}>"

    def to_dto(self) -> LedgerEntry:
        return LedgerEntry(
            id=self.id,
            tenant_id=self.tenant_id,
            branch_id=self.branch_id,
            product_id=self.product_id,
            kind=MovementKind(self.kind),
            qty_delta=self.qty_delta,
            unit_cost_minor=self.unit_cost_minor,
            lot_id=self.lot_id,
            occurred_at=self.occurred_at,
            reference_id=self.reference_id,
            reason=self.reason,
            actor_user_id=self.actor_user_id,
        )


@event.listens_for(LedgerEntryModel, "before_update")
def _block_ledger_entry_update(mapper, connection, target):
    logger.error(
        "immutability_violation_blocked",
        extra={"entity_type": "LedgerEntry", "entity_id": str(target.id), "operation": "UPDATE"},
    )
    raise ImmutabilityViolationError(
        entity_type="LedgerEntry",
        entity_id=str(target.id),
        reason="Ledger entries are append-only and cannot be modified",
    )


@event.listens_for(LedgerEntryModel, "before_delete")
def _block_ledger_entry_delete(mapper, connection, target):
    logger.error(
        "immutability_violation_blocked",
        extra={"entity_type": "LedgerEntry", "entity_id": str(target.id), "operation": "DELETE"},
    )
    raise ImmutabilityViolationError(
        entity_type="LedgerEntry",
        entity_id=str(target.id),
        reason="Ledger entries cannot be deleted",
    )
