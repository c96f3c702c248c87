"""
Module: stock_kernel.models.transfer
Responsibility: ORM persistence for the stock transfer aggregate -- the
    transfer root, its line items, and the shipment and receipt batches
    recorded against those items.

Architecture position: Kernel > Models.  May import from db/base.py,
    domain/ and exceptions.py only.

Invariants enforced:
    - Quantity ordering per item (CHECK):
        0 <= qty_received <= qty_shipped
        qty_shipped <= qty_approved (when approved)
        qty_approved <= qty_requested
    - ``entity_version`` is the SQLAlchemy ``version_id_col``: every
      UPDATE of a transfer row is issued as ``... WHERE entity_version = v``.
      Services assign v+1 explicitly.  A zero-row update raises StaleDataError.
    - Batch numbers are unique per transfer and strictly increasing.
    - Idempotency keys are unique per transfer and batch kind.
    - Transfer numbers are unique per tenant.

Failure modes:
    - StaleDataError on concurrent version bump (mapped to
      StaleVersionError by Storage.unit_of_work).
    - IntegrityError on duplicate batch number or idempotency key.
"""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import TenantScopedBase, UUIDString
from stock_kernel.domain.approval import ApprovalProgress, is_fully_approved
from stock_kernel.domain.transfer import (
    ReceiptBatch,
    ReceiptBatchLine,
    ShipmentBatch,
    ShipmentBatchLine,
    ShipmentLotLine,
    StockTransfer,
    TransferItem,
    TransferSummary,
)
from stock_kernel.domain.values import (
    ApprovalMode,
    InitiationType,
    TransferPriority,
    TransferStatus,
)


class StockTransferModel(TenantScopedBase):
    """
    Transfer aggregate root.

    Contract:
        Mutated only by the transfer and batching services while the row
        is locked.  Every mutation touches ``updated_at`` so the version
        column advances even when only child rows changed.
    """

    __tablename__ = "stock_transfers"

    __table_args__ = (
        UniqueConstraint("tenant_id", "transfer_number", name="uq_stock_transfers_number"),
        CheckConstraint(
            "status IN ('REQUESTED', 'APPROVED', 'IN_TRANSIT', 'COMPLETED', "
            "'REJECTED', 'CANCELLED')",
            name="ck_stock_transfers_status",
        ),
        CheckConstraint(
            "priority IN ('URGENT', 'HIGH', 'NORMAL', 'LOW')",
            name="ck_stock_transfers_priority",
        ),
        CheckConstraint(
            "source_branch_id <> destination_branch_id",
            name="ck_stock_transfers_distinct_branches",
        ),
        Index("ix_stock_transfers_source", "tenant_id", "source_branch_id"),
        Index("ix_stock_transfers_destination", "tenant_id", "destination_branch_id"),
        Index("ix_stock_transfers_listing", "tenant_id", "requested_at", "id"),
    )

    transfer_number: Mapped[str] = mapped_column(String(40), nullable=False)
    source_branch_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    destination_branch_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="NORMAL")
    initiation_type: Mapped[str] = mapped_column(String(10), nullable=False, default="PUSH")
    initiated_by_branch_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    requested_by_user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(nullable=False)
    reviewed_by_user_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    shipped_by_user_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    shipped_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    request_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    order_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    expected_delivery_date: Mapped[date | None] = mapped_column(nullable=True)

    requires_multi_level_approval: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )
    matched_rule_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("approval_rules.id"), nullable=True,
    )
    # Copied from the matched rule when progress records are seeded.
    approval_mode: Mapped[str | None] = mapped_column(String(12), nullable=True)

    is_reversal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reversal_of_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("stock_transfers.id"), nullable=True,
    )
    reversed_by_transfer_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    reversal_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    entity_version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": entity_version, "version_id_generator": False}

    items: Mapped[list["TransferItemModel"]] = relationship(
        "TransferItemModel",
        back_populates="transfer",
        order_by="TransferItemModel.line_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    shipment_batches: Mapped[list["ShipmentBatchModel"]] = relationship(
        "ShipmentBatchModel",
        back_populates="transfer",
        order_by="ShipmentBatchModel.batch_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    receipt_batches: Mapped[list["ReceiptBatchModel"]] = relationship(
        "ReceiptBatchModel",
        back_populates="transfer",
        order_by="ReceiptBatchModel.batch_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    approval_records: Mapped[list["ApprovalProgressRecordModel"]] = relationship(
        "ApprovalProgressRecordModel",
        order_by="ApprovalProgressRecordModel.level",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    reversal_of: Mapped["StockTransferModel | None"] = relationship(
        "StockTransferModel",
        primaryjoin="foreign(StockTransferModel.reversal_of_id) == remote(StockTransferModel.id)",
        viewonly=True,
        lazy="select",
    )
    reversed_by: Mapped["StockTransferModel | None"] = relationship(
        "StockTransferModel",
        primaryjoin=(
            "foreign(StockTransferModel.reversed_by_transfer_id) == "
            "remote(StockTransferModel.id)"
        ),
        viewonly=True,
        lazy="select",
    )

    def __repr__(self) -> str:
        return (
            f"<StockTransfer {self.transfer_number} {self.status} "
            f"v{self.entity_version}>"
        )

    @property
    def status_enum(self) -> TransferStatus:
        return TransferStatus(self.status)

    @property
    def initiation_enum(self) -> InitiationType:
        return InitiationType(self.initiation_type)

    def summary(self) -> TransferSummary:
        return TransferSummary(
            id=self.id,
            transfer_number=self.transfer_number,
            reversal_reason=self.reversal_reason,
        )

    def approval_progress(self) -> ApprovalProgress:
        records = tuple(r.to_dto() for r in self.approval_records)
        return ApprovalProgress(
            transfer_id=self.id,
            requires_multi_level_approval=self.requires_multi_level_approval,
            rule_id=self.matched_rule_id,
            approval_mode=ApprovalMode(self.approval_mode) if self.approval_mode else None,
            records=records,
            is_fully_approved=is_fully_approved(records),
        )

    def to_dto(self) -> StockTransfer:
        """Convert to the fully hydrated frozen aggregate."""
        return StockTransfer(
            id=self.id,
            tenant_id=self.tenant_id,
            transfer_number=self.transfer_number,
            source_branch_id=self.source_branch_id,
            destination_branch_id=self.destination_branch_id,
            status=TransferStatus(self.status),
            priority=TransferPriority(self.priority),
            initiation_type=InitiationType(self.initiation_type),
            initiated_by_branch_id=self.initiated_by_branch_id,
            requested_by_user_id=self.requested_by_user_id,
            requested_at=self.requested_at,
            entity_version=self.entity_version,
            items=tuple(item.to_dto() for item in self.items),
            reviewed_by_user_id=self.reviewed_by_user_id,
            reviewed_at=self.reviewed_at,
            shipped_by_user_id=self.shipped_by_user_id,
            shipped_at=self.shipped_at,
            completed_at=self.completed_at,
            cancelled_at=self.cancelled_at,
            request_notes=self.request_notes,
            review_notes=self.review_notes,
            order_notes=self.order_notes,
            expected_delivery_date=self.expected_delivery_date,
            requires_multi_level_approval=self.requires_multi_level_approval,
            matched_rule_id=self.matched_rule_id,
            is_reversal=self.is_reversal,
            reversal_of_id=self.reversal_of_id,
            reversed_by_transfer_id=self.reversed_by_transfer_id,
            reversal_reason=self.reversal_reason,
            shipment_batches=tuple(b.to_dto() for b in self.shipment_batches),
            receipt_batches=tuple(b.to_dto() for b in self.receipt_batches),
            approval_records=tuple(r.to_dto() for r in self.approval_records),
            reversal_of=self.reversal_of.summary() if self.reversal_of else None,
            reversed_by=self.reversed_by.summary() if self.reversed_by else None,
        )


class TransferItemModel(TenantScopedBase):
    """Transfer line item.  Quantities only move forward."""

    __tablename__ = "transfer_items"

    __table_args__ = (
        UniqueConstraint("transfer_id", "product_id", name="uq_transfer_items_product"),
        CheckConstraint("qty_requested > 0", name="ck_transfer_items_requested"),
        CheckConstraint(
            "qty_approved IS NULL OR (qty_approved >= 0 AND qty_approved <= qty_requested)",
            name="ck_transfer_items_approved",
        ),
        CheckConstraint(
            "qty_shipped >= 0 AND qty_shipped <= COALESCE(qty_approved, 0)",
            name="ck_transfer_items_shipped",
        ),
        CheckConstraint(
            "qty_received >= 0 AND qty_received <= qty_shipped",
            name="ck_transfer_items_received",
        ),
    )

    transfer_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("stock_transfers.id"), nullable=False, index=True,
    )
    line_number: Mapped[int] = mapped_column(nullable=False)
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    qty_requested: Mapped[int] = mapped_column(nullable=False)
    qty_approved: Mapped[int | None] = mapped_column(nullable=True)
    qty_shipped: Mapped[int] = mapped_column(nullable=False, default=0)
    qty_received: Mapped[int] = mapped_column(nullable=False, default=0)
    shipped_cost_minor: Mapped[int] = mapped_column(nullable=False, default=0)
    avg_unit_cost_minor: Mapped[int | None] = mapped_column(nullable=True)

    transfer: Mapped["StockTransferModel"] = relationship(
        "StockTransferModel", back_populates="items",
    )

    def to_dto(self) -> TransferItem:
        return TransferItem(
            id=self.id,
            product_id=self.product_id,
            qty_requested=self.qty_requested,
            qty_approved=self.qty_approved,
            qty_shipped=self.qty_shipped,
            qty_received=self.qty_received,
            avg_unit_cost_minor=self.avg_unit_cost_minor,
        )


class ShipmentBatchModel(TenantScopedBase):
    """One shipment event covering a subset of items."""

    __tablename__ = "shipment_batches"

    __table_args__ = (
        UniqueConstraint("transfer_id", "batch_number", name="uq_shipment_batches_number"),
        UniqueConstraint(
            "transfer_id", "idempotency_key", name="uq_shipment_batches_idempotency",
        ),
        CheckConstraint("batch_number >= 1", name="ck_shipment_batches_number"),
    )

    transfer_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("stock_transfers.id"), nullable=False, index=True,
    )
    batch_number: Mapped[int] = mapped_column(nullable=False)
    shipped_at: Mapped[datetime] = mapped_column(nullable=False)
    shipped_by_user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(200), nullable=True)

    transfer: Mapped["StockTransferModel"] = relationship(
        "StockTransferModel", back_populates="shipment_batches",
    )
    lines: Mapped[list["ShipmentBatchLineModel"]] = relationship(
        "ShipmentBatchLineModel",
        back_populates="batch",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dto(self) -> ShipmentBatch:
        return ShipmentBatch(
            id=self.id,
            batch_number=self.batch_number,
            shipped_at=self.shipped_at,
            shipped_by_user_id=self.shipped_by_user_id,
            idempotency_key=self.idempotency_key,
            lines=tuple(line.to_dto() for line in self.lines),
        )


class ShipmentBatchLineModel(TenantScopedBase):
    __tablename__ = "shipment_batch_lines"

    __table_args__ = (
        CheckConstraint("qty > 0", name="ck_shipment_batch_lines_qty"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("shipment_batches.id"), nullable=False, index=True,
    )
    item_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("transfer_items.id"), nullable=False,
    )
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    qty: Mapped[int] = mapped_column(nullable=False)
    unit_cost_minor: Mapped[int] = mapped_column(nullable=False)

    batch: Mapped["ShipmentBatchModel"] = relationship(
        "ShipmentBatchModel", back_populates="lines",
    )
    lots: Mapped[list["ShipmentLotLineModel"]] = relationship(
        "ShipmentLotLineModel",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dto(self) -> ShipmentBatchLine:
        return ShipmentBatchLine(
            id=self.id,
            item_id=self.item_id,
            product_id=self.product_id,
            qty=self.qty,
            unit_cost_minor=self.unit_cost_minor,
            lots=tuple(lot.to_dto() for lot in self.lots),
        )


class ShipmentLotLineModel(TenantScopedBase):
    """Which source lot a shipped line drew from.  Used by reversal."""

    __tablename__ = "shipment_lot_lines"

    batch_line_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("shipment_batch_lines.id"), nullable=False, index=True,
    )
    lot_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("stock_lots.id"), nullable=False,
    )
    qty: Mapped[int] = mapped_column(nullable=False)
    unit_cost_minor: Mapped[int] = mapped_column(nullable=False)

    def to_dto(self) -> ShipmentLotLine:
        return ShipmentLotLine(
            lot_id=self.lot_id, qty=self.qty, unit_cost_minor=self.unit_cost_minor,
        )


class ReceiptBatchModel(TenantScopedBase):
    """One receipt event at the destination branch."""

    __tablename__ = "receipt_batches"

    __table_args__ = (
        UniqueConstraint("transfer_id", "batch_number", name="uq_receipt_batches_number"),
        UniqueConstraint(
            "transfer_id", "idempotency_key", name="uq_receipt_batches_idempotency",
        ),
        CheckConstraint("batch_number >= 1", name="ck_receipt_batches_number"),
    )

    transfer_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("stock_transfers.id"), nullable=False, index=True,
    )
    batch_number: Mapped[int] = mapped_column(nullable=False)
    received_at: Mapped[datetime] = mapped_column(nullable=False)
    received_by_user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(200), nullable=True)

    transfer: Mapped["StockTransferModel"] = relationship(
        "StockTransferModel", back_populates="receipt_batches",
    )
    lines: Mapped[list["ReceiptBatchLineModel"]] = relationship(
        "ReceiptBatchLineModel",
        back_populates="batch",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dto(self) -> ReceiptBatch:
        return ReceiptBatch(
            id=self.id,
            batch_number=self.batch_number,
            received_at=self.received_at,
            received_by_user_id=self.received_by_user_id,
            idempotency_key=self.idempotency_key,
            lines=tuple(line.to_dto() for line in self.lines),
        )


class ReceiptBatchLineModel(TenantScopedBase):
    __tablename__ = "receipt_batch_lines"

    __table_args__ = (
        CheckConstraint("qty > 0", name="ck_receipt_batch_lines_qty"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("receipt_batches.id"), nullable=False, index=True,
    )
    item_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("transfer_items.id"), nullable=False,
    )
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    qty: Mapped[int] = mapped_column(nullable=False)
    unit_cost_minor: Mapped[int] = mapped_column(nullable=False)
    lot_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("stock_lots.id"), nullable=False,
    )

    batch: Mapped["ReceiptBatchModel"] = relationship(
        "ReceiptBatchModel", back_populates="lines",
    )

    def to_dto(self) -> ReceiptBatchLine:
        return ReceiptBatchLine(
            id=self.id,
            item_id=self.item_id,
            product_id=self.product_id,
            qty=self.qty,
            unit_cost_minor=self.unit_cost_minor,
            lot_id=self.lot_id,
        )
