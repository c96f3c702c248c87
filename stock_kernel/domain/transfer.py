"""
Stock transfer domain types and lifecycle rules
(``stock_kernel.domain.transfer``).

Responsibility
--------------
Pure value objects for the transfer aggregate and the pure functions
that govern its lifecycle: legal transitions, fulfilment status
derivation, batch line resolution and approved-quantity overrides.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  The transfer
and batching services call into this module after loading and locking
the aggregate; every decision about *whether* something is legal is
made here.

Invariants enforced
-------------------
* Lifecycle -- ``TRANSFER_TRANSITIONS`` lists the only legal status
  moves.  Terminal states (COMPLETED, REJECTED, CANCELLED) have no
  outgoing edges.
* Quantities -- ``qty_approved <= qty_requested``,
  ``qty_shipped <= qty_approved`` and ``qty_received <= qty_shipped``
  for every item, checked before any batch is applied.
* Fulfilment -- a transfer is IN_TRANSIT only when every item is fully
  shipped, and COMPLETED only when it is fully shipped AND fully
  received.

Failure modes
-------------
* ``IllegalTransitionError`` -- operation not legal in current status.
* ``ValidationError`` -- malformed batch lines, duplicate item ids,
  over-shipment, over-receipt, override above requested quantity.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Generic, Iterable, Protocol, Sequence, TypeVar
from uuid import UUID

from stock_kernel.domain.approval import ApprovalProgressRecord
from stock_kernel.domain.values import (
    InitiationType,
    TransferDirection,
    TransferPriority,
    TransferStatus,
)
from stock_kernel.exceptions import IllegalTransitionError, ValidationError

# =========================================================================
# Lifecycle
# =========================================================================

TRANSFER_TRANSITIONS: dict[TransferStatus, frozenset[TransferStatus]] = {
    TransferStatus.REQUESTED: frozenset({
        TransferStatus.APPROVED,
        TransferStatus.REJECTED,
        TransferStatus.CANCELLED,
    }),
    TransferStatus.APPROVED: frozenset({
        TransferStatus.APPROVED,
        TransferStatus.IN_TRANSIT,
        TransferStatus.CANCELLED,
    }),
    TransferStatus.IN_TRANSIT: frozenset({
        TransferStatus.IN_TRANSIT,
        TransferStatus.COMPLETED,
    }),
    TransferStatus.COMPLETED: frozenset(),
    TransferStatus.REJECTED: frozenset(),
    TransferStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES: frozenset[TransferStatus] = frozenset({
    TransferStatus.COMPLETED,
    TransferStatus.REJECTED,
    TransferStatus.CANCELLED,
})

PRIORITY_EDITABLE_STATUSES: frozenset[TransferStatus] = frozenset({
    TransferStatus.REQUESTED,
    TransferStatus.APPROVED,
})

SHIPPABLE_STATUSES: frozenset[TransferStatus] = frozenset({TransferStatus.APPROVED})

RECEIVABLE_STATUSES: frozenset[TransferStatus] = frozenset({
    TransferStatus.APPROVED,
    TransferStatus.IN_TRANSIT,
})


def can_transition(current: TransferStatus, target: TransferStatus) -> bool:
    return target in TRANSFER_TRANSITIONS[current]


def require_status(
    transfer_id: UUID | str,
    current: TransferStatus,
    allowed: Iterable[TransferStatus],
    operation: str,
) -> None:
    """Raise IllegalTransitionError unless ``current`` is in ``allowed``."""
    if current not in frozenset(allowed):
        raise IllegalTransitionError(str(transfer_id), current.value, operation)


class FulfilmentItem(Protocol):
    qty_requested: int
    qty_approved: int | None
    qty_shipped: int
    qty_received: int


def is_fully_shipped(items: Iterable[FulfilmentItem]) -> bool:
    return all(item.qty_shipped == (item.qty_approved or 0) for item in items)


def is_fully_received(items: Iterable[FulfilmentItem]) -> bool:
    return all(item.qty_received == item.qty_shipped for item in items)


def derive_fulfilment_status(
    current: TransferStatus,
    items: Sequence[FulfilmentItem],
) -> TransferStatus:
    """
    Recompute aggregate status after a shipment or receipt batch.

    Only APPROVED and IN_TRANSIT transfers move; every other status is
    returned unchanged.
    """
    if current not in RECEIVABLE_STATUSES:
        return current
    if not is_fully_shipped(items):
        return TransferStatus.APPROVED
    if is_fully_received(items):
        return TransferStatus.COMPLETED
    return TransferStatus.IN_TRANSIT


# =========================================================================
# Branch roles
# =========================================================================


def initiating_branch(
    initiation_type: InitiationType, source_branch_id: UUID, destination_branch_id: UUID
) -> UUID:
    if initiation_type == InitiationType.PUSH:
        return source_branch_id
    return destination_branch_id


def reviewing_branch(
    initiation_type: InitiationType, source_branch_id: UUID, destination_branch_id: UUID
) -> UUID:
    """The branch that approves or rejects: the side that did not initiate."""
    if initiation_type == InitiationType.PUSH:
        return destination_branch_id
    return source_branch_id


# =========================================================================
# Input value objects
# =========================================================================


@dataclass(frozen=True)
class TransferItemRequest:
    product_id: UUID
    qty_requested: int


@dataclass(frozen=True)
class NewTransfer:
    """Input to ``create_stock_transfer``."""

    source_branch_id: UUID
    destination_branch_id: UUID
    items: tuple[TransferItemRequest, ...]
    priority: TransferPriority = TransferPriority.NORMAL
    initiation_type: InitiationType | None = None
    request_notes: str | None = None
    order_notes: str | None = None
    expected_delivery_date: date | None = None


@dataclass(frozen=True)
class ApprovedQty:
    item_id: UUID
    qty_approved: int


@dataclass(frozen=True)
class BatchLine:
    """One line of a shipment or receipt request."""

    item_id: UUID
    qty: int


def validate_new_transfer(request: NewTransfer) -> None:
    if request.source_branch_id == request.destination_branch_id:
        raise ValidationError(
            "Source and destination branches must differ",
            field="destination_branch_id",
        )
    if not request.items:
        raise ValidationError("At least one item is required", field="items")
    seen: set[UUID] = set()
    for item in request.items:
        if item.qty_requested <= 0:
            raise ValidationError(
                f"qty_requested must be positive for product {item.product_id}",
                field="items.qty_requested",
            )
        if item.product_id in seen:
            raise ValidationError(
                f"Duplicate product {item.product_id} in transfer items",
                field="items.product_id",
            )
        seen.add(item.product_id)


class _IdentifiedItem(FulfilmentItem, Protocol):
    id: UUID


ItemT = TypeVar("ItemT", bound=_IdentifiedItem)


def resolve_approved_quantities(
    items: Sequence[ItemT],
    overrides: Sequence[ApprovedQty] | None,
) -> dict[UUID, int]:
    """
    Map item id -> qty_approved.

    Items without an override are approved in full.  An override must
    name an item of this transfer and lie within ``0..qty_requested``.
    At least one item must end up with a positive approved quantity.
    """
    by_id = {item.id: item for item in items}
    approved = {item.id: item.qty_requested for item in items}
    seen: set[UUID] = set()
    for override in overrides or ():
        item = by_id.get(override.item_id)
        if item is None:
            raise ValidationError(
                f"Item {override.item_id} is not part of this transfer",
                field="items.item_id",
            )
        if override.item_id in seen:
            raise ValidationError(
                f"Duplicate approval override for item {override.item_id}",
                field="items.item_id",
            )
        seen.add(override.item_id)
        if override.qty_approved < 0 or override.qty_approved > item.qty_requested:
            raise ValidationError(
                f"qty_approved {override.qty_approved} for item {item.id} must be "
                f"between 0 and qty_requested {item.qty_requested}",
                field="items.qty_approved",
            )
        approved[item.id] = override.qty_approved
    if not any(qty > 0 for qty in approved.values()):
        raise ValidationError(
            "At least one item must be approved with a positive quantity",
            field="items.qty_approved",
        )
    return approved


def _resolve_lines(
    items: Sequence[ItemT],
    lines: Sequence[BatchLine] | None,
    remaining_of,
    verb: str,
) -> list[tuple[ItemT, int]]:
    by_id = {item.id: item for item in items}

    if lines is None:
        resolved = [(item, remaining_of(item)) for item in items if remaining_of(item) > 0]
        if not resolved:
            raise ValidationError(f"Nothing remains to {verb}", field="lines")
        return resolved

    if not lines:
        raise ValidationError("At least one line is required", field="lines")

    resolved = []
    seen: set[UUID] = set()
    for line in lines:
        item = by_id.get(line.item_id)
        if item is None:
            raise ValidationError(
                f"Item {line.item_id} is not part of this transfer",
                field="lines.item_id",
            )
        if line.item_id in seen:
            raise ValidationError(
                f"Duplicate line for item {line.item_id}",
                field="lines.item_id",
            )
        seen.add(line.item_id)
        if line.qty <= 0:
            raise ValidationError(
                f"Quantity for item {line.item_id} must be positive",
                field="lines.qty",
            )
        remaining = remaining_of(item)
        if line.qty > remaining:
            raise ValidationError(
                f"Cannot {verb} {line.qty} of item "
                f"{line.item_id}: only {remaining} remaining",
                field="lines.qty",
            )
        resolved.append((item, line.qty))
    return resolved


def resolve_ship_lines(
    items: Sequence[ItemT],
    lines: Sequence[BatchLine] | None,
) -> list[tuple[ItemT, int]]:
    """
    Resolve a shipment request into (item, qty) pairs.

    ``lines=None`` ships the full remaining ``qty_approved - qty_shipped``
    of every item.  Every explicit line must stay within that remainder.
    """
    return _resolve_lines(
        items, lines, lambda item: (item.qty_approved or 0) - item.qty_shipped, "ship"
    )


def resolve_receive_lines(
    items: Sequence[ItemT],
    lines: Sequence[BatchLine] | None,
) -> list[tuple[ItemT, int]]:
    """Mirror of ``resolve_ship_lines`` over ``qty_shipped - qty_received``."""
    return _resolve_lines(
        items, lines, lambda item: item.qty_shipped - item.qty_received, "receive"
    )


def format_transfer_number(prefix: str, year: int, sequence: int, width: int = 4) -> str:
    """``TRF-2025-0001``.  Sequences wider than ``width`` are not truncated."""
    return f"{prefix}-{year}-{sequence:0{width}d}"


# =========================================================================
# Aggregate DTOs
# =========================================================================


@dataclass(frozen=True, slots=True)
class TransferItem:
    id: UUID
    product_id: UUID
    qty_requested: int
    qty_approved: int | None
    qty_shipped: int
    qty_received: int
    avg_unit_cost_minor: int | None = None

    @property
    def qty_outstanding_to_ship(self) -> int:
        return (self.qty_approved or 0) - self.qty_shipped

    @property
    def qty_in_transit(self) -> int:
        return self.qty_shipped - self.qty_received


@dataclass(frozen=True, slots=True)
class ShipmentLotLine:
    lot_id: UUID
    qty: int
    unit_cost_minor: int


@dataclass(frozen=True, slots=True)
class ShipmentBatchLine:
    id: UUID
    item_id: UUID
    product_id: UUID
    qty: int
    unit_cost_minor: int
    lots: tuple[ShipmentLotLine, ...] = ()


@dataclass(frozen=True, slots=True)
class ShipmentBatch:
    id: UUID
    batch_number: int
    shipped_at: datetime
    shipped_by_user_id: UUID
    idempotency_key: str | None
    lines: tuple[ShipmentBatchLine, ...]


@dataclass(frozen=True, slots=True)
class ReceiptBatchLine:
    id: UUID
    item_id: UUID
    product_id: UUID
    qty: int
    unit_cost_minor: int
    lot_id: UUID


@dataclass(frozen=True, slots=True)
class ReceiptBatch:
    id: UUID
    batch_number: int
    received_at: datetime
    received_by_user_id: UUID
    idempotency_key: str | None
    lines: tuple[ReceiptBatchLine, ...]


@dataclass(frozen=True, slots=True)
class TransferSummary:
    """Reference to a linked transfer (reversal chain)."""

    id: UUID
    transfer_number: str
    reversal_reason: str | None = None


@dataclass(frozen=True)
class StockTransfer:
    """Fully hydrated transfer aggregate."""

    id: UUID
    tenant_id: UUID
    transfer_number: str
    source_branch_id: UUID
    destination_branch_id: UUID
    status: TransferStatus
    priority: TransferPriority
    initiation_type: InitiationType
    initiated_by_branch_id: UUID
    requested_by_user_id: UUID
    requested_at: datetime
    entity_version: int
    items: tuple[TransferItem, ...]
    reviewed_by_user_id: UUID | None = None
    reviewed_at: datetime | None = None
    shipped_by_user_id: UUID | None = None
    shipped_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    request_notes: str | None = None
    review_notes: str | None = None
    order_notes: str | None = None
    expected_delivery_date: date | None = None
    requires_multi_level_approval: bool = False
    matched_rule_id: UUID | None = None
    is_reversal: bool = False
    reversal_of_id: UUID | None = None
    reversed_by_transfer_id: UUID | None = None
    reversal_reason: str | None = None
    shipment_batches: tuple[ShipmentBatch, ...] = ()
    receipt_batches: tuple[ReceiptBatch, ...] = ()
    approval_records: tuple[ApprovalProgressRecord, ...] = ()
    reversal_of: TransferSummary | None = None
    reversed_by: TransferSummary | None = None

    @property
    def total_qty_requested(self) -> int:
        return sum(item.qty_requested for item in self.items)

    def item_for_product(self, product_id: UUID) -> TransferItem | None:
        return next((i for i in self.items if i.product_id == product_id), None)


@dataclass(frozen=True)
class ShipmentResult:
    """Outcome of a ship call.  ``replayed`` marks an idempotent repeat."""

    transfer: StockTransfer
    batch: ShipmentBatch
    replayed: bool = False


@dataclass(frozen=True)
class ReceiptResult:
    transfer: StockTransfer
    batch: ReceiptBatch
    replayed: bool = False


# =========================================================================
# Listing
# =========================================================================


@dataclass(frozen=True)
class TransferFilters:
    branch_id: UUID | None = None
    direction: TransferDirection | None = None
    statuses: tuple[TransferStatus, ...] = ()
    priority: TransferPriority | None = None
    initiation_type: InitiationType | None = None
    q: str | None = None
    requested_from: datetime | None = None
    requested_to: datetime | None = None
    shipped_from: datetime | None = None
    shipped_to: datetime | None = None
    expected_delivery_from: date | None = None
    expected_delivery_to: date | None = None


T = TypeVar("T")


@dataclass(frozen=True)
class Page(Generic[T]):
    items: tuple[T, ...]
    next_cursor: str | None = None
    has_next_page: bool = False
    total_count: int | None = None
    applied_filters: dict = field(default_factory=dict)
