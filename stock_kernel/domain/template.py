"""Transfer template value objects."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Sequence
from uuid import UUID

from stock_kernel.domain.patch import UNSET, Patchable
from stock_kernel.domain.values import InitiationType, TransferPriority
from stock_kernel.exceptions import ValidationError


@dataclass(frozen=True)
class TemplateItem:
    product_id: UUID
    default_qty: int


@dataclass(frozen=True)
class NewTransferTemplate:
    name: str
    source_branch_id: UUID
    destination_branch_id: UUID
    items: tuple[TemplateItem, ...]
    description: str | None = None


@dataclass(frozen=True)
class TransferTemplatePatch:
    name: Patchable[str] = UNSET
    description: Patchable[str | None] = UNSET
    source_branch_id: Patchable[UUID] = UNSET
    destination_branch_id: Patchable[UUID] = UNSET
    items: Patchable[tuple[TemplateItem, ...]] = UNSET


@dataclass(frozen=True)
class TransferTemplate:
    id: UUID
    tenant_id: UUID
    name: str
    description: str | None
    source_branch_id: UUID
    destination_branch_id: UUID
    items: tuple[TemplateItem, ...]
    created_by_user_id: UUID
    created_at: datetime
    entity_version: int
    archived_at: datetime | None = None

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None


@dataclass(frozen=True)
class TemplateTransferOverrides:
    """Adjustments applied when a transfer is raised from a template."""

    quantities: tuple[tuple[UUID, int], ...] = ()
    priority: TransferPriority = TransferPriority.NORMAL
    initiation_type: InitiationType | None = None
    request_notes: str | None = None
    expected_delivery_date: date | None = None


def validate_template(
    name: str,
    source_branch_id: UUID,
    destination_branch_id: UUID,
    items: Sequence[TemplateItem],
) -> None:
    if not name or not name.strip():
        raise ValidationError("Template name is required", field="name")
    if source_branch_id == destination_branch_id:
        raise ValidationError(
            "Source and destination branches must differ",
            field="destination_branch_id",
        )
    if not items:
        raise ValidationError("At least one item is required", field="items")
    products = [item.product_id for item in items]
    if len(set(products)) != len(products):
        raise ValidationError("Duplicate product in template items", field="items.product_id")
    for item in items:
        if item.default_qty <= 0:
            raise ValidationError(
                f"default_qty must be positive for product {item.product_id}",
                field="items.default_qty",
            )
