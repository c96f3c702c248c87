"""ORM persistence for reusable transfer templates."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import TenantScopedBase, UUIDString
from stock_kernel.domain.template import TemplateItem, TransferTemplate


class TransferTemplateModel(TenantScopedBase):
    __tablename__ = "transfer_templates"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_branch_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    destination_branch_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    created_by_user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)
    archived_at: Mapped[datetime | None] = mapped_column(nullable=True)
    entity_version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": entity_version, "version_id_generator": False}

    items: Mapped[list["TransferTemplateItemModel"]] = relationship(
        "TransferTemplateItemModel",
        order_by="TransferTemplateItemModel.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<TransferTemplate {self.name!r} v{self.entity_version}>"

    def to_dto(self) -> TransferTemplate:
        return TransferTemplate(
            id=self.id,
            tenant_id=self.tenant_id,
            name=self.name,
            description=self.description,
            source_branch_id=self.source_branch_id,
            destination_branch_id=self.destination_branch_id,
            items=tuple(item.to_dto() for item in self.items),
            created_by_user_id=self.created_by_user_id,
            created_at=self.created_at,
            entity_version=self.entity_version,
            archived_at=self.archived_at,
        )


class TransferTemplateItemModel(TenantScopedBase):
    __tablename__ = "transfer_template_items"

    __table_args__ = (
        UniqueConstraint("template_id", "product_id", name="uq_template_items_product"),
        CheckConstraint("default_qty > 0", name="ck_template_items_qty"),
    )

    template_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("transfer_templates.id"), nullable=False, index=True,
    )
    position: Mapped[int] = mapped_column(nullable=False)
    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    default_qty: Mapped[int] = mapped_column(nullable=False)

    def to_dto(self) -> TemplateItem:
        return TemplateItem(product_id=self.product_id, default_qty=self.default_qty)
