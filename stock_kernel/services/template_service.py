"""
TemplateService -- reusable transfer templates.

Responsibility:
    CRUD for ``TransferTemplate`` plus ``create_transfer_from_template``,
    which expands a template into a ``NewTransfer`` and hands it to
    TransferService.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - A template names two distinct existing branches and at least one
      existing product, each once, with a positive default quantity.
    - Archived templates cannot be edited or used; restore first.
    - A transfer raised from a template goes through exactly the same
      checks as one raised directly (membership, approval matching).
"""

from __future__ import annotations

from typing import Sequence
from uuid import UUID, uuid4

from stock_config.schema import TransferConfig
from stock_kernel.db.unit_of_work import UnitOfWork
from stock_kernel.domain.audit import AuditAction, AuditEntityType, TemplateSnapshot
from stock_kernel.domain.patch import apply_patch, is_set
from stock_kernel.domain.ports import Actor, Directory
from stock_kernel.domain.template import (
    NewTransferTemplate,
    TemplateItem,
    TemplateTransferOverrides,
    TransferTemplate,
    TransferTemplatePatch,
    validate_template,
)
from stock_kernel.domain.transfer import NewTransfer, StockTransfer, TransferItemRequest
from stock_kernel.exceptions import ConflictError, NotFoundError, ValidationError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.template import TransferTemplateItemModel, TransferTemplateModel
from stock_kernel.services.base import BaseService
from stock_kernel.services.transfer_service import TransferService

logger = get_logger("services.template")

ENTITY = "TransferTemplate"

_PATCHABLE_SCALARS = ("name", "description", "source_branch_id", "destination_branch_id")


def template_snapshot(template: TransferTemplateModel) -> TemplateSnapshot:
    return TemplateSnapshot(
        name=template.name,
        archived=template.archived_at is not None,
        item_count=len(template.items),
        entity_version=template.entity_version,
    )


class TemplateService(BaseService[TransferTemplateModel]):
    def __init__(
        self,
        uow: UnitOfWork,
        directory: Directory,
        config: TransferConfig | None = None,
    ):
        super().__init__(uow)
        self._directory = directory
        self._config = config

    def _validate_references(
        self,
        tenant_id: UUID,
        source_branch_id: UUID,
        destination_branch_id: UUID,
        items: Sequence[TemplateItem],
    ) -> None:
        for branch_id in (source_branch_id, destination_branch_id):
            if not self._directory.branch_exists(tenant_id, branch_id):
                raise NotFoundError("Branch", str(branch_id))
        for item in items:
            if not self._directory.product_exists(tenant_id, item.product_id):
                raise NotFoundError("Product", str(item.product_id))

    @staticmethod
    def _item_rows(tenant_id: UUID, items: Sequence[TemplateItem]):
        return [
            TransferTemplateItemModel(
                tenant_id=tenant_id,
                position=position,
                product_id=item.product_id,
                default_qty=item.default_qty,
            )
            for position, item in enumerate(items, start=1)
        ]

    def _lock_template(self, tenant_id: UUID, template_id: UUID) -> TransferTemplateModel:
        return self._lock(TransferTemplateModel, tenant_id, template_id, ENTITY)

    @staticmethod
    def _require_active(template: TransferTemplateModel, operation: str) -> None:
        if template.archived_at is not None:
            raise ConflictError(
                f"Template {template.id} is archived; restore it before you {operation}"
            )

    def _audit_template(self, actor, template, action, before) -> None:
        self._audit(
            actor, AuditEntityType.TRANSFER_TEMPLATE, template.id, action,
            before, template_snapshot(template), entity_name=template.name,
        )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_template(self, actor: Actor, request: NewTransferTemplate) -> TransferTemplate:
        validate_template(
            request.name, request.source_branch_id, request.destination_branch_id, request.items,
        )
        self._validate_references(
            actor.tenant_id, request.source_branch_id, request.destination_branch_id,
            request.items,
        )
        now = self._now()
        template = TransferTemplateModel(
            id=uuid4(),
            tenant_id=actor.tenant_id,
            name=request.name.strip(),
            description=request.description,
            source_branch_id=request.source_branch_id,
            destination_branch_id=request.destination_branch_id,
            created_by_user_id=actor.user_id,
            created_at=now,
            updated_at=now,
            entity_version=1,
        )
        template.items = self._item_rows(actor.tenant_id, request.items)
        self.session.add(template)
        self.session.flush()

        self._audit_template(actor, template, AuditAction.TEMPLATE_CREATE, None)
        logger.info(
            "template_created",
            extra={"template_id": str(template.id), "item_count": len(template.items)},
        )
        return template.to_dto()

    def update_template(
        self,
        actor: Actor,
        template_id: UUID,
        patch: TransferTemplatePatch,
        expected_version: int,
    ) -> TransferTemplate:
        """
        Apply an explicit partial update.

        The merged result is validated as a whole, so changing only the
        destination still catches a destination equal to the source.
        """
        template = self._lock_template(actor.tenant_id, template_id)
        self._check_version(template, expected_version, ENTITY)
        self._require_active(template, "update it")

        for name in ("name", "source_branch_id", "destination_branch_id", "items"):
            if is_set(getattr(patch, name)) and getattr(patch, name) is None:
                raise ValidationError(f"{name} cannot be cleared", field=name)

        merged_items = (
            tuple(patch.items) if is_set(patch.items)
            else tuple(item.to_dto() for item in template.items)
        )
        merged_name = patch.name if is_set(patch.name) else template.name
        merged_source = (
            patch.source_branch_id if is_set(patch.source_branch_id)
            else template.source_branch_id
        )
        merged_destination = (
            patch.destination_branch_id if is_set(patch.destination_branch_id)
            else template.destination_branch_id
        )
        validate_template(merged_name, merged_source, merged_destination, merged_items)
        self._validate_references(
            actor.tenant_id, merged_source, merged_destination, merged_items,
        )

        before = template_snapshot(template)
        changed = apply_patch(template, patch, _PATCHABLE_SCALARS)
        if is_set(patch.items) and merged_items != tuple(i.to_dto() for i in template.items):
            # Drop old rows first so (template_id, product_id) stays unique.
            template.items = []
            self.session.flush()
            template.items = self._item_rows(actor.tenant_id, merged_items)
            changed.append("items")

        if not changed:
            return template.to_dto()
        if "name" in changed:
            template.name = template.name.strip()

        self._bump(template)
        self._audit_template(actor, template, AuditAction.TEMPLATE_UPDATE, before)
        logger.info(
            "template_updated",
            extra={"template_id": str(template.id), "changed_fields": changed},
        )
        return template.to_dto()

    def duplicate_template(
        self,
        actor: Actor,
        template_id: UUID,
        name: str | None = None,
    ) -> TransferTemplate:
        """Copy a template.  The copy is active even when the source is archived."""
        source = self.session.get(TransferTemplateModel, template_id)
        if source is None or source.tenant_id != actor.tenant_id:
            raise NotFoundError(ENTITY, str(template_id))
        return self.create_template(
            actor,
            NewTransferTemplate(
                name=name if name is not None else f"{source.name} (copy)",
                description=source.description,
                source_branch_id=source.source_branch_id,
                destination_branch_id=source.destination_branch_id,
                items=tuple(item.to_dto() for item in source.items),
            ),
        )

    def archive_template(
        self, actor: Actor, template_id: UUID, expected_version: int,
    ) -> TransferTemplate:
        return self._set_archived(actor, template_id, expected_version, archived=True)

    def restore_template(
        self, actor: Actor, template_id: UUID, expected_version: int,
    ) -> TransferTemplate:
        return self._set_archived(actor, template_id, expected_version, archived=False)

    def _set_archived(
        self, actor: Actor, template_id: UUID, expected_version: int, archived: bool,
    ) -> TransferTemplate:
        template = self._lock_template(actor.tenant_id, template_id)
        self._check_version(template, expected_version, ENTITY)
        if (template.archived_at is not None) == archived:
            return template.to_dto()

        before = template_snapshot(template)
        template.archived_at = self._now() if archived else None
        self._bump(template)

        action = AuditAction.TEMPLATE_ARCHIVE if archived else AuditAction.TEMPLATE_RESTORE
        self._audit_template(actor, template, action, before)
        logger.info(
            "template_archived" if archived else "template_restored",
            extra={"template_id": str(template.id)},
        )
        return template.to_dto()

    # ------------------------------------------------------------------
    # Use
    # ------------------------------------------------------------------

    def create_transfer_from_template(
        self,
        actor: Actor,
        template_id: UUID,
        overrides: TemplateTransferOverrides | None = None,
    ) -> StockTransfer:
        """
        Raise a transfer from a template.

        ``overrides.quantities`` replaces the default quantity per product;
        a quantity of 0 leaves that product out.  Products not on the
        template are rejected.
        """
        overrides = overrides or TemplateTransferOverrides()
        template = self.session.get(TransferTemplateModel, template_id)
        if template is None or template.tenant_id != actor.tenant_id:
            raise NotFoundError(ENTITY, str(template_id))
        self._require_active(template, "use it")

        quantities = {item.product_id: item.default_qty for item in template.items}
        for product_id, qty in overrides.quantities:
            if product_id not in quantities:
                raise ValidationError(
                    f"Product {product_id} is not on template {template.id}",
                    field="quantities.product_id",
                )
            if qty < 0:
                raise ValidationError(
                    f"Quantity for product {product_id} cannot be negative",
                    field="quantities.qty",
                )
            quantities[product_id] = qty

        request = NewTransfer(
            source_branch_id=template.source_branch_id,
            destination_branch_id=template.destination_branch_id,
            items=tuple(
                TransferItemRequest(product_id=product_id, qty_requested=qty)
                for product_id, qty in quantities.items()
                if qty > 0
            ),
            priority=overrides.priority,
            initiation_type=overrides.initiation_type,
            request_notes=overrides.request_notes,
            expected_delivery_date=overrides.expected_delivery_date,
        )
        transfer = TransferService(self.uow, self._directory, self._config).create_transfer(
            actor, request,
        )
        logger.info(
            "transfer_created_from_template",
            extra={"template_id": str(template.id), "transfer_id": str(transfer.id)},
        )
        return transfer
