"""Read-only transfer template queries."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select

from stock_kernel.domain.template import TransferTemplate
from stock_kernel.exceptions import NotFoundError
from stock_kernel.models.template import TransferTemplateModel
from stock_kernel.selectors.base import BaseSelector


class TemplateSelector(BaseSelector[TransferTemplateModel]):
    def get_template(self, tenant_id: UUID, template_id: UUID) -> TransferTemplate:
        row = self.session.execute(
            select(TransferTemplateModel).where(
                TransferTemplateModel.id == template_id,
                TransferTemplateModel.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError("TransferTemplate", str(template_id))
        return row.to_dto()

    def list_templates(
        self,
        tenant_id: UUID,
        include_archived: bool = False,
        branch_id: UUID | None = None,
    ) -> list[TransferTemplate]:
        """Templates by name.  ``branch_id`` matches either end."""
        stmt = select(TransferTemplateModel).where(TransferTemplateModel.tenant_id == tenant_id)
        if not include_archived:
            stmt = stmt.where(TransferTemplateModel.archived_at.is_(None))
        if branch_id is not None:
            stmt = stmt.where(
                (TransferTemplateModel.source_branch_id == branch_id)
                | (TransferTemplateModel.destination_branch_id == branch_id)
            )
        stmt = stmt.order_by(TransferTemplateModel.name, TransferTemplateModel.id)
        return [row.to_dto() for row in self.session.execute(stmt).scalars()]
