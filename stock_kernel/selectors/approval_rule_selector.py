"""
Module: stock_kernel.selectors.approval_rule_selector
Responsibility: Read-only approval rule listing and per-transfer approval
    progress.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Rules are listed in evaluation order (``created_at`` DESC, ``id``
      DESC), the order ``match_rule`` tries them in.
    - Archived rules are hidden unless asked for.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select

from stock_kernel.domain.approval import ApprovalProgress, ApprovalRule
from stock_kernel.exceptions import NotFoundError
from stock_kernel.models.approval import ApprovalRuleModel
from stock_kernel.models.transfer import StockTransferModel
from stock_kernel.selectors.base import BaseSelector


class ApprovalRuleSelector(BaseSelector[ApprovalRuleModel]):
    def get_rule(self, tenant_id: UUID, rule_id: UUID) -> ApprovalRule:
        row = self.session.execute(
            select(ApprovalRuleModel).where(
                ApprovalRuleModel.id == rule_id,
                ApprovalRuleModel.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError("ApprovalRule", str(rule_id))
        return row.to_dto()

    def list_rules(
        self,
        tenant_id: UUID,
        is_active: bool | None = None,
        include_archived: bool = False,
    ) -> list[ApprovalRule]:
        stmt = select(ApprovalRuleModel).where(ApprovalRuleModel.tenant_id == tenant_id)
        if is_active is not None:
            stmt = stmt.where(ApprovalRuleModel.is_active.is_(is_active))
        if not include_archived:
            stmt = stmt.where(ApprovalRuleModel.archived_at.is_(None))
        stmt = stmt.order_by(ApprovalRuleModel.created_at.desc(), ApprovalRuleModel.id.desc())
        return [row.to_dto() for row in self.session.execute(stmt).scalars()]

    def get_approval_progress(self, tenant_id: UUID, transfer_id: UUID) -> ApprovalProgress:
        transfer = self.session.execute(
            select(StockTransferModel).where(
                StockTransferModel.id == transfer_id,
                StockTransferModel.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if transfer is None:
            raise NotFoundError("StockTransfer", str(transfer_id))
        return transfer.approval_progress()
