"""
ApprovalRuleService -- approval policy CRUD and multi-level progress.

Responsibility:
    Creates, patches, archives and restores approval rules; decides which
    rule governs a new transfer; seeds and advances the transfer's
    approval progress records.

Architecture position:
    Kernel > Services -- imperative shell.  Called by TransferService at
    creation (rule matching, seeding) and approval (gate check), and by
    the API facade for rule CRUD and ``submit_approval``.  Structural
    validation and matching are pure functions in
    ``domain/approval.py``.

Invariants enforced:
    - A rule is validated in full (structure, branches, roles) before any
      row is written.
    - Only active, non-archived rules match.  Evaluation order is
      ``created_at`` descending, then ``id`` descending.
    - SEQUENTIAL rules are satisfied strictly in level order.
    - Re-submitting an already satisfied level is a no-op that returns
      the existing record.
    - Progress records copy each level's approver requirement, so edits
      to a rule never change transfers already in flight.

Failure modes:
    - ValidationError: malformed rule, unknown branch or role.
    - NotFoundError: unknown rule, transfer or approval level.
    - PermissionDeniedError: approver is not the named user and does not
      hold the named role.
    - OutOfOrderApprovalError: SEQUENTIAL level submitted early.
    - IllegalTransitionError: transfer is no longer REQUESTED.
    - StaleVersionError: caller's entity version is out of date.
"""

from __future__ import annotations

from typing import Sequence
from uuid import UUID

from sqlalchemy import select

from stock_kernel.db.unit_of_work import UnitOfWork
from stock_kernel.domain.approval import (
    ApprovalCondition,
    ApprovalLevelSpec,
    ApprovalRule,
    ApprovalRulePatch,
    ApprovalSubmission,
    NewApprovalRule,
    TransferTotals,
    blocking_level,
    level_authorizes,
    select_rule,
    validate_conditions,
    validate_levels,
    validate_rule_definition,
)
from stock_kernel.domain.audit import (
    ApprovalLevelSnapshot,
    ApprovalRuleSnapshot,
    AuditAction,
    AuditEntityType,
)
from stock_kernel.domain.patch import apply_patch, is_set
from stock_kernel.domain.ports import Actor, Directory
from stock_kernel.domain.transfer import TransferItemRequest, require_status
from stock_kernel.domain.values import (
    BRANCH_CONDITIONS,
    ApprovalMode,
    ApprovalRecordStatus,
    TransferStatus,
)
from stock_kernel.exceptions import (
    NotFoundError,
    OutOfOrderApprovalError,
    PermissionDeniedError,
    ValidationError,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.approval import (
    ApprovalLevelModel,
    ApprovalProgressRecordModel,
    ApprovalRuleConditionModel,
    ApprovalRuleModel,
)
from stock_kernel.models.transfer import StockTransferModel
from stock_kernel.services.base import BaseService

logger = get_logger("services.approval_rule")

_PATCHABLE_SCALARS = ("name", "description", "is_active", "approval_mode")


def rule_snapshot(rule: ApprovalRuleModel) -> ApprovalRuleSnapshot:
    return ApprovalRuleSnapshot(
        name=rule.name,
        is_active=rule.is_active,
        approval_mode=rule.approval_mode,
        archived=rule.archived_at is not None,
        condition_count=len(rule.conditions),
        level_count=len(rule.levels),
        entity_version=rule.entity_version,
    )


def _level_snapshot(record: ApprovalProgressRecordModel) -> ApprovalLevelSnapshot:
    return ApprovalLevelSnapshot(
        level=record.level,
        status=record.status,
        approved_by_user_id=record.approved_by_user_id,
        notes=record.notes,
    )


class ApprovalRuleService(BaseService[ApprovalRuleModel]):
    """
    Service for approval rules and approval progress.

    Contract:
        Rule mutations take the caller's ``entity_version`` and bump it.
        ``submit_approval`` operates on a transfer already locked by the
        caller or locks it itself.

    Non-goals:
        - Does NOT move a transfer to APPROVED.  Satisfying the last level
          only lifts the gate; ``TransferService.approve_or_reject`` does
          the transition.
    """

    def __init__(self, uow: UnitOfWork, directory: Directory):
        super().__init__(uow)
        self._directory = directory

    # ------------------------------------------------------------------
    # Validation against the directory
    # ------------------------------------------------------------------

    def _validate_references(
        self,
        tenant_id: UUID,
        conditions: Sequence[ApprovalCondition],
        levels: Sequence[ApprovalLevelSpec],
    ) -> None:
        for cond in conditions:
            if cond.condition_type in BRANCH_CONDITIONS and not self._directory.branch_exists(
                tenant_id, cond.branch_id
            ):
                raise ValidationError(
                    f"Branch {cond.branch_id} does not exist",
                    field="conditions.branch_id",
                )
        for spec in levels:
            if spec.required_role_id is not None and not self._directory.role_exists(
                tenant_id, spec.required_role_id
            ):
                raise ValidationError(
                    f"Role {spec.required_role_id} does not exist",
                    field="levels.required_role_id",
                )

    @staticmethod
    def _condition_rows(tenant_id: UUID, conditions: Sequence[ApprovalCondition]):
        return [
            ApprovalRuleConditionModel(
                tenant_id=tenant_id,
                position=position,
                condition_type=cond.condition_type.value,
                threshold=cond.threshold,
                branch_id=cond.branch_id,
            )
            for position, cond in enumerate(conditions, start=1)
        ]

    @staticmethod
    def _level_rows(tenant_id: UUID, levels: Sequence[ApprovalLevelSpec]):
        return [
            ApprovalLevelModel(
                tenant_id=tenant_id,
                level=spec.level,
                name=spec.name.strip(),
                required_role_id=spec.required_role_id,
                required_user_id=spec.required_user_id,
            )
            for spec in sorted(levels, key=lambda s: s.level)
        ]

    # ------------------------------------------------------------------
    # Rule CRUD
    # ------------------------------------------------------------------

    def create_rule(self, actor: Actor, request: NewApprovalRule) -> ApprovalRule:
        validate_rule_definition(request.name, request.conditions, request.levels)
        self._validate_references(actor.tenant_id, request.conditions, request.levels)

        now = self._now()
        rule = ApprovalRuleModel(
            tenant_id=actor.tenant_id,
            name=request.name.strip(),
            description=request.description,
            is_active=request.is_active,
            approval_mode=request.approval_mode.value,
            created_at=now,
            updated_at=now,
            entity_version=1,
        )
        rule.conditions = self._condition_rows(actor.tenant_id, request.conditions)
        rule.levels = self._level_rows(actor.tenant_id, request.levels)
        self.session.add(rule)
        self.session.flush()

        self._audit(
            actor, AuditEntityType.APPROVAL_RULE, rule.id, AuditAction.APPROVAL_RULE_CREATE,
            None, rule_snapshot(rule), entity_name=rule.name,
        )
        logger.info(
            "approval_rule_created",
            extra={
                "rule_id": str(rule.id),
                "approval_mode": rule.approval_mode,
                "condition_count": len(rule.conditions),
                "level_count": len(rule.levels),
            },
        )
        return rule.to_dto()

    def update_rule(
        self,
        actor: Actor,
        rule_id: UUID,
        patch: ApprovalRulePatch,
        expected_version: int,
    ) -> ApprovalRule:
        """
        Apply an explicit partial update.

        Fields left UNSET are untouched.  Replaced conditions or levels are
        validated as a whole before the old rows are dropped.
        """
        rule = self._lock(ApprovalRuleModel, actor.tenant_id, rule_id, "ApprovalRule")
        self._check_version(rule, expected_version, "ApprovalRule")
        before = rule_snapshot(rule)

        if is_set(patch.name) and (patch.name is None or not patch.name.strip()):
            raise ValidationError("Rule name is required", field="name")
        if is_set(patch.is_active) and patch.is_active is None:
            raise ValidationError("is_active cannot be cleared", field="is_active")
        if is_set(patch.approval_mode) and patch.approval_mode is None:
            raise ValidationError("approval_mode cannot be cleared", field="approval_mode")
        if is_set(patch.conditions):
            validate_conditions(patch.conditions or ())
        if is_set(patch.levels):
            validate_levels(patch.levels or ())
        self._validate_references(
            actor.tenant_id,
            patch.conditions if is_set(patch.conditions) else (),
            patch.levels if is_set(patch.levels) else (),
        )

        changed = apply_patch(rule, patch, _PATCHABLE_SCALARS)
        if is_set(patch.conditions):
            rule.conditions = self._condition_rows(actor.tenant_id, patch.conditions)
            changed.append("conditions")
        if is_set(patch.levels):
            # Drop old levels first so (rule_id, level) stays unique.
            rule.levels = []
            self.session.flush()
            rule.levels = self._level_rows(actor.tenant_id, patch.levels)
            changed.append("levels")

        if not changed:
            return rule.to_dto()

        self._bump(rule)
        self._audit(
            actor, AuditEntityType.APPROVAL_RULE, rule.id, AuditAction.APPROVAL_RULE_UPDATE,
            before, rule_snapshot(rule), entity_name=rule.name,
        )
        logger.info(
            "approval_rule_updated",
            extra={"rule_id": str(rule.id), "changed_fields": changed},
        )
        return rule.to_dto()

    def archive_rule(self, actor: Actor, rule_id: UUID, expected_version: int) -> ApprovalRule:
        """Soft delete.  Archived rules never match; history keeps them."""
        return self._set_archived(actor, rule_id, expected_version, archived=True)

    def restore_rule(self, actor: Actor, rule_id: UUID, expected_version: int) -> ApprovalRule:
        return self._set_archived(actor, rule_id, expected_version, archived=False)

    def _set_archived(
        self, actor: Actor, rule_id: UUID, expected_version: int, archived: bool,
    ) -> ApprovalRule:
        rule = self._lock(ApprovalRuleModel, actor.tenant_id, rule_id, "ApprovalRule")
        self._check_version(rule, expected_version, "ApprovalRule")
        if (rule.archived_at is not None) == archived:
            return rule.to_dto()

        before = rule_snapshot(rule)
        now = self._now()
        rule.archived_at = now if archived else None
        self._bump(rule)

        action = (
            AuditAction.APPROVAL_RULE_ARCHIVE if archived else AuditAction.APPROVAL_RULE_RESTORE
        )
        self._audit(
            actor, AuditEntityType.APPROVAL_RULE, rule.id, action,
            before, rule_snapshot(rule), entity_name=rule.name,
        )
        logger.info(
            "approval_rule_archived" if archived else "approval_rule_restored",
            extra={"rule_id": str(rule.id)},
        )
        return rule.to_dto()

    # ------------------------------------------------------------------
    # Matching and seeding
    # ------------------------------------------------------------------

    def compute_totals(
        self,
        tenant_id: UUID,
        source_branch_id: UUID,
        destination_branch_id: UUID,
        items: Sequence[TransferItemRequest],
    ) -> TransferTotals:
        return TransferTotals(
            total_qty=sum(item.qty_requested for item in items),
            total_value_minor=sum(
                item.qty_requested
                * self._directory.product_unit_price_minor(tenant_id, item.product_id)
                for item in items
            ),
            source_branch_id=source_branch_id,
            destination_branch_id=destination_branch_id,
        )

    def match_rule(self, tenant_id: UUID, totals: TransferTotals) -> ApprovalRule | None:
        """First eligible rule whose conditions all hold, or None."""
        rows = self.session.execute(
            select(ApprovalRuleModel).where(
                ApprovalRuleModel.tenant_id == tenant_id,
                ApprovalRuleModel.is_active.is_(True),
                ApprovalRuleModel.archived_at.is_(None),
            )
        ).scalars()
        rule = select_rule((row.to_dto() for row in rows), totals)
        logger.debug(
            "approval_rule_matched" if rule else "approval_rule_not_matched",
            extra={
                "rule_id": str(rule.id) if rule else None,
                "total_qty": totals.total_qty,
                "total_value_minor": totals.total_value_minor,
            },
        )
        return rule

    def create_progress_records(
        self,
        transfer: StockTransferModel,
        rule: ApprovalRule,
    ) -> list[ApprovalProgressRecordModel]:
        """Seed one PENDING record per level of ``rule``."""
        records = [
            ApprovalProgressRecordModel(
                tenant_id=transfer.tenant_id,
                transfer_id=transfer.id,
                rule_id=rule.id,
                level=spec.level,
                level_name=spec.name,
                required_role_id=spec.required_role_id,
                required_user_id=spec.required_user_id,
                status=ApprovalRecordStatus.PENDING.value,
            )
            for spec in sorted(rule.levels, key=lambda s: s.level)
        ]
        transfer.approval_records = records
        transfer.requires_multi_level_approval = True
        transfer.matched_rule_id = rule.id
        transfer.approval_mode = rule.approval_mode.value
        return records

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def submit_approval(
        self,
        actor: Actor,
        transfer_id: UUID,
        level: int,
        notes: str | None = None,
        expected_version: int | None = None,
    ) -> ApprovalSubmission:
        """
        Satisfy one approval level.

        Returns the record and the transfer's entity version afterwards.
        An already satisfied level is returned unchanged and the version
        is not bumped.
        """
        transfer = self._lock(StockTransferModel, actor.tenant_id, transfer_id, "StockTransfer")
        record = next((r for r in transfer.approval_records if r.level == level), None)
        if record is None:
            raise NotFoundError("ApprovalLevel", f"{transfer_id}/{level}")
        if record.status == ApprovalRecordStatus.APPROVED.value:
            return ApprovalSubmission(record.to_dto(), transfer.entity_version)

        self._check_version(transfer, expected_version, "StockTransfer")
        require_status(
            transfer.id, TransferStatus(transfer.status), {TransferStatus.REQUESTED},
            "submit approval for",
        )

        has_role = record.required_role_id is not None and self._directory.user_has_role(
            actor.tenant_id, actor.user_id, record.required_role_id
        )
        if not level_authorizes(
            record.required_user_id, record.required_role_id, actor.user_id, has_role,
        ):
            raise PermissionDeniedError(
                f"not authorized for approval level {level}", str(actor.user_id),
            )

        mode = ApprovalMode(transfer.approval_mode or ApprovalMode.SEQUENTIAL.value)
        blocking = blocking_level(
            [r.to_dto() for r in transfer.approval_records], level, mode,
        )
        if blocking is not None:
            raise OutOfOrderApprovalError(str(transfer.id), level, blocking)

        before = _level_snapshot(record)
        now = self._now()
        record.status = ApprovalRecordStatus.APPROVED.value
        record.approved_by_user_id = actor.user_id
        record.approved_at = now
        record.notes = notes
        self._bump(transfer)

        self._audit(
            actor, AuditEntityType.STOCK_TRANSFER, transfer.id,
            AuditAction.TRANSFER_APPROVE_LEVEL, before, _level_snapshot(record),
            entity_name=transfer.transfer_number,
        )
        logger.info(
            "approval_level_satisfied",
            extra={
                "transfer_id": str(transfer.id),
                "level": level,
                "approval_mode": mode.value,
                "fully_approved": transfer.approval_progress().is_fully_approved,
            },
        )
        return ApprovalSubmission(record.to_dto(), transfer.entity_version)
