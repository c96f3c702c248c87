"""
Module: stock_kernel.models.approval
Responsibility: ORM persistence for approval rules (with their conditions
    and levels) and the per-transfer approval progress records.

Architecture position: Kernel > Models.  May import from db/base.py,
    domain/ and exceptions.py only.

Invariants enforced:
    - Level numbers are unique per rule (UNIQUE); contiguity is checked by
      ``domain.approval.validate_levels`` before persistence.
    - Each level names exactly one of role or user (CHECK).
    - One progress record per (transfer, level) (UNIQUE).
    - ``entity_version`` is the rule's ``version_id_col``.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import TenantScopedBase, UUIDString
from stock_kernel.domain.approval import (
    ApprovalCondition,
    ApprovalLevelSpec,
    ApprovalProgressRecord,
    ApprovalRule,
)
from stock_kernel.domain.values import ApprovalMode, ApprovalRecordStatus, ConditionType


class ApprovalRuleModel(TenantScopedBase):
    """Tenant-global approval policy.  Referenced, never owned, by transfers."""

    __tablename__ = "approval_rules"

    __table_args__ = (
        CheckConstraint(
            "approval_mode IN ('SEQUENTIAL', 'PARALLEL')",
            name="ck_approval_rules_mode",
        ),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    approval_mode: Mapped[str] = mapped_column(String(12), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)
    archived_at: Mapped[datetime | None] = mapped_column(nullable=True)
    entity_version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": entity_version, "version_id_generator": False}

    conditions: Mapped[list["ApprovalRuleConditionModel"]] = relationship(
        "ApprovalRuleConditionModel",
        order_by="ApprovalRuleConditionModel.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    levels: Mapped[list["ApprovalLevelModel"]] = relationship(
        "ApprovalLevelModel",
        order_by="ApprovalLevelModel.level",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<ApprovalRule {self.name!r} {self.approval_mode} v{self.entity_version}>"

    def to_dto(self) -> ApprovalRule:
        return ApprovalRule(
            id=self.id,
            tenant_id=self.tenant_id,
            name=self.name,
            description=self.description,
            is_active=self.is_active,
            approval_mode=ApprovalMode(self.approval_mode),
            conditions=tuple(c.to_dto() for c in self.conditions),
            levels=tuple(level.to_dto() for level in self.levels),
            created_at=self.created_at,
            entity_version=self.entity_version,
            archived_at=self.archived_at,
        )


class ApprovalRuleConditionModel(TenantScopedBase):
    __tablename__ = "approval_rule_conditions"

    __table_args__ = (
        CheckConstraint(
            "condition_type IN ('TOTAL_VALUE_THRESHOLD', 'TOTAL_QTY_THRESHOLD', "
            "'SOURCE_BRANCH', 'DESTINATION_BRANCH')",
            name="ck_approval_rule_conditions_type",
        ),
    )

    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_rules.id"), nullable=False, index=True,
    )
    position: Mapped[int] = mapped_column(nullable=False)
    condition_type: Mapped[str] = mapped_column(String(30), nullable=False)
    threshold: Mapped[int | None] = mapped_column(nullable=True)
    branch_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def to_dto(self) -> ApprovalCondition:
        return ApprovalCondition(
            condition_type=ConditionType(self.condition_type),
            threshold=self.threshold,
            branch_id=self.branch_id,
        )


class ApprovalLevelModel(TenantScopedBase):
    __tablename__ = "approval_levels"

    __table_args__ = (
        UniqueConstraint("rule_id", "level", name="uq_approval_levels_rule_level"),
        CheckConstraint("level >= 1", name="ck_approval_levels_positive"),
        CheckConstraint(
            "(required_role_id IS NULL) <> (required_user_id IS NULL)",
            name="ck_approval_levels_one_approver",
        ),
    )

    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_rules.id"), nullable=False, index=True,
    )
    level: Mapped[int] = mapped_column(nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    required_role_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    required_user_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def to_dto(self) -> ApprovalLevelSpec:
        return ApprovalLevelSpec(
            level=self.level,
            name=self.name,
            required_role_id=self.required_role_id,
            required_user_id=self.required_user_id,
        )


class ApprovalProgressRecordModel(TenantScopedBase):
    """
    One level of a matched rule for one transfer.

    The level's name and approver requirement are copied at seeding time,
    so later edits to the rule do not change a transfer already in flight.
    """

    __tablename__ = "approval_progress_records"

    __table_args__ = (
        UniqueConstraint("transfer_id", "level", name="uq_approval_progress_level"),
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED')",
            name="ck_approval_progress_status",
        ),
    )

    transfer_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("stock_transfers.id"), nullable=False, index=True,
    )
    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_rules.id"), nullable=False,
    )
    level: Mapped[int] = mapped_column(nullable=False)
    level_name: Mapped[str] = mapped_column(String(200), nullable=False)
    required_role_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    required_user_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="PENDING")
    approved_by_user_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dto(self) -> ApprovalProgressRecord:
        return ApprovalProgressRecord(
            id=self.id,
            transfer_id=self.transfer_id,
            rule_id=self.rule_id,
            level=self.level,
            level_name=self.level_name,
            status=ApprovalRecordStatus(self.status),
            required_role_id=self.required_role_id,
            required_user_id=self.required_user_id,
            approved_by_user_id=self.approved_by_user_id,
            approved_at=self.approved_at,
            notes=self.notes,
        )
