"""
Approval rule domain types (``stock_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for transfer approval policies and the pure
functions that validate a rule definition, evaluate its conditions
against a transfer's computed totals, pick the governing rule and judge
progress through its levels.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  Existence
checks (branches, roles) need the Directory collaborator and therefore
live in ``services/approval_rule_service.py``.

Invariants enforced
-------------------
* A rule has at least one condition and at least one level.
* Levels are numbered contiguously from 1 with no gaps or duplicates.
* Each level names exactly one of ``required_role_id`` or
  ``required_user_id``.
* A rule applies only if ALL its conditions hold.  Threshold conditions
  hold when the total is strictly greater than the threshold.
* Rule selection order is ``created_at`` descending, then ``id``
  descending.  First full match wins.
* SEQUENTIAL mode: level N may only be satisfied after levels 1..N-1.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence
from uuid import UUID

from stock_kernel.domain.patch import UNSET, Patchable
from stock_kernel.domain.values import (
    BRANCH_CONDITIONS,
    THRESHOLD_CONDITIONS,
    ApprovalMode,
    ApprovalRecordStatus,
    ConditionType,
)
from stock_kernel.exceptions import ValidationError

# =========================================================================
# Rule definition types
# =========================================================================


@dataclass(frozen=True)
class ApprovalCondition:
    condition_type: ConditionType
    threshold: int | None = None
    branch_id: UUID | None = None


@dataclass(frozen=True)
class ApprovalLevelSpec:
    level: int
    name: str
    required_role_id: UUID | None = None
    required_user_id: UUID | None = None


@dataclass(frozen=True)
class NewApprovalRule:
    name: str
    conditions: tuple[ApprovalCondition, ...]
    levels: tuple[ApprovalLevelSpec, ...]
    approval_mode: ApprovalMode = ApprovalMode.SEQUENTIAL
    description: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class ApprovalRulePatch:
    """Partial update.  Fields left as UNSET are not touched."""

    name: Patchable[str] = UNSET
    description: Patchable[str | None] = UNSET
    is_active: Patchable[bool] = UNSET
    approval_mode: Patchable[ApprovalMode] = UNSET
    conditions: Patchable[tuple[ApprovalCondition, ...]] = UNSET
    levels: Patchable[tuple[ApprovalLevelSpec, ...]] = UNSET


@dataclass(frozen=True)
class ApprovalRule:
    id: UUID
    tenant_id: UUID
    name: str
    description: str | None
    is_active: bool
    approval_mode: ApprovalMode
    conditions: tuple[ApprovalCondition, ...]
    levels: tuple[ApprovalLevelSpec, ...]
    created_at: datetime
    entity_version: int
    archived_at: datetime | None = None

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    @property
    def is_eligible(self) -> bool:
        return self.is_active and not self.is_archived


# =========================================================================
# Progress types
# =========================================================================


@dataclass(frozen=True)
class ApprovalProgressRecord:
    id: UUID
    transfer_id: UUID
    rule_id: UUID
    level: int
    level_name: str
    status: ApprovalRecordStatus
    required_role_id: UUID | None = None
    required_user_id: UUID | None = None
    approved_by_user_id: UUID | None = None
    approved_at: datetime | None = None
    notes: str | None = None

    @property
    def is_satisfied(self) -> bool:
        return self.status == ApprovalRecordStatus.APPROVED


@dataclass(frozen=True)
class ApprovalProgress:
    transfer_id: UUID
    requires_multi_level_approval: bool
    rule_id: UUID | None
    approval_mode: ApprovalMode | None
    records: tuple[ApprovalProgressRecord, ...]
    is_fully_approved: bool

    @property
    def pending_levels(self) -> tuple[int, ...]:
        return tuple(r.level for r in self.records if not r.is_satisfied)


@dataclass(frozen=True)
class ApprovalSubmission:
    """Result of ``submit_approval``: the record and the transfer version after it."""

    record: ApprovalProgressRecord
    entity_version: int


@dataclass(frozen=True)
class TransferTotals:
    """Computed facts a rule's conditions are evaluated against."""

    total_qty: int
    total_value_minor: int
    source_branch_id: UUID
    destination_branch_id: UUID


# =========================================================================
# Validation
# =========================================================================


def validate_rule_definition(
    name: str,
    conditions: Sequence[ApprovalCondition],
    levels: Sequence[ApprovalLevelSpec],
) -> None:
    """Structural validation; raises ValidationError before persistence."""
    if not name or not name.strip():
        raise ValidationError("Rule name is required", field="name")
    validate_conditions(conditions)
    validate_levels(levels)


def validate_conditions(conditions: Sequence[ApprovalCondition]) -> None:
    if not conditions:
        raise ValidationError("At least one condition is required", field="conditions")
    for cond in conditions:
        if cond.condition_type in THRESHOLD_CONDITIONS:
            if cond.threshold is None or cond.threshold < 0:
                raise ValidationError(
                    f"{cond.condition_type.value} requires a non-negative threshold",
                    field="conditions.threshold",
                )
        elif cond.condition_type in BRANCH_CONDITIONS:
            if cond.branch_id is None:
                raise ValidationError(
                    f"{cond.condition_type.value} requires a branch_id",
                    field="conditions.branch_id",
                )


def validate_levels(levels: Sequence[ApprovalLevelSpec]) -> None:
    if not levels:
        raise ValidationError("At least one approval level is required", field="levels")
    numbers = sorted(level.level for level in levels)
    if numbers != list(range(1, len(levels) + 1)):
        raise ValidationError(
            f"Approval levels must be numbered contiguously from 1, got {numbers}",
            field="levels.level",
        )
    for spec in levels:
        if not spec.name or not spec.name.strip():
            raise ValidationError(f"Level {spec.level} requires a name", field="levels.name")
        has_role = spec.required_role_id is not None
        has_user = spec.required_user_id is not None
        if has_role == has_user:
            raise ValidationError(
                f"Level {spec.level} must specify exactly one of "
                "required_role_id or required_user_id",
                field="levels",
            )


# =========================================================================
# Matching
# =========================================================================


def condition_matches(condition: ApprovalCondition, totals: TransferTotals) -> bool:
    ctype = condition.condition_type
    if ctype == ConditionType.TOTAL_QTY_THRESHOLD:
        return totals.total_qty > (condition.threshold or 0)
    if ctype == ConditionType.TOTAL_VALUE_THRESHOLD:
        return totals.total_value_minor > (condition.threshold or 0)
    if ctype == ConditionType.SOURCE_BRANCH:
        return totals.source_branch_id == condition.branch_id
    if ctype == ConditionType.DESTINATION_BRANCH:
        return totals.destination_branch_id == condition.branch_id
    return False


def rule_matches(rule: ApprovalRule, totals: TransferTotals) -> bool:
    if not rule.conditions:
        return False
    return all(condition_matches(c, totals) for c in rule.conditions)


def rule_evaluation_order(rules: Iterable[ApprovalRule]) -> list[ApprovalRule]:
    """Newest first; ``id`` descending breaks ties."""
    return sorted(rules, key=lambda r: (r.created_at, r.id.int), reverse=True)


def select_rule(
    rules: Iterable[ApprovalRule],
    totals: TransferTotals,
) -> ApprovalRule | None:
    for rule in rule_evaluation_order(rules):
        if rule.is_eligible and rule_matches(rule, totals):
            return rule
    return None


# =========================================================================
# Progress evaluation
# =========================================================================


def is_fully_approved(records: Sequence[ApprovalProgressRecord]) -> bool:
    """True iff every record is satisfied.  An empty set is not approved."""
    return bool(records) and all(r.is_satisfied for r in records)


def blocking_level(
    records: Sequence[ApprovalProgressRecord],
    level: int,
    mode: ApprovalMode,
) -> int | None:
    """Lowest unsatisfied level below ``level`` in SEQUENTIAL mode."""
    if mode == ApprovalMode.PARALLEL:
        return None
    pending = sorted(r.level for r in records if r.level < level and not r.is_satisfied)
    return pending[0] if pending else None


def level_authorizes(
    required_user_id: UUID | None,
    required_role_id: UUID | None,
    approver_user_id: UUID,
    approver_has_role: bool,
) -> bool:
    """A named user must match exactly; otherwise the role must be held."""
    if required_user_id is not None:
        return required_user_id == approver_user_id
    if required_role_id is not None:
        return approver_has_role
    return False
