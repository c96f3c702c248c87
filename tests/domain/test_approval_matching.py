"""
Approval rule validation, matching and progress evaluation (pure).
"""

from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest

from stock_kernel.domain.approval import (
    ApprovalCondition,
    ApprovalLevelSpec,
    ApprovalProgressRecord,
    ApprovalRule,
    TransferTotals,
    blocking_level,
    condition_matches,
    is_fully_approved,
    level_authorizes,
    rule_evaluation_order,
    select_rule,
    validate_rule_definition,
)
from stock_kernel.domain.values import (
    ApprovalMode,
    ApprovalRecordStatus,
    ConditionType,
)
from stock_kernel.exceptions import ValidationError

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
SRC = uuid4()
DST = uuid4()


def totals(qty=10, value=5_000, src=SRC, dst=DST):
    return TransferTotals(
        total_qty=qty, total_value_minor=value, source_branch_id=src, destination_branch_id=dst,
    )


def rule(*conditions, created_at=T0, rule_id=None, is_active=True, archived=False):
    return ApprovalRule(
        id=rule_id or uuid4(),
        tenant_id=uuid4(),
        name="r",
        description=None,
        is_active=is_active,
        approval_mode=ApprovalMode.SEQUENTIAL,
        conditions=tuple(conditions),
        levels=(ApprovalLevelSpec(1, "Manager", required_role_id=uuid4()),),
        created_at=created_at,
        entity_version=1,
        archived_at=T0 if archived else None,
    )


def qty_over(threshold):
    return ApprovalCondition(ConditionType.TOTAL_QTY_THRESHOLD, threshold=threshold)


def record(level, approved=False):
    return ApprovalProgressRecord(
        id=uuid4(),
        transfer_id=uuid4(),
        rule_id=uuid4(),
        level=level,
        level_name=f"L{level}",
        status=ApprovalRecordStatus.APPROVED if approved else ApprovalRecordStatus.PENDING,
    )


class TestValidation:
    def test_valid_rule_passes(self):
        validate_rule_definition(
            "Large",
            [qty_over(100)],
            [
                ApprovalLevelSpec(1, "Manager", required_role_id=uuid4()),
                ApprovalLevelSpec(2, "Director", required_user_id=uuid4()),
            ],
        )

    def test_no_conditions(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_rule_definition("r", [], [ApprovalLevelSpec(1, "M", required_role_id=uuid4())])
        assert exc_info.value.field == "conditions"

    def test_no_levels(self):
        with pytest.raises(ValidationError):
            validate_rule_definition("r", [qty_over(1)], [])

    def test_level_gap(self):
        with pytest.raises(ValidationError):
            validate_rule_definition(
                "r",
                [qty_over(1)],
                [
                    ApprovalLevelSpec(1, "A", required_role_id=uuid4()),
                    ApprovalLevelSpec(3, "C", required_role_id=uuid4()),
                ],
            )

    def test_level_must_name_exactly_one_approver(self):
        with pytest.raises(ValidationError):
            validate_rule_definition(
                "r",
                [qty_over(1)],
                [ApprovalLevelSpec(1, "A", required_role_id=uuid4(), required_user_id=uuid4())],
            )
        with pytest.raises(ValidationError):
            validate_rule_definition("r", [qty_over(1)], [ApprovalLevelSpec(1, "A")])

    def test_threshold_required(self):
        with pytest.raises(ValidationError):
            validate_rule_definition(
                "r",
                [ApprovalCondition(ConditionType.TOTAL_VALUE_THRESHOLD)],
                [ApprovalLevelSpec(1, "A", required_role_id=uuid4())],
            )

    def test_branch_required(self):
        with pytest.raises(ValidationError):
            validate_rule_definition(
                "r",
                [ApprovalCondition(ConditionType.SOURCE_BRANCH)],
                [ApprovalLevelSpec(1, "A", required_role_id=uuid4())],
            )


class TestConditions:
    def test_threshold_is_strictly_greater(self):
        assert not condition_matches(qty_over(10), totals(qty=10))
        assert condition_matches(qty_over(10), totals(qty=11))

    def test_value_threshold(self):
        cond = ApprovalCondition(ConditionType.TOTAL_VALUE_THRESHOLD, threshold=4_999)
        assert condition_matches(cond, totals(value=5_000))

    def test_branch_conditions(self):
        assert condition_matches(
            ApprovalCondition(ConditionType.SOURCE_BRANCH, branch_id=SRC), totals(),
        )
        assert not condition_matches(
            ApprovalCondition(ConditionType.DESTINATION_BRANCH, branch_id=SRC), totals(),
        )


class TestSelection:
    def test_all_conditions_must_hold(self):
        r = rule(qty_over(5), ApprovalCondition(ConditionType.SOURCE_BRANCH, branch_id=uuid4()))
        assert select_rule([r], totals()) is None

    def test_newest_rule_wins(self):
        older = rule(qty_over(1), created_at=T0)
        newer = rule(qty_over(1), created_at=T0 + timedelta(minutes=1))
        assert select_rule([older, newer], totals()) == newer

    def test_id_breaks_created_at_ties(self):
        low = rule(qty_over(1), rule_id=UUID(int=1))
        high = rule(qty_over(1), rule_id=UUID(int=2))
        assert rule_evaluation_order([low, high]) == [high, low]
        assert select_rule([low, high], totals()) == high

    def test_inactive_and_archived_skipped(self):
        inactive = rule(qty_over(1), created_at=T0 + timedelta(minutes=2), is_active=False)
        archived = rule(qty_over(1), created_at=T0 + timedelta(minutes=1), archived=True)
        live = rule(qty_over(1))
        assert select_rule([inactive, archived, live], totals()) == live

    def test_no_match(self):
        assert select_rule([rule(qty_over(100))], totals(qty=10)) is None


class TestProgress:
    def test_empty_is_not_approved(self):
        assert not is_fully_approved([])

    def test_all_satisfied(self):
        assert is_fully_approved([record(1, True), record(2, True)])
        assert not is_fully_approved([record(1, True), record(2)])

    def test_sequential_blocks_on_lowest_pending(self):
        records = [record(1), record(2), record(3)]
        assert blocking_level(records, 3, ApprovalMode.SEQUENTIAL) == 1
        assert blocking_level(records, 1, ApprovalMode.SEQUENTIAL) is None

    def test_parallel_never_blocks(self):
        assert blocking_level([record(1), record(2)], 2, ApprovalMode.PARALLEL) is None

    def test_named_user_must_match(self):
        user = uuid4()
        assert level_authorizes(user, None, user, False)
        assert not level_authorizes(user, None, uuid4(), True)

    def test_role_must_be_held(self):
        role = uuid4()
        assert level_authorizes(None, role, uuid4(), True)
        assert not level_authorizes(None, role, uuid4(), False)
