"""
ApprovalRuleService tests.

Tests cover:
- Rule CRUD with directory validation and explicit patch semantics
- Rule matching at transfer creation (newest first, active only)
- The approval gate on approve_or_reject
- SEQUENTIAL vs PARALLEL level submission
- Idempotent re-submission and approver authorization
- Progress records are frozen copies of the rule's levels
"""

from dataclasses import dataclass, replace
from uuid import UUID, uuid4

import pytest

from stock_kernel.domain.approval import (
    ApprovalCondition,
    ApprovalLevelSpec,
    ApprovalRulePatch,
    NewApprovalRule,
)
from stock_kernel.domain.audit import AuditAction
from stock_kernel.domain.ports import Actor
from stock_kernel.domain.values import (
    ApprovalMode,
    ApprovalRecordStatus,
    ConditionType,
    TransferStatus,
)
from stock_kernel.exceptions import (
    ApprovalGateError,
    IllegalTransitionError,
    NotFoundError,
    OutOfOrderApprovalError,
    PermissionDeniedError,
    StaleVersionError,
    ValidationError,
)
from stock_kernel.selectors.approval_rule_selector import ApprovalRuleSelector
from stock_kernel.services.approval_rule_service import ApprovalRuleService
from stock_kernel.services.transfer_service import TransferService


@dataclass
class Approvers:
    manager_role: UUID
    manager: Actor
    director: Actor


@pytest.fixture
def approvers(directory, world) -> Approvers:
    role = directory.add_role(world.tenant_id)
    manager = Actor(world.tenant_id, uuid4())
    director = Actor(world.tenant_id, uuid4())
    directory.grant_role(world.tenant_id, manager.user_id, role)
    return Approvers(manager_role=role, manager=manager, director=director)


@pytest.fixture
def rules(run, directory):
    def _call(method, *args, **kwargs):
        return run(
            lambda uow: getattr(ApprovalRuleService(uow, directory), method)(*args, **kwargs)
        )

    return _call


@pytest.fixture
def two_level_rule(world, approvers, rules, deterministic_clock):
    """Factory fixture: qty > threshold needs manager (role) then director (user)."""

    def _create(threshold=5, mode=ApprovalMode.SEQUENTIAL, is_active=True):
        deterministic_clock.advance(1)
        return rules(
            "create_rule",
            world.source_user,
            NewApprovalRule(
                name=f"Over {threshold}",
                conditions=(
                    ApprovalCondition(ConditionType.TOTAL_QTY_THRESHOLD, threshold=threshold),
                ),
                levels=(
                    ApprovalLevelSpec(1, "Manager", required_role_id=approvers.manager_role),
                    ApprovalLevelSpec(2, "Director", required_user_id=approvers.director.user_id),
                ),
                approval_mode=mode,
                is_active=is_active,
            ),
        )

    return _create


# =========================================================================
# CRUD
# =========================================================================


class TestRuleCrud:
    def test_create_rule(self, two_level_rule, audit_writer):
        rule = two_level_rule()
        assert rule.entity_version == 1
        assert [level.level for level in rule.levels] == [1, 2]
        assert rule.is_eligible
        assert audit_writer.events[-1].action == AuditAction.APPROVAL_RULE_CREATE

    def test_unknown_role_rejected(self, world, rules):
        with pytest.raises(ValidationError) as exc_info:
            rules(
                "create_rule",
                world.source_user,
                NewApprovalRule(
                    name="r",
                    conditions=(ApprovalCondition(ConditionType.TOTAL_QTY_THRESHOLD, threshold=1),),
                    levels=(ApprovalLevelSpec(1, "M", required_role_id=uuid4()),),
                ),
            )
        assert exc_info.value.field == "levels.required_role_id"

    def test_unknown_branch_rejected(self, world, approvers, rules):
        with pytest.raises(ValidationError):
            rules(
                "create_rule",
                world.source_user,
                NewApprovalRule(
                    name="r",
                    conditions=(ApprovalCondition(ConditionType.SOURCE_BRANCH, branch_id=uuid4()),),
                    levels=(ApprovalLevelSpec(1, "M", required_role_id=approvers.manager_role),),
                ),
            )

    def test_patch_leaves_unset_fields(self, world, two_level_rule, rules):
        rule = two_level_rule()
        updated = rules(
            "update_rule", world.source_user, rule.id,
            ApprovalRulePatch(description="for big moves"), 1,
        )
        assert updated.description == "for big moves"
        assert updated.name == rule.name
        assert updated.entity_version == 2

        cleared = rules(
            "update_rule", world.source_user, rule.id, ApprovalRulePatch(description=None), 2,
        )
        assert cleared.description is None

    def test_noop_patch_keeps_version(self, world, two_level_rule, rules):
        rule = two_level_rule()
        same = rules("update_rule", world.source_user, rule.id, ApprovalRulePatch(), 1)
        assert same.entity_version == 1

    def test_replace_levels(self, world, approvers, two_level_rule, rules):
        rule = two_level_rule()
        updated = rules(
            "update_rule", world.source_user, rule.id,
            ApprovalRulePatch(
                levels=(ApprovalLevelSpec(1, "Only", required_user_id=approvers.director.user_id),)
            ),
            1,
        )
        assert [(lv.level, lv.name) for lv in updated.levels] == [(1, "Only")]

    def test_clearing_name_rejected(self, world, two_level_rule, rules):
        rule = two_level_rule()
        with pytest.raises(ValidationError):
            rules("update_rule", world.source_user, rule.id, ApprovalRulePatch(name=None), 1)

    def test_stale_version(self, world, two_level_rule, rules):
        rule = two_level_rule()
        with pytest.raises(StaleVersionError):
            rules("update_rule", world.source_user, rule.id, ApprovalRulePatch(name="x"), 3)

    def test_archive_and_restore(self, world, two_level_rule, rules, run):
        rule = two_level_rule()
        archived = rules("archive_rule", world.source_user, rule.id, 1)
        assert archived.is_archived
        assert archived.entity_version == 2

        again = rules("archive_rule", world.source_user, rule.id, 2)
        assert again.entity_version == 2

        listed = run(lambda uow: ApprovalRuleSelector(uow.session).list_rules(world.tenant_id))
        assert listed == []

        restored = rules("restore_rule", world.source_user, rule.id, 2)
        assert not restored.is_archived
        assert restored.entity_version == 3

    def test_unknown_rule(self, world, rules):
        with pytest.raises(NotFoundError):
            rules("archive_rule", world.source_user, uuid4(), 1)


# =========================================================================
# Matching
# =========================================================================


class TestMatching:
    def test_matching_rule_seeds_progress(self, world, two_level_rule, create_transfer):
        rule = two_level_rule(threshold=5)
        transfer = create_transfer(items=[(world.widget, 6)])

        assert transfer.requires_multi_level_approval
        assert transfer.matched_rule_id == rule.id
        assert [(r.level, r.status) for r in transfer.approval_records] == [
            (1, ApprovalRecordStatus.PENDING),
            (2, ApprovalRecordStatus.PENDING),
        ]

    def test_threshold_is_strict(self, world, two_level_rule, create_transfer):
        two_level_rule(threshold=5)
        transfer = create_transfer(items=[(world.widget, 5)])
        assert not transfer.requires_multi_level_approval

    def test_value_threshold_uses_directory_price(
        self, world, approvers, rules, create_transfer,
    ):
        rules(
            "create_rule",
            world.source_user,
            NewApprovalRule(
                name="Valuable",
                conditions=(
                    ApprovalCondition(ConditionType.TOTAL_VALUE_THRESHOLD, threshold=4_000),
                ),
                levels=(ApprovalLevelSpec(1, "M", required_role_id=approvers.manager_role),),
            ),
        )
        # 10 widgets at 500 = 5000
        assert create_transfer(items=[(world.widget, 10)]).requires_multi_level_approval
        assert not create_transfer(items=[(world.widget, 8)]).requires_multi_level_approval

    def test_newest_rule_wins(self, world, two_level_rule, create_transfer):
        two_level_rule(threshold=1)
        newer = two_level_rule(threshold=2)
        transfer = create_transfer(items=[(world.widget, 10)])
        assert transfer.matched_rule_id == newer.id

    def test_inactive_rule_ignored(self, world, two_level_rule, create_transfer):
        two_level_rule(is_active=False)
        assert not create_transfer(items=[(world.widget, 10)]).requires_multi_level_approval

    def test_archived_rule_ignored(self, world, two_level_rule, rules, create_transfer):
        rule = two_level_rule()
        rules("archive_rule", world.source_user, rule.id, 1)
        assert not create_transfer(items=[(world.widget, 10)]).requires_multi_level_approval


# =========================================================================
# Progress
# =========================================================================


class TestSubmitApproval:
    def test_gate_blocks_until_every_level(
        self, world, two_level_rule, create_transfer, approve_transfer,
    ):
        two_level_rule()
        transfer = create_transfer(items=[(world.widget, 10)])

        with pytest.raises(ApprovalGateError) as exc_info:
            approve_transfer(transfer)
        assert exc_info.value.pending_levels == (1, 2)

    def test_sequential_flow(
        self, world, approvers, two_level_rule, create_transfer, rules, approve_transfer,
        audit_writer,
    ):
        two_level_rule()
        transfer = create_transfer(items=[(world.widget, 10)])

        with pytest.raises(OutOfOrderApprovalError) as exc_info:
            rules("submit_approval", approvers.director, transfer.id, 2, None, 1)
        assert exc_info.value.blocking_level == 1

        first = rules("submit_approval", approvers.manager, transfer.id, 1, "ok", 1)
        assert first.record.status == ApprovalRecordStatus.APPROVED
        assert first.record.approved_by_user_id == approvers.manager.user_id
        assert first.entity_version == 2
        assert audit_writer.events[-1].action == AuditAction.TRANSFER_APPROVE_LEVEL

        second = rules("submit_approval", approvers.director, transfer.id, 2, None, 2)
        assert second.entity_version == 3

        approved = approve_transfer(replace(transfer, entity_version=3))
        assert approved.status == TransferStatus.APPROVED

    def test_parallel_any_order(self, world, approvers, two_level_rule, create_transfer, rules):
        two_level_rule(mode=ApprovalMode.PARALLEL)
        transfer = create_transfer(items=[(world.widget, 10)])
        result = rules("submit_approval", approvers.director, transfer.id, 2)
        assert result.record.level == 2

    def test_resubmission_is_a_no_op(
        self, world, approvers, two_level_rule, create_transfer, rules,
    ):
        two_level_rule()
        transfer = create_transfer(items=[(world.widget, 10)])
        first = rules("submit_approval", approvers.manager, transfer.id, 1, None, 1)
        again = rules("submit_approval", approvers.manager, transfer.id, 1, None, 1)
        assert again.record == first.record
        assert again.entity_version == 2

    def test_unauthorized_approver(self, world, two_level_rule, create_transfer, rules):
        two_level_rule()
        transfer = create_transfer(items=[(world.widget, 10)])
        with pytest.raises(PermissionDeniedError):
            rules("submit_approval", world.outsider, transfer.id, 1)

    def test_unknown_level(self, world, approvers, two_level_rule, create_transfer, rules):
        two_level_rule()
        transfer = create_transfer(items=[(world.widget, 10)])
        with pytest.raises(NotFoundError):
            rules("submit_approval", approvers.manager, transfer.id, 3)

    def test_stale_version(self, world, approvers, two_level_rule, create_transfer, rules):
        two_level_rule()
        transfer = create_transfer(items=[(world.widget, 10)])
        with pytest.raises(StaleVersionError):
            rules("submit_approval", approvers.manager, transfer.id, 1, None, 5)

    def test_rejected_transfer_takes_no_approvals(
        self, world, approvers, two_level_rule, create_transfer, rules, run, directory,
    ):
        two_level_rule()
        transfer = create_transfer(items=[(world.widget, 10)])
        run(
            lambda uow: TransferService(uow, directory).approve_or_reject(
                world.destination_user, transfer.id, 1, False, "no",
            )
        )
        with pytest.raises(IllegalTransitionError):
            rules("submit_approval", approvers.manager, transfer.id, 1, None, 2)

    def test_rule_edits_do_not_touch_in_flight_transfers(
        self, world, approvers, two_level_rule, create_transfer, rules, run,
    ):
        rule = two_level_rule()
        transfer = create_transfer(items=[(world.widget, 10)])
        rules(
            "update_rule", world.source_user, rule.id,
            ApprovalRulePatch(
                levels=(ApprovalLevelSpec(1, "Anyone", required_user_id=world.outsider.user_id),)
            ),
            1,
        )

        progress = run(
            lambda uow: ApprovalRuleSelector(uow.session).get_approval_progress(
                world.tenant_id, transfer.id,
            )
        )
        assert [r.level for r in progress.records] == [1, 2]
        assert progress.records[0].required_role_id == approvers.manager_role
        assert progress.pending_levels == (1, 2)
        assert not progress.is_fully_approved
