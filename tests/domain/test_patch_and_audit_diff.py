"""
Explicit partial-update semantics and audit snapshot diffs.
"""

import copy
from dataclasses import dataclass
from uuid import uuid4

import pytest

from stock_kernel.domain.approval import ApprovalRulePatch
from stock_kernel.domain.audit import (
    LedgerSnapshot,
    TemplateSnapshot,
    TransferSnapshot,
    diff_snapshots,
    snapshot_to_dict,
)
from stock_kernel.domain.patch import UNSET, apply_patch, is_set
from stock_kernel.domain.values import ApprovalMode


@dataclass
class Target:
    name: str = "old"
    description: str | None = "desc"
    is_active: bool = True
    approval_mode: str = "SEQUENTIAL"


FIELDS = ("name", "description", "is_active", "approval_mode")


class TestUnset:
    def test_singleton_and_falsy(self):
        assert copy.deepcopy(UNSET) is UNSET
        assert not UNSET
        assert repr(UNSET) == "UNSET"

    def test_none_counts_as_supplied(self):
        assert is_set(None)
        assert not is_set(UNSET)


class TestApplyPatch:
    def test_unset_fields_untouched(self):
        target = Target()
        changed = apply_patch(target, ApprovalRulePatch(name="new"), FIELDS)
        assert changed == ["name"]
        assert target.description == "desc"

    def test_explicit_none_clears(self):
        target = Target()
        changed = apply_patch(target, ApprovalRulePatch(description=None), FIELDS)
        assert changed == ["description"]
        assert target.description is None

    def test_enum_stored_by_value(self):
        target = Target()
        apply_patch(target, ApprovalRulePatch(approval_mode=ApprovalMode.PARALLEL), FIELDS)
        assert target.approval_mode == "PARALLEL"

    def test_same_value_is_not_a_change(self):
        target = Target()
        assert apply_patch(target, ApprovalRulePatch(name="old", is_active=True), FIELDS) == []


class TestSnapshotDiff:
    def test_creation_lists_every_field(self):
        after = TemplateSnapshot(name="t", archived=False, item_count=2, entity_version=1)
        assert diff_snapshots(None, after) == ("name", "archived", "item_count", "entity_version")

    def test_changed_fields_only(self):
        before = TransferSnapshot(status="REQUESTED", priority="NORMAL", entity_version=1)
        after = TransferSnapshot(status="APPROVED", priority="NORMAL", entity_version=2)
        assert diff_snapshots(before, after) == ("status", "entity_version")

    def test_mismatched_kinds_rejected(self):
        with pytest.raises(TypeError):
            diff_snapshots(
                LedgerSnapshot(qty_on_hand=1),
                TemplateSnapshot(name="t", archived=False, item_count=1, entity_version=1),
            )

    def test_snapshot_dict_carries_kind(self):
        assert snapshot_to_dict(LedgerSnapshot(qty_on_hand=4)) == {
            "kind": "ledger",
            "qty_on_hand": 4,
        }
        assert snapshot_to_dict(None) is None

    def test_reversal_link_is_diffed(self):
        before = TransferSnapshot(status="COMPLETED", priority="HIGH", entity_version=5)
        after = TransferSnapshot(
            status="COMPLETED", priority="HIGH", entity_version=6,
            reversed_by_transfer_id=uuid4(),
        )
        assert diff_snapshots(before, after) == ("entity_version", "reversed_by_transfer_id")
