"""
Audit snapshots and events (``stock_kernel.domain.audit``).

Responsibility
--------------
Typed before/after snapshots for every entity the engine audits, and
the ``AuditEvent`` envelope handed to the AuditWriter collaborator.

``AuditSnapshot`` is a tagged union: each member carries a ``kind``
class tag and only the fields that matter for that entity, so the diff
between ``before`` and ``after`` is computed over declared fields rather
than opaque maps.

Invariants enforced
-------------------
* ``before`` and ``after`` of one event are the same snapshot type, or
  one of them is ``None`` (creation has no before).
* Events are only emitted after the owning transaction commits; see
  ``db/unit_of_work.py``.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Union
from uuid import UUID


class AuditEntityType(str, Enum):
    STOCK_TRANSFER = "STOCK_TRANSFER"
    APPROVAL_RULE = "APPROVAL_RULE"
    TRANSFER_TEMPLATE = "TRANSFER_TEMPLATE"
    PRODUCT_STOCK = "PRODUCT_STOCK"


class AuditAction(str, Enum):
    TRANSFER_REQUEST = "TRANSFER_REQUEST"
    TRANSFER_APPROVE = "TRANSFER_APPROVE"
    TRANSFER_REJECT = "TRANSFER_REJECT"
    TRANSFER_APPROVE_LEVEL = "TRANSFER_APPROVE_LEVEL"
    TRANSFER_SHIP = "TRANSFER_SHIP"
    TRANSFER_RECEIVE = "TRANSFER_RECEIVE"
    TRANSFER_CANCEL = "TRANSFER_CANCEL"
    TRANSFER_PRIORITY_CHANGE = "TRANSFER_PRIORITY_CHANGE"
    TRANSFER_REVERSE = "TRANSFER_REVERSE"
    APPROVAL_RULE_CREATE = "APPROVAL_RULE_CREATE"
    APPROVAL_RULE_UPDATE = "APPROVAL_RULE_UPDATE"
    APPROVAL_RULE_ARCHIVE = "APPROVAL_RULE_ARCHIVE"
    APPROVAL_RULE_RESTORE = "APPROVAL_RULE_RESTORE"
    TEMPLATE_CREATE = "TEMPLATE_CREATE"
    TEMPLATE_UPDATE = "TEMPLATE_UPDATE"
    TEMPLATE_ARCHIVE = "TEMPLATE_ARCHIVE"
    TEMPLATE_RESTORE = "TEMPLATE_RESTORE"
    STOCK_RECEIVE = "STOCK_RECEIVE"
    STOCK_ADJUST = "STOCK_ADJUST"
    STOCK_CONSUME = "STOCK_CONSUME"


# =========================================================================
# Snapshot variants
# =========================================================================


@dataclass(frozen=True)
class ItemQuantities:
    product_id: UUID
    qty_requested: int
    qty_approved: int | None
    qty_shipped: int
    qty_received: int


@dataclass(frozen=True)
class TransferSnapshot:
    kind: ClassVar[str] = "transfer"

    status: str
    priority: str
    entity_version: int
    items: tuple[ItemQuantities, ...] = ()
    reversed_by_transfer_id: UUID | None = None


@dataclass(frozen=True)
class ApprovalLevelSnapshot:
    kind: ClassVar[str] = "approval_level"

    level: int
    status: str
    approved_by_user_id: UUID | None = None
    notes: str | None = None


@dataclass(frozen=True)
class ApprovalRuleSnapshot:
    kind: ClassVar[str] = "approval_rule"

    name: str
    is_active: bool
    approval_mode: str
    archived: bool
    condition_count: int
    level_count: int
    entity_version: int


@dataclass(frozen=True)
class TemplateSnapshot:
    kind: ClassVar[str] = "template"

    name: str
    archived: bool
    item_count: int
    entity_version: int


@dataclass(frozen=True)
class LedgerSnapshot:
    kind: ClassVar[str] = "ledger"

    qty_on_hand: int


AuditSnapshot = Union[
    TransferSnapshot,
    ApprovalLevelSnapshot,
    ApprovalRuleSnapshot,
    TemplateSnapshot,
    LedgerSnapshot,
]


def diff_snapshots(
    before: AuditSnapshot | None,
    after: AuditSnapshot | None,
) -> tuple[str, ...]:
    """Names of fields whose value differs.  Creation lists every field."""
    if before is None and after is None:
        return ()
    if before is None or after is None:
        present = after if after is not None else before
        return tuple(f.name for f in fields(present))
    if type(before) is not type(after):
        raise TypeError(
            f"Cannot diff {type(before).__name__} against {type(after).__name__}"
        )
    return tuple(
        f.name for f in fields(before) if getattr(before, f.name) != getattr(after, f.name)
    )


def snapshot_to_dict(snapshot: AuditSnapshot | None) -> dict[str, Any] | None:
    if snapshot is None:
        return None
    out: dict[str, Any] = {"kind": snapshot.kind}
    for f in fields(snapshot):
        value = getattr(snapshot, f.name)
        if isinstance(value, tuple):
            value = [_plain(v) for v in value]
        out[f.name] = value
    return out


def _plain(value: Any) -> Any:
    if is_dataclass(value):
        return {f.name: getattr(value, f.name) for f in fields(value)}
    return value


@dataclass(frozen=True)
class AuditEvent:
    tenant_id: UUID
    actor_user_id: UUID
    entity_type: AuditEntityType
    entity_id: UUID
    action: AuditAction
    before: AuditSnapshot | None
    after: AuditSnapshot | None
    occurred_at: datetime
    entity_name: str | None = None
    correlation_id: str | None = None

    @property
    def changed_fields(self) -> tuple[str, ...]:
        return diff_snapshots(self.before, self.after)
