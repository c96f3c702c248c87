"""
Enumerations shared across the stock kernel.

All enums subclass ``str`` so they serialize directly into JSON logs,
audit payloads and database columns.
"""

from __future__ import annotations

from enum import Enum


class TransferStatus(str, Enum):
    """Lifecycle states of a stock transfer."""

    REQUESTED = "REQUESTED"
    APPROVED = "APPROVED"
    IN_TRANSIT = "IN_TRANSIT"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class TransferPriority(str, Enum):
    URGENT = "URGENT"
    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"


class InitiationType(str, Enum):
    """Which side of the transfer raised the request.

    PUSH: the source branch offers stock; the destination reviews.
    PULL: the destination branch asks for stock; the source reviews.
    """

    PUSH = "PUSH"
    PULL = "PULL"


class TransferDirection(str, Enum):
    """Listing direction relative to a branch."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MovementKind(str, Enum):
    """Ledger entry kinds."""

    RECEIPT = "RECEIPT"
    ADJUSTMENT = "ADJUSTMENT"
    CONSUMPTION = "CONSUMPTION"
    TRANSFER_OUT = "TRANSFER_OUT"
    TRANSFER_IN = "TRANSFER_IN"
    REVERSAL = "REVERSAL"


class ApprovalMode(str, Enum):
    SEQUENTIAL = "SEQUENTIAL"
    PARALLEL = "PARALLEL"


class ConditionType(str, Enum):
    TOTAL_VALUE_THRESHOLD = "TOTAL_VALUE_THRESHOLD"
    TOTAL_QTY_THRESHOLD = "TOTAL_QTY_THRESHOLD"
    SOURCE_BRANCH = "SOURCE_BRANCH"
    DESTINATION_BRANCH = "DESTINATION_BRANCH"


THRESHOLD_CONDITIONS: frozenset[ConditionType] = frozenset({
    ConditionType.TOTAL_VALUE_THRESHOLD,
    ConditionType.TOTAL_QTY_THRESHOLD,
})

BRANCH_CONDITIONS: frozenset[ConditionType] = frozenset({
    ConditionType.SOURCE_BRANCH,
    ConditionType.DESTINATION_BRANCH,
})


class ApprovalRecordStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"


class Permission(str, Enum):
    """Permission keys checked through the RBAC collaborator."""

    STOCK_READ = "stock:read"
    STOCK_WRITE = "stock:write"
