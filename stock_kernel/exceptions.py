"""
Typed Exception Hierarchy for the Stock Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every failure the engine can report to a caller is a typed exception with:
  1. A ``code`` class attribute (machine-readable, API-safe)
  2. An ``http_status`` class attribute (used by the response envelope)
  3. Structured attributes carrying the failure context

Callers catch by type, never by message text:

    try:
        engine.ship_transfer(...)
    except StaleVersionError as e:
        reload_and_retry(e.entity_id, e.actual_version)
    except InsufficientStockError as e:
        show_shortfall(e.product_id, e.requested, e.available)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    StockKernelError (base)
    |
    +-- ValidationError                  400
    +-- PermissionDeniedError            403
    +-- NotFoundError                    404
    +-- ConflictError                    409
    |   +-- StaleVersionError
    |   +-- IllegalTransitionError
    |   +-- ApprovalGateError
    |   +-- OutOfOrderApprovalError
    |   +-- DuplicateKeyError
    |   +-- AlreadyReversedError
    +-- InsufficientStockError           409
    +-- BusyError                        503 (retryable)
    +-- ImmutabilityViolationError       409
    +-- LedgerReconciliationError        500

===============================================================================
DESIGN DECISIONS
===============================================================================

1. NotFoundError is raised both for absent rows and for rows that belong
   to another tenant.  The two cases are indistinguishable to the caller.

2. ``user_message`` is safe to show an end user; ``str(exc)`` is the
   developer message and may contain identifiers.

3. BusyError is the only retryable category.  StaleVersionError is
   recoverable only after the caller reloads the entity.

===============================================================================
"""

from __future__ import annotations


class StockKernelError(Exception):
    """
    Base exception for all stock kernel errors.

    All subclasses carry ``code`` and ``http_status`` class attributes.
    """

    code: str = "STOCK_KERNEL_ERROR"
    http_status: int = 500
    user_message: str = "An unexpected error occurred."
    retryable: bool = False


# Validation


class ValidationError(StockKernelError):
    """Malformed input or a violated input invariant."""

    code: str = "VALIDATION_ERROR"
    http_status: int = 400
    user_message: str = "The request is invalid."

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


# Authorization


class PermissionDeniedError(StockKernelError):
    """Actor lacks the role, permission, or branch membership required."""

    code: str = "PERMISSION_DENIED"
    http_status: int = 403
    user_message: str = "You do not have permission to perform this action."

    def __init__(self, reason: str, actor_user_id: str | None = None):
        self.reason = reason
        self.actor_user_id = actor_user_id
        super().__init__(f"Permission denied: {reason}")


# Lookup


class NotFoundError(StockKernelError):
    """Entity absent or outside the tenant scope."""

    code: str = "NOT_FOUND"
    http_status: int = 404
    user_message: str = "The requested resource was not found."

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


# Conflicts


class ConflictError(StockKernelError):
    """Base exception for 409 conflicts."""

    code: str = "CONFLICT"
    http_status: int = 409
    user_message: str = "The request conflicts with the current state."

    def __init__(self, message: str):
        super().__init__(message)


class StaleVersionError(ConflictError):
    """Caller's entity version does not match the persisted version."""

    code: str = "STALE_VERSION"
    user_message: str = (
        "This record was changed by someone else. Reload it and try again."
    )

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int | None,
        actual_version: int | None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Stale version on {entity_type} {entity_id}: "
            f"expected {expected_version}, found {actual_version}"
        )


class IllegalTransitionError(ConflictError):
    """Operation is not legal from the entity's current status."""

    code: str = "ILLEGAL_TRANSITION"

    def __init__(self, entity_id: str, current_status: str, operation: str):
        self.entity_id = entity_id
        self.current_status = current_status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} transfer {entity_id} in status {current_status}"
        )


class ApprovalGateError(ConflictError):
    """Matched approval rule has unsatisfied levels."""

    code: str = "APPROVAL_REQUIRED"
    user_message: str = (
        "This transfer requires multi-level approval. "
        "Check the approval progress for the remaining levels."
    )

    def __init__(self, transfer_id: str, pending_levels: tuple[int, ...]):
        self.transfer_id = transfer_id
        self.pending_levels = pending_levels
        super().__init__(
            f"Transfer {transfer_id} has pending approval levels "
            f"{list(pending_levels)}; see approval progress"
        )


class OutOfOrderApprovalError(ConflictError):
    """SEQUENTIAL rule with a lower level still unsatisfied."""

    code: str = "APPROVAL_OUT_OF_ORDER"
    user_message: str = "Previous approval levels must be completed first."

    def __init__(self, transfer_id: str, level: int, blocking_level: int):
        self.transfer_id = transfer_id
        self.level = level
        self.blocking_level = blocking_level
        super().__init__(
            f"Level {level} of transfer {transfer_id} cannot be approved "
            f"before level {blocking_level}"
        )


class DuplicateKeyError(ConflictError):
    """Unique key already taken."""

    code: str = "DUPLICATE_KEY"

    def __init__(self, entity_type: str, key: str):
        self.entity_type = entity_type
        self.key = key
        super().__init__(f"Duplicate {entity_type}: {key}")


class AlreadyReversedError(ConflictError):
    """Transfer was already reversed."""

    code: str = "ALREADY_REVERSED"

    def __init__(self, transfer_id: str, reversed_by_transfer_id: str):
        self.transfer_id = transfer_id
        self.reversed_by_transfer_id = reversed_by_transfer_id
        super().__init__(
            f"Transfer {transfer_id} already reversed by {reversed_by_transfer_id}"
        )


# Stock


class InsufficientStockError(StockKernelError):
    """FIFO consumption cannot satisfy the requested quantity."""

    code: str = "INSUFFICIENT_STOCK"
    http_status: int = 409
    user_message: str = "Not enough stock is available."

    def __init__(
        self,
        branch_id: str,
        product_id: str,
        requested: int,
        available: int,
    ):
        self.branch_id = branch_id
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id} at branch "
            f"{branch_id}: requested {requested}, available {available}"
        )


# Contention


class BusyError(StockKernelError):
    """Lock or transaction timeout.  Safe to retry."""

    code: str = "BUSY"
    http_status: int = 503
    user_message: str = "The system is busy. Please try again."
    retryable: bool = True

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Resource busy: {reason}")


# Integrity


class ImmutabilityViolationError(StockKernelError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"
    http_status: int = 409

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class LedgerReconciliationError(StockKernelError):
    """Lot remainders and ledger deltas disagree for a branch/product."""

    code: str = "LEDGER_RECONCILIATION_FAILED"
    http_status: int = 500

    def __init__(
        self,
        branch_id: str,
        product_id: str,
        lot_total: int,
        ledger_total: int,
        on_hand: int,
    ):
        self.branch_id = branch_id
        self.product_id = product_id
        self.lot_total = lot_total
        self.ledger_total = ledger_total
        self.on_hand = on_hand
        super().__init__(
            f"Ledger mismatch for product {product_id} at branch {branch_id}: "
            f"lots={lot_total} ledger={ledger_total} on_hand={on_hand}"
        )
