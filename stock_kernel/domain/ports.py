"""
Collaborator ports.

The engine depends on four external collaborators, each reached only
through the Protocols below:

    Directory           branch/product/role registry and branch membership
    PermissionChecker   RBAC ``require_permission``
    AuditWriter         audit-log persistence
    (session layer)     supplies the ``Actor`` passed into every call

Idempotency keys are handled inside the engine (unique per transfer and
batch kind) rather than through a separate port.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol
from uuid import UUID, uuid4

from stock_kernel.domain.audit import AuditEvent
from stock_kernel.domain.values import Permission


@dataclass(frozen=True)
class Actor:
    """Caller identity and tenant scope from the session layer."""

    tenant_id: UUID
    user_id: UUID
    correlation_id: str = field(default_factory=lambda: str(uuid4()))


class Directory(Protocol):
    """Pluggable interface for branch/product/role lookups."""

    def branch_exists(self, tenant_id: UUID, branch_id: UUID) -> bool:
        ...

    def product_exists(self, tenant_id: UUID, product_id: UUID) -> bool:
        ...

    def product_unit_price_minor(self, tenant_id: UUID, product_id: UUID) -> int:
        """Selling price used by TOTAL_VALUE_THRESHOLD conditions."""
        ...

    def is_branch_member(self, tenant_id: UUID, user_id: UUID, branch_id: UUID) -> bool:
        ...

    def role_exists(self, tenant_id: UUID, role_id: UUID) -> bool:
        ...

    def user_has_role(self, tenant_id: UUID, user_id: UUID, role_id: UUID) -> bool:
        ...


class PermissionChecker(Protocol):
    def require_permission(self, actor: Actor, permission: Permission) -> None:
        """Raise PermissionDeniedError if the actor lacks ``permission``."""
        ...


class AuditWriter(Protocol):
    def write_audit_event(self, event: AuditEvent) -> None:
        ...
