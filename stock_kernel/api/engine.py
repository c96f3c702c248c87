"""
StockTransferEngine -- the caller-facing facade.

Responsibility:
    The single entry point collaborators (HTTP layer, jobs, tests) use.
    Each public method checks the RBAC permission, opens one unit of work,
    builds the services it needs on that unit of work, and returns the
    result wrapped in an ``Envelope``.

Architecture position:
    Kernel > API -- outermost layer.  Constructs services and selectors
    per call; nothing is shared between calls except the injected
    ``Storage`` handle and the collaborator ports.

Invariants enforced:
    - Every call runs ``require_permission`` (``stock:read`` or
      ``stock:write``) before touching storage.
    - One call, one transaction.  Audit events are delivered after
      commit by the unit of work.
    - ``correlation_id``, ``actor_id``, ``tenant_id`` and ``operation``
      are bound into ``LogContext`` for the duration of the call.

Failure modes:
    - Every ``StockKernelError`` becomes ``Envelope(success=False)``.
      Anything else is a defect and propagates unchanged.
"""

from __future__ import annotations

import time
from typing import Callable, Sequence, TypeVar
from uuid import UUID

from stock_config import get_active_config
from stock_config.schema import EngineConfig
from stock_kernel.api.envelope import Envelope, ErrorBody
from stock_kernel.db.storage import Storage
from stock_kernel.db.unit_of_work import UnitOfWork
from stock_kernel.domain.approval import ApprovalRulePatch, NewApprovalRule
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.inventory import LedgerFilters
from stock_kernel.domain.ports import Actor, AuditWriter, Directory, PermissionChecker
from stock_kernel.domain.template import (
    NewTransferTemplate,
    TemplateTransferOverrides,
    TransferTemplatePatch,
)
from stock_kernel.domain.transfer import (
    ApprovedQty,
    BatchLine,
    NewTransfer,
    TransferFilters,
)
from stock_kernel.domain.values import Permission, TransferPriority
from stock_kernel.exceptions import StockKernelError
from stock_kernel.logging_config import LogContext, configure_logging, get_logger
from stock_kernel.selectors.approval_rule_selector import ApprovalRuleSelector
from stock_kernel.selectors.ledger_selector import LedgerSelector
from stock_kernel.selectors.template_selector import TemplateSelector
from stock_kernel.selectors.transfer_selector import TransferSelector
from stock_kernel.services.approval_rule_service import ApprovalRuleService
from stock_kernel.services.audit_writer import LoggingAuditWriter
from stock_kernel.services.batching_service import BatchingService
from stock_kernel.services.inventory_ledger_service import InventoryLedgerService
from stock_kernel.services.template_service import TemplateService
from stock_kernel.services.transfer_service import TransferService

logger = get_logger("api.engine")

T = TypeVar("T")

READ = Permission.STOCK_READ
WRITE = Permission.STOCK_WRITE


class StockTransferEngine:
    """
    Facade over the stock transfer lifecycle engine.

    Contract:
        Methods mirror the exposed operations one to one.  Every write
        takes the caller's ``entity_version`` and the returned data
        carries the new one.

    Non-goals:
        - No HTTP routing or request parsing.
        - No retry of BusyError or StaleVersionError.
    """

    def __init__(
        self,
        storage: Storage,
        directory: Directory,
        permissions: PermissionChecker,
        audit_writer: AuditWriter | None = None,
        clock: Clock | None = None,
        config: EngineConfig | None = None,
    ):
        self._storage = storage
        self._directory = directory
        self._permissions = permissions
        self._audit_writer = audit_writer if audit_writer is not None else LoggingAuditWriter()
        self._clock = clock
        self._config = config if config is not None else get_active_config()

    @classmethod
    def from_config(
        cls,
        directory: Directory,
        permissions: PermissionChecker,
        config: EngineConfig | None = None,
        audit_writer: AuditWriter | None = None,
        clock: Clock | None = None,
    ) -> StockTransferEngine:
        """
        Process bootstrap: configure logging, open storage and build the facade.

        The caller owns the returned engine's ``storage`` and closes it on
        shutdown.
        """
        config = config if config is not None else get_active_config()
        configure_logging(level=config.logging.level)
        storage = Storage.from_config(config.database).open()
        return cls(storage, directory, permissions, audit_writer, clock, config)

    @property
    def storage(self) -> Storage:
        return self._storage

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _call(
        self,
        operation: str,
        actor: Actor,
        permission: Permission,
        fn: Callable[[UnitOfWork], T],
        transfer_id: UUID | None = None,
    ) -> Envelope[T]:
        with LogContext.bind(
            correlation_id=actor.correlation_id,
            actor_id=str(actor.user_id),
            tenant_id=str(actor.tenant_id),
            transfer_id=str(transfer_id) if transfer_id else None,
            operation=operation,
        ):
            t0 = time.monotonic()
            try:
                self._permissions.require_permission(actor, permission)
                data = self._storage.run_in_transaction(fn, self._audit_writer, self._clock)
            except StockKernelError as exc:
                logger.info(
                    "operation_failed",
                    extra={
                        "error_code": exc.code,
                        "http_status": exc.http_status,
                        "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                    },
                )
                return Envelope.fail(ErrorBody.from_exception(exc, actor.correlation_id))
            logger.debug(
                "operation_completed",
                extra={"duration_ms": round((time.monotonic() - t0) * 1000, 2)},
            )
            return Envelope.ok(data)

    def _transfers(self, uow: UnitOfWork) -> TransferService:
        return TransferService(uow, self._directory, self._config.transfers)

    def _page_limits(self) -> dict:
        return {
            "default_limit": self._config.transfers.default_page_size,
            "max_limit": self._config.transfers.max_page_size,
        }

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def create_stock_transfer(self, actor: Actor, request: NewTransfer):
        return self._call(
            "create_stock_transfer", actor, WRITE,
            lambda uow: self._transfers(uow).create_transfer(actor, request),
        )

    def approve_or_reject_transfer(
        self,
        actor: Actor,
        transfer_id: UUID,
        entity_version: int,
        approve: bool,
        review_notes: str | None = None,
        approved_quantities: Sequence[ApprovedQty] | None = None,
    ):
        return self._call(
            "approve_or_reject_transfer", actor, WRITE,
            lambda uow: self._transfers(uow).approve_or_reject(
                actor, transfer_id, entity_version, approve, review_notes, approved_quantities,
            ),
            transfer_id,
        )

    def update_transfer_priority(
        self, actor: Actor, transfer_id: UUID, priority: TransferPriority, entity_version: int,
    ):
        return self._call(
            "update_transfer_priority", actor, WRITE,
            lambda uow: self._transfers(uow).update_priority(
                actor, transfer_id, priority, entity_version,
            ),
            transfer_id,
        )

    def ship_transfer(
        self,
        actor: Actor,
        transfer_id: UUID,
        entity_version: int,
        lines: Sequence[BatchLine] | None = None,
        idempotency_key: str | None = None,
    ):
        return self._call(
            "ship_transfer", actor, WRITE,
            lambda uow: BatchingService(uow, self._directory).ship(
                actor, transfer_id, entity_version, lines, idempotency_key,
            ),
            transfer_id,
        )

    def receive_transfer(
        self,
        actor: Actor,
        transfer_id: UUID,
        entity_version: int,
        lines: Sequence[BatchLine] | None = None,
        idempotency_key: str | None = None,
    ):
        return self._call(
            "receive_transfer", actor, WRITE,
            lambda uow: BatchingService(uow, self._directory).receive(
                actor, transfer_id, entity_version, lines, idempotency_key,
            ),
            transfer_id,
        )

    def cancel_transfer(self, actor: Actor, transfer_id: UUID, entity_version: int):
        return self._call(
            "cancel_transfer", actor, WRITE,
            lambda uow: self._transfers(uow).cancel(actor, transfer_id, entity_version),
            transfer_id,
        )

    def reverse_transfer(
        self, actor: Actor, transfer_id: UUID, entity_version: int, reason: str | None = None,
    ):
        return self._call(
            "reverse_transfer", actor, WRITE,
            lambda uow: self._transfers(uow).reverse(actor, transfer_id, entity_version, reason),
            transfer_id,
        )

    def list_stock_transfers(
        self,
        actor: Actor,
        filters: TransferFilters | None = None,
        cursor: str | None = None,
        limit: int | None = None,
        include_total: bool = False,
    ):
        return self._call(
            "list_stock_transfers", actor, READ,
            lambda uow: TransferSelector(uow.session).list_transfers(
                actor.tenant_id, filters, cursor, limit, include_total, **self._page_limits(),
            ),
        )

    def get_transfer(self, actor: Actor, transfer_id: UUID):
        return self._call(
            "get_transfer", actor, READ,
            lambda uow: TransferSelector(uow.session).get_transfer(actor.tenant_id, transfer_id),
            transfer_id,
        )

    def get_approval_progress(self, actor: Actor, transfer_id: UUID):
        return self._call(
            "get_approval_progress", actor, READ,
            lambda uow: ApprovalRuleSelector(uow.session).get_approval_progress(
                actor.tenant_id, transfer_id,
            ),
            transfer_id,
        )

    def submit_approval(
        self,
        actor: Actor,
        transfer_id: UUID,
        level: int,
        notes: str | None = None,
        entity_version: int | None = None,
    ):
        return self._call(
            "submit_approval", actor, WRITE,
            lambda uow: ApprovalRuleService(uow, self._directory).submit_approval(
                actor, transfer_id, level, notes, entity_version,
            ),
            transfer_id,
        )

    # ------------------------------------------------------------------
    # Approval rules
    # ------------------------------------------------------------------

    def create_approval_rule(self, actor: Actor, request: NewApprovalRule):
        return self._call(
            "create_approval_rule", actor, WRITE,
            lambda uow: ApprovalRuleService(uow, self._directory).create_rule(actor, request),
        )

    def update_approval_rule(
        self, actor: Actor, rule_id: UUID, patch: ApprovalRulePatch, entity_version: int,
    ):
        return self._call(
            "update_approval_rule", actor, WRITE,
            lambda uow: ApprovalRuleService(uow, self._directory).update_rule(
                actor, rule_id, patch, entity_version,
            ),
        )

    def delete_approval_rule(self, actor: Actor, rule_id: UUID, entity_version: int):
        """Soft delete: the rule is archived and stops matching."""
        return self._call(
            "delete_approval_rule", actor, WRITE,
            lambda uow: ApprovalRuleService(uow, self._directory).archive_rule(
                actor, rule_id, entity_version,
            ),
        )

    def restore_approval_rule(self, actor: Actor, rule_id: UUID, entity_version: int):
        return self._call(
            "restore_approval_rule", actor, WRITE,
            lambda uow: ApprovalRuleService(uow, self._directory).restore_rule(
                actor, rule_id, entity_version,
            ),
        )

    def list_approval_rules(
        self, actor: Actor, is_active: bool | None = None, include_archived: bool = False,
    ):
        return self._call(
            "list_approval_rules", actor, READ,
            lambda uow: ApprovalRuleSelector(uow.session).list_rules(
                actor.tenant_id, is_active, include_archived,
            ),
        )

    def get_approval_rule(self, actor: Actor, rule_id: UUID):
        return self._call(
            "get_approval_rule", actor, READ,
            lambda uow: ApprovalRuleSelector(uow.session).get_rule(actor.tenant_id, rule_id),
        )

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def _templates(self, uow: UnitOfWork) -> TemplateService:
        return TemplateService(uow, self._directory, self._config.transfers)

    def create_transfer_template(self, actor: Actor, request: NewTransferTemplate):
        return self._call(
            "create_transfer_template", actor, WRITE,
            lambda uow: self._templates(uow).create_template(actor, request),
        )

    def update_transfer_template(
        self, actor: Actor, template_id: UUID, patch: TransferTemplatePatch, entity_version: int,
    ):
        return self._call(
            "update_transfer_template", actor, WRITE,
            lambda uow: self._templates(uow).update_template(
                actor, template_id, patch, entity_version,
            ),
        )

    def duplicate_transfer_template(
        self, actor: Actor, template_id: UUID, name: str | None = None,
    ):
        return self._call(
            "duplicate_transfer_template", actor, WRITE,
            lambda uow: self._templates(uow).duplicate_template(actor, template_id, name),
        )

    def archive_transfer_template(self, actor: Actor, template_id: UUID, entity_version: int):
        return self._call(
            "archive_transfer_template", actor, WRITE,
            lambda uow: self._templates(uow).archive_template(actor, template_id, entity_version),
        )

    def restore_transfer_template(self, actor: Actor, template_id: UUID, entity_version: int):
        return self._call(
            "restore_transfer_template", actor, WRITE,
            lambda uow: self._templates(uow).restore_template(actor, template_id, entity_version),
        )

    def get_transfer_template(self, actor: Actor, template_id: UUID):
        return self._call(
            "get_transfer_template", actor, READ,
            lambda uow: TemplateSelector(uow.session).get_template(actor.tenant_id, template_id),
        )

    def list_transfer_templates(
        self, actor: Actor, include_archived: bool = False, branch_id: UUID | None = None,
    ):
        return self._call(
            "list_transfer_templates", actor, READ,
            lambda uow: TemplateSelector(uow.session).list_templates(
                actor.tenant_id, include_archived, branch_id,
            ),
        )

    def create_transfer_from_template(
        self,
        actor: Actor,
        template_id: UUID,
        overrides: TemplateTransferOverrides | None = None,
    ):
        return self._call(
            "create_transfer_from_template", actor, WRITE,
            lambda uow: self._templates(uow).create_transfer_from_template(
                actor, template_id, overrides,
            ),
        )

    # ------------------------------------------------------------------
    # Branch inventory ledger
    # ------------------------------------------------------------------

    def receive_stock(
        self,
        actor: Actor,
        branch_id: UUID,
        product_id: UUID,
        qty: int,
        unit_cost_minor: int,
        received_at=None,
        reason: str | None = None,
    ):
        return self._call(
            "receive_stock", actor, WRITE,
            lambda uow: InventoryLedgerService(uow, self._directory).receive_stock(
                actor, branch_id, product_id, qty, unit_cost_minor, received_at, reason,
            ),
        )

    def adjust_stock(
        self,
        actor: Actor,
        branch_id: UUID,
        product_id: UUID,
        qty_delta: int,
        reason: str,
        unit_cost_minor: int | None = None,
    ):
        return self._call(
            "adjust_stock", actor, WRITE,
            lambda uow: InventoryLedgerService(uow, self._directory).adjust_stock(
                actor, branch_id, product_id, qty_delta, reason, unit_cost_minor,
            ),
        )

    def consume_stock(
        self,
        actor: Actor,
        branch_id: UUID,
        product_id: UUID,
        qty: int,
        reason: str | None = None,
    ):
        return self._call(
            "consume_stock", actor, WRITE,
            lambda uow: InventoryLedgerService(uow, self._directory).consume_stock(
                actor, branch_id, product_id, qty, reason,
            ),
        )

    def get_stock_level(self, actor: Actor, branch_id: UUID, product_id: UUID):
        return self._call(
            "get_stock_level", actor, READ,
            lambda uow: LedgerSelector(uow.session).get_stock_level(
                actor.tenant_id, branch_id, product_id,
            ),
        )

    def get_stock_levels(self, actor: Actor, branch_id: UUID):
        return self._call(
            "get_stock_levels", actor, READ,
            lambda uow: LedgerSelector(uow.session).get_stock_levels(actor.tenant_id, branch_id),
        )

    def list_ledger_entries(
        self,
        actor: Actor,
        filters: LedgerFilters | None = None,
        cursor: str | None = None,
        limit: int | None = None,
    ):
        return self._call(
            "list_ledger_entries", actor, READ,
            lambda uow: LedgerSelector(uow.session).list_ledger_entries(
                actor.tenant_id, filters, cursor, limit, **self._page_limits(),
            ),
        )

    def reconcile_stock(self, actor: Actor, branch_id: UUID, product_id: UUID):
        """On-hand quantity after checking lots, ledger and stock row agree."""
        return self._call(
            "reconcile_stock", actor, READ,
            lambda uow: InventoryLedgerService(uow, self._directory).reconcile(
                actor.tenant_id, branch_id, product_id,
            ),
        )
