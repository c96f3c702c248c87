"""
TransferService -- the stock transfer state machine.

Responsibility:
    Creates transfers (numbering, initiation side, approval rule
    matching) and drives the non-batch lifecycle transitions: approve,
    reject, priority change, cancel and reversal.  Shipment and receipt
    live in ``batching_service.py``.

Architecture position:
    Kernel > Services -- imperative shell.  Called by the API facade and
    by TemplateService.  Legal transitions and quantity rules are pure
    functions in ``domain/transfer.py``; this module loads, locks and
    writes.

Invariants enforced:
    - Every mutation locks the transfer row, compares the caller's
      ``entity_version`` and advances the version column exactly once per
      successful call.
    - A transfer with a matched rule cannot leave REQUESTED for APPROVED
      until every progress record is satisfied.
    - Priority changes are legal only in REQUESTED or APPROVED; that check
      runs before any actor check.
    - Cancellation is legal only before any shipment batch exists.
    - A transfer is reversed at most once.  Reversal returns the exact
      cost layers consumed at the source.

Failure modes:
    - ValidationError, NotFoundError, PermissionDeniedError.
    - IllegalTransitionError, StaleVersionError, ApprovalGateError,
      AlreadyReversedError (all 409).
    - InsufficientStockError when the destination no longer holds the
      goods being reversed.
"""

from __future__ import annotations

from typing import Sequence
from uuid import UUID, uuid4

from stock_config.schema import TransferConfig
from stock_kernel.db.unit_of_work import UnitOfWork
from stock_kernel.domain.audit import (
    AuditAction,
    AuditEntityType,
    ItemQuantities,
    TransferSnapshot,
)
from stock_kernel.domain.costing import average_unit_cost
from stock_kernel.domain.inventory import ConsumptionLine
from stock_kernel.domain.ports import Actor, Directory
from stock_kernel.domain.transfer import (
    PRIORITY_EDITABLE_STATUSES,
    ApprovedQty,
    NewTransfer,
    StockTransfer,
    format_transfer_number,
    initiating_branch,
    require_status,
    resolve_approved_quantities,
    reviewing_branch,
    validate_new_transfer,
)
from stock_kernel.domain.values import (
    InitiationType,
    MovementKind,
    TransferPriority,
    TransferStatus,
)
from stock_kernel.exceptions import (
    AlreadyReversedError,
    ApprovalGateError,
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.transfer import StockTransferModel, TransferItemModel
from stock_kernel.services.approval_rule_service import ApprovalRuleService
from stock_kernel.services.base import BaseService
from stock_kernel.services.inventory_ledger_service import InventoryLedgerService
from stock_kernel.services.sequence_service import SequenceService

logger = get_logger("services.transfer")

ENTITY = "StockTransfer"


def transfer_snapshot(transfer: StockTransferModel) -> TransferSnapshot:
    return TransferSnapshot(
        status=transfer.status,
        priority=transfer.priority,
        entity_version=transfer.entity_version,
        items=tuple(
            ItemQuantities(
                product_id=item.product_id,
                qty_requested=item.qty_requested,
                qty_approved=item.qty_approved,
                qty_shipped=item.qty_shipped,
                qty_received=item.qty_received,
            )
            for item in transfer.items
        ),
        reversed_by_transfer_id=transfer.reversed_by_transfer_id,
    )


class TransferService(BaseService[StockTransferModel]):
    """
    Service for the transfer lifecycle outside shipment/receipt.

    Contract:
        Every method takes the acting ``Actor``; every mutating method
        takes the caller's ``entity_version`` and returns the fully
        hydrated ``StockTransfer`` carrying the new version.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        directory: Directory,
        config: TransferConfig | None = None,
    ):
        super().__init__(uow)
        self._directory = directory
        self._config = config or TransferConfig()
        self._sequences = SequenceService(self.session)
        self._approvals = ApprovalRuleService(uow, directory)
        self._ledger = InventoryLedgerService(uow, directory)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def lock_transfer(self, tenant_id: UUID, transfer_id: UUID) -> StockTransferModel:
        return self._lock(StockTransferModel, tenant_id, transfer_id, ENTITY)

    def _is_member(self, actor: Actor, branch_id: UUID) -> bool:
        return self._directory.is_branch_member(actor.tenant_id, actor.user_id, branch_id)

    def _require_member(self, actor: Actor, branch_id: UUID, role: str) -> None:
        if not self._is_member(actor, branch_id):
            raise PermissionDeniedError(
                f"must be a member of the {role} branch {branch_id}", str(actor.user_id),
            )

    def _next_number(self, tenant_id: UUID) -> str:
        year = self._now().year
        value = self._sequences.next_transfer_value(tenant_id, year)
        return format_transfer_number(
            self._config.number_prefix, year, value, self._config.number_width,
        )

    def _resolve_initiation(self, actor: Actor, request: NewTransfer) -> InitiationType:
        """
        PUSH is raised by the source branch, PULL by the destination.

        When the caller does not say, the requester's membership decides:
        source first, then destination.
        """
        in_source = self._is_member(actor, request.source_branch_id)
        in_destination = self._is_member(actor, request.destination_branch_id)
        if request.initiation_type is None:
            if in_source:
                return InitiationType.PUSH
            if in_destination:
                return InitiationType.PULL
            raise PermissionDeniedError(
                "requester must be a member of the source or destination branch",
                str(actor.user_id),
            )
        if request.initiation_type == InitiationType.PUSH and not in_source:
            raise PermissionDeniedError(
                "a PUSH transfer must be requested by a member of the source branch",
                str(actor.user_id),
            )
        if request.initiation_type == InitiationType.PULL and not in_destination:
            raise PermissionDeniedError(
                "a PULL transfer must be requested by a member of the destination branch",
                str(actor.user_id),
            )
        return request.initiation_type

    def _audit_transfer(
        self,
        actor: Actor,
        transfer: StockTransferModel,
        action: AuditAction,
        before: TransferSnapshot | None,
    ) -> None:
        self._audit(
            actor, AuditEntityType.STOCK_TRANSFER, transfer.id, action,
            before, transfer_snapshot(transfer), entity_name=transfer.transfer_number,
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_transfer(self, actor: Actor, request: NewTransfer) -> StockTransfer:
        """
        Raise a new transfer in REQUESTED.

        Preconditions:
            Both branches and every product exist in the tenant; the
            requester belongs to the initiating branch.
        Postconditions:
            A numbered transfer at version 1.  When an approval rule
            matches, one PENDING progress record exists per level.
        """
        validate_new_transfer(request)
        tenant_id = actor.tenant_id
        for branch_id in (request.source_branch_id, request.destination_branch_id):
            if not self._directory.branch_exists(tenant_id, branch_id):
                raise NotFoundError("Branch", str(branch_id))
        for item in request.items:
            if not self._directory.product_exists(tenant_id, item.product_id):
                raise NotFoundError("Product", str(item.product_id))

        initiation = self._resolve_initiation(actor, request)
        totals = self._approvals.compute_totals(
            tenant_id, request.source_branch_id, request.destination_branch_id, request.items,
        )
        rule = self._approvals.match_rule(tenant_id, totals)

        now = self._now()
        transfer = StockTransferModel(
            id=uuid4(),
            tenant_id=tenant_id,
            transfer_number=self._next_number(tenant_id),
            source_branch_id=request.source_branch_id,
            destination_branch_id=request.destination_branch_id,
            status=TransferStatus.REQUESTED.value,
            priority=request.priority.value,
            initiation_type=initiation.value,
            initiated_by_branch_id=initiating_branch(
                initiation, request.source_branch_id, request.destination_branch_id,
            ),
            requested_by_user_id=actor.user_id,
            requested_at=now,
            updated_at=now,
            entity_version=1,
            request_notes=request.request_notes,
            order_notes=request.order_notes,
            expected_delivery_date=request.expected_delivery_date,
            requires_multi_level_approval=False,
            is_reversal=False,
        )
        transfer.items = [
            TransferItemModel(
                tenant_id=tenant_id,
                line_number=line_number,
                product_id=item.product_id,
                qty_requested=item.qty_requested,
                qty_shipped=0,
                qty_received=0,
                shipped_cost_minor=0,
            )
            for line_number, item in enumerate(request.items, start=1)
        ]
        self.session.add(transfer)
        if rule is not None:
            self._approvals.create_progress_records(transfer, rule)
        self.session.flush()

        self._audit_transfer(actor, transfer, AuditAction.TRANSFER_REQUEST, None)
        logger.info(
            "transfer_created",
            extra={
                "transfer_id": str(transfer.id),
                "transfer_number": transfer.transfer_number,
                "initiation_type": initiation.value,
                "priority": transfer.priority,
                "item_count": len(transfer.items),
                "matched_rule_id": str(rule.id) if rule else None,
            },
        )
        return transfer.to_dto()

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def approve_or_reject(
        self,
        actor: Actor,
        transfer_id: UUID,
        expected_version: int,
        approve: bool,
        review_notes: str | None = None,
        approved_quantities: Sequence[ApprovedQty] | None = None,
    ) -> StockTransfer:
        """
        Review a REQUESTED transfer.

        Approval is gated on the matched rule's progress; rejection needs
        a reason.  The reviewer must belong to the reviewing branch (the
        side that did not initiate).
        """
        transfer = self.lock_transfer(actor.tenant_id, transfer_id)
        self._check_version(transfer, expected_version, ENTITY)
        operation = "approve" if approve else "reject"
        require_status(
            transfer.id, TransferStatus(transfer.status), {TransferStatus.REQUESTED}, operation,
        )
        reviewer_branch = reviewing_branch(
            InitiationType(transfer.initiation_type),
            transfer.source_branch_id,
            transfer.destination_branch_id,
        )
        self._require_member(actor, reviewer_branch, "reviewing")

        before = transfer_snapshot(transfer)
        if approve:
            if transfer.requires_multi_level_approval:
                progress = transfer.approval_progress()
                if not progress.is_fully_approved:
                    raise ApprovalGateError(str(transfer.id), progress.pending_levels)
            approved = resolve_approved_quantities(transfer.items, approved_quantities)
            for item in transfer.items:
                item.qty_approved = approved[item.id]
            transfer.status = TransferStatus.APPROVED.value
            action = AuditAction.TRANSFER_APPROVE
        else:
            if not review_notes or not review_notes.strip():
                raise ValidationError("A rejection reason is required", field="review_notes")
            transfer.status = TransferStatus.REJECTED.value
            action = AuditAction.TRANSFER_REJECT

        now = self._now()
        transfer.reviewed_by_user_id = actor.user_id
        transfer.reviewed_at = now
        transfer.review_notes = review_notes
        self._bump(transfer)

        self._audit_transfer(actor, transfer, action, before)
        logger.info(
            "transfer_approved" if approve else "transfer_rejected",
            extra={
                "transfer_id": str(transfer.id),
                "transfer_number": transfer.transfer_number,
                "entity_version": transfer.entity_version,
            },
        )
        return transfer.to_dto()

    # ------------------------------------------------------------------
    # Priority
    # ------------------------------------------------------------------

    def update_priority(
        self,
        actor: Actor,
        transfer_id: UUID,
        priority: TransferPriority,
        expected_version: int,
    ) -> StockTransfer:
        transfer = self.lock_transfer(actor.tenant_id, transfer_id)
        # Status first: once shipping started the answer is 409 for everyone.
        require_status(
            transfer.id, TransferStatus(transfer.status),
            PRIORITY_EDITABLE_STATUSES, "change priority of",
        )
        self._check_version(transfer, expected_version, ENTITY)
        if not (
            self._is_member(actor, transfer.source_branch_id)
            or self._is_member(actor, transfer.destination_branch_id)
        ):
            raise PermissionDeniedError(
                "must be a member of the source or destination branch", str(actor.user_id),
            )

        priority = TransferPriority(priority)
        if transfer.priority == priority.value:
            return transfer.to_dto()

        before = transfer_snapshot(transfer)
        transfer.priority = priority.value
        self._bump(transfer)

        self._audit_transfer(actor, transfer, AuditAction.TRANSFER_PRIORITY_CHANGE, before)
        logger.info(
            "transfer_priority_changed",
            extra={
                "transfer_id": str(transfer.id),
                "from_priority": before.priority,
                "to_priority": priority.value,
            },
        )
        return transfer.to_dto()

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    def cancel(self, actor: Actor, transfer_id: UUID, expected_version: int) -> StockTransfer:
        transfer = self.lock_transfer(actor.tenant_id, transfer_id)
        self._check_version(transfer, expected_version, ENTITY)
        require_status(
            transfer.id, TransferStatus(transfer.status),
            {TransferStatus.REQUESTED, TransferStatus.APPROVED}, "cancel",
        )
        if transfer.shipment_batches:
            raise IllegalTransitionError(
                str(transfer.id), transfer.status, "cancel a shipped",
            )
        if actor.user_id != transfer.requested_by_user_id and not self._is_member(
            actor, transfer.initiated_by_branch_id
        ):
            raise PermissionDeniedError(
                "only the requester or the initiating branch may cancel", str(actor.user_id),
            )

        before = transfer_snapshot(transfer)
        transfer.status = TransferStatus.CANCELLED.value
        transfer.cancelled_at = self._now()
        self._bump(transfer)

        self._audit_transfer(actor, transfer, AuditAction.TRANSFER_CANCEL, before)
        logger.info(
            "transfer_cancelled",
            extra={"transfer_id": str(transfer.id), "from_status": before.status},
        )
        return transfer.to_dto()

    # ------------------------------------------------------------------
    # Reverse
    # ------------------------------------------------------------------

    def reverse(
        self,
        actor: Actor,
        transfer_id: UUID,
        expected_version: int,
        reason: str | None = None,
    ) -> StockTransfer:
        """
        Undo a COMPLETED transfer with a mirror-image transfer.

        The received quantity leaves the original destination FIFO
        (TRANSFER_OUT); the source gets back the exact lots that were
        shipped (REVERSAL), so its cost history is unchanged.

        Returns:
            The new reversal transfer, already COMPLETED.
        """
        original = self.lock_transfer(actor.tenant_id, transfer_id)
        if original.reversed_by_transfer_id is not None:
            raise AlreadyReversedError(str(original.id), str(original.reversed_by_transfer_id))
        self._check_version(original, expected_version, ENTITY)
        require_status(
            original.id, TransferStatus(original.status), {TransferStatus.COMPLETED}, "reverse",
        )
        if original.is_reversal:
            raise ConflictError(f"Transfer {original.id} is itself a reversal")
        self._require_member(actor, original.destination_branch_id, "destination")

        reason = reason.strip() if reason and reason.strip() else None
        now = self._now()
        reversal = StockTransferModel(
            id=uuid4(),
            tenant_id=original.tenant_id,
            transfer_number=self._next_number(original.tenant_id),
            source_branch_id=original.destination_branch_id,
            destination_branch_id=original.source_branch_id,
            status=TransferStatus.COMPLETED.value,
            priority=original.priority,
            initiation_type=InitiationType.PUSH.value,
            initiated_by_branch_id=original.destination_branch_id,
            requested_by_user_id=actor.user_id,
            requested_at=now,
            reviewed_by_user_id=actor.user_id,
            reviewed_at=now,
            shipped_by_user_id=actor.user_id,
            shipped_at=now,
            completed_at=now,
            updated_at=now,
            entity_version=1,
            order_notes=(
                f"Reversal of {original.transfer_number}: {reason}" if reason else None
            ),
            requires_multi_level_approval=False,
            is_reversal=True,
            reversal_of_id=original.id,
            reversal_reason=reason,
        )
        reversal.items = []
        for item in original.items:
            if item.qty_received <= 0:
                continue
            consumption = self._ledger.consume(
                original.tenant_id,
                original.destination_branch_id,
                item.product_id,
                item.qty_received,
                kind=MovementKind.TRANSFER_OUT,
                reference_id=reversal.id,
                reason=reason,
                actor_user_id=actor.user_id,
            )
            reversal.items.append(
                TransferItemModel(
                    tenant_id=original.tenant_id,
                    line_number=len(reversal.items) + 1,
                    product_id=item.product_id,
                    qty_requested=item.qty_received,
                    qty_approved=item.qty_received,
                    qty_shipped=item.qty_received,
                    qty_received=item.qty_received,
                    shipped_cost_minor=consumption.total_cost_minor,
                    avg_unit_cost_minor=average_unit_cost(
                        consumption.total_cost_minor, item.qty_received,
                    ),
                )
            )
            self._ledger.restore_lots(
                original.tenant_id,
                original.source_branch_id,
                item.product_id,
                self._shipped_lot_lines(original, item.id),
                reference_id=reversal.id,
                reason=reason,
                actor_user_id=actor.user_id,
            )

        self.session.add(reversal)
        self.session.flush()

        before = transfer_snapshot(original)
        original.reversed_by_transfer_id = reversal.id
        self._bump(original)

        self._audit_transfer(actor, original, AuditAction.TRANSFER_REVERSE, before)
        self._audit_transfer(actor, reversal, AuditAction.TRANSFER_REVERSE, None)
        logger.info(
            "transfer_reversed",
            extra={
                "transfer_id": str(original.id),
                "reversal_transfer_id": str(reversal.id),
                "reversal_number": reversal.transfer_number,
            },
        )
        return reversal.to_dto()

    @staticmethod
    def _shipped_lot_lines(transfer: StockTransferModel, item_id: UUID) -> list[ConsumptionLine]:
        return [
            ConsumptionLine(lot_id=lot.lot_id, qty=lot.qty, unit_cost_minor=lot.unit_cost_minor)
            for batch in transfer.shipment_batches
            for line in batch.lines
            if line.item_id == item_id
            for lot in line.lots
        ]
