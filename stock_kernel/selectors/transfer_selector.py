"""
Module: stock_kernel.selectors.transfer_selector
Responsibility: Read-only transfer queries.  ``get_transfer`` returns the
    fully hydrated aggregate; ``list_transfers`` filters and pages with a
    keyset cursor over the fixed priority ordering.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Ordering: priority rank ascending (URGENT first), ``requested_at``
      descending, ``id`` descending, expressed as an explicit ORDER BY so
      every backend returns the same sequence.
    - Keyset pagination: the cursor carries all three sort keys, so pages
      never skip or repeat rows when earlier pages gain new transfers.
    - Tenant scope on every query.

Failure modes:
    - NotFoundError for an unknown id or an id of another tenant.
    - ValidationError for a malformed cursor or an inverted date range.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import and_, case, func, or_, select

from stock_kernel.domain.ordering import PRIORITY_RANK, TransferCursor, clamp_limit
from stock_kernel.domain.transfer import Page, StockTransfer, TransferFilters
from stock_kernel.domain.values import TransferDirection
from stock_kernel.exceptions import NotFoundError, ValidationError
from stock_kernel.models.transfer import StockTransferModel
from stock_kernel.selectors.base import BaseSelector

_PRIORITY_RANK_SQL = case(
    {priority.value: rank for priority, rank in PRIORITY_RANK.items()},
    value=StockTransferModel.priority,
    else_=len(PRIORITY_RANK),
)


def _check_range(name: str, start, end) -> None:
    if start is not None and end is not None and start > end:
        raise ValidationError(f"{name} range start is after its end", field=name)


def _applied_filters(filters: TransferFilters) -> dict:
    """Echo of the filters that were actually applied, JSON friendly."""
    out: dict = {}
    for name, value in vars(filters).items():
        if value is None or value == ():
            continue
        if isinstance(value, tuple):
            out[name] = [v.value for v in value]
        elif hasattr(value, "value"):
            out[name] = value.value
        elif hasattr(value, "isoformat"):
            out[name] = value.isoformat()
        else:
            out[name] = str(value)
    return out


class TransferSelector(BaseSelector[StockTransferModel]):
    """
    Selector for stock transfers.

    Guarantees:
        - Returned transfers are frozen ``StockTransfer`` DTOs with items,
          batches, approval records and reversal links loaded.
    """

    def get_transfer(self, tenant_id: UUID, transfer_id: UUID) -> StockTransfer:
        row = self.session.execute(
            select(StockTransferModel).where(
                StockTransferModel.id == transfer_id,
                StockTransferModel.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError("StockTransfer", str(transfer_id))
        return row.to_dto()

    def _where(self, tenant_id: UUID, filters: TransferFilters) -> list:
        m = StockTransferModel
        clauses = [m.tenant_id == tenant_id]

        if filters.branch_id is not None:
            if filters.direction == TransferDirection.INBOUND:
                clauses.append(m.destination_branch_id == filters.branch_id)
            elif filters.direction == TransferDirection.OUTBOUND:
                clauses.append(m.source_branch_id == filters.branch_id)
            else:
                clauses.append(
                    or_(
                        m.source_branch_id == filters.branch_id,
                        m.destination_branch_id == filters.branch_id,
                    )
                )
        elif filters.direction is not None:
            raise ValidationError("direction requires branch_id", field="direction")

        if filters.statuses:
            clauses.append(m.status.in_([s.value for s in filters.statuses]))
        if filters.priority is not None:
            clauses.append(m.priority == filters.priority.value)
        if filters.initiation_type is not None:
            clauses.append(m.initiation_type == filters.initiation_type.value)
        if filters.q:
            pattern = f"%{filters.q.strip().upper()}%"
            clauses.append(func.upper(m.transfer_number).like(pattern))

        _check_range("requested_at", filters.requested_from, filters.requested_to)
        _check_range("shipped_at", filters.shipped_from, filters.shipped_to)
        _check_range(
            "expected_delivery_date",
            filters.expected_delivery_from,
            filters.expected_delivery_to,
        )
        if filters.requested_from is not None:
            clauses.append(m.requested_at >= filters.requested_from)
        if filters.requested_to is not None:
            clauses.append(m.requested_at <= filters.requested_to)
        if filters.shipped_from is not None:
            clauses.append(m.shipped_at >= filters.shipped_from)
        if filters.shipped_to is not None:
            clauses.append(m.shipped_at <= filters.shipped_to)
        if filters.expected_delivery_from is not None:
            clauses.append(m.expected_delivery_date >= filters.expected_delivery_from)
        if filters.expected_delivery_to is not None:
            clauses.append(m.expected_delivery_date <= filters.expected_delivery_to)
        return clauses

    @staticmethod
    def _after(cursor: TransferCursor):
        m = StockTransferModel
        return or_(
            _PRIORITY_RANK_SQL > cursor.priority_rank,
            and_(
                _PRIORITY_RANK_SQL == cursor.priority_rank,
                m.requested_at < cursor.requested_at,
            ),
            and_(
                _PRIORITY_RANK_SQL == cursor.priority_rank,
                m.requested_at == cursor.requested_at,
                m.id < cursor.id,
            ),
        )

    def list_transfers(
        self,
        tenant_id: UUID,
        filters: TransferFilters | None = None,
        cursor: str | None = None,
        limit: int | None = None,
        include_total: bool = False,
        *,
        default_limit: int = 20,
        max_limit: int = 100,
    ) -> Page[StockTransfer]:
        filters = filters or TransferFilters()
        page_size = clamp_limit(limit, default_limit, max_limit)
        clauses = self._where(tenant_id, filters)

        total = None
        if include_total:
            total = self.session.execute(
                select(func.count()).select_from(StockTransferModel).where(*clauses)
            ).scalar_one()

        stmt = select(StockTransferModel).where(*clauses)
        if cursor is not None:
            stmt = stmt.where(self._after(TransferCursor.decode(cursor)))
        stmt = stmt.order_by(
            _PRIORITY_RANK_SQL.asc(),
            StockTransferModel.requested_at.desc(),
            StockTransferModel.id.desc(),
        ).limit(page_size + 1)

        rows = list(self.session.execute(stmt).scalars())
        has_next = len(rows) > page_size
        rows = rows[:page_size]
        items = tuple(row.to_dto() for row in rows)
        next_cursor = TransferCursor.after(items[-1]).encode() if has_next else None
        return Page(
            items=items,
            next_cursor=next_cursor,
            has_next_page=has_next,
            total_count=total,
            applied_filters=_applied_filters(filters),
        )
