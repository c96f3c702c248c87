"""
Module: stock_kernel.selectors.ledger_selector
Responsibility: Read-only views of the Branch Inventory Ledger: stock
    levels with their open lots, and the movement history.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Open lots are returned in FIFO order (``received_at``, then lot
      sequence), the same order ``consume`` draws from.
    - Ledger history is newest first (``occurred_at`` DESC, ``id`` DESC)
      and paged with a keyset cursor.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import and_, or_, select

from stock_kernel.domain.inventory import LedgerEntry, LedgerFilters, StockLevel
from stock_kernel.domain.ordering import LedgerCursor, clamp_limit
from stock_kernel.domain.transfer import Page
from stock_kernel.exceptions import ValidationError
from stock_kernel.models.inventory import LedgerEntryModel, ProductStockModel, StockLotModel
from stock_kernel.selectors.base import BaseSelector


class LedgerSelector(BaseSelector[LedgerEntryModel]):
    def get_stock_level(self, tenant_id: UUID, branch_id: UUID, product_id: UUID) -> StockLevel:
        """On-hand quantity and open lots.  Unknown pairs report zero."""
        stock = self.session.execute(
            select(ProductStockModel).where(
                ProductStockModel.tenant_id == tenant_id,
                ProductStockModel.branch_id == branch_id,
                ProductStockModel.product_id == product_id,
            )
        ).scalar_one_or_none()
        lots = self.session.execute(
            select(StockLotModel)
            .where(
                StockLotModel.tenant_id == tenant_id,
                StockLotModel.branch_id == branch_id,
                StockLotModel.product_id == product_id,
                StockLotModel.remaining_qty > 0,
            )
            .order_by(StockLotModel.received_at.asc(), StockLotModel.lot_sequence.asc())
        ).scalars()
        return StockLevel(
            branch_id=branch_id,
            product_id=product_id,
            qty_on_hand=stock.qty_on_hand if stock is not None else 0,
            open_lots=tuple(lot.to_dto() for lot in lots),
        )

    def get_stock_levels(self, tenant_id: UUID, branch_id: UUID) -> list[StockLevel]:
        """Every product with a stock row at ``branch_id``."""
        product_ids = self.session.execute(
            select(ProductStockModel.product_id)
            .where(
                ProductStockModel.tenant_id == tenant_id,
                ProductStockModel.branch_id == branch_id,
            )
            .order_by(ProductStockModel.product_id)
        ).scalars()
        return [self.get_stock_level(tenant_id, branch_id, pid) for pid in product_ids]

    def list_ledger_entries(
        self,
        tenant_id: UUID,
        filters: LedgerFilters | None = None,
        cursor: str | None = None,
        limit: int | None = None,
        *,
        default_limit: int = 20,
        max_limit: int = 100,
    ) -> Page[LedgerEntry]:
        filters = filters or LedgerFilters()
        m = LedgerEntryModel
        if (
            filters.occurred_from is not None
            and filters.occurred_to is not None
            and filters.occurred_from > filters.occurred_to
        ):
            raise ValidationError("occurred_at range start is after its end", field="occurred_at")

        stmt = select(m).where(m.tenant_id == tenant_id)
        if filters.branch_id is not None:
            stmt = stmt.where(m.branch_id == filters.branch_id)
        if filters.product_id is not None:
            stmt = stmt.where(m.product_id == filters.product_id)
        if filters.kinds:
            stmt = stmt.where(m.kind.in_([k.value for k in filters.kinds]))
        if filters.occurred_from is not None:
            stmt = stmt.where(m.occurred_at >= filters.occurred_from)
        if filters.occurred_to is not None:
            stmt = stmt.where(m.occurred_at <= filters.occurred_to)
        if cursor is not None:
            after = LedgerCursor.decode(cursor)
            stmt = stmt.where(
                or_(
                    m.occurred_at < after.occurred_at,
                    and_(m.occurred_at == after.occurred_at, m.id < after.id),
                )
            )

        page_size = clamp_limit(limit, default_limit, max_limit)
        rows = list(
            self.session.execute(
                stmt.order_by(m.occurred_at.desc(), m.id.desc()).limit(page_size + 1)
            ).scalars()
        )
        has_next = len(rows) > page_size
        items = tuple(row.to_dto() for row in rows[:page_size])
        next_cursor = (
            LedgerCursor(items[-1].occurred_at, items[-1].id).encode() if has_next else None
        )
        return Page(items=items, next_cursor=next_cursor, has_next_page=has_next)
