"""
stock_kernel -- multi-tenant stock transfer lifecycle engine.

Moves inventory between branches under a configurable multi-level
approval policy, keeps cost-basis-accurate stock in FIFO lots, and
records partial shipments and receipts as discrete batches.

Layers (leaves first):
    domain/     Pure value objects and pure functions.  Zero I/O.
    db/         Declarative base, Storage handle, UnitOfWork.
    models/     SQLAlchemy ORM persistence.
    services/   Write side.  Flush only, never commit.
    selectors/  Read side.
    api/        StockTransferEngine facade and response envelope.
"""

__version__ = "0.1.0"
