"""Caller-facing facade and response envelope."""

from stock_kernel.api.engine import StockTransferEngine
from stock_kernel.api.envelope import Envelope, ErrorBody

__all__ = ["StockTransferEngine", "Envelope", "ErrorBody"]
