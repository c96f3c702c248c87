"""ORM models for the stock kernel."""

from stock_kernel.models.approval import (
    ApprovalLevelModel,
    ApprovalProgressRecordModel,
    ApprovalRuleConditionModel,
    ApprovalRuleModel,
)
from stock_kernel.models.inventory import LedgerEntryModel, ProductStockModel, StockLotModel
from stock_kernel.models.sequence import SequenceCounter
from stock_kernel.models.template import TransferTemplateItemModel, TransferTemplateModel
from stock_kernel.models.transfer import (
    ReceiptBatchLineModel,
    ReceiptBatchModel,
    ShipmentBatchLineModel,
    ShipmentBatchModel,
    ShipmentLotLineModel,
    StockTransferModel,
    TransferItemModel,
)

__all__ = [
    "ApprovalLevelModel",
    "ApprovalProgressRecordModel",
    "ApprovalRuleConditionModel",
    "ApprovalRuleModel",
    "LedgerEntryModel",
    "ProductStockModel",
    "StockLotModel",
    "SequenceCounter",
    "TransferTemplateItemModel",
    "TransferTemplateModel",
    "ReceiptBatchLineModel",
    "ReceiptBatchModel",
    "ShipmentBatchLineModel",
    "ShipmentBatchModel",
    "ShipmentLotLineModel",
    "StockTransferModel",
    "TransferItemModel",
]
