from app.models.transaction import Voucher, LedgerEntry, InventoryEntry
from app.models.aggregate import AggregateState, DailyAggregate, DimensionalAggregate
from app.models.sync import SyncMeta

__all__ = [
    "Voucher",
    "LedgerEntry",
    "InventoryEntry",
    "DailyAggregate",
    "DimensionalAggregate",
    "AggregateState",
    "SyncMeta",
]
