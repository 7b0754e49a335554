"""Order book mirror core: ledgers, book state and the snapshot/delta synchronizer."""

from .errors import FatalSyncError, MalformedDelta, StaleSnapshot, SyncError, TransportError
from .ledger import PriceLevelLedger
from .orderbook_state import OrderBookState
from .synchronizer import DepthSynchronizer
from .types import (
    ApplyResult,
    BookView,
    DeliveryGuarantee,
    DeltaBatch,
    PriceLevel,
    Snapshot,
    SyncPhase,
    SyncResult,
)

__all__ = [
    "ApplyResult",
    "BookView",
    "DeliveryGuarantee",
    "DeltaBatch",
    "DepthSynchronizer",
    "FatalSyncError",
    "MalformedDelta",
    "OrderBookState",
    "PriceLevel",
    "PriceLevelLedger",
    "Snapshot",
    "StaleSnapshot",
    "SyncError",
    "SyncPhase",
    "SyncResult",
    "TransportError",
]
