from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, NamedTuple, Optional, Sequence, Tuple


class PriceLevel(NamedTuple):
    price: Decimal
    qty: Decimal


class ApplyResult(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    GAP = "gap"


class SyncPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    SYNCED = "synced"
    RESYNCING = "resyncing"
    CLOSED = "closed"


class DeliveryGuarantee(str, Enum):
    ORDERED = "ordered"
    AT_LEAST_ONCE = "at_least_once"


@dataclass
class SyncResult:
    action: ApplyResult
    details: str = ""


@dataclass(frozen=True)
class DeltaBatch:
    """One incremental depth update.

    `first_sequence` is the first update id covered by the batch when the
    transport reports it (Binance `U`); `final_sequence` is the last (`u`).
    Levels are raw (price, qty) pairs and are validated when applied.
    """

    final_sequence: int
    event_time_ms: int
    bids: Sequence[Sequence[Any]] = ()
    asks: Sequence[Sequence[Any]] = ()
    first_sequence: Optional[int] = None


@dataclass(frozen=True)
class Snapshot:
    sequence: int
    bids: Sequence[Sequence[Any]]
    asks: Sequence[Sequence[Any]]
    event_time_ms: Optional[int] = None


@dataclass(frozen=True)
class BookView:
    """Immutable read handle over an OrderBookState, best levels first."""

    symbol: str
    sequence: int
    event_time_ms: Optional[int]
    bids: Tuple[PriceLevel, ...]
    asks: Tuple[PriceLevel, ...]

    def best_bid(self) -> Optional[PriceLevel]:
        return self.bids[0] if self.bids else None

    def best_ask(self) -> Optional[PriceLevel]:
        return self.asks[0] if self.asks else None
