from __future__ import annotations

from typing import Any, Iterable, Optional, Sequence, Tuple

from .errors import MalformedDelta, StaleSnapshot
from .ledger import ASK, BID, PriceLevelLedger, coerce_levels
from .types import ApplyResult, BookView, DeltaBatch, SyncResult


def _to_int(value, name: str) -> int:
    if isinstance(value, bool):
        raise MalformedDelta(f"{name} must be an integer (got {value!r})")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise MalformedDelta(f"{name} must be an integer (got {value!r})") from exc


def batch_header(batch: DeltaBatch) -> Tuple[Optional[int], int, int]:
    """Return (first_sequence, final_sequence, event_time_ms) as ints, or raise MalformedDelta."""
    first = batch.first_sequence
    if first is not None:
        first = _to_int(first, "first_sequence")
    final = _to_int(batch.final_sequence, "final_sequence")
    event_time_ms = _to_int(batch.event_time_ms, "event_time_ms")
    return first, final, event_time_ms


class OrderBookState:
    """Local mirror of one symbol's book: two ledgers plus sequence metadata.

    `last_sequence` never decreases and decides which deltas are admissible:
      - final_sequence <= last_sequence      -> stale, dropped
      - first_sequence > last_sequence + 1   -> gap (only when check_gaps)
      - otherwise                            -> applied, then both sides trimmed
    """

    def __init__(self, symbol: str) -> None:
        self._symbol = symbol
        self.bids = PriceLevelLedger(BID)
        self.asks = PriceLevelLedger(ASK)
        self.last_sequence: int = -1
        self.last_event_time_ms: Optional[int] = None

    @property
    def symbol(self) -> str:
        return self._symbol

    def __repr__(self) -> str:
        return (
            f"OrderBookState(symbol={self._symbol!r}, last_sequence={self.last_sequence}, "
            f"bids={len(self.bids)}, asks={len(self.asks)})"
        )

    @classmethod
    def from_snapshot(
        cls,
        symbol: str,
        sequence: int,
        bids: Iterable[Sequence[Any]],
        asks: Iterable[Sequence[Any]],
        depth_limit: int,
        event_time_ms: Optional[int] = None,
    ) -> "OrderBookState":
        state = cls(symbol)
        state.replace_from_snapshot(symbol, sequence, bids, asks, depth_limit, event_time_ms)
        return state

    def replace_from_snapshot(
        self,
        symbol: str,
        sequence: int,
        bids: Iterable[Sequence[Any]],
        asks: Iterable[Sequence[Any]],
        depth_limit: int,
        event_time_ms: Optional[int] = None,
    ) -> None:
        """Replace both sides wholesale with an authoritative snapshot.

        New ledgers are fully built before they are swapped in, so a malformed
        snapshot leaves the current state untouched.
        """
        if symbol != self._symbol:
            raise ValueError(f"snapshot for {symbol!r} cannot replace book {self._symbol!r}")
        sequence = int(sequence)
        if sequence < self.last_sequence:
            raise StaleSnapshot(
                f"snapshot sequence {sequence} is older than last_sequence {self.last_sequence}"
            )

        new_bids = PriceLevelLedger(BID)
        new_asks = PriceLevelLedger(ASK)
        new_bids.load(bids)
        new_asks.load(asks)
        new_bids.trim_to_depth(depth_limit)
        new_asks.trim_to_depth(depth_limit)

        self.bids = new_bids
        self.asks = new_asks
        self.last_sequence = sequence
        if event_time_ms is not None:
            self.last_event_time_ms = int(event_time_ms)

    def apply_delta(self, batch: DeltaBatch, depth_limit: int, *, check_gaps: bool = True) -> SyncResult:
        # Validate the whole batch before touching either ledger.
        first, final, event_time_ms = batch_header(batch)
        last = self.last_sequence

        if final <= last:
            return SyncResult(ApplyResult.STALE, f"u={final} last={last}")

        if check_gaps and first is not None and first > last + 1:
            return SyncResult(ApplyResult.GAP, f"gap U={first} u={final} last={last}")

        bid_levels = coerce_levels(batch.bids)
        ask_levels = coerce_levels(batch.asks)

        self.bids.apply_levels(bid_levels)
        self.asks.apply_levels(ask_levels)
        self.bids.trim_to_depth(depth_limit)
        self.asks.trim_to_depth(depth_limit)
        self.last_sequence = final
        self.last_event_time_ms = event_time_ms
        return SyncResult(ApplyResult.APPLIED, f"lastUpdateId={final}")

    def view(self) -> BookView:
        return BookView(
            symbol=self._symbol,
            sequence=self.last_sequence,
            event_time_ms=self.last_event_time_ms,
            bids=self.bids.snapshot_view(),
            asks=self.asks.snapshot_view(),
        )
