"""Collaborator contracts for the synchronizer.

Implementations live outside the core (see `depth_feed`); tests use fakes.
"""

from __future__ import annotations

from typing import Callable, Optional, Protocol, Tuple

from .types import DeliveryGuarantee, DeltaBatch, PriceLevel, Snapshot


DeltaHandler = Callable[[DeltaBatch], None]


class SnapshotSource(Protocol):
    def fetch_snapshot(self, symbol: str, depth_limit: int) -> Snapshot:
        """Return an authoritative book; raise TransportError on failure."""
        ...


class Subscription(Protocol):
    def close(self) -> None:
        ...


class DeltaStream(Protocol):
    # Streams that do not declare a guarantee are treated as AT_LEAST_ONCE.
    delivery: DeliveryGuarantee

    def subscribe(self, symbol: str, handler: DeltaHandler) -> Subscription:
        ...


class PersistenceSink(Protocol):
    def on_state_changed(
        self,
        symbol: str,
        sequence: int,
        event_time_ms: Optional[int],
        bids: Tuple[PriceLevel, ...],
        asks: Tuple[PriceLevel, ...],
    ) -> None:
        ...
