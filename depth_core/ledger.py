from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Iterator, Optional, Sequence, Tuple

from sortedcontainers import SortedDict

from .errors import MalformedDelta
from .types import PriceLevel


BID = "bid"
ASK = "ask"


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise MalformedDelta(f"expected a number, got {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise MalformedDelta(f"not a number: {value!r}") from exc


def coerce_level(price, qty) -> Tuple[Decimal, Decimal]:
    """Validate one (price, qty) pair and return it as Decimals."""
    p = _to_decimal(price)
    q = _to_decimal(qty)
    if not p.is_finite() or not q.is_finite():
        raise MalformedDelta(f"non-finite level ({price!r}, {qty!r})")
    if p <= 0:
        raise MalformedDelta(f"price must be positive (got {price!r})")
    if q < 0:
        raise MalformedDelta(f"negative quantity {qty!r} at price {price!r}")
    return p, q


def coerce_levels(levels: Iterable[Sequence[Any]]) -> list[Tuple[Decimal, Decimal]]:
    out = []
    for level in levels:
        try:
            price, qty = level[0], level[1]
        except (IndexError, KeyError, TypeError) as exc:
            raise MalformedDelta(f"level must be a (price, qty) pair (got {level!r})") from exc
        out.append(coerce_level(price, qty))
    return out


class PriceLevelLedger:
    """One side of an L2 book: price -> quantity, ranked best first.

    Bids rank by descending price, asks by ascending price. Quantities are
    always strictly positive; a zero quantity removes the level.
    """

    def __init__(self, side: str) -> None:
        if side not in (BID, ASK):
            raise ValueError(f"side must be {BID!r} or {ASK!r} (got {side!r})")
        self.side = side
        self._levels: SortedDict = SortedDict()

    def __len__(self) -> int:
        return len(self._levels)

    def __repr__(self) -> str:
        return f"PriceLevelLedger(side={self.side!r}, levels={len(self._levels)})"

    def size(self) -> int:
        return len(self._levels)

    def _set(self, price: Decimal, qty: Decimal) -> None:
        if qty == 0:
            self._levels.pop(price, None)
        else:
            self._levels[price] = qty

    def apply_delta(self, price, qty) -> None:
        p, q = coerce_level(price, qty)
        self._set(p, q)

    def apply_levels(self, levels: Iterable[Tuple[Decimal, Decimal]]) -> None:
        """Apply already-coerced levels in order."""
        for p, q in levels:
            self._set(p, q)

    def load(self, levels: Iterable[Sequence[Any]]) -> None:
        coerced = coerce_levels(levels)
        self._levels.clear()
        self.apply_levels(coerced)

    def trim_to_depth(self, n: int) -> int:
        """Drop everything past the n best levels. Returns the number removed."""
        n = int(n)
        if n < 0:
            raise ValueError(f"depth must be non-negative (got {n})")
        excess = len(self._levels) - n
        if excess <= 0:
            return 0
        # worst levels sit at the low end for bids, the high end for asks
        index = 0 if self.side == BID else -1
        for _ in range(excess):
            self._levels.popitem(index)
        return excess

    def _iter_best_first(self) -> Iterator[Tuple[Decimal, Decimal]]:
        items = self._levels.items()
        return reversed(items) if self.side == BID else iter(items)

    def best(self) -> Optional[PriceLevel]:
        if not self._levels:
            return None
        index = -1 if self.side == BID else 0
        price, qty = self._levels.peekitem(index)
        return PriceLevel(price, qty)

    def snapshot_view(self) -> Tuple[PriceLevel, ...]:
        return tuple(PriceLevel(p, q) for p, q in self._iter_best_first())
