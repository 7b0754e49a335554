from __future__ import annotations

import re


_SEPARATORS = re.compile(r"[\s/:\-_.]+")


def normalize_symbol(symbol: str) -> str:
    """Exchange form of a symbol: "eth/btc", "ETH-BTC" and " ethbtc " all map to "ETHBTC"."""
    cleaned = _SEPARATORS.sub("", symbol).upper()
    if not cleaned.isalnum():
        raise ValueError(f"not a tradable symbol: {symbol!r}")
    return cleaned
