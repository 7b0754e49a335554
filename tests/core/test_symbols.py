from __future__ import annotations

import pytest

from depth_core.symbols import normalize_symbol


@pytest.mark.parametrize("raw", ["ETHBTC", "ethbtc", " eth/btc ", "ETH-BTC", "eth_btc", "ETH:BTC"])
def test_normalize_symbol_strips_separators_and_upper_cases(raw):
    assert normalize_symbol(raw) == "ETHBTC"


@pytest.mark.parametrize("raw", ["", "  ", "-/", "ETH*BTC"])
def test_normalize_symbol_rejects_non_symbols(raw):
    with pytest.raises(ValueError):
        normalize_symbol(raw)
