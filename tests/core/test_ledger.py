from __future__ import annotations

import random
from decimal import Decimal

import pytest

from depth_core.errors import MalformedDelta
from depth_core.ledger import ASK, BID, PriceLevelLedger


def test_zero_qty_removes_level_and_is_noop_when_absent():
    led = PriceLevelLedger(ASK)
    led.apply_delta("100", "1")
    led.apply_delta("100", "0")
    led.apply_delta("200", "0.000")

    assert led.size() == 0
    assert led.best() is None


def test_overwrite_keeps_single_entry_per_price():
    led = PriceLevelLedger(BID)
    led.apply_delta("99.5", "1")
    led.apply_delta("99.50", "3")

    assert len(led) == 1
    assert led.snapshot_view() == ((Decimal("99.5"), Decimal("3")),)


def test_best_is_max_for_bids_and_min_for_asks():
    bids = PriceLevelLedger(BID)
    asks = PriceLevelLedger(ASK)
    for p in ("100", "101", "99"):
        bids.apply_delta(p, "1")
        asks.apply_delta(p, "1")

    assert bids.best().price == Decimal("101")
    assert asks.best().price == Decimal("99")
    assert [lvl.price for lvl in bids.snapshot_view()] == [Decimal("101"), Decimal("100"), Decimal("99")]
    assert [lvl.price for lvl in asks.snapshot_view()] == [Decimal("99"), Decimal("100"), Decimal("101")]


@pytest.mark.parametrize("side", [BID, ASK])
def test_best_matches_extreme_under_random_updates(side):
    rng = random.Random(1234)
    led = PriceLevelLedger(side)
    shadow: dict[Decimal, Decimal] = {}

    for _ in range(2000):
        price = Decimal(rng.randint(1, 200)) / 4
        qty = Decimal(rng.choice([0, 0, 1, 2, 5])) / 2
        led.apply_delta(price, qty)
        if qty == 0:
            shadow.pop(price, None)
        else:
            shadow[price] = qty

        best = led.best()
        if not shadow:
            assert best is None
            continue
        expected = max(shadow) if side == BID else min(shadow)
        assert best.price == expected
        assert best.qty == shadow[expected]

    assert all(q > 0 for _, q in led.snapshot_view())


def test_trim_keeps_best_levels_per_side():
    bids = PriceLevelLedger(BID)
    asks = PriceLevelLedger(ASK)
    for p in range(1, 11):
        bids.apply_delta(p, 1)
        asks.apply_delta(p, 1)

    assert bids.trim_to_depth(3) == 7
    assert asks.trim_to_depth(3) == 7

    assert [int(lvl.price) for lvl in bids.snapshot_view()] == [10, 9, 8]
    assert [int(lvl.price) for lvl in asks.snapshot_view()] == [1, 2, 3]


def test_trim_below_size_is_noop_and_negative_rejected():
    led = PriceLevelLedger(ASK)
    led.apply_delta("1", "1")
    assert led.trim_to_depth(5) == 0
    assert led.size() == 1
    with pytest.raises(ValueError):
        led.trim_to_depth(-1)


def test_load_replaces_contents_and_skips_zero_quantities():
    led = PriceLevelLedger(BID)
    led.apply_delta("7", "1")
    led.load([["1", "1"], ["3", "1"], ["2", "0"], ["5", "2"]])

    assert [int(p) for p, _ in led.snapshot_view()] == [5, 3, 1]


@pytest.mark.parametrize(
    "price,qty",
    [
        ("abc", "1"),
        ("100", "-1"),
        ("-5", "1"),
        ("0", "1"),
        ("NaN", "1"),
        ("100", "Infinity"),
        (None, "1"),
        (True, "1"),
    ],
)
def test_malformed_levels_are_rejected_without_mutation(price, qty):
    led = PriceLevelLedger(ASK)
    led.apply_delta("100", "1")

    with pytest.raises(MalformedDelta):
        led.apply_delta(price, qty)

    assert led.snapshot_view() == ((Decimal("100"), Decimal("1")),)


def test_load_rejects_non_pair_levels():
    led = PriceLevelLedger(BID)
    with pytest.raises(MalformedDelta):
        led.load([["100"]])


def test_unknown_side_rejected():
    with pytest.raises(ValueError):
        PriceLevelLedger("mid")
