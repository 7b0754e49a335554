from __future__ import annotations

import random
from decimal import Decimal

import pytest

from depth_core.errors import MalformedDelta, StaleSnapshot
from depth_core.orderbook_state import OrderBookState
from depth_core.types import ApplyResult, DeltaBatch


def _d(levels):
    return [(Decimal(str(p)), Decimal(str(q))) for p, q in levels]


def _book(sequence=10, depth=5):
    return OrderBookState.from_snapshot(
        "ETHBTC",
        sequence,
        bids=[["99", "1"]],
        asks=[["100", "1"], ["101", "2"]],
        depth_limit=depth,
    )


def test_snapshot_then_delta_end_to_end():
    book = _book(sequence=10, depth=5)

    result = book.apply_delta(
        DeltaBatch(final_sequence=11, event_time_ms=1000, bids=[["99", "2"]], asks=[["100", "0"]]),
        depth_limit=5,
    )

    assert result.action is ApplyResult.APPLIED
    assert list(book.asks.snapshot_view()) == _d([(101, 2)])
    assert list(book.bids.snapshot_view()) == _d([(99, 2)])
    assert book.last_sequence == 11
    assert book.last_event_time_ms == 1000


def test_stale_batch_never_mutates():
    book = _book(sequence=10)
    batch = DeltaBatch(final_sequence=11, event_time_ms=1, bids=[["98", "5"]], asks=[])
    assert book.apply_delta(batch, 5).action is ApplyResult.APPLIED
    before = book.view()

    again = book.apply_delta(batch, 5)
    older = book.apply_delta(DeltaBatch(final_sequence=3, event_time_ms=2, bids=[["1", "1"]]), 5)

    assert again.action is ApplyResult.STALE
    assert older.action is ApplyResult.STALE
    assert book.view() == before


def test_gap_detected_without_mutation():
    book = _book(sequence=100)
    before = book.view()

    result = book.apply_delta(
        DeltaBatch(final_sequence=110, first_sequence=105, event_time_ms=5, bids=[["98", "1"]]),
        depth_limit=5,
    )

    assert result.action is ApplyResult.GAP
    assert book.view() == before
    assert book.last_sequence == 100


def test_straddling_batch_bridges_snapshot():
    book = _book(sequence=100)
    result = book.apply_delta(DeltaBatch(final_sequence=105, first_sequence=90, event_time_ms=5), 5)
    assert result.action is ApplyResult.APPLIED
    assert book.last_sequence == 105


def test_gap_check_disabled_for_ordered_transport():
    book = _book(sequence=100)
    result = book.apply_delta(
        DeltaBatch(final_sequence=110, first_sequence=105, event_time_ms=5),
        depth_limit=5,
        check_gaps=False,
    )
    assert result.action is ApplyResult.APPLIED
    assert book.last_sequence == 110


def test_malformed_batch_leaves_both_sides_untouched():
    book = _book(sequence=10)
    before = book.view()

    with pytest.raises(MalformedDelta):
        book.apply_delta(
            DeltaBatch(final_sequence=11, event_time_ms=1, bids=[["97", "1"]], asks=[["102", "-3"]]),
            depth_limit=5,
        )

    assert book.view() == before


@pytest.mark.parametrize(
    "header",
    [
        {"final_sequence": 11, "event_time_ms": None},
        {"final_sequence": 11, "event_time_ms": "x"},
        {"final_sequence": "eleven", "event_time_ms": 1},
        {"final_sequence": None, "event_time_ms": 1},
        {"final_sequence": 11, "event_time_ms": 1, "first_sequence": [11]},
    ],
)
def test_bad_batch_header_rejected_before_any_write(header):
    book = _book(sequence=10)
    before = book.view()

    with pytest.raises(MalformedDelta):
        book.apply_delta(DeltaBatch(bids=[["98", "5"]], asks=[["100", "0"]], **header), depth_limit=5)

    assert book.view() == before
    assert book.last_sequence == 10
    # the same snapshot can still be reinstalled
    book.replace_from_snapshot("ETHBTC", 10, [["99", "1"]], [["100", "1"]], depth_limit=5)
    assert book.last_sequence == 10


def test_depth_bound_after_every_apply():
    rng = random.Random(7)
    depth = 4
    book = OrderBookState.from_snapshot(
        "BTCUSDT", 0, bids=[[str(p), "1"] for p in range(50, 60)], asks=[[str(p), "1"] for p in range(60, 70)],
        depth_limit=depth,
    )
    assert len(book.bids) == depth and len(book.asks) == depth

    for seq in range(1, 300):
        bids = [[str(rng.randint(40, 59)), str(rng.choice([0, 1, 2]))] for _ in range(5)]
        asks = [[str(rng.randint(60, 79)), str(rng.choice([0, 1, 2]))] for _ in range(5)]
        book.apply_delta(DeltaBatch(final_sequence=seq, first_sequence=seq, event_time_ms=seq, bids=bids, asks=asks), depth)
        assert len(book.bids) <= depth
        assert len(book.asks) <= depth


def test_sequential_deltas_equal_net_snapshot():
    rng = random.Random(99)
    start_bids = [[str(p), "1"] for p in range(90, 100)]
    start_asks = [[str(p), "1"] for p in range(100, 110)]
    book = OrderBookState.from_snapshot("X", 0, start_bids, start_asks, depth_limit=1000)

    net_bids = {Decimal(p): Decimal(q) for p, q in start_bids}
    net_asks = {Decimal(p): Decimal(q) for p, q in start_asks}

    for seq in range(1, 200):
        bids = [[str(rng.randint(80, 99)), str(rng.choice([0, 1, 3]))] for _ in range(3)]
        asks = [[str(rng.randint(100, 119)), str(rng.choice([0, 1, 3]))] for _ in range(3)]
        book.apply_delta(DeltaBatch(final_sequence=seq, first_sequence=seq, event_time_ms=seq, bids=bids, asks=asks), 1000)
        for side, levels in ((net_bids, bids), (net_asks, asks)):
            for p, q in levels:
                if Decimal(q) == 0:
                    side.pop(Decimal(p), None)
                else:
                    side[Decimal(p)] = Decimal(q)

    expected = OrderBookState.from_snapshot(
        "X",
        book.last_sequence,
        [[p, q] for p, q in net_bids.items()],
        [[p, q] for p, q in net_asks.items()],
        depth_limit=1000,
    )
    assert book.bids.snapshot_view() == expected.bids.snapshot_view()
    assert book.asks.snapshot_view() == expected.asks.snapshot_view()


def test_replace_from_snapshot_is_wholesale_and_trims():
    book = _book(sequence=10)
    book.replace_from_snapshot(
        "ETHBTC", 20, bids=[[str(p), "1"] for p in range(1, 9)], asks=[["500", "1"]], depth_limit=3, event_time_ms=77
    )

    assert [int(p) for p, _ in book.bids.snapshot_view()] == [8, 7, 6]
    assert [int(p) for p, _ in book.asks.snapshot_view()] == [500]
    assert book.last_sequence == 20
    assert book.last_event_time_ms == 77


def test_replace_rejects_older_snapshot_and_other_symbol():
    book = _book(sequence=10)
    with pytest.raises(StaleSnapshot):
        book.replace_from_snapshot("ETHBTC", 9, [], [], depth_limit=5)
    with pytest.raises(ValueError):
        book.replace_from_snapshot("BTCUSDT", 11, [], [], depth_limit=5)
    assert book.last_sequence == 10


def test_malformed_snapshot_keeps_previous_state():
    book = _book(sequence=10)
    before = book.view()
    with pytest.raises(MalformedDelta):
        book.replace_from_snapshot("ETHBTC", 12, [["99", "1"]], [["x", "1"]], depth_limit=5)
    assert book.view() == before


def test_view_exposes_best_levels():
    view = _book().view()
    assert view.symbol == "ETHBTC"
    assert view.best_bid().price == Decimal("99")
    assert view.best_ask().price == Decimal("100")
