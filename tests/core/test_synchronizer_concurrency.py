from __future__ import annotations

import random
import threading

from depth_core.synchronizer import DepthSynchronizer
from depth_core.types import Snapshot, SyncPhase

from tests.core.fakes import FakeDeltaStream, RecordingSink, delta


class CounterSnapshotSource:
    """Snapshot at the highest sequence handed out so far."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.seq = 0

    def next_seq(self) -> int:
        with self.lock:
            self.seq += 1
            return self.seq

    def fetch_snapshot(self, symbol, depth_limit):
        with self.lock:
            seq = self.seq
        return Snapshot(sequence=seq, bids=[["100", "1"]], asks=[["101", "1"]])


def test_interleaved_apply_and_resync_never_rewind_sequence():
    source = CounterSnapshotSource()
    stream = FakeDeltaStream()
    sink = RecordingSink()
    sync = DepthSynchronizer(source, stream, sink, backoff_s=0.0, backoff_max_s=0.0)
    sync.start("BTCUSDT", 5)

    n_threads = 8
    ops_per_thread = 125
    errors = []
    observed = []
    barrier = threading.Barrier(n_threads)

    def worker(seed: int) -> None:
        rng = random.Random(seed)
        barrier.wait()
        try:
            for _ in range(ops_per_thread):
                if rng.random() < 0.1:
                    sync.resync("test")
                else:
                    seq = source.next_seq()
                    price = str(90 + rng.randint(0, 20))
                    qty = str(rng.choice([0, 1, 2]))
                    stream.push(delta(seq, bids=[[price, qty]], asks=[[str(int(price) + 20), qty]]))
                view = sync.view()
                if view is not None:
                    observed.append(view.sequence)
        except Exception as exc:  # pragma: no cover - reported below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n_threads)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert not any(t.is_alive() for t in threads)
    assert errors == []
    # a resync started by the last pushes may still be fetching
    assert sync.wait_idle(30)

    seqs = sink.sequences
    assert seqs, "expected at least the initial snapshot notification"
    assert all(a <= b for a, b in zip(seqs, seqs[1:]))
    assert sync.phase is SyncPhase.SYNCED
    view = sync.view()
    assert view.sequence == seqs[-1]
    assert len(view.bids) <= 5 and len(view.asks) <= 5
    assert max(observed) <= view.sequence
