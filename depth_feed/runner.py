from __future__ import annotations

import argparse
import logging
import signal
import threading
import time
from pathlib import Path
from typing import List, Optional

from depth_core.errors import FatalSyncError
from depth_core.symbols import normalize_symbol
from depth_core.synchronizer import DepthSynchronizer

from . import settings
from .logging_config import setup_logging
from .sinks import FanoutSink, LoggingSink, TopNCsvSink
from .snapshot import BinanceSnapshotSource
from .ws_stream import BinanceDeltaStream


log = logging.getLogger("depth_feed.runner")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mirror Binance order books locally and record top-N depth")
    parser.add_argument("--symbol", action="append", required=True, help="Symbol to mirror (repeatable)")
    parser.add_argument("--depth", type=int, default=settings.DEPTH_LIMIT, help="Price levels kept per side")
    parser.add_argument("--out-dir", default=settings.OUT_DIR, help="Directory for top-N CSV files")
    parser.add_argument("--log-dir", default=settings.LOG_DIR, help="Directory for log files")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL)
    return parser


def make_synchronizer(snapshot_source, delta_stream, sink, stop_event: threading.Event) -> DepthSynchronizer:
    def on_fatal(exc: FatalSyncError) -> None:
        log.error("Synchronizer failed fatally: %s", exc)
        stop_event.set()

    return DepthSynchronizer(
        snapshot_source,
        delta_stream,
        sink,
        retry_max=settings.SNAPSHOT_RETRY_MAX,
        backoff_s=settings.SNAPSHOT_RETRY_BACKOFF_S,
        backoff_max_s=settings.SNAPSHOT_RETRY_BACKOFF_MAX_S,
        max_pending=settings.MAX_PENDING_DELTAS,
        on_fatal=on_fatal,
    )


class Heartbeat:
    """Logs one status line per synchronizer every HEARTBEAT_SEC."""

    def __init__(self, syncs: List[DepthSynchronizer]) -> None:
        self.syncs = syncs
        self.proc_t0 = time.time()
        self.last_hb = self.proc_t0

    def heartbeat(self, force: bool = False) -> None:
        now_s = time.time()
        if (not force) and (now_s - self.last_hb < settings.HEARTBEAT_SEC):
            return
        self.last_hb = now_s
        uptime = now_s - self.proc_t0
        for sync in self.syncs:
            view = sync.view()
            best_bid = view.best_bid() if view is not None else None
            best_ask = view.best_ask() if view is not None else None
            log.info(
                "HEARTBEAT %s uptime=%.0fs phase=%s lastUpdateId=%s best_bid=%s best_ask=%s "
                "depth=%s resyncs=%d pending=%d dropped=%d",
                sync.symbol,
                uptime,
                sync.phase.value,
                view.sequence if view is not None else None,
                best_bid.price if best_bid is not None else None,
                best_ask.price if best_ask is not None else None,
                sync.depth_limit,
                sync.resync_count,
                sync.pending_count(),
                sync.dropped_count,
            )


def run(
    symbols: List[str],
    depth: int,
    out_dir: Path,
    stop_event: threading.Event,
    snapshot_source=None,
    delta_stream=None,
) -> int:
    """Start one synchronizer per symbol and block until stop_event is set."""
    owns_source = snapshot_source is None
    snapshot_source = snapshot_source or BinanceSnapshotSource()
    delta_stream = delta_stream or BinanceDeltaStream()
    csv_sink = TopNCsvSink(out_dir, depth=depth)
    sink = FanoutSink(csv_sink, LoggingSink())

    syncs: List[DepthSynchronizer] = []
    heartbeat = Heartbeat(syncs)
    exit_code = 0
    try:
        for symbol in symbols:
            sync = make_synchronizer(snapshot_source, delta_stream, sink, stop_event)
            syncs.append(sync)
            sync.start(normalize_symbol(symbol), depth)
        while not stop_event.wait(1.0):
            heartbeat.heartbeat()
    except FatalSyncError as exc:
        log.error("Startup failed: %s", exc)
        exit_code = 1
    finally:
        for sync in syncs:
            sync.stop()
        for sync in syncs:
            if not sync.wait_idle(settings.SNAPSHOT_TIMEOUT_S):
                log.warning("Resync worker for %s still running at shutdown", sync.symbol)
        heartbeat.heartbeat(force=True)
        csv_sink.close()
        if owns_source:
            snapshot_source.close()

    if any(sync.error is not None for sync in syncs):
        exit_code = 1
    return exit_code


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    symbols = [normalize_symbol(s) for s in args.symbol]
    setup_logging(
        level=args.log_level,
        component="depthcache",
        subdir="_".join(s.lower() for s in symbols),
        base_dir=args.log_dir,
    )

    stop_event = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        log.info("Signal %s received; stopping.", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        return run(symbols, args.depth, Path(args.out_dir), stop_event)
    except Exception:
        logging.getLogger("depth_feed.runner").exception("Runner crashed")
        raise


if __name__ == "__main__":
    raise SystemExit(main())
