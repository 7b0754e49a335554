from __future__ import annotations

import csv
import logging
import threading
import time
from pathlib import Path
from typing import Optional, Tuple

from depth_core.types import PriceLevel

from . import settings


_EMPTY_LEVEL = (0, 0)


def topn_header(depth: int) -> list[str]:
    header = ["symbol", "sequence", "event_time_ms", "recv_ms"]
    for i in range(1, depth + 1):
        header += [f"bid{i}_price", f"bid{i}_qty", f"ask{i}_price", f"ask{i}_qty"]
    return header


class TopNFile:
    """One symbol's top-N CSV.

    Rows are formatted from the book levels, held in memory and appended in
    batches (every `flush_rows` rows or `flush_interval_s` seconds). The
    header is written only when the file is new or empty, so restarts keep
    appending to the same file.
    """

    def __init__(
        self,
        path: str | Path,
        symbol: str,
        depth: int,
        decimals: int = settings.DECIMALS,
        flush_rows: int = 500,
        flush_interval_s: float = 1.0,
    ) -> None:
        self.path = Path(path)
        self.symbol = symbol
        self.depth = int(depth)
        self.decimals = int(decimals)
        self.flush_rows = max(1, int(flush_rows))
        self.flush_interval_s = max(0.0, float(flush_interval_s))
        self.rows_written = 0

        self._pending: list[list[str]] = []
        self._fh = None
        self._csv = None
        self._flushed_at = time.monotonic()

    def _open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fresh = (not self.path.exists()) or self.path.stat().st_size == 0
        self._fh = self.path.open("a", newline="")
        self._csv = csv.writer(self._fh)
        if fresh:
            self._csv.writerow(topn_header(self.depth))
            self._fh.flush()

    def _fmt(self, value) -> str:
        return f"{value:.{self.decimals}f}"

    def format_row(
        self,
        sequence: int,
        event_time_ms: Optional[int],
        bids: Tuple[PriceLevel, ...],
        asks: Tuple[PriceLevel, ...],
        recv_ms: int,
    ) -> list[str]:
        row = [self.symbol, str(sequence), "" if event_time_ms is None else str(int(event_time_ms)), str(recv_ms)]
        for i in range(self.depth):
            bp, bq = bids[i] if i < len(bids) else _EMPTY_LEVEL
            ap, aq = asks[i] if i < len(asks) else _EMPTY_LEVEL
            row += [self._fmt(bp), self._fmt(bq), self._fmt(ap), self._fmt(aq)]
        return row

    def append(self, sequence, event_time_ms, bids, asks, recv_ms: int) -> None:
        if self._fh is None:
            self._open()
        self._pending.append(self.format_row(sequence, event_time_ms, bids, asks, recv_ms))
        due = self.flush_interval_s > 0 and (time.monotonic() - self._flushed_at) >= self.flush_interval_s
        if len(self._pending) >= self.flush_rows or due:
            self.flush()

    def flush(self) -> None:
        if self._pending and self._csv is not None:
            self._csv.writerows(self._pending)
            self._fh.flush()
            self.rows_written += len(self._pending)
            self._pending.clear()
        self._flushed_at = time.monotonic()

    def close(self) -> None:
        try:
            self.flush()
        finally:
            if self._fh is not None:
                self._fh.close()
                self._fh = None
                self._csv = None


class TopNCsvSink:
    """PersistenceSink writing one zero-padded top-N row per state change.

    One CSV per symbol under out_dir; writes are serialized by an internal lock
    since several synchronizers may share a sink.
    """

    def __init__(
        self,
        out_dir: str | Path,
        depth: int,
        decimals: int = settings.DECIMALS,
        flush_rows: int = 500,
        flush_interval_s: float = 1.0,
    ) -> None:
        self.out_dir = Path(out_dir)
        self.depth = int(depth)
        self.decimals = int(decimals)
        self.flush_rows = flush_rows
        self.flush_interval_s = flush_interval_s
        self._files: dict[str, TopNFile] = {}
        self._lock = threading.Lock()
        self._log = logging.getLogger("depth_feed.sinks")

    def path_for(self, symbol: str) -> Path:
        return self.out_dir / f"depth_top{self.depth}_{symbol}.csv"

    def _file_for(self, symbol: str) -> TopNFile:
        out = self._files.get(symbol)
        if out is None:
            out = TopNFile(
                self.path_for(symbol),
                symbol,
                self.depth,
                decimals=self.decimals,
                flush_rows=self.flush_rows,
                flush_interval_s=self.flush_interval_s,
            )
            self._files[symbol] = out
        return out

    def on_state_changed(
        self,
        symbol: str,
        sequence: int,
        event_time_ms: Optional[int],
        bids: Tuple[PriceLevel, ...],
        asks: Tuple[PriceLevel, ...],
    ) -> None:
        recv_ms = int(time.time() * 1000)
        with self._lock:
            self._file_for(symbol).append(sequence, event_time_ms, bids, asks, recv_ms)

    def close(self) -> None:
        with self._lock:
            for symbol, out in self._files.items():
                try:
                    out.close()
                except Exception:
                    self._log.exception("Failed to close top-N file for %s", symbol)
                else:
                    self._log.info("Closed %s (%d rows)", out.path, out.rows_written)
            self._files.clear()


class LoggingSink:
    """PersistenceSink that logs the top of book for each change."""

    def __init__(self, logger: logging.Logger | None = None, level: int = logging.DEBUG) -> None:
        self.log = logger or logging.getLogger("depth_feed.book")
        self.level = level

    def on_state_changed(self, symbol, sequence, event_time_ms, bids, asks) -> None:
        if not self.log.isEnabledFor(self.level):
            return
        best_bid = f"{bids[0].price}/{bids[0].qty}" if bids else "-"
        best_ask = f"{asks[0].price}/{asks[0].qty}" if asks else "-"
        self.log.log(
            self.level,
            "%s seq=%s E=%s bid=%s ask=%s levels=%d/%d",
            symbol,
            sequence,
            event_time_ms,
            best_bid,
            best_ask,
            len(bids),
            len(asks),
        )


class FanoutSink:
    """Forward each change to several sinks; one failing sink does not starve the rest."""

    def __init__(self, *sinks) -> None:
        self.sinks = [s for s in sinks if s is not None]
        self._log = logging.getLogger("depth_feed.sinks")

    def on_state_changed(self, symbol, sequence, event_time_ms, bids, asks) -> None:
        for sink in self.sinks:
            try:
                sink.on_state_changed(symbol, sequence, event_time_ms, bids, asks)
            except Exception:
                self._log.exception("Sink %s failed for %s seq=%s", type(sink).__name__, symbol, sequence)
