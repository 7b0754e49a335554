from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Optional

from .errors import FatalSyncError, MalformedDelta
from .orderbook_state import OrderBookState, batch_header
from .protocols import DeltaStream, PersistenceSink, SnapshotSource, Subscription
from .types import ApplyResult, BookView, DeliveryGuarantee, DeltaBatch, Snapshot, SyncPhase


_MALFORMED = "malformed_delta"


class DepthSynchronizer:
    """Keeps one symbol's OrderBookState in sync with a snapshot source and a delta stream.

    Lifecycle: UNINITIALIZED -> SYNCED -> RESYNCING -> SYNCED -> ... -> CLOSED.

    Every mutation of the book (delta apply, snapshot replace, trim), every
    buffer append and every sink notification happens under one lock, so the
    stream thread and a concurrent resync never interleave. Snapshot fetches
    run outside the lock; deltas arriving meanwhile are buffered in a bounded
    deque (oldest evicted first) and replayed once the snapshot lands.

    A resync triggered by a delta (gap or malformed batch) runs on a worker
    thread owned by the synchronizer, so the stream's read loop keeps
    draining the socket while the snapshot is fetched. wait_idle() joins it.

    Only FatalSyncError escapes to the owner: from start()/resync(), or via
    wait() and the on_fatal callback when a background resync gives up.
    """

    def __init__(
        self,
        snapshot_source: SnapshotSource,
        delta_stream: DeltaStream,
        sink: Optional[PersistenceSink] = None,
        *,
        retry_max: int = 3,
        backoff_s: float = 0.5,
        backoff_max_s: float = 5.0,
        max_pending: int = 10_000,
        on_fatal: Optional[Callable[[FatalSyncError], None]] = None,
    ) -> None:
        self._snapshot_source = snapshot_source
        self._delta_stream = delta_stream
        self._sink = sink
        self.retry_max = max(1, int(retry_max))
        self.backoff_s = max(0.0, float(backoff_s))
        self.backoff_max_s = max(self.backoff_s, float(backoff_max_s))
        self.on_fatal = on_fatal

        delivery = getattr(delta_stream, "delivery", DeliveryGuarantee.AT_LEAST_ONCE)
        self.check_gaps = delivery != DeliveryGuarantee.ORDERED

        self._lock = threading.RLock()
        self._closed = threading.Event()
        self._phase = SyncPhase.UNINITIALIZED
        self._state: Optional[OrderBookState] = None
        self._pending: Deque[DeltaBatch] = deque(maxlen=max(1, int(max_pending)))
        self._subscription: Optional[Subscription] = None
        self._symbol: Optional[str] = None
        self._depth_limit: Optional[int] = None
        self._error: Optional[FatalSyncError] = None
        self._resync_thread: Optional[threading.Thread] = None

        self.resync_count = 0
        self.dropped_count = 0
        self._log = logging.getLogger("depth_core.synchronizer")

    # ------------------------------------------------------------------
    # read side

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def symbol(self) -> Optional[str]:
        return self._symbol

    @property
    def depth_limit(self) -> Optional[int]:
        return self._depth_limit

    @property
    def error(self) -> Optional[FatalSyncError]:
        return self._error

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def view(self) -> Optional[BookView]:
        with self._lock:
            if self._state is None:
                return None
            return self._state.view()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until closed. Re-raises the fatal error that closed us, if any."""
        closed = self._closed.wait(timeout)
        if self._error is not None:
            raise self._error
        return closed

    # ------------------------------------------------------------------
    # lifecycle

    def start(self, symbol: str, depth_limit: int) -> None:
        depth_limit = int(depth_limit)
        if depth_limit < 1:
            raise ValueError(f"depth_limit must be >= 1 (got {depth_limit})")
        with self._lock:
            if self._symbol is not None or self._phase is not SyncPhase.UNINITIALIZED:
                raise RuntimeError(f"synchronizer already started for {self._symbol!r}")
            self._symbol = symbol
            self._depth_limit = depth_limit

        # Subscribe first so deltas published while the snapshot is in flight
        # are buffered and can bridge it.
        subscription = self._delta_stream.subscribe(symbol, self.on_delta)
        with self._lock:
            closed = self._phase is SyncPhase.CLOSED
            if not closed:
                self._subscription = subscription
        if closed:
            self._safe_close(subscription)
            return

        self._log.info("Starting %s depth_limit=%d check_gaps=%s", symbol, depth_limit, self.check_gaps)
        try:
            self._sync_rounds("initial")
        except FatalSyncError as exc:
            self._fail(exc)
            raise

    def stop(self) -> None:
        with self._lock:
            if self._phase is SyncPhase.CLOSED:
                return
            prev = self._phase
            self._phase = SyncPhase.CLOSED
            self._closed.set()
            subscription = self._subscription
            self._subscription = None
            self._pending.clear()
        self._log.info("Stopped %s (was %s)", self._symbol, prev.value)
        self._safe_close(subscription)

    def resync(self, reason: str = "manual") -> bool:
        """Force a fresh snapshot. Returns False when not currently SYNCED."""
        with self._lock:
            if self._phase is not SyncPhase.SYNCED:
                return False
            tag = self._begin_resync_locked(reason)
        try:
            self._sync_rounds(tag)
        except FatalSyncError as exc:
            self._fail(exc)
            raise
        return True

    # ------------------------------------------------------------------
    # stream handler

    def on_delta(self, batch: DeltaBatch) -> None:
        """Stream handler. Never blocks on a snapshot fetch; resyncs run on a worker thread."""
        with self._lock:
            phase = self._phase
            if phase is SyncPhase.CLOSED:
                return
            if phase is not SyncPhase.SYNCED:
                self._buffer_locked(batch)
                return
            reason = self._apply_locked(batch)
            if reason is None:
                return
            if not reason.startswith(_MALFORMED):
                # a gapped batch is still newer than the book; replay it after the snapshot
                self._buffer_locked(batch)
            tag = self._begin_resync_locked(reason)
            self._resync_thread = threading.Thread(
                target=self._resync_worker,
                args=(tag,),
                name=f"resync-{self._symbol}",
                daemon=True,
            )
            self._resync_thread.start()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no background resync is running. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                worker = self._resync_thread
            if worker is None or worker is threading.current_thread():
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            worker.join(remaining)
            if worker.is_alive():
                return False
            with self._lock:
                if self._resync_thread is worker:
                    self._resync_thread = None

    # ------------------------------------------------------------------
    # internals

    def _resync_worker(self, tag: str) -> None:
        try:
            self._sync_rounds(tag)
        except FatalSyncError as exc:
            self._fail(exc)
        except Exception as exc:
            self._log.exception("Resync %s for %s crashed", tag, self._symbol)
            self._fail(FatalSyncError(f"resync {tag} for {self._symbol} crashed: {exc}"))
        finally:
            with self._lock:
                if self._resync_thread is threading.current_thread():
                    self._resync_thread = None

    def _buffer_locked(self, batch: DeltaBatch) -> None:
        try:
            batch_header(batch)
        except MalformedDelta as exc:
            self._log.warning("Dropping unbufferable delta for %s: %s", self._symbol, exc)
            return
        if len(self._pending) == self._pending.maxlen:
            self.dropped_count += 1
            if self.dropped_count == 1 or self.dropped_count % 1000 == 0:
                self._log.warning(
                    "Pending delta buffer full for %s (max=%d); dropped oldest (total dropped=%d)",
                    self._symbol,
                    self._pending.maxlen,
                    self.dropped_count,
                )
        self._pending.append(batch)

    def _apply_locked(self, batch: DeltaBatch) -> Optional[str]:
        """Apply one batch. Returns a resync reason, or None when no resync is needed."""
        try:
            result = self._state.apply_delta(batch, self._depth_limit, check_gaps=self.check_gaps)
        except (MalformedDelta, TypeError, ValueError) as exc:
            self._log.warning("Malformed delta for %s u=%s: %s", self._symbol, batch.final_sequence, exc)
            return f"{_MALFORMED} u={batch.final_sequence}"

        if result.action is ApplyResult.APPLIED:
            self._notify_locked()
            return None
        if result.action is ApplyResult.STALE:
            self._log.debug("Stale delta for %s dropped (%s)", self._symbol, result.details)
            return None
        return result.details

    def _begin_resync_locked(self, reason: str) -> str:
        self.resync_count += 1
        self._phase = SyncPhase.RESYNCING
        tag = f"resync_{self.resync_count:06d}"
        self._log.warning("Resync %s triggered for %s: %s", tag, self._symbol, reason)
        return tag

    def _sync_rounds(self, tag: str) -> None:
        # A replay that hits another gap needs a newer snapshot; keep going
        # until the book bridges or we are closed.
        while True:
            reason = self._load_snapshot(tag)
            if reason is None:
                return
            with self._lock:
                if self._phase is SyncPhase.CLOSED:
                    return
                tag = self._begin_resync_locked(f"replay after {tag}: {reason}")

    def _load_snapshot(self, tag: str) -> Optional[str]:
        attempts = self.retry_max
        delay = self.backoff_s
        last_exc: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            if self._closed.is_set():
                return None
            try:
                snapshot = self._snapshot_source.fetch_snapshot(self._symbol, self._depth_limit)
                with self._lock:
                    if self._phase is SyncPhase.CLOSED:
                        return None
                    return self._install_locked(snapshot, tag)
            except Exception as exc:
                last_exc = exc
                self._log.warning(
                    "Snapshot %s for %s failed (attempt %d/%d): %s", tag, self._symbol, attempt, attempts, exc
                )
            if attempt >= attempts:
                break
            if delay > 0:
                if self._closed.wait(delay):
                    return None
                delay = min(self.backoff_max_s, delay * 2)
        raise FatalSyncError(
            f"snapshot {tag} for {self._symbol} failed after {attempts} attempts: {last_exc}"
        ) from last_exc

    def _install_locked(self, snapshot: Snapshot, tag: str) -> Optional[str]:
        if self._state is None:
            self._state = OrderBookState.from_snapshot(
                self._symbol,
                snapshot.sequence,
                snapshot.bids,
                snapshot.asks,
                self._depth_limit,
                snapshot.event_time_ms,
            )
        else:
            self._state.replace_from_snapshot(
                self._symbol,
                snapshot.sequence,
                snapshot.bids,
                snapshot.asks,
                self._depth_limit,
                snapshot.event_time_ms,
            )
        self._log.info(
            "Snapshot %s loaded for %s lastUpdateId=%s (pending=%d)",
            tag,
            self._symbol,
            self._state.last_sequence,
            len(self._pending),
        )
        self._notify_locked()

        reason = self._drain_pending_locked()
        if reason is not None:
            return reason
        self._phase = SyncPhase.SYNCED
        return None

    def _drain_pending_locked(self) -> Optional[str]:
        pending = sorted(self._pending, key=lambda b: int(b.final_sequence))
        self._pending.clear()
        for i, batch in enumerate(pending):
            reason = self._apply_locked(batch)
            if reason is None:
                continue
            # Keep what we could not apply for the next snapshot; a malformed
            # batch itself is discarded.
            keep_from = i + 1 if reason.startswith(_MALFORMED) else i
            self._pending.extend(pending[keep_from:])
            return reason
        return None

    def _notify_locked(self) -> None:
        if self._sink is None:
            return
        state = self._state
        try:
            self._sink.on_state_changed(
                state.symbol,
                state.last_sequence,
                state.last_event_time_ms,
                state.bids.snapshot_view(),
                state.asks.snapshot_view(),
            )
        except Exception:
            self._log.exception("Persistence sink failed for %s (sequence=%s)", state.symbol, state.last_sequence)

    def _fail(self, exc: FatalSyncError) -> None:
        self._log.error("Fatal sync error for %s: %s", self._symbol, exc)
        with self._lock:
            if self._error is None:
                self._error = exc
        self.stop()
        if self.on_fatal is not None:
            try:
                self.on_fatal(exc)
            except Exception:
                self._log.exception("on_fatal callback failed for %s", self._symbol)

    def _safe_close(self, subscription: Optional[Subscription]) -> None:
        if subscription is None:
            return
        try:
            subscription.close()
        except Exception:
            self._log.exception("Failed to close subscription for %s", self._symbol)
