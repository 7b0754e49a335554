import asyncio
import contextlib
import json
import logging
import os
import random
import ssl
import threading
import time
from typing import Callable, Optional

from websockets.asyncio.client import connect as ws_connect  # type: ignore
from websockets.exceptions import ConnectionClosed  # type: ignore

from depth_core.symbols import normalize_symbol
from depth_core.types import DeliveryGuarantee, DeltaBatch

from . import settings


log = logging.getLogger("depth_feed.websocket")

# Connection events and the level they are logged at. Anything that means the
# socket went away (and the book may have missed updates) is a warning.
_STATUS_LEVELS = {
    "ws_connect": logging.INFO,
    "ws_session_expired": logging.INFO,
    "ws_pong": logging.DEBUG,
    "ws_close": logging.WARNING,
    "ws_error": logging.WARNING,
    "ws_ping_timeout": logging.WARNING,
    "ws_reconnect_wait": logging.WARNING,
    "ws_run_exception": logging.ERROR,
}


def parse_depth_update(data: dict) -> DeltaBatch:
    """Decode a Binance `depthUpdate` payload into a DeltaBatch.

    Levels are passed through as-is; the ledger validates them on apply.
    """
    if not isinstance(data, dict):
        raise ValueError("depth payload must be a dict")
    if data.get("e") not in (None, "depthUpdate"):
        raise ValueError(f"not a depthUpdate event: {data.get('e')!r}")
    try:
        first = int(data["U"])
        final = int(data["u"])
        event_time_ms = int(data.get("E", 0))
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"depth payload missing update ids: {exc}") from exc
    bids = data.get("b", [])
    asks = data.get("a", [])
    if not isinstance(bids, list) or not isinstance(asks, list):
        raise ValueError("depth payload b/a must be lists")
    return DeltaBatch(
        final_sequence=final,
        event_time_ms=event_time_ms,
        bids=bids,
        asks=asks,
        first_sequence=first,
    )


def reconnect_delay(
    attempt: int,
    base_s: float,
    cap_s: float,
    jitter: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff for the n-th consecutive attempt, +/-30% jitter, capped."""
    if base_s <= 0.0 or cap_s <= 0.0:
        return 0.0
    delay = min(cap_s, base_s * (2 ** max(0, attempt - 1)))
    return delay * (0.7 + 0.6 * jitter())


class DepthSocket:
    """One symbol's diff-depth websocket.

    Connects, pings, rotates the session before Binance's 24h cut-off and
    reconnects with jittered backoff until close(). Each depthUpdate is
    decoded into a DeltaBatch and handed to `on_batch` on the socket thread.
    Undecodable frames are logged and counted, never forwarded.
    """

    def __init__(
        self,
        symbol: str,
        ws_url: str,
        on_batch: Callable[[DeltaBatch], None],
        insecure_tls: bool = False,
        ping_interval_s: int = 20,
        ping_timeout_s: int = 60,
        reconnect_backoff_s: float = 1.0,
        reconnect_backoff_max_s: float = 30.0,
        max_session_s: float = 23 * 3600 + 50 * 60,
        recv_poll_timeout_s: float = 5.0,
        max_queue: int = 256,
    ):
        self.symbol = symbol
        self.ws_url = ws_url
        self.on_batch = on_batch
        self.insecure_tls = insecure_tls

        self.ping_interval_s = max(0, int(ping_interval_s))
        self.ping_timeout_s = max(1, int(ping_timeout_s))
        self.reconnect_backoff_s = max(0.0, float(reconnect_backoff_s))
        self.reconnect_backoff_max_s = max(self.reconnect_backoff_s, float(reconnect_backoff_max_s))
        self.max_session_s = max(0.0, float(max_session_s))
        self.recv_poll_timeout_s = max(0.001, float(recv_poll_timeout_s))
        self.max_queue = max(1, int(max_queue))

        self.connects = 0
        self.batches = 0
        self.malformed = 0

        self._ws = None
        self._stop = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _status(self, event: str, **details) -> None:
        level = _STATUS_LEVELS.get(event, logging.INFO)
        if log.isEnabledFor(level):
            fields = " ".join(f"{k}={v}" for k, v in details.items())
            log.log(level, "%s %s %s", self.symbol, event, fields)

    async def _ping_loop(self, ws) -> None:
        if self.ping_interval_s <= 0:
            return
        while not self._stop:
            await asyncio.sleep(self.ping_interval_s)
            if self._stop:
                return
            try:
                pong_waiter = await ws.ping(os.urandom(4))
                latency_s = await asyncio.wait_for(pong_waiter, timeout=self.ping_timeout_s)
                self._status("ws_pong", latency_ms=round(float(latency_s) * 1000.0, 1))
            except Exception as exc:
                self._status("ws_ping_timeout", timeout_s=self.ping_timeout_s, error=exc)
                with contextlib.suppress(Exception):
                    await ws.close()
                return

    async def _read_loop(self, ws, session_deadline: float) -> None:
        while not self._stop:
            if time.monotonic() >= session_deadline:
                self._status("ws_session_expired", max_session_s=self.max_session_s)
                return

            try:
                msg = await asyncio.wait_for(ws.recv(), timeout=self.recv_poll_timeout_s)
            except asyncio.TimeoutError:
                continue
            except ConnectionClosed as exc:
                self._status("ws_close", code=getattr(exc, "code", None), reason=exc)
                return
            except Exception as exc:
                self._status("ws_error", error=exc)
                return

            if msg is None:
                return
            self._dispatch(msg)

    def _dispatch(self, msg) -> None:
        try:
            payload = json.loads(msg)
        except ValueError:
            self.malformed += 1
            log.warning("%s: undecodable websocket frame skipped", self.symbol)
            return

        data = payload.get("data", payload) if isinstance(payload, dict) else payload
        if not isinstance(data, dict) or data.get("e") != "depthUpdate":
            # subscription acks and other event types
            return
        try:
            batch = parse_depth_update(data)
        except ValueError as exc:
            self.malformed += 1
            log.warning("Skipping malformed depth message for %s: %s", self.symbol, exc)
            return

        self.batches += 1
        try:
            self.on_batch(batch)
        except Exception:
            log.exception("Depth handler failed for %s u=%s", self.symbol, batch.final_sequence)

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.insecure_tls:
            return None
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        return ctx

    async def _run_async(self) -> None:
        self._loop = asyncio.get_running_loop()
        attempt = 0

        while not self._stop:
            attempt += 1
            session_deadline = time.monotonic() + self.max_session_s
            batches_before = self.batches
            connect_kwargs = {
                "ping_interval": None,
                "ping_timeout": None,
                "close_timeout": 5,
                "max_queue": self.max_queue,
            }
            ssl_ctx = self._ssl_context()
            if ssl_ctx is not None:
                connect_kwargs["ssl"] = ssl_ctx
            try:
                async with ws_connect(self.ws_url, **connect_kwargs) as ws:
                    self._ws = ws
                    self.connects += 1
                    self._status("ws_connect", attempt=attempt, session=self.connects)
                    ping_task = asyncio.create_task(self._ping_loop(ws))
                    try:
                        await self._read_loop(ws, session_deadline=session_deadline)
                    finally:
                        ping_task.cancel()
                        with contextlib.suppress(Exception, asyncio.CancelledError):
                            await ping_task
            except Exception as exc:
                self._status("ws_run_exception", attempt=attempt, error=exc)
            finally:
                self._ws = None

            if self._stop:
                break
            if self.batches > batches_before:
                # the session delivered data, so the next connect starts a fresh backoff
                attempt = 0

            delay = reconnect_delay(max(1, attempt), self.reconnect_backoff_s, self.reconnect_backoff_max_s)
            self._status("ws_reconnect_wait", sleep_s=round(delay, 3), failed_attempts=attempt)
            await asyncio.sleep(delay)

    def run(self) -> None:
        """Run the websocket loop with auto-reconnect until close()."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            raise RuntimeError("DepthSocket.run() cannot be called from an active event loop.")
        asyncio.run(self._run_async())

    def close(self) -> None:
        self._stop = True
        ws = self._ws
        if ws is None:
            return
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(ws.close())
            return
        except RuntimeError:
            loop = self._loop
        if loop and loop.is_running():
            asyncio.run_coroutine_threadsafe(ws.close(), loop)


class StreamSubscription:
    """Runs one DepthSocket on a daemon thread; close() stops it."""

    def __init__(self, socket: DepthSocket, name: str, join_timeout_s: float = 10.0) -> None:
        self.socket = socket
        self.join_timeout_s = float(join_timeout_s)
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def _run(self) -> None:
        try:
            self.socket.run()
        except Exception:
            log.exception("Stream thread %s crashed", self._thread.name)

    def start(self) -> "StreamSubscription":
        self._thread.start()
        return self

    def close(self) -> None:
        self.socket.close()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(self.join_timeout_s)


class BinanceDeltaStream:
    """DeltaStream over the Binance diff-depth websocket.

    Binance may drop messages across reconnects, so the stream is declared
    at-least-once/gappy and the synchronizer checks U against lastUpdateId+1.
    """

    delivery = DeliveryGuarantee.AT_LEAST_ONCE

    def __init__(self, base_url: str | None = None, speed: str | None = None) -> None:
        self.base_url = (base_url or settings.BINANCE_WS_BASE_URL).rstrip("/")
        self.speed = speed or settings.WS_DEPTH_SPEED

    def ws_url(self, symbol: str) -> str:
        sym = normalize_symbol(symbol).lower()
        return f"{self.base_url}/ws/{sym}@depth@{self.speed}"

    def _make_socket(self, symbol: str, url: str, on_batch: Callable[[DeltaBatch], None]) -> DepthSocket:
        return DepthSocket(
            symbol=symbol,
            ws_url=url,
            on_batch=on_batch,
            insecure_tls=settings.INSECURE_TLS,
            ping_interval_s=settings.WS_PING_INTERVAL_S,
            ping_timeout_s=settings.WS_PING_TIMEOUT_S,
            reconnect_backoff_s=settings.WS_RECONNECT_BACKOFF_S,
            reconnect_backoff_max_s=settings.WS_RECONNECT_BACKOFF_MAX_S,
            max_session_s=settings.WS_MAX_SESSION_S,
        )

    def subscribe(self, symbol: str, handler: Callable[[DeltaBatch], None]) -> StreamSubscription:
        sym = normalize_symbol(symbol)
        socket = self._make_socket(sym, self.ws_url(sym), handler)
        log.info("Subscribing %s via %s", sym, socket.ws_url)
        return StreamSubscription(socket, name=f"ws-{sym.lower()}").start()
