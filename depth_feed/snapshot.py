from __future__ import annotations

import logging

import requests

from depth_core.errors import TransportError
from depth_core.symbols import normalize_symbol
from depth_core.types import Snapshot

from . import settings


log = logging.getLogger("depth_feed.snapshot")

# Binance only accepts these depth limits on /api/v3/depth.
_VALID_LIMITS = (5, 10, 20, 50, 100, 500, 1000, 5000)


def snapshot_limit_for(depth_limit: int) -> int:
    """Smallest valid REST limit that covers both depth_limit and SNAPSHOT_LIMIT."""
    want = max(int(depth_limit), int(settings.SNAPSHOT_LIMIT))
    for limit in _VALID_LIMITS:
        if limit >= want:
            return limit
    return _VALID_LIMITS[-1]


def _validate_snapshot_payload(snap: dict) -> tuple[list, list, int]:
    if not isinstance(snap, dict):
        raise ValueError("snapshot payload must be a dict")
    if "bids" not in snap or "asks" not in snap or "lastUpdateId" not in snap:
        raise ValueError("snapshot payload missing required keys")
    bids = snap.get("bids")
    asks = snap.get("asks")
    if not isinstance(bids, list) or not isinstance(asks, list):
        raise ValueError("snapshot bids/asks must be lists")
    try:
        last_update_id = int(snap.get("lastUpdateId"))
    except (TypeError, ValueError) as exc:
        raise ValueError("snapshot lastUpdateId must be int-like") from exc
    return bids, asks, last_update_id


class BinanceSnapshotSource:
    """SnapshotSource backed by the Binance REST depth endpoint.

    Retries are the synchronizer's job; this makes exactly one request per call.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout_s: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = (base_url or settings.BINANCE_REST_BASE_URL).rstrip("/")
        self.timeout_s = settings.SNAPSHOT_TIMEOUT_S if timeout_s is None else float(timeout_s)
        self.session = session or requests.Session()

    def get_order_book(self, symbol: str, limit: int) -> dict:
        url = f"{self.base_url}/api/v3/depth"
        resp = self.session.get(url, params={"symbol": symbol, "limit": limit}, timeout=self.timeout_s)
        resp.raise_for_status()
        return resp.json()

    def fetch_snapshot(self, symbol: str, depth_limit: int) -> Snapshot:
        sym = normalize_symbol(symbol)
        limit = snapshot_limit_for(depth_limit)
        try:
            payload = self.get_order_book(sym, limit)
        except requests.RequestException as exc:
            raise TransportError(f"REST snapshot for {sym} failed: {exc}") from exc
        except ValueError as exc:
            # body was not JSON
            raise TransportError(f"REST snapshot for {sym} returned invalid JSON: {exc}") from exc

        try:
            bids, asks, last_update_id = _validate_snapshot_payload(payload)
        except ValueError as exc:
            raise TransportError(f"Invalid snapshot payload for {sym}: {exc}") from exc

        log.debug("REST snapshot %s limit=%d lastUpdateId=%d", sym, limit, last_update_id)
        return Snapshot(sequence=last_update_id, bids=bids, asks=asks)

    def close(self) -> None:
        self.session.close()
