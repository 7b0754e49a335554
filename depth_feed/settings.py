from __future__ import annotations

import os


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y")


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


DECIMALS = 8

# Levels kept per side and requested per snapshot.
DEPTH_LIMIT = _env_int("DEPTH_LIMIT", 5)
SNAPSHOT_LIMIT = _env_int("SNAPSHOT_LIMIT", 100)

# Snapshot REST calls
BINANCE_REST_BASE_URL = _env_str("BINANCE_REST_BASE_URL", "https://api.binance.com")
SNAPSHOT_TIMEOUT_S = _env_float("SNAPSHOT_TIMEOUT_S", 10.0)
SNAPSHOT_RETRY_MAX = _env_int("SNAPSHOT_RETRY_MAX", 3)
SNAPSHOT_RETRY_BACKOFF_S = _env_float("SNAPSHOT_RETRY_BACKOFF_S", 0.5)
SNAPSHOT_RETRY_BACKOFF_MAX_S = _env_float("SNAPSHOT_RETRY_BACKOFF_MAX_S", 5.0)

# Deltas held while a snapshot is in flight; oldest evicted beyond this.
MAX_PENDING_DELTAS = _env_int("MAX_PENDING_DELTAS", 10_000)

# Per-symbol status line in the log.
HEARTBEAT_SEC = _env_float("HEARTBEAT_SEC", 30.0)

# WS keepalive/reconnect
BINANCE_WS_BASE_URL = _env_str("BINANCE_WS_BASE_URL", "wss://stream.binance.com:9443")
WS_DEPTH_SPEED = _env_str("WS_DEPTH_SPEED", "100ms")
WS_PING_INTERVAL_S = _env_int("WS_PING_INTERVAL_S", 20)
WS_PING_TIMEOUT_S = _env_int("WS_PING_TIMEOUT_S", 60)
WS_RECONNECT_BACKOFF_S = _env_float("WS_RECONNECT_BACKOFF_S", 1.0)
WS_RECONNECT_BACKOFF_MAX_S = _env_float("WS_RECONNECT_BACKOFF_MAX_S", 30.0)
WS_MAX_SESSION_S = _env_float("WS_MAX_SESSION_S", float(23 * 3600 + 50 * 60))

# TLS verification should remain enabled by default.
INSECURE_TLS = _env_bool("INSECURE_TLS", False)

LOG_LEVEL = _env_str("LOG_LEVEL", "INFO")
LOG_DIR = _env_str("LOG_DIR", "logs")
OUT_DIR = _env_str("OUT_DIR", "out")
