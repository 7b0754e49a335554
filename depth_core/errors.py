from __future__ import annotations


class SyncError(Exception):
    """Base class for order book synchronization errors."""


class TransportError(SyncError):
    """Snapshot or stream collaborator failed (network, timeout, bad payload)."""


class MalformedDelta(SyncError, ValueError):
    """A price level failed validation at the ledger boundary."""


class StaleSnapshot(SyncError, ValueError):
    """Snapshot sequence is older than the state it would replace."""


class FatalSyncError(SyncError, RuntimeError):
    """Snapshot retries exhausted; the synchronizer is closed."""
