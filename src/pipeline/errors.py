"""
OPTCG Market — Sync error taxonomy.

QuotaExceeded ends the current run, never the process.
UpstreamRequestFailed is logged and skipped at the sync/refresh boundary.
InvalidBatchSize and ConfigurationError are programming/deployment errors.
An upstream schema miss is NOT an exception: fields degrade to None.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base exception for the sync pipeline."""
    pass


class QuotaExceeded(SyncError):
    """Daily request budget is spent; back off until the daily reset."""

    def __init__(self, limit: int):
        super().__init__(f"Daily API limit reached ({limit} requests)")
        self.limit = limit


class UpstreamRequestFailed(SyncError):
    """Network error or non-success HTTP status from JustTCG."""

    def __init__(self, message: str, status_code: int | None = None, path: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.path = path


class InvalidBatchSize(SyncError):
    """Batch endpoint called with more ids than the source accepts."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Batch request limited to {limit} cards, got {size}")
        self.size = size
        self.limit = limit


class ConfigurationError(SyncError):
    """Unrecoverable configuration problem (e.g. missing API key)."""
    pass
