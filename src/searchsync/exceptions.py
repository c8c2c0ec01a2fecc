"""Custom exception hierarchy for searchsync.

These exceptions allow callers to discriminate error categories
and handle them appropriately while preserving the original context.
None of them are retried by this package: every class below aborts the
current bulk session or scroll cursor.
"""

from __future__ import annotations

from typing import Dict, Optional


class SearchSyncError(Exception):
    """Base class for all searchsync exceptions."""


class ConfigError(SearchSyncError):
    """Raised when configuration loading or validation fails."""


class CapacityError(SearchSyncError):
    """Raised when the bulk buffer pool has no free slot.

    The pool is sized to ``concurrency + 1`` by construction, so this always
    indicates a capacity miscalculation rather than a transient condition.
    """


class TransportError(SearchSyncError):
    """Raised for connection failures and non-2xx HTTP responses."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RemoteError(SearchSyncError):
    """Raised when the search cluster answers with a top-level ``error`` field."""

    def __init__(self, body: str) -> None:
        super().__init__(body)
        self.body = body


class BulkItemsError(RemoteError):
    """Raised when a successful ``_bulk`` response reports failed items.

    Only the aggregate tally (error type -> count) is kept.
    """

    def __init__(self, body: str, *, failures: Dict[str, int]) -> None:
        super().__init__(body)
        self.failures = dict(failures)

    @property
    def total(self) -> int:
        return sum(self.failures.values())

    def __str__(self) -> str:
        summary = ", ".join(f"{k}={v}" for k, v in sorted(self.failures.items()))
        return f"{self.total} bulk item(s) failed ({summary})"


class UsageError(SearchSyncError):
    """Raised on programmer errors, e.g. reading past the end of a scroll."""


class StorageError(SearchSyncError):
    """Raised when the row-store bridge encounters an error (DB, SQL, etc.)."""
