"""Exception hierarchy shared by the remote client, the stores and the engines.

Callers can catch :class:`ShopSyncError` for any failure raised by the package,
or one of the narrower classes to react to a specific failure mode. Remote
failures are classified at the HTTP boundary so retry decisions never need to
inspect status codes themselves.
"""

from __future__ import annotations

from typing import Optional, Sequence


class ShopSyncError(Exception):
    """Base class for every error raised by shopsync."""


class ValidationError(ShopSyncError):
    """Raised when input or a precondition is rejected before any side effect."""


class MissingReferenceError(ValidationError):
    """Raised when a referenced product or variant is unknown to the cache."""


class RemoteError(ShopSyncError):
    """Raised when a call to the remote catalog fails."""

    def __init__(self, message: str, *, status: Optional[int] = None, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.path = path


class TransientRemoteError(RemoteError):
    """Timeouts, network failures and 5xx answers."""


class RateLimitError(RemoteError):
    """HTTP 429 answers."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = 429,
        path: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, status=status, path=path)
        self.retry_after = retry_after


class PermanentRemoteError(RemoteError):
    """4xx answers other than 429; retrying will not help."""


class RemoteNotFoundError(PermanentRemoteError):
    """HTTP 404 answers."""


class ConsistencyError(ShopSyncError):
    """Raised when the cached stock disagrees with the authoritative remote count."""

    def __init__(self, message: str, *, cached_stock: int, authoritative_stock: int) -> None:
        super().__init__(message)
        self.cached_stock = cached_stock
        self.authoritative_stock = authoritative_stock


class PersistenceError(ShopSyncError):
    """Raised when the cache or ledger file cannot be read or written."""


class SyncInProgressError(ShopSyncError):
    """Raised when a synchronization is requested while another one runs."""


class RestoreError(ShopSyncError):
    """Raised when a multi-record restore stops part way through.

    ``restored`` lists the records that were written back to the remote store
    before the failure. ``abandoned`` lists the records that were taken off the
    ledger but not restored; they need manual reconciliation.
    """

    def __init__(self, message: str, *, restored: Sequence[object], abandoned: Sequence[object]) -> None:
        super().__init__(message)
        self.restored = list(restored)
        self.abandoned = list(abandoned)


__all__ = [
    "ConsistencyError",
    "MissingReferenceError",
    "PermanentRemoteError",
    "PersistenceError",
    "RateLimitError",
    "RemoteError",
    "RemoteNotFoundError",
    "RestoreError",
    "ShopSyncError",
    "SyncInProgressError",
    "TransientRemoteError",
    "ValidationError",
]
