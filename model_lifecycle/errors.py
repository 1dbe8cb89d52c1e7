"""
Model Lifecycle – Error Taxonomy

Every failure surfaced by this package is an AssetLifecycleError carrying
an explicit ErrorKind, so callers can branch on `error.kind` instead of
matching on messages.

PROPAGATION POLICY:
- Refresh failures with a working handle → downgraded to warnings
- First acquisition failures → UnavailableError to the caller
- CorruptAssetError → Local Store entry purged before surfacing
- No automatic retries anywhere in this package
"""

from typing import Optional

from .types import ErrorKind


class AssetLifecycleError(Exception):
    """Base class for all asset lifecycle failures."""

    kind: ErrorKind = ErrorKind.UNAVAILABLE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(AssetLifecycleError):
    """No cached asset exists in the slot."""

    kind = ErrorKind.NOT_FOUND


class FetchFailedError(AssetLifecycleError):
    """
    Remote fetch failed (network error, timeout or non-2xx status).

    Attributes:
        reason: Short classification of the failure
        status: HTTP status code, if a response was received
    """

    kind = ErrorKind.FETCH_FAILED

    def __init__(self, reason: str, status: Optional[int] = None):
        super().__init__(f"Fetch failed: {reason}")
        self.reason = reason
        self.status = status


class CorruptAssetError(AssetLifecycleError):
    """The inference engine rejected the asset bytes."""

    kind = ErrorKind.CORRUPT_ASSET


class UnavailableError(AssetLifecycleError):
    """No working asset exists and no fetch path succeeded."""

    kind = ErrorKind.UNAVAILABLE


class NotReadyError(AssetLifecycleError):
    """A handle was requested before any successful open, or after release."""

    kind = ErrorKind.NOT_READY
