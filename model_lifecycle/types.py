"""
Model Lifecycle – Core Types

This module defines the value types shared by every component.

SCOPE:
- LifecycleState enum (manager state machine)
- ErrorKind enum (explicit failure classification)
- AssetMetadata record (one per cache slot)
- No I/O, no external dependencies
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict


class LifecycleState(Enum):
    """
    Asset Lifecycle Manager states.

    UNINITIALIZED: No acquisition attempted yet
    LOADING: First acquisition in flight (no handle exists)
    READY: A handle is open for the target version
    REFRESHING: Replacement in flight, previous handle still served
    FAILED_KEEP_OLD: Refresh failed, previous handle retained
    FAILED: No asset could be obtained
    CLOSED: Manager shut down, handle released

    State transitions:
    - UNINITIALIZED -> LOADING -> READY | FAILED
    - FAILED -> LOADING (next ensure_ready)
    - READY -> REFRESHING -> READY | FAILED_KEEP_OLD
    - FAILED_KEEP_OLD -> REFRESHING (next check_for_update)
    - any -> CLOSED (via close())
    """
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    REFRESHING = "refreshing"
    FAILED_KEEP_OLD = "failed_keep_old"
    FAILED = "failed"
    CLOSED = "closed"


class ErrorKind(Enum):
    """Explicit failure classification carried by every lifecycle error."""
    NOT_FOUND = "not_found"
    FETCH_FAILED = "fetch_failed"
    CORRUPT_ASSET = "corrupt_asset"
    UNAVAILABLE = "unavailable"
    NOT_READY = "not_ready"


@dataclass(frozen=True)
class AssetMetadata:
    """
    Metadata record for the asset stored in a cache slot.

    INVARIANT:
    - version_id matches the asset bytes that produced this record
    - sha256 and size_bytes describe those bytes exactly

    IMMUTABLE after construction.
    """

    version_id: str
    fetched_at_epoch_millis: int
    size_bytes: int
    sha256: str = ""

    def __post_init__(self):
        """Validate record on construction."""
        if not self.version_id or not isinstance(self.version_id, str):
            raise ValueError("version_id must be a non-empty string")

        if not isinstance(self.fetched_at_epoch_millis, int) or self.fetched_at_epoch_millis < 0:
            raise ValueError("fetched_at_epoch_millis must be a non-negative integer")

        if not isinstance(self.size_bytes, int) or self.size_bytes < 0:
            raise ValueError("size_bytes must be a non-negative integer")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssetMetadata":
        """
        Build a record from its persisted dictionary form.

        Raises:
            ValueError: If required keys are missing or have invalid types
        """
        if not isinstance(data, dict):
            raise ValueError("metadata record must be a JSON object")

        try:
            return cls(
                version_id=data["version_id"],
                fetched_at_epoch_millis=data["fetched_at_epoch_millis"],
                size_bytes=data["size_bytes"],
                sha256=data.get("sha256", ""),
            )
        except KeyError as e:
            raise ValueError(f"metadata record missing field: {e.args[0]}") from e
