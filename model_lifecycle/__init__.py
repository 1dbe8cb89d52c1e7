"""
Model Lifecycle

Fetch-once, cache, validate and refresh a single inference model asset
while a long-lived handle to it serves inference calls.

EXPORTS:
- AssetLifecycleManager: orchestrates the components below
- LocalStore / VersionTracker: atomic on-disk cache slot
- RemoteFetcher: HTTP(S) GET with timeout and failure classification
- HandleGuard / Handle: ref-counted ownership of the open handle
- UpdateService: periodic check_for_update() loop
- LifecycleConfig: configuration surface
- Error taxonomy: NotFoundError, FetchFailedError, CorruptAssetError,
  UnavailableError, NotReadyError (all AssetLifecycleError)

WHAT THIS IS NOT:
- Model training
- Delta or range downloads
- Multi-asset management (one slot per manager)
- Tensor pre/post-processing
"""

from .config import LifecycleConfig
from .engine import InferenceEngine, MalformedAssetError, OnnxRuntimeEngine
from .errors import (
    AssetLifecycleError,
    CorruptAssetError,
    FetchFailedError,
    NotFoundError,
    NotReadyError,
    UnavailableError,
)
from .handle_guard import Handle, HandleGuard
from .local_store import LocalStore
from .manager import AssetLifecycleManager
from .remote_fetcher import RemoteFetcher
from .types import AssetMetadata, ErrorKind, LifecycleState
from .update_service import UpdateService
from .version_tracker import VersionTracker

__all__ = [
    "AssetLifecycleManager",
    "AssetMetadata",
    "LifecycleState",
    "ErrorKind",
    "LifecycleConfig",
    "LocalStore",
    "VersionTracker",
    "RemoteFetcher",
    "Handle",
    "HandleGuard",
    "InferenceEngine",
    "MalformedAssetError",
    "OnnxRuntimeEngine",
    "UpdateService",
    "AssetLifecycleError",
    "NotFoundError",
    "FetchFailedError",
    "CorruptAssetError",
    "UnavailableError",
    "NotReadyError",
]

__version__ = "0.1.0"
