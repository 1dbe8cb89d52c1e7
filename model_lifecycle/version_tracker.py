"""
Model Lifecycle – Version Tracker

Persisted record of {version, fetch timestamp, size, digest} for the slot.

PERSISTENCE:
- One JSON file per slot (metadata.json)
- Writes go to a temp file, fsync, then os.replace (atomic on POSIX)
- The record is cached in memory after the first read, so staleness
  checks on the fast path perform no I/O

COMMIT ORDERING:
- record_version() is the commit step of LocalStore.write_atomic()
- It must only run once the asset bytes are durable on disk
"""

import json
import os
import tempfile
import threading
from typing import Optional

from loguru import logger

from .types import AssetMetadata


METADATA_FILENAME = "metadata.json"

_UNSET = object()


class VersionTracker:
    """
    Version record for one cache slot.

    THREAD SAFETY:
    - All access to the cached record goes through _lock
    """

    def __init__(self, slot_dir: str):
        """
        Args:
            slot_dir: Directory of the cache slot (created on first write)
        """
        self.slot_dir = slot_dir
        self.metadata_path = os.path.join(slot_dir, METADATA_FILENAME)
        self._lock = threading.Lock()
        self._cached = _UNSET

    def current_version(self) -> Optional[AssetMetadata]:
        """
        Return the committed metadata record, or None if absent.

        An unreadable or malformed record is treated as absent.
        """
        with self._lock:
            if self._cached is _UNSET:
                self._cached = self._load()
            return self._cached

    def record_version(self, metadata: AssetMetadata) -> None:
        """
        Atomically persist a new metadata record.

        Raises:
            OSError: If the record cannot be written
        """
        with self._lock:
            os.makedirs(self.slot_dir, exist_ok=True)
            _atomic_write_json(self.metadata_path, metadata.to_dict())
            self._cached = metadata

        logger.debug(
            f"Recorded version {metadata.version_id!r} "
            f"({metadata.size_bytes} bytes) in {self.metadata_path}"
        )

    def clear(self) -> None:
        """Remove the persisted record (no-op if absent)."""
        with self._lock:
            try:
                os.remove(self.metadata_path)
            except FileNotFoundError:
                pass
            self._cached = None

    def reload(self) -> Optional[AssetMetadata]:
        """Drop the in-memory copy and re-read the record from disk."""
        with self._lock:
            self._cached = self._load()
            return self._cached

    def is_stale(
        self,
        now_epoch_millis: int,
        max_age_millis: int,
        desired_version_id: str,
    ) -> bool:
        """
        Decide whether the cached asset should be refreshed.

        Stale when:
        - No record exists
        - Recorded version differs from desired_version_id
        - Record is older than max_age_millis
        """
        metadata = self.current_version()
        if metadata is None:
            return True

        if metadata.version_id != desired_version_id:
            return True

        return now_epoch_millis - metadata.fetched_at_epoch_millis > max_age_millis

    def _load(self) -> Optional[AssetMetadata]:
        try:
            with open(self.metadata_path, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable metadata record {self.metadata_path}: {e}")
            return None

        try:
            return AssetMetadata.from_dict(data)
        except ValueError as e:
            logger.warning(f"Invalid metadata record {self.metadata_path}: {e}")
            return None


def _atomic_write_json(path: str, payload: dict) -> None:
    directory = os.path.dirname(path)
    fd, tmp_path = tempfile.mkstemp(prefix=".metadata-", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(payload, f, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.remove(tmp_path)
        except FileNotFoundError:
            pass
        raise
    fsync_dir(directory)


def fsync_dir(directory: str) -> None:
    # Directory fsync is unsupported on some platforms
    try:
        dir_fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)
