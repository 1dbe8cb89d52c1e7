"""
Model Lifecycle – Local Store

Filesystem persistence for one cached asset plus its metadata record.

ON-DISK LAYOUT (per slot):
    <cache_dir>/<slot_name>/
        metadata.json                       # commit record (VersionTracker)
        <slot_name>-<sha256[:16]>.asset     # content-addressed asset bytes

ATOMIC WRITE PROTOCOL:
1. Write bytes to a temp file in the slot dir, fsync
2. Rename temp file to its content-addressed name (old asset untouched)
3. COMMIT: atomically replace metadata.json to point at the new digest
4. Delete superseded asset files

A crash before step 3 leaves the old record pointing at the old, intact
asset (the new file is an orphan swept by reconcile()). A crash after
step 3 leaves the new state with a stale file to sweep. Readers never
observe a partial asset.
"""

import glob
import hashlib
import os
import tempfile
from dataclasses import replace
from typing import List, Optional

from loguru import logger

from .errors import CorruptAssetError, NotFoundError
from .types import AssetMetadata
from .version_tracker import VersionTracker, fsync_dir


ASSET_SUFFIX = ".asset"
TEMP_PREFIX = ".asset-"


class LocalStore:
    """
    Single-slot asset store.

    CONCURRENCY:
    - Mutations (write_atomic, remove, reconcile) must be serialised by the
      caller; the lifecycle manager runs at most one at a time
    - read() and exists() are safe alongside a write (atomic renames)
    """

    def __init__(self, slot_dir: str, slot_name: str, tracker: Optional[VersionTracker] = None):
        """
        Args:
            slot_dir: Directory holding this slot's files
            slot_name: Logical slot name (used in asset file names)
            tracker: Version tracker sharing the same slot dir
        """
        self.slot_dir = slot_dir
        self.slot_name = slot_name
        self.tracker = tracker or VersionTracker(slot_dir)

    def asset_path(self, metadata: AssetMetadata) -> str:
        """Content-addressed path of the asset described by metadata."""
        return os.path.join(self.slot_dir, f"{self.slot_name}-{metadata.sha256[:16]}{ASSET_SUFFIX}")

    def exists(self) -> bool:
        """True iff committed metadata references a present, non-empty asset of the recorded size."""
        metadata = self.tracker.current_version()
        if metadata is None or not metadata.sha256 or metadata.size_bytes <= 0:
            return False

        try:
            return os.path.getsize(self.asset_path(metadata)) == metadata.size_bytes
        except OSError:
            return False

    def read(self, verify: bool = True) -> bytes:
        """
        Read the committed asset bytes.

        Args:
            verify: Check the bytes against the recorded SHA-256 digest

        Raises:
            NotFoundError: If the slot is not populated
            CorruptAssetError: If the bytes do not match the recorded digest
        """
        metadata = self.tracker.current_version()
        if metadata is None or not self.exists():
            raise NotFoundError(f"No cached asset in slot {self.slot_name!r}")

        try:
            with open(self.asset_path(metadata), "rb") as f:
                data = f.read()
        except FileNotFoundError as e:
            raise NotFoundError(f"Cached asset vanished from slot {self.slot_name!r}") from e

        if verify and hashlib.sha256(data).hexdigest() != metadata.sha256:
            raise CorruptAssetError(
                f"Cached asset for version {metadata.version_id!r} does not match its recorded digest"
            )

        return data

    def write_atomic(self, data: bytes, metadata: AssetMetadata) -> AssetMetadata:
        """
        Persist new asset bytes and commit their metadata atomically.

        The size and digest of the stored record are computed from data,
        so the committed record always describes the bytes on disk.

        Args:
            data: Complete asset bytes (never a partial download)
            metadata: Version and fetch timestamp for these bytes

        Returns:
            The committed AssetMetadata (with size_bytes and sha256 filled in)

        Raises:
            ValueError: If data is empty
            OSError: If the write or commit fails (old state is preserved)
        """
        if not data:
            raise ValueError("Refusing to store an empty asset")

        committed = replace(
            metadata,
            size_bytes=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
        )
        final_path = self.asset_path(committed)

        os.makedirs(self.slot_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=".tmp", dir=self.slot_dir)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, final_path)
        except BaseException:
            _remove_quietly(tmp_path)
            raise
        fsync_dir(self.slot_dir)

        # Commit point
        self.tracker.record_version(committed)

        removed = self._remove_assets(keep=final_path)
        logger.info(
            f"Stored version {committed.version_id!r} in slot {self.slot_name!r} "
            f"({committed.size_bytes} bytes, superseded {removed} file(s))"
        )
        return committed

    def remove(self) -> None:
        """Clear the slot. Metadata goes first so a crash never leaves a dangling record."""
        self.tracker.clear()
        removed = self._remove_assets(keep=None)
        logger.info(f"Cleared cache slot {self.slot_name!r} ({removed} asset file(s) removed)")

    def reconcile(self) -> Optional[AssetMetadata]:
        """
        Startup recovery: make metadata and asset files mutually consistent.

        - Temp files from interrupted writes are deleted
        - A record whose asset is missing or mis-sized is dropped
        - Asset files not referenced by the record are deleted

        Returns:
            The surviving metadata record, or None if the slot is empty
        """
        if not os.path.isdir(self.slot_dir):
            return None

        for tmp_path in glob.glob(os.path.join(self.slot_dir, ".*.tmp")):
            logger.debug(f"Removing interrupted write {tmp_path}")
            _remove_quietly(tmp_path)

        metadata = self.tracker.reload()
        if metadata is not None and not self.exists():
            logger.warning(
                f"Metadata for version {metadata.version_id!r} does not match the asset on disk, "
                f"dropping record for slot {self.slot_name!r}"
            )
            self.tracker.clear()
            metadata = None

        keep = self.asset_path(metadata) if metadata is not None else None
        orphans = self._remove_assets(keep=keep)
        if orphans:
            logger.info(f"Removed {orphans} orphaned asset file(s) from slot {self.slot_name!r}")

        return metadata

    def _asset_files(self) -> List[str]:
        return glob.glob(os.path.join(self.slot_dir, f"{glob.escape(self.slot_name)}-*{ASSET_SUFFIX}"))

    def _remove_assets(self, keep: Optional[str]) -> int:
        removed = 0
        for path in self._asset_files():
            if keep is not None and os.path.abspath(path) == os.path.abspath(keep):
                continue
            if _remove_quietly(path):
                removed += 1
        return removed


def _remove_quietly(path: str) -> bool:
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")
        return False
