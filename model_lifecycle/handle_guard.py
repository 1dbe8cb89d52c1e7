"""
Model Lifecycle – Handle Lifetime Guard

Owns the currently open inference handle and mediates concurrent use
against replacement.

BORROW DISCIPLINE:
- A borrow is acquired immediately before ONE inference call and
  released immediately after it
- Borrows are counted per handle
- A swapped-out handle is RETIRED: it accepts no new borrows and its
  native resources are released when its borrow count reaches zero

THREAD SAFETY:
- Guard state is protected by a threading.Lock, so inference may run on
  worker threads while the lifecycle manager swaps handles
- Engine close() is never called while holding a lock
"""

import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from loguru import logger

from .engine import InferenceEngine, MalformedAssetError
from .errors import CorruptAssetError, NotReadyError
from .types import AssetMetadata


class Handle:
    """
    An opened, inference-ready representation of one asset version.

    Consumers must not retain a Handle past the call that produced it;
    use infer() (or HandleGuard.borrow()) for each inference.
    """

    def __init__(
        self,
        engine: InferenceEngine,
        engine_handle: Any,
        metadata: AssetMetadata,
        generation: int,
        on_closed=None,
    ):
        self.engine = engine
        self.engine_handle = engine_handle
        self.metadata = metadata
        self.generation = generation
        self._on_closed = on_closed

        self._lock = threading.Lock()
        self._borrows = 0
        self._retired = False
        self._closed = False

    @property
    def version_id(self) -> str:
        return self.metadata.version_id

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def retired(self) -> bool:
        with self._lock:
            return self._retired

    @property
    def borrow_count(self) -> int:
        with self._lock:
            return self._borrows

    def infer(self, input_data: Any) -> Any:
        """
        Run one inference on this handle.

        Raises:
            NotReadyError: If the handle has been retired or closed
        """
        self._acquire()
        try:
            return self.engine.infer(self.engine_handle, input_data)
        finally:
            self._release_borrow()

    def _acquire(self) -> None:
        with self._lock:
            if self._retired or self._closed:
                raise NotReadyError(
                    f"Handle generation {self.generation} (version {self.version_id!r}) was retired"
                )
            self._borrows += 1

    def _release_borrow(self) -> None:
        with self._lock:
            self._borrows -= 1
            should_close = self._retired and self._borrows == 0 and not self._closed
            if should_close:
                self._closed = True

        if should_close:
            self._close_engine_handle()

    def _retire(self) -> None:
        with self._lock:
            self._retired = True
            should_close = self._borrows == 0 and not self._closed
            if should_close:
                self._closed = True

        if should_close:
            self._close_engine_handle()
        else:
            logger.debug(
                f"Handle generation {self.generation} retired with {self.borrow_count} "
                f"borrow(s) in flight, release deferred"
            )

    def _force_close(self) -> None:
        with self._lock:
            self._retired = True
            if self._closed:
                return
            self._closed = True

        self._close_engine_handle()

    def _close_engine_handle(self) -> None:
        try:
            self.engine.close(self.engine_handle)
            logger.info(f"Released handle generation {self.generation} (version {self.version_id!r})")
        except Exception as e:
            logger.warning(f"Error while releasing handle generation {self.generation}: {e}")
        finally:
            self.engine_handle = None
            if self._on_closed is not None:
                self._on_closed(self)

    def __repr__(self) -> str:
        return (
            f"Handle(generation={self.generation}, "
            f"version={self.version_id!r}, "
            f"borrows={self._borrows}, "
            f"retired={self._retired}, "
            f"closed={self._closed})"
        )


class HandleGuard:
    """
    Single owner of the active inference handle.

    LIFECYCLE:
    - open() builds a handle (not yet active)
    - swap() installs it and retires the previous one
    - release() closes the active handle unconditionally
    """

    def __init__(self, engine: InferenceEngine):
        self.engine = engine
        self._lock = threading.Lock()
        self._active: Optional[Handle] = None
        self._generation = 0

        self._opened_count = 0
        self._closed_count = 0

    def open(self, data: bytes, metadata: AssetMetadata) -> Handle:
        """
        Open asset bytes with the inference engine.

        The returned handle is NOT active until passed to swap().

        Raises:
            CorruptAssetError: If the engine rejects the bytes
        """
        try:
            engine_handle = self.engine.open(data)
        except MalformedAssetError as e:
            logger.error(f"Engine rejected asset version {metadata.version_id!r}: {e}")
            raise CorruptAssetError(
                f"Asset version {metadata.version_id!r} could not be opened: {e}"
            ) from e

        with self._lock:
            self._generation += 1
            self._opened_count += 1
            generation = self._generation

        logger.info(f"Opened handle generation {generation} for version {metadata.version_id!r}")
        return Handle(
            self.engine,
            engine_handle,
            metadata,
            generation,
            on_closed=self._record_closed,
        )

    def current(self) -> Handle:
        """
        Return the active handle.

        Raises:
            NotReadyError: If no handle has been installed
        """
        with self._lock:
            if self._active is None:
                raise NotReadyError("No inference handle is open")
            return self._active

    def current_or_none(self) -> Optional[Handle]:
        with self._lock:
            return self._active

    @property
    def is_ready(self) -> bool:
        with self._lock:
            return self._active is not None

    @contextmanager
    def borrow(self) -> Iterator[Handle]:
        """
        Pin the active handle for the duration of one inference call.

        Usage:
            with guard.borrow() as handle:
                output = engine.infer(handle.engine_handle, tensor)

        Raises:
            NotReadyError: If no handle is active
        """
        with self._lock:
            handle = self._active
            if handle is None:
                raise NotReadyError("No inference handle is open")
            handle._acquire()

        try:
            yield handle
        finally:
            handle._release_borrow()

    def infer(self, input_data: Any) -> Any:
        """Run one inference on whichever handle is active right now."""
        with self.borrow() as handle:
            return self.engine.infer(handle.engine_handle, input_data)

    def swap(self, new_handle: Handle) -> Optional[Handle]:
        """
        Atomically install new_handle and retire the previous one.

        The previous handle's resources are released as soon as no
        inference call holds a borrow on it.

        Returns:
            The retired handle, or None if there was none
        """
        with self._lock:
            old = self._active
            if old is new_handle:
                return None
            self._active = new_handle

        logger.info(
            f"Installed handle generation {new_handle.generation} (version {new_handle.version_id!r})"
            + (f", retiring generation {old.generation}" if old is not None else "")
        )

        if old is not None:
            old._retire()
        return old

    def discard(self, handle: Handle) -> None:
        """Close a handle that was opened but never installed."""
        handle._force_close()

    def release(self) -> None:
        """Release the active handle unconditionally; the guard becomes not ready."""
        with self._lock:
            old = self._active
            self._active = None

        if old is not None:
            if old.borrow_count:
                logger.warning(
                    f"Releasing handle generation {old.generation} with "
                    f"{old.borrow_count} borrow(s) still in flight"
                )
            old._force_close()

    def get_metrics(self) -> Dict[str, Any]:
        """Read-only snapshot of guard counters."""
        with self._lock:
            active = self._active
            metrics = {
                "handles_opened": self._opened_count,
                "handles_closed": self._closed_count,
                "generation": self._generation,
            }

        metrics["active_generation"] = active.generation if active is not None else None
        metrics["active_borrows"] = active.borrow_count if active is not None else 0
        return metrics

    def _record_closed(self, handle: Handle) -> None:
        with self._lock:
            self._closed_count += 1
