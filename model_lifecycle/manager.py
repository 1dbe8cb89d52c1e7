"""
Model Lifecycle – Asset Lifecycle Manager

Orchestrates LocalStore, VersionTracker, RemoteFetcher and HandleGuard to
answer "give me a ready-to-use asset handle".

ACQUISITION ALGORITHM (ensure_ready / check_for_update):
1. READY and not stale → return the active handle (no I/O)
2. Otherwise join or start the single in-flight acquisition
3. Cached asset present and fresh → open it, skip the network
4. Else fetch → write_atomic (commits metadata) → open → swap
5. Settle in READY, FAILED_KEEP_OLD or FAILED

FAILURE SEMANTICS:
- Refresh failure with a working handle → warning, handle kept
- First acquisition without network → stale cached asset if readable,
  otherwise UnavailableError
- CorruptAssetError → Local Store entry purged, then surfaced (or
  downgraded to a warning when an older handle is still serving)
- No retries: the caller (or UpdateService) decides when to try again

CONCURRENCY:
- Coroutines must run on a single event loop
- At most one acquisition runs at a time; concurrent callers await the
  same asyncio.Task and observe its single outcome
- Acquisitions and reset_cache() hold one asyncio.Lock over the slot
- Disk I/O and engine open() run in worker threads (asyncio.to_thread)
- Inference may run on any thread through the HandleGuard
"""

import asyncio
import time
from typing import Any, Callable, Dict, Optional, Tuple

from loguru import logger

from .config import LifecycleConfig
from .engine import InferenceEngine, OnnxRuntimeEngine
from .errors import (
    AssetLifecycleError,
    CorruptAssetError,
    FetchFailedError,
    NotReadyError,
    UnavailableError,
)
from .handle_guard import Handle, HandleGuard
from .local_store import LocalStore
from .remote_fetcher import RemoteFetcher
from .types import AssetMetadata, LifecycleState
from .version_tracker import VersionTracker


WarningCallback = Callable[[AssetLifecycleError], None]


def _now_millis() -> int:
    return int(time.time() * 1000)


class AssetLifecycleManager:
    """
    Lifecycle manager for one named asset slot.

    The manager is an explicitly owned object: create it, pass it to
    consumers, and close() it when done. There is no global instance.

    LIFECYCLE:
    1. Construct (runs startup recovery on the cache slot)
    2. await ensure_ready() before inference
    3. await check_for_update() periodically (see UpdateService)
    4. await close() on shutdown
    """

    def __init__(
        self,
        config: LifecycleConfig,
        engine: Optional[InferenceEngine] = None,
        fetcher: Optional[RemoteFetcher] = None,
        store: Optional[LocalStore] = None,
        guard: Optional[HandleGuard] = None,
        clock: Optional[Callable[[], int]] = None,
        on_warning: Optional[WarningCallback] = None,
    ):
        """
        Args:
            config: Slot, remote and staleness configuration
            engine: Inference engine (default: OnnxRuntimeEngine)
            fetcher: Remote fetcher (default: RemoteFetcher honouring max_asset_bytes)
            store: Local store (default: filesystem store under config.slot_dir)
            guard: Handle guard (default: new guard around engine)
            clock: Returns epoch milliseconds (injectable for tests)
            on_warning: Receives non-fatal errors (downgraded refresh failures)
        """
        self.config = config
        self.store = store or LocalStore(
            config.slot_dir,
            config.slot_name,
            VersionTracker(config.slot_dir),
        )
        self.tracker = self.store.tracker
        self.fetcher = fetcher or RemoteFetcher(max_bytes=config.max_asset_bytes)
        self.guard = guard or HandleGuard(engine or OnnxRuntimeEngine())

        self._clock = clock or _now_millis
        self._on_warning = on_warning

        self._state = LifecycleState.UNINITIALIZED
        self._inflight: Optional[asyncio.Task] = None
        # Held by every acquisition and by reset_cache(); serialises store mutations
        self._slot_lock = asyncio.Lock()

        self.last_warning: Optional[AssetLifecycleError] = None
        self.last_error: Optional[AssetLifecycleError] = None
        self.install_count = 0

        recovered = self.store.reconcile()
        if recovered is not None:
            logger.info(
                f"Found cached version {recovered.version_id!r} in slot {config.slot_name!r}"
            )

    @property
    def state(self) -> LifecycleState:
        return self._state

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def ensure_ready(self) -> Handle:
        """
        Return a ready-to-use handle, acquiring the asset if needed.

        Returns:
            The active Handle (never half-initialised)

        Raises:
            UnavailableError: First acquisition failed and nothing is cached
            CorruptAssetError: The only available asset was rejected (purged)
            NotReadyError: The manager has been closed
        """
        self._check_open()

        handle = self._fast_path_handle()
        if handle is not None:
            return handle

        handle, _ = await self._single_flight()
        return handle

    async def check_for_update(self) -> bool:
        """
        Refresh the asset if the tracked version is stale.

        Never raises for fetch or open failures: they are reported on the
        warning channel and False is returned.

        Returns:
            True if a new handle was installed
        """
        self._check_open()

        if not self._is_stale(self._clock()):
            logger.debug(f"Asset version {self.config.target_version!r} is up to date")
            return False

        logger.info(f"Asset in slot {self.config.slot_name!r} is stale, refreshing")

        try:
            _, installed = await self._single_flight()
        except NotReadyError:
            raise
        except AssetLifecycleError as e:
            self._warn(e)
            return False

        return installed

    async def run_inference(self, input_data: Any) -> Any:
        """Ensure a handle is ready, then run one borrowed inference in a worker thread."""
        await self.ensure_ready()
        return await asyncio.to_thread(self.guard.infer, input_data)

    def infer(self, input_data: Any) -> Any:
        """
        Synchronous inference on the active handle (for worker threads).

        Raises:
            NotReadyError: If no handle has been installed yet
        """
        return self.guard.infer(input_data)

    async def reset_cache(self) -> None:
        """
        Clear the cache slot (explicit reset flow).

        The active handle keeps serving; the next ensure_ready() or
        check_for_update() sees an empty slot and fetches again. An
        acquisition already in flight is allowed to finish first (its
        outcome belongs to its own callers) and is then wiped too.
        """
        self._check_open()
        inflight = self._inflight
        if inflight is not None:
            await asyncio.wait({inflight})

        async with self._slot_lock:
            await asyncio.to_thread(self.store.remove)
        logger.info(f"Cache slot {self.config.slot_name!r} reset")

    async def close(self) -> None:
        """
        Release the active handle and stop serving.

        An in-flight fetch is not cancelled (timeouts bound it); its result
        is discarded when it completes.
        """
        if self._state is LifecycleState.CLOSED:
            return

        self._set_state(LifecycleState.CLOSED)
        self.guard.release()

    def get_status(self) -> Dict[str, Any]:
        """Read-only snapshot of manager state for diagnostics."""
        metadata = self.tracker.current_version()
        active = self.guard.current_or_none()
        status: Dict[str, Any] = {
            "state": self._state.value,
            "slot": self.config.slot_name,
            "target_version": self.config.target_version,
            "cached_version": metadata.version_id if metadata is not None else None,
            "cached_size_bytes": metadata.size_bytes if metadata is not None else None,
            "fetched_at_epoch_millis": metadata.fetched_at_epoch_millis if metadata is not None else None,
            "active_version": active.version_id if active is not None else None,
            "stale": self._is_stale(self._clock()),
            "fetch_in_flight": self._inflight is not None,
            "installs": self.install_count,
            "fetches": self.fetcher.fetch_count,
            "last_warning": str(self.last_warning) if self.last_warning else None,
            "last_error": str(self.last_error) if self.last_error else None,
        }
        status.update(self.guard.get_metrics())
        return status

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    def _fast_path_handle(self) -> Optional[Handle]:
        # FAILED_KEEP_OLD goes through an acquisition so ensure_ready() retries
        if self._state is not LifecycleState.READY:
            return None

        handle = self.guard.current_or_none()
        if handle is None:
            return None

        if self._is_stale(self._clock()):
            return None

        return handle

    async def _single_flight(self) -> Tuple[Handle, bool]:
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._acquire())
            self._inflight.add_done_callback(self._clear_inflight)
        else:
            logger.debug("Joining in-flight asset acquisition")

        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _acquire(self) -> Tuple[Handle, bool]:
        async with self._slot_lock:
            if self._state is LifecycleState.CLOSED:
                raise NotReadyError("Asset lifecycle manager is closed")

            previous = self.guard.current_or_none()
            self._set_state(
                LifecycleState.REFRESHING if previous is not None else LifecycleState.LOADING
            )

            try:
                return await self._acquire_with(previous)
            except AssetLifecycleError:
                raise
            except Exception as e:
                logger.error(f"Unexpected error while acquiring asset: {type(e).__name__}: {e}")
                return self._keep_previous_or_fail(
                    UnavailableError(f"Asset acquisition failed: {e}"), previous, cause=e
                )

    async def _acquire_with(self, previous: Optional[Handle]) -> Tuple[Handle, bool]:
        try:
            if not self._is_stale(self._clock()) and await asyncio.to_thread(self.store.exists):
                committed = self.tracker.current_version()
                if previous is not None and previous.metadata == committed:
                    self._set_state(LifecycleState.READY)
                    return previous, False

                logger.info(
                    f"Cached version {committed.version_id!r} is fresh, skipping network"
                )
                handle = await self._open_from_store()
                return self._install(handle), True

            data = await self.fetcher.fetch(
                self.config.remote_url,
                self.config.connect_timeout_seconds,
                self.config.read_timeout_seconds,
            )
        except FetchFailedError as e:
            return await self._recover_from_fetch_failure(e, previous)
        except CorruptAssetError as e:
            return await self._recover_from_corrupt(e, previous)

        metadata = AssetMetadata(
            version_id=self.config.target_version,
            fetched_at_epoch_millis=self._clock(),
            size_bytes=len(data),
        )

        try:
            committed = await asyncio.to_thread(self.store.write_atomic, data, metadata)
            handle = await asyncio.to_thread(self.guard.open, data, committed)
        except CorruptAssetError as e:
            return await self._recover_from_corrupt(e, previous)
        except OSError as e:
            logger.error(f"Could not persist asset version {metadata.version_id!r}: {e}")
            return self._keep_previous_or_fail(
                UnavailableError(f"Could not persist asset: {e}"), previous, cause=e
            )

        return self._install(handle), True

    async def _open_from_store(self) -> Handle:
        data = await asyncio.to_thread(self.store.read)
        metadata = self.tracker.current_version()
        return await asyncio.to_thread(self.guard.open, data, metadata)

    def _install(self, handle: Handle, state: LifecycleState = LifecycleState.READY) -> Handle:
        if self._state is LifecycleState.CLOSED:
            self.guard.discard(handle)
            raise NotReadyError("Manager was closed while the asset was being acquired")

        self.guard.swap(handle)
        self.install_count += 1
        self.last_error = None
        self._set_state(state)
        return handle

    async def _recover_from_fetch_failure(
        self,
        error: FetchFailedError,
        previous: Optional[Handle],
    ) -> Tuple[Handle, bool]:
        if previous is not None:
            return self._keep_previous_or_fail(error, previous)

        if await asyncio.to_thread(self.store.exists):
            try:
                handle = await self._open_from_store()
            except CorruptAssetError as corrupt:
                return await self._recover_from_corrupt(corrupt, previous)

            logger.warning(
                f"Serving stale cached version {handle.version_id!r}: {error.reason}"
            )
            self._warn(error)
            return self._install(handle, state=LifecycleState.FAILED_KEEP_OLD), False

        return self._keep_previous_or_fail(
            UnavailableError(f"No asset available: {error.reason}"), None, cause=error
        )

    async def _recover_from_corrupt(
        self,
        error: CorruptAssetError,
        previous: Optional[Handle],
    ) -> Tuple[Handle, bool]:
        logger.error(f"Purging corrupt asset from slot {self.config.slot_name!r}: {error}")
        await asyncio.to_thread(self.store.remove)
        return self._keep_previous_or_fail(error, previous)

    def _keep_previous_or_fail(
        self,
        error: AssetLifecycleError,
        previous: Optional[Handle],
        cause: Optional[BaseException] = None,
    ) -> Tuple[Handle, bool]:
        if self._state is LifecycleState.CLOSED:
            logger.info(f"Discarding acquisition failure after close: {error}")
            raise NotReadyError("Manager was closed while the asset was being acquired") from error

        if previous is not None:
            self._warn(error)
            self._set_state(LifecycleState.FAILED_KEEP_OLD)
            return previous, False

        self._set_state(LifecycleState.FAILED)
        self.last_error = error
        logger.error(f"Asset unavailable for slot {self.config.slot_name!r}: {error}")

        if cause is not None and cause is not error:
            raise error from cause
        raise error

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_stale(self, now_epoch_millis: int) -> bool:
        return self.tracker.is_stale(
            now_epoch_millis,
            self.config.max_age_millis,
            self.config.target_version,
        )

    def _warn(self, error: AssetLifecycleError) -> None:
        self.last_warning = error
        logger.warning(f"Non-fatal asset lifecycle error ({error.kind.value}): {error}")

        if self._on_warning is not None:
            try:
                self._on_warning(error)
            except Exception as e:
                logger.error(f"Warning callback raised {type(e).__name__}: {e}")

    def _set_state(self, new_state: LifecycleState) -> None:
        if new_state is self._state:
            return
        logger.info(f"Asset lifecycle state: {self._state.value} → {new_state.value}")
        self._state = new_state

    def _check_open(self) -> None:
        if self._state is LifecycleState.CLOSED:
            raise NotReadyError("Asset lifecycle manager is closed")
