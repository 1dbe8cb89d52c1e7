"""
Model Lifecycle – Update Service

Drives AssetLifecycleManager.check_for_update() on a fixed period. The
manager owns no timer of its own; embedding applications either call
check_for_update() themselves or run this service next to the manager.

BEHAVIOR:
- One asyncio task per running service
- Period defaults to config.update_interval_seconds
- A failed check is logged and the next period tries again
- The loop ends on stop() or once the manager is closed
"""

import asyncio
from typing import Optional

from loguru import logger

from .errors import NotReadyError
from .manager import AssetLifecycleManager


class UpdateService:
    """
    Periodic refresher for one AssetLifecycleManager.

    Usage:
        service = UpdateService(manager)
        service.start()
        ...
        service.stop()
        await service.wait_stopped()

    Inference callers never wait on this service; a refresh only swaps
    the handle once the new asset is open.
    """

    def __init__(
        self,
        manager: AssetLifecycleManager,
        interval_seconds: Optional[float] = None,
        check_immediately: bool = True,
    ):
        """
        Args:
            manager: Lifecycle manager to refresh
            interval_seconds: Seconds between checks (default: manager.config.update_interval_seconds)
            check_immediately: First check at start() rather than one period later

        Raises:
            ValueError: If interval_seconds is not positive
        """
        self.manager = manager
        if interval_seconds is None:
            interval_seconds = manager.config.update_interval_seconds
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.interval_seconds = interval_seconds
        self.check_immediately = check_immediately

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()

        self.checks_run = 0
        self.updates_installed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """
        Spawn the background check loop.

        Raises:
            RuntimeError: If the loop is already running
        """
        if self._running:
            raise RuntimeError("UpdateService is already running")

        logger.info(
            f"UpdateService starting for slot {self.manager.config.slot_name!r} "
            f"(every {self.interval_seconds}s)"
        )
        self._running = True
        self._wakeup.clear()
        self._task = asyncio.create_task(self._check_loop())

    def stop(self) -> None:
        """Ask the loop to exit after the current check; see wait_stopped()."""
        if not self._running:
            logger.debug("UpdateService.stop() called while idle")
            return

        self._running = False
        self._wakeup.set()

    async def wait_stopped(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return

        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("UpdateService stopped")

    async def run_once(self) -> bool:
        """
        Perform one update check now.

        Returns:
            True if the manager installed a new handle
        """
        self.checks_run += 1
        installed = await self.manager.check_for_update()
        if installed:
            self.updates_installed += 1
            logger.info(
                f"UpdateService installed version {self.manager.config.target_version!r} "
                f"({self.updates_installed} update(s) so far)"
            )
        return installed

    async def _check_loop(self) -> None:
        pending_skip = not self.check_immediately

        try:
            while self._running:
                if pending_skip:
                    pending_skip = False
                else:
                    try:
                        await self.run_once()
                    except NotReadyError:
                        logger.info("Lifecycle manager closed, UpdateService exiting")
                        break
                    except Exception as e:
                        logger.error(f"Update check failed ({type(e).__name__}): {e}")

                if await self._sleep():
                    break
        finally:
            self._running = False

    async def _sleep(self) -> bool:
        """Wait one period; True if stop() interrupted the wait."""
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            return False
        return True
