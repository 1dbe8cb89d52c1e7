"""Tests for the Asset Lifecycle Manager state machine."""
import asyncio

import pytest

from model_lifecycle.errors import (
    CorruptAssetError,
    FetchFailedError,
    NotReadyError,
    UnavailableError,
)
from model_lifecycle.manager import AssetLifecycleManager
from model_lifecycle.types import AssetMetadata, ErrorKind, LifecycleState


DAY_MS = 24 * 60 * 60 * 1000


class TestFirstAcquisition:
    """Empty cache → fetch → persist → open."""

    @pytest.mark.asyncio
    async def test_example_scenario(self, make_manager, make_store, fetcher):
        """200 zero bytes for version 1.0, then a cache hit."""
        fetcher.payload = bytes(200)
        manager = make_manager()

        handle = await manager.ensure_ready()

        store = make_store()
        assert store.read() == bytes(200)
        assert store.tracker.current_version().version_id == "1.0"
        assert store.tracker.current_version().size_bytes == 200
        assert handle.engine_handle.data == bytes(200)
        assert manager.state is LifecycleState.READY

        again = await manager.ensure_ready()

        assert fetcher.fetch_count == 1
        assert again is handle
        assert again.engine_handle.data == bytes(200)

    @pytest.mark.asyncio
    async def test_fetch_uses_configured_url_and_timeouts(self, make_manager, fetcher, config):
        manager = make_manager()

        await manager.ensure_ready()

        assert fetcher.requests == [
            (config.remote_url, config.connect_timeout_seconds, config.read_timeout_seconds)
        ]

    @pytest.mark.asyncio
    async def test_repeated_calls_hit_cache(self, make_manager, fetcher):
        manager = make_manager()
        first = await manager.ensure_ready()

        handles = [await manager.ensure_ready() for _ in range(5)]

        assert fetcher.fetch_count == 1
        assert all(h is first for h in handles)

    @pytest.mark.asyncio
    async def test_fresh_cache_from_previous_run_skips_network(self, make_manager, fetcher):
        first_run = make_manager()
        await first_run.ensure_ready()
        await first_run.close()

        second_run = make_manager()
        handle = await second_run.ensure_ready()

        assert fetcher.fetch_count == 1
        assert handle.engine_handle.data == fetcher.payload

    @pytest.mark.asyncio
    async def test_offline_first_run_is_unavailable(self, make_manager, fetcher):
        fetcher.error = FetchFailedError("network error: offline")
        manager = make_manager()

        with pytest.raises(UnavailableError) as exc_info:
            await manager.ensure_ready()

        assert exc_info.value.kind is ErrorKind.UNAVAILABLE
        assert isinstance(exc_info.value.__cause__, FetchFailedError)
        assert manager.state is LifecycleState.FAILED
        with pytest.raises(NotReadyError):
            manager.infer("x")

    @pytest.mark.asyncio
    async def test_failed_state_retries_on_next_call(self, make_manager, fetcher):
        fetcher.error = FetchFailedError("timeout while fetching asset")
        manager = make_manager()
        with pytest.raises(UnavailableError):
            await manager.ensure_ready()

        fetcher.error = None
        handle = await manager.ensure_ready()

        assert fetcher.fetch_count == 2
        assert manager.state is LifecycleState.READY
        assert handle.version_id == "1.0"

    @pytest.mark.asyncio
    async def test_offline_with_stale_cache_serves_it(
        self, make_manager, make_store, fetcher, clock, warnings
    ):
        make_store().write_atomic(
            b"cached-model",
            AssetMetadata("1.0", clock.now - 30 * DAY_MS, 0),
        )
        fetcher.error = FetchFailedError("network error: offline")
        manager = make_manager()

        handle = await manager.ensure_ready()

        assert handle.engine_handle.data == b"cached-model"
        assert manager.state is LifecycleState.FAILED_KEEP_OLD
        assert warnings[-1].kind is ErrorKind.FETCH_FAILED

        fetcher.error = None
        assert await manager.check_for_update() is True
        assert manager.state is LifecycleState.READY
        assert (await manager.ensure_ready()).engine_handle.data == fetcher.payload

    @pytest.mark.asyncio
    async def test_unexpected_engine_error_is_unavailable(self, make_manager, engine):
        def broken_open(data):
            raise RuntimeError("driver missing")

        engine.open = broken_open
        manager = make_manager()

        with pytest.raises(UnavailableError) as exc_info:
            await manager.ensure_ready()

        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_version_bump_refetches(self, make_manager, make_store, fetcher):
        old = make_manager()
        await old.ensure_ready()
        await old.close()

        fetcher.payload = b"version-two-model"
        new = make_manager(target_version="2.0")
        handle = await new.ensure_ready()

        assert fetcher.fetch_count == 2
        assert handle.version_id == "2.0"
        assert make_store().tracker.current_version().version_id == "2.0"


class TestCoalescing:
    """Concurrent ensure_ready() calls share one acquisition."""

    @pytest.mark.asyncio
    async def test_ten_callers_one_fetch(self, make_manager, fetcher):
        fetcher.gate = asyncio.Event()
        manager = make_manager()

        tasks = [asyncio.create_task(manager.ensure_ready()) for _ in range(10)]
        await asyncio.sleep(0.01)
        assert fetcher.fetch_count == 1
        assert manager.get_status()["fetch_in_flight"] is True

        fetcher.gate.set()
        handles = await asyncio.gather(*tasks)

        assert fetcher.fetch_count == 1
        assert all(h is handles[0] for h in handles)
        assert manager.get_status()["fetch_in_flight"] is False

    @pytest.mark.asyncio
    async def test_ten_callers_share_one_failure(self, make_manager, fetcher):
        fetcher.gate = asyncio.Event()
        fetcher.error = FetchFailedError("server returned HTTP 500", status=500)
        manager = make_manager()

        tasks = [asyncio.create_task(manager.ensure_ready()) for _ in range(10)]
        await asyncio.sleep(0.01)
        fetcher.gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert fetcher.fetch_count == 1
        assert all(isinstance(r, UnavailableError) for r in results)
        assert all(r is results[0] for r in results)

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_fetch(self, make_manager, fetcher):
        fetcher.gate = asyncio.Event()
        manager = make_manager()

        impatient = asyncio.create_task(manager.ensure_ready())
        patient = asyncio.create_task(manager.ensure_ready())
        await asyncio.sleep(0.01)
        impatient.cancel()
        fetcher.gate.set()

        handle = await patient

        assert impatient.cancelled()
        assert handle.version_id == "1.0"
        assert fetcher.fetch_count == 1

    @pytest.mark.asyncio
    async def test_update_check_joins_in_flight_load(self, make_manager, fetcher):
        fetcher.gate = asyncio.Event()
        manager = make_manager()

        loading = asyncio.create_task(manager.ensure_ready())
        checking = asyncio.create_task(manager.check_for_update())
        await asyncio.sleep(0.01)
        fetcher.gate.set()

        await loading
        assert await checking is True
        assert fetcher.fetch_count == 1


class TestRefresh:
    """check_for_update() and stale fallback."""

    @pytest.mark.asyncio
    async def test_up_to_date_does_nothing(self, make_manager, fetcher):
        manager = make_manager()
        await manager.ensure_ready()

        assert await manager.check_for_update() is False
        assert fetcher.fetch_count == 1

    @pytest.mark.asyncio
    async def test_aged_asset_is_replaced(self, make_manager, fetcher, clock, engine):
        manager = make_manager()
        old = await manager.ensure_ready()

        clock.advance(8 * DAY_MS)
        fetcher.payload = b"refreshed-model"
        installed = await manager.check_for_update()

        new = await manager.ensure_ready()
        assert installed is True
        assert new is not old
        assert new.generation == old.generation + 1
        assert new.engine_handle.data == b"refreshed-model"
        assert old.closed is True
        assert manager.state is LifecycleState.READY

    @pytest.mark.asyncio
    async def test_stale_ready_refreshes_on_ensure_ready(self, make_manager, fetcher, clock):
        manager = make_manager()
        old = await manager.ensure_ready()

        clock.advance(8 * DAY_MS)
        new = await manager.ensure_ready()

        assert fetcher.fetch_count == 2
        assert new is not old

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_old_handle(self, make_manager, fetcher, clock, warnings):
        manager = make_manager()
        old = await manager.ensure_ready()

        clock.advance(8 * DAY_MS)
        fetcher.error = FetchFailedError("network error: offline")

        assert await manager.check_for_update() is False
        assert warnings[-1].kind is ErrorKind.FETCH_FAILED
        assert manager.last_warning is warnings[-1]
        assert manager.state is LifecycleState.FAILED_KEEP_OLD

        # Still offline: each ensure_ready() retries, then serves the kept handle
        still = await manager.ensure_ready()
        assert still is old
        assert old.closed is False
        assert fetcher.fetch_count == 3
        assert (await manager.run_inference("frame"))["serial"] == 1
        assert manager.state is LifecycleState.FAILED_KEEP_OLD

    @pytest.mark.asyncio
    async def test_ensure_ready_retries_after_failed_refresh(self, make_manager, fetcher, clock):
        manager = make_manager()
        old = await manager.ensure_ready()

        clock.advance(8 * DAY_MS)
        fetcher.error = FetchFailedError("network error: offline")
        assert await manager.check_for_update() is False

        fetcher.error = None
        fetcher.payload = b"refreshed-model"
        new = await manager.ensure_ready()

        assert fetcher.fetch_count == 3
        assert new is not old
        assert new.engine_handle.data == b"refreshed-model"
        assert old.closed is True
        assert manager.state is LifecycleState.READY

        # Fresh again: back on the no-I/O path
        assert await manager.ensure_ready() is new
        assert fetcher.fetch_count == 3

    @pytest.mark.asyncio
    async def test_refresh_waits_for_in_flight_inference(self, make_manager, fetcher, clock):
        manager = make_manager()
        old = await manager.ensure_ready()
        clock.advance(8 * DAY_MS)
        fetcher.payload = b"refreshed-model"

        with manager.guard.borrow() as borrowed:
            assert await manager.check_for_update() is True
            assert borrowed is old
            assert old.closed is False

        assert old.closed is True

    @pytest.mark.asyncio
    async def test_corrupt_download_during_refresh(
        self, make_manager, make_store, fetcher, clock, warnings
    ):
        manager = make_manager()
        old = await manager.ensure_ready()

        clock.advance(8 * DAY_MS)
        fetcher.payload = b"BAD-refreshed-model"

        assert await manager.check_for_update() is False
        assert warnings[-1].kind is ErrorKind.CORRUPT_ASSET
        assert make_store().exists() is False
        assert await manager.ensure_ready() is old

    @pytest.mark.asyncio
    async def test_raising_warning_callback_is_contained(self, config, engine, fetcher, clock):
        def explode(error):
            raise ValueError("callback bug")

        manager = AssetLifecycleManager(
            config, engine=engine, fetcher=fetcher, clock=clock, on_warning=explode
        )
        await manager.ensure_ready()
        clock.advance(8 * DAY_MS)
        fetcher.error = FetchFailedError("timeout while fetching asset")

        assert await manager.check_for_update() is False


class TestCorruptCache:
    """A cached asset the engine rejects is purged, then refetched."""

    @pytest.mark.asyncio
    async def test_corrupt_cache_purged_then_refetched(
        self, make_manager, make_store, fetcher, clock
    ):
        make_store().write_atomic(b"BAD-cached-model", AssetMetadata("1.0", clock.now, 0))
        manager = make_manager()

        with pytest.raises(CorruptAssetError) as exc_info:
            await manager.ensure_ready()

        assert exc_info.value.kind is ErrorKind.CORRUPT_ASSET
        assert fetcher.fetch_count == 0
        assert make_store().exists() is False
        assert manager.state is LifecycleState.FAILED

        handle = await manager.ensure_ready()

        assert fetcher.fetch_count == 1
        assert handle.engine_handle.data == fetcher.payload
        assert make_store().read() == fetcher.payload

    @pytest.mark.asyncio
    async def test_tampered_cache_purged(self, make_manager, make_store, fetcher, clock):
        store = make_store()
        committed = store.write_atomic(b"good-model", AssetMetadata("1.0", clock.now, 0))
        with open(store.asset_path(committed), "wb") as f:
            f.write(b"evil-model")

        manager = make_manager()
        with pytest.raises(CorruptAssetError):
            await manager.ensure_ready()

        assert make_store().exists() is False
        assert fetcher.fetch_count == 0


class TestShutdownAndReset:
    """close(), reset_cache() and status."""

    @pytest.mark.asyncio
    async def test_close_releases_handle(self, make_manager):
        manager = make_manager()
        handle = await manager.ensure_ready()

        await manager.close()

        assert handle.closed is True
        assert manager.state is LifecycleState.CLOSED
        with pytest.raises(NotReadyError):
            await manager.ensure_ready()
        with pytest.raises(NotReadyError):
            await manager.check_for_update()
        # Idempotent
        await manager.close()

    @pytest.mark.asyncio
    async def test_close_during_fetch_discards_result(self, make_manager, fetcher, engine):
        fetcher.gate = asyncio.Event()
        manager = make_manager()

        loading = asyncio.create_task(manager.ensure_ready())
        await asyncio.sleep(0.01)
        await manager.close()
        fetcher.gate.set()

        with pytest.raises(NotReadyError):
            await loading

        assert engine.opened
        assert all(h.closed for h in engine.opened)
        assert manager.state is LifecycleState.CLOSED

    @pytest.mark.asyncio
    async def test_close_during_failing_load(self, make_manager, fetcher):
        fetcher.gate = asyncio.Event()
        fetcher.error = FetchFailedError("network error: offline")
        manager = make_manager()

        loading = asyncio.create_task(manager.ensure_ready())
        await asyncio.sleep(0.01)
        await manager.close()
        fetcher.gate.set()

        with pytest.raises(NotReadyError) as exc_info:
            await loading

        assert isinstance(exc_info.value.__cause__, UnavailableError)
        assert manager.state is LifecycleState.CLOSED
        assert manager.last_error is None

    @pytest.mark.asyncio
    async def test_close_during_failing_refresh(self, make_manager, fetcher, clock, warnings):
        manager = make_manager()
        old = await manager.ensure_ready()
        clock.advance(8 * DAY_MS)
        fetcher.gate = asyncio.Event()
        fetcher.error = FetchFailedError("network error: offline")

        refreshing = asyncio.create_task(manager.check_for_update())
        await asyncio.sleep(0.01)
        await manager.close()
        fetcher.gate.set()

        with pytest.raises(NotReadyError):
            await refreshing

        assert old.closed is True
        assert warnings == []
        assert manager.state is LifecycleState.CLOSED

    @pytest.mark.asyncio
    async def test_reset_during_failing_load(self, make_manager, make_store, fetcher):
        fetcher.gate = asyncio.Event()
        fetcher.error = FetchFailedError("network error: offline")
        manager = make_manager()

        loading = asyncio.create_task(manager.ensure_ready())
        await asyncio.sleep(0.01)
        resetting = asyncio.create_task(manager.reset_cache())
        await asyncio.sleep(0.01)
        fetcher.gate.set()

        with pytest.raises(UnavailableError):
            await loading
        # The load's failure belongs to its caller, not to the reset
        await resetting

        assert make_store().exists() is False
        assert manager.get_status()["fetch_in_flight"] is False

    @pytest.mark.asyncio
    async def test_reset_runs_after_in_flight_write(self, make_manager, make_store, fetcher):
        fetcher.gate = asyncio.Event()
        manager = make_manager()

        loading = asyncio.create_task(manager.ensure_ready())
        await asyncio.sleep(0.01)
        resetting = asyncio.create_task(manager.reset_cache())
        await asyncio.sleep(0.01)
        assert not resetting.done()

        fetcher.gate.set()
        handle = await loading
        await resetting

        # The write committed first, then the reset cleared it
        assert make_store().exists() is False
        assert make_store().tracker.current_version() is None
        assert handle.closed is False
        assert manager.infer("x")["serial"] == handle.generation

    @pytest.mark.asyncio
    async def test_reset_cache_forces_refetch(self, make_manager, make_store, fetcher):
        manager = make_manager()
        await manager.ensure_ready()

        await manager.reset_cache()

        assert make_store().exists() is False
        assert await manager.check_for_update() is True
        assert fetcher.fetch_count == 2
        assert make_store().exists() is True

    @pytest.mark.asyncio
    async def test_run_inference(self, make_manager, engine):
        manager = make_manager()

        result = await manager.run_inference([1, 2, 3])

        assert result == {"serial": 1, "size": 200, "input": [1, 2, 3]}
        assert engine.infer_calls == 1

    @pytest.mark.asyncio
    async def test_status(self, make_manager):
        manager = make_manager()
        assert manager.get_status()["state"] == "uninitialized"

        await manager.ensure_ready()
        status = manager.get_status()

        assert status["state"] == "ready"
        assert status["cached_version"] == "1.0"
        assert status["active_version"] == "1.0"
        assert status["cached_size_bytes"] == 200
        assert status["stale"] is False
        assert status["fetches"] == 1
        assert status["installs"] == 1
        assert status["active_generation"] == 1
