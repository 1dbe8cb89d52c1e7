"""
Pytest configuration and fixtures.
"""
import asyncio
import threading
from dataclasses import replace
from typing import Any, List, Optional

import pytest

from model_lifecycle.config import LifecycleConfig
from model_lifecycle.engine import MalformedAssetError
from model_lifecycle.errors import AssetLifecycleError
from model_lifecycle.local_store import LocalStore
from model_lifecycle.manager import AssetLifecycleManager
from model_lifecycle.version_tracker import VersionTracker


START_MILLIS = 1_700_000_000_000
CORRUPT_PREFIX = b"BAD"


class FakeEngineHandle:
    """Stands in for a native interpreter session."""

    def __init__(self, data: bytes, serial: int):
        self.data = data
        self.serial = serial
        self.closed = False


class FakeEngine:
    """
    In-memory inference engine.

    - Bytes starting with CORRUPT_PREFIX are rejected as malformed
    - infer() fails loudly if called on a closed session
    - infer_gate (threading.Event) can hold inferences in flight
    """

    def __init__(self):
        self.opened: List[FakeEngineHandle] = []
        self.closed: List[FakeEngineHandle] = []
        self.infer_calls = 0
        self.infer_gate: Optional[threading.Event] = None
        self._lock = threading.Lock()

    def open(self, data: bytes) -> FakeEngineHandle:
        if data.startswith(CORRUPT_PREFIX):
            raise MalformedAssetError("not a model")
        with self._lock:
            handle = FakeEngineHandle(data, len(self.opened) + 1)
            self.opened.append(handle)
        return handle

    def infer(self, engine_handle: FakeEngineHandle, input_data: Any) -> Any:
        if engine_handle is None or engine_handle.closed:
            raise RuntimeError("inference on a released session")
        if self.infer_gate is not None:
            self.infer_gate.wait(timeout=5)
        if engine_handle.closed:
            raise RuntimeError("session released during inference")
        with self._lock:
            self.infer_calls += 1
        return {"serial": engine_handle.serial, "size": len(engine_handle.data), "input": input_data}

    def close(self, engine_handle: FakeEngineHandle) -> None:
        engine_handle.closed = True
        with self._lock:
            self.closed.append(engine_handle)


class FakeFetcher:
    """
    Remote fetcher double.

    - payload: bytes returned on success
    - error: exception raised instead (after the gate opens)
    - gate: asyncio.Event the fetch waits on, to hold it in flight
    """

    def __init__(self, payload: bytes = bytes(200)):
        self.payload = payload
        self.error: Optional[AssetLifecycleError] = None
        self.gate: Optional[asyncio.Event] = None
        self.fetch_count = 0
        self.requests: List[tuple] = []

    async def fetch(self, url: str, connect_timeout: float, read_timeout: float) -> bytes:
        self.fetch_count += 1
        self.requests.append((url, connect_timeout, read_timeout))
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.payload


class FakeClock:
    """Epoch-millisecond clock advanced by hand."""

    def __init__(self, now: int = START_MILLIS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, millis: int) -> None:
        self.now += millis


@pytest.fixture
def config(tmp_path) -> LifecycleConfig:
    """Config pointing at a throwaway cache dir."""
    return LifecycleConfig(
        remote_url="http://assets.test/model.bin",
        target_version="1.0",
        cache_dir=str(tmp_path / "cache"),
        slot_name="model",
    )


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def warnings() -> List[AssetLifecycleError]:
    """Collects errors delivered on the manager warning channel."""
    return []


@pytest.fixture
def make_store(config):
    """Build a fresh LocalStore on the slot dir (simulates a process restart)."""
    def _make() -> LocalStore:
        return LocalStore(config.slot_dir, config.slot_name, VersionTracker(config.slot_dir))
    return _make


@pytest.fixture
def make_manager(config, engine, fetcher, clock, warnings):
    """Build a manager wired to the fakes; keyword overrides replace config fields."""
    def _make(**overrides) -> AssetLifecycleManager:
        cfg = replace(config, **overrides) if overrides else config
        return AssetLifecycleManager(
            cfg,
            engine=engine,
            fetcher=fetcher,
            clock=clock,
            on_warning=warnings.append,
        )
    return _make
