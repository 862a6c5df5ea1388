"""Shared test helpers for chatbridge."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from chatbridge.client.loopback import LoopbackLibrary
from chatbridge.client.types import ConnectOptions
from chatbridge.core.credentials import CredentialStore
from chatbridge.core.session_manager import LifecycleConfig, SessionLifecycleManager
from chatbridge.errors import SinkWriteFailed
from chatbridge.sink.base import SinkUpdate


class ParkedSleep:
    """Awaitable sleep that parks until the test releases it."""

    def __init__(self):
        self.calls: list[tuple[float, asyncio.Future]] = []

    async def __call__(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self.calls.append((seconds, future))
        await future

    @property
    def pending(self) -> list[float]:
        """Delays of every sleep still parked."""
        return [seconds for seconds, future in self.calls if not future.done()]

    def release(self, seconds: float | None = None) -> int:
        """Wake parked sleeps (all, or only those of the given delay)."""
        released = 0
        for delay, future in self.calls:
            if not future.done() and (seconds is None or delay == seconds):
                future.set_result(None)
                released += 1
        return released


class FakeClock:
    """Controllable clock for ``now`` injection."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class RecordingSink:
    """Status sink that keeps every write in memory."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.writes: list[tuple[str, SinkUpdate]] = []

    async def upsert(self, external_id: str, update: SinkUpdate) -> None:
        if self.fail:
            raise SinkWriteFailed("database unavailable")
        self.writes.append((external_id, update))

    def statuses(self, external_id: str | None = None) -> list[str]:
        return [
            update.status.value
            for key, update in self.writes
            if external_id is None or key == external_id
        ]


async def drain(rounds: int = 25) -> None:
    """Let every ready task run until the loop goes quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def credential_store(tmp_path: Path) -> CredentialStore:
    return CredentialStore(tmp_path / "credentials")


@pytest.fixture
def library() -> LoopbackLibrary:
    return LoopbackLibrary()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def sleeper() -> ParkedSleep:
    return ParkedSleep()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def lifecycle_config() -> LifecycleConfig:
    # Open timeout disabled; tests that need it build their own config
    return LifecycleConfig(connect=ConnectOptions(connect_timeout_seconds=0))


@pytest.fixture
def manager(
    library: LoopbackLibrary,
    credential_store: CredentialStore,
    sink: RecordingSink,
    sleeper: ParkedSleep,
    clock: FakeClock,
    lifecycle_config: LifecycleConfig,
) -> SessionLifecycleManager:
    return SessionLifecycleManager(
        library=library,
        credential_store=credential_store,
        sink=sink,
        config=lifecycle_config,
        artifact_encoder=lambda artifact: f"encoded:{artifact}",
        sleep=sleeper,
        now=clock,
    )
