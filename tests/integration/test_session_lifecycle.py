"""Integration tests: lifecycle manager with the SQLite sink, loopback library and webhook forwarding.

These run the real components together; only the network edge (the CRM
webhook) is replaced by an httpx mock transport.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Callable

import httpx
import pytest

from chatbridge.client.loopback import LoopbackLibrary
from chatbridge.client.types import ConnectOptions, DisconnectReason
from chatbridge.core.credentials import CredentialStore
from chatbridge.core.reconnect import ReconnectConfig
from chatbridge.core.registry import SessionStatus
from chatbridge.core.session_manager import LifecycleConfig, SessionLifecycleManager
from chatbridge.crm.forwarder import WebhookForwarder
from chatbridge.sink.artifact import DATA_URL_PREFIX
from chatbridge.sink.sqlite import SqliteSinkConfig, SqliteStatusSink

SESSION_ID = "location_loc1_rec1"

FAST_CONFIG = LifecycleConfig(
    settle_delay_seconds=0.01,
    connect=ConnectOptions(connect_timeout_seconds=0),
    reconnect=ReconnectConfig(base_delay_ms=10, max_delay_ms=40),
)


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll until predicate() is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


def status_of(manager: SessionLifecycleManager, session_id: str) -> SessionStatus | None:
    view = manager.get_status(session_id)
    return view.status if view else None


class TestSessionLifecycle:
    """End-to-end session lifecycle."""

    @pytest.fixture
    def webhook_requests(self) -> list[httpx.Request]:
        return []

    @pytest.fixture
    async def sink(self, tmp_path: Path) -> SqliteStatusSink:
        sink = SqliteStatusSink(SqliteSinkConfig(db_path=tmp_path / "chatbridge.db"))
        await sink.initialize()
        yield sink
        await sink.close()

    @pytest.fixture
    async def forwarder(self, webhook_requests: list[httpx.Request]) -> WebhookForwarder:
        def handler(request: httpx.Request) -> httpx.Response:
            webhook_requests.append(request)
            return httpx.Response(200)

        forwarder = WebhookForwarder(
            "https://crm.example.com/hook",
            token="secret",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        yield forwarder
        await forwarder.close()

    @pytest.fixture
    def credential_store(self, tmp_path: Path) -> CredentialStore:
        return CredentialStore(tmp_path / "credentials")

    @pytest.fixture
    async def manager(self, sink, forwarder, credential_store) -> SessionLifecycleManager:
        manager = SessionLifecycleManager(
            library=LoopbackLibrary(auto_pair=True),
            credential_store=credential_store,
            sink=sink,
            config=FAST_CONFIG,
            forwarder=forwarder,
        )
        yield manager
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_pair_send_receive_reconnect_logout(
        self, manager, sink, credential_store, webhook_requests
    ):
        library = manager.library

        # Pair a fresh session through to ready
        await manager.create(SESSION_ID)
        await wait_for(lambda: status_of(manager, SESSION_ID) == SessionStatus.READY)

        row = await sink.get("rec1")
        assert row.status == "ready"
        assert row.phone_number == "15550000000"
        assert row.qr is None
        assert credential_store.has_existing(SESSION_ID) is True

        # Outbound
        result = await manager.send_message(SESSION_ID, "15551234567", "hello")
        assert result.message_id == "LB000001"
        assert library.latest(SESSION_ID).sent[0][0] == "15551234567@s.whatsapp.net"

        # Inbound is forwarded to the CRM
        library.latest(SESSION_ID).receive("15559998888@s.whatsapp.net", "hi back")
        await wait_for(lambda: len(webhook_requests) == 1)
        body = json.loads(webhook_requests[0].content)
        assert body["sessionId"] == SESSION_ID
        assert body["locationId"] == "loc1"
        assert body["message"] == "hi back"
        assert webhook_requests[0].headers["X-Webhook-Token"] == "secret"

        # A dropped connection reconnects with stored credentials
        library.latest(SESSION_ID).drop(DisconnectReason.CONNECTION_LOST)
        await wait_for(lambda: len(library.connections[SESSION_ID]) == 2)
        await wait_for(lambda: status_of(manager, SESSION_ID) == SessionStatus.READY)
        assert manager.get_session(SESSION_ID).retry_count == 0

        # Logout is terminal and removes credentials
        library.latest(SESSION_ID).drop("loggedOut")
        await wait_for(lambda: status_of(manager, SESSION_ID) == SessionStatus.LOGGED_OUT)

        assert credential_store.has_existing(SESSION_ID) is False
        assert (await sink.get("rec1")).status == "logged_out"
        assert len(library.connections[SESSION_ID]) == 2

    @pytest.mark.asyncio
    async def test_artifact_written_while_awaiting_scan(self, sink, credential_store):
        library = LoopbackLibrary()
        manager = SessionLifecycleManager(
            library=library,
            credential_store=credential_store,
            sink=sink,
            config=FAST_CONFIG,
        )

        await manager.create("tenant-7")
        library.latest("tenant-7").emit_artifact("2@abc,def")
        await wait_for(
            lambda: status_of(manager, "tenant-7") == SessionStatus.AWAITING_CREDENTIAL_SCAN
        )
        assert manager.get_status("tenant-7").has_artifact is True

        # The sink write follows the registry update
        row = None
        for _ in range(100):
            row = await sink.get("tenant-7")
            if row is not None:
                break
            await asyncio.sleep(0.01)

        assert row is not None
        assert row.status == "qr"
        assert row.qr.startswith(DATA_URL_PREFIX)

        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_disconnect_removes_everything(self, manager, sink, credential_store):
        await manager.create("tenant-9")
        await wait_for(lambda: status_of(manager, "tenant-9") == SessionStatus.READY)

        await manager.disconnect("tenant-9")

        assert manager.get_status("tenant-9") is None
        assert credential_store.has_existing("tenant-9") is False
        assert manager.library.latest("tenant-9").logged_out is True
        assert (await sink.get("tenant-9")).status == "disconnected"

    @pytest.mark.asyncio
    async def test_restore_after_restart(self, sink, credential_store):
        first = SessionLifecycleManager(
            library=LoopbackLibrary(auto_pair=True),
            credential_store=credential_store,
            sink=sink,
            config=FAST_CONFIG,
        )
        await first.create("tenant-1")
        await wait_for(lambda: status_of(first, "tenant-1") == SessionStatus.READY)
        await first.shutdown()

        library = LoopbackLibrary(auto_pair=True)
        second = SessionLifecycleManager(
            library=library,
            credential_store=credential_store,
            sink=sink,
            config=FAST_CONFIG,
        )
        restored = await second.restore_existing()
        await wait_for(lambda: status_of(second, "tenant-1") == SessionStatus.READY)

        assert restored == ["tenant-1"]
        assert library.latest("tenant-1").credentials.is_new is False
        await second.shutdown()
