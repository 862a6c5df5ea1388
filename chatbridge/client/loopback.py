"""In-process protocol library for local runs and tests.

The loopback library never touches a network. Connections it hands out are
driven either explicitly (``emit_artifact``, ``pair``, ``drop``,
``receive``) or, with ``auto_pair`` enabled, by a short scripted handshake
that mimics a scan followed by an open connection.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from typing import Any

from chatbridge.client.types import (
    LIBRARY_EVENT_ARTIFACT,
    LIBRARY_EVENT_CREDENTIALS,
    LIBRARY_EVENT_MESSAGE,
    LIBRARY_EVENT_STATE,
    ConnectOptions,
    DisconnectReason,
    EventHandler,
    MessagePayload,
)

logger = logging.getLogger(__name__)


class LoopbackConnection:
    """A simulated connection that records every command it receives."""

    def __init__(self, session_id: str, credentials: Any = None, fail_sends: bool = False):
        self.session_id = session_id
        self.credentials = credentials
        self.user_id: str | None = None
        self.fail_sends = fail_sends

        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.logged_out = False
        self.ended = False
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._message_ids = itertools.count(1)
        self._artifacts = itertools.count(1)

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    def emit(self, event: str, *args: Any) -> None:
        """Invoke every handler registered for an event."""
        for handler in list(self._handlers.get(event, ())):
            handler(*args)

    async def send_message(self, jid: str, payload: dict[str, Any]) -> dict[str, Any]:
        if self.ended:
            raise ConnectionError("Connection closed")
        if self.fail_sends:
            raise ConnectionError(f"Delivery to {jid} refused")
        self.sent.append((jid, payload))
        return {"id": f"LB{next(self._message_ids):06d}", "jid": jid}

    async def logout(self) -> None:
        self.logged_out = True
        self.ended = True

    async def end(self) -> None:
        self.ended = True

    # Simulation helpers

    def emit_artifact(self, artifact: str | None = None) -> str:
        """Emit a login artifact, as if the network asked for a scan."""
        artifact = artifact or f"loopback:{self.session_id}:{next(self._artifacts)}"
        self.emit(LIBRARY_EVENT_ARTIFACT, artifact)
        return artifact

    def pair(self, user_id: str = "15550000000:1@s.whatsapp.net") -> None:
        """Complete the handshake: store credentials, then open."""
        self.user_id = user_id
        self.emit(LIBRARY_EVENT_CREDENTIALS, "creds", {"me": {"id": user_id}, "registered": True})
        self.emit(LIBRARY_EVENT_STATE, "open", {})

    def drop(self, reason: DisconnectReason | str | int = DisconnectReason.CONNECTION_LOST) -> None:
        """Close the connection from the network side."""
        if isinstance(reason, DisconnectReason):
            reason = reason.value
        self.ended = True
        self.emit(LIBRARY_EVENT_STATE, "close", {"reason": reason})

    def receive(self, sender: str, text: str, from_me: bool = False) -> MessagePayload:
        """Deliver an inbound message."""
        payload = MessagePayload(sender=sender, text=text, from_me=from_me)
        self.emit(LIBRARY_EVENT_MESSAGE, payload)
        return payload


class LoopbackLibrary:
    """Protocol library that hands out LoopbackConnections.

    Attributes:
        connections: Every connection created, in creation order, per session
    """

    def __init__(
        self,
        auto_pair: bool = False,
        user_id: str = "15550000000:1@s.whatsapp.net",
        fail_connect: Exception | None = None,
        fail_sends: bool = False,
    ):
        """
        Initialize the library.

        Args:
            auto_pair: Run a scripted handshake on every new connection
            user_id: Account id used by the scripted handshake
            fail_connect: Raise this from ``connect`` instead of connecting
            fail_sends: Make every connection refuse sends
        """
        self.auto_pair = auto_pair
        self.user_id = user_id
        self.fail_connect = fail_connect
        self.fail_sends = fail_sends
        self.connections: dict[str, list[LoopbackConnection]] = defaultdict(list)

    async def connect(self, credentials: Any, options: ConnectOptions) -> LoopbackConnection:
        if self.fail_connect is not None:
            raise self.fail_connect

        session_id = getattr(credentials, "session_id", "loopback")
        connection = LoopbackConnection(session_id, credentials, fail_sends=self.fail_sends)
        self.connections[session_id].append(connection)
        logger.debug("Loopback connection created: %s", session_id)

        if self.auto_pair:
            asyncio.get_running_loop().call_soon(self._handshake, connection)
        return connection

    def latest(self, session_id: str) -> LoopbackConnection:
        """Get the most recent connection for a session."""
        return self.connections[session_id][-1]

    def _handshake(self, connection: LoopbackConnection) -> None:
        if connection.ended:
            return
        is_new = bool(getattr(connection.credentials, "is_new", True))
        if is_new:
            connection.emit_artifact()
        connection.pair(self.user_id)
