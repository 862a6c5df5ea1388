"""Event types and library capability for messaging-protocol connections."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Protocol, runtime_checkable


class ConnectionState(Enum):
    """Protocol-level connection state reported by the library."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSE = "close"


class DisconnectReason(Enum):
    """Why a connection closed."""

    LOGGED_OUT = "logged_out"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_CLOSED = "connection_closed"
    CONNECTION_REPLACED = "connection_replaced"
    RESTART_REQUIRED = "restart_required"
    TIMED_OUT = "timed_out"
    BAD_SESSION = "bad_session"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> DisconnectReason:
        """Coerce a library-supplied reason into a DisconnectReason.

        Accepts members, names in any casing ("loggedOut", "logged-out",
        "LOGGED_OUT") and the numeric status codes the network reports.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            return cls.UNKNOWN
        if isinstance(value, int):
            return _STATUS_CODES.get(value, cls.UNKNOWN)
        if isinstance(value, str):
            key = value.strip().replace("-", "").replace("_", "").lower()
            for member in cls:
                if member.value.replace("_", "") == key:
                    return member
        return cls.UNKNOWN


_STATUS_CODES: dict[int, DisconnectReason] = {
    401: DisconnectReason.LOGGED_OUT,
    408: DisconnectReason.CONNECTION_LOST,
    428: DisconnectReason.CONNECTION_CLOSED,
    440: DisconnectReason.CONNECTION_REPLACED,
    500: DisconnectReason.BAD_SESSION,
    515: DisconnectReason.RESTART_REQUIRED,
}


@dataclass(frozen=True)
class ConnectOptions:
    """Options handed to the protocol library when opening a connection.

    Attributes:
        connect_timeout_seconds: Time allowed before a synthetic close is raised
        keep_alive_seconds: Keep-alive ping interval for the library
        browser: Client identification advertised to the network
    """

    connect_timeout_seconds: float = 30.0
    keep_alive_seconds: float = 20.0
    browser: tuple[str, str, str] = ("chatbridge", "Chrome", "1.0.0")


@dataclass
class MessagePayload:
    """An inbound user message."""

    sender: str
    text: str
    timestamp: datetime = field(default_factory=datetime.now)
    from_me: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ClientEvent:
    """Base event from a session client."""

    type: str
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class ArtifactEvent(ClientEvent):
    """A scannable login artifact became available."""

    type: str = "credential-artifact"
    artifact: str = ""


@dataclass
class StateEvent(ClientEvent):
    """The connection state changed."""

    type: str = "state"
    state: ConnectionState = ConnectionState.CONNECTING
    reason: DisconnectReason | None = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class MessageEvent(ClientEvent):
    """An inbound message arrived."""

    type: str = "message"
    payload: MessagePayload | None = None


# Names of the events a protocol library emits
LIBRARY_EVENT_ARTIFACT = "credential-artifact"
LIBRARY_EVENT_STATE = "connection-state"
LIBRARY_EVENT_CREDENTIALS = "credentials-updated"
LIBRARY_EVENT_MESSAGE = "message"

EventHandler = Callable[..., None]


@runtime_checkable
class ProtocolConnection(Protocol):
    """A live connection handle supplied by a messaging-protocol library.

    Handlers registered with ``on`` receive:
        credential-artifact: (artifact: str)
        connection-state: (state: str, meta: dict) where meta may hold "reason"
        credentials-updated: (key: str, data: dict)
        message: (payload: MessagePayload)
    """

    user_id: str | None

    def on(self, event: str, handler: EventHandler) -> None: ...

    async def send_message(self, jid: str, payload: dict[str, Any]) -> Any: ...

    async def logout(self) -> None: ...

    async def end(self) -> None: ...


class ProtocolLibrary(Protocol):
    """Factory for protocol connections."""

    async def connect(
        self,
        credentials: Any,
        options: ConnectOptions,
    ) -> ProtocolConnection: ...
