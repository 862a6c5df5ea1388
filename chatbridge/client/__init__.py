"""Messaging-protocol client integration for chatbridge."""

from chatbridge.client.loopback import LoopbackConnection, LoopbackLibrary
from chatbridge.client.providers import create_library, list_providers
from chatbridge.client.types import (
    ArtifactEvent,
    ClientEvent,
    ConnectionState,
    ConnectOptions,
    DisconnectReason,
    MessageEvent,
    MessagePayload,
    ProtocolConnection,
    ProtocolLibrary,
    StateEvent,
)

__all__ = [
    # Events
    "ArtifactEvent",
    "ClientEvent",
    "ConnectionState",
    "DisconnectReason",
    "MessageEvent",
    "MessagePayload",
    "StateEvent",
    # Library capability
    "ConnectOptions",
    "ProtocolConnection",
    "ProtocolLibrary",
    # Providers
    "LoopbackConnection",
    "LoopbackLibrary",
    "create_library",
    "list_providers",
]
