"""Error types raised and logged by the session core."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all chatbridge errors."""


class ClientCreationFailed(BridgeError):
    """A session's connection could not be created."""

    def __init__(self, session_id: str, message: str | None = None):
        self.session_id = session_id
        super().__init__(message or f"Failed to create client for session: {session_id}")


class CredentialLoadFailed(ClientCreationFailed):
    """Credential material for a session could not be read or initialized."""

    def __init__(self, session_id: str, message: str | None = None):
        super().__init__(
            session_id,
            message or f"Failed to load credentials for session: {session_id}",
        )


class ConnectionOpenTimeout(BridgeError):
    """A connection attempt did not report open or close in time."""

    def __init__(self, session_id: str, timeout_seconds: float):
        self.session_id = session_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Connection for session {session_id} did not open within {timeout_seconds:g}s"
        )


class NotConnected(BridgeError):
    """The adapter has no open connection."""


class SessionNotReady(BridgeError):
    """A send was attempted against a session that is not connected or ready."""

    def __init__(self, session_id: str, status: str | None = None):
        self.session_id = session_id
        self.status = status
        detail = f" (status={status})" if status else ""
        super().__init__(f"Session not ready: {session_id}{detail}")


class SendFailed(BridgeError):
    """The underlying protocol library rejected a send."""

    def __init__(self, session_id: str, recipient: str, message: str | None = None):
        self.session_id = session_id
        self.recipient = recipient
        super().__init__(message or f"Send failed for session {session_id} to {recipient}")


class RetryExhausted(BridgeError):
    """A session used up its reconnection attempts."""

    def __init__(self, session_id: str, attempts: int):
        self.session_id = session_id
        self.attempts = attempts
        super().__init__(f"Session {session_id} exhausted {attempts} reconnection attempts")


class SinkWriteFailed(BridgeError):
    """A status-sink write could not be completed."""


class ProviderNotFound(BridgeError):
    """No protocol library is registered under the configured name."""
