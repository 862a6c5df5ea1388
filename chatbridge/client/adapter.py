"""Session client adapter over an external messaging-protocol library."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from chatbridge.client.types import (
    LIBRARY_EVENT_ARTIFACT,
    LIBRARY_EVENT_CREDENTIALS,
    LIBRARY_EVENT_MESSAGE,
    LIBRARY_EVENT_STATE,
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
from chatbridge.core.credentials import CredentialHandle, CredentialStore
from chatbridge.core.identifiers import extract_identity
from chatbridge.errors import ClientCreationFailed, ConnectionOpenTimeout, NotConnected, SendFailed

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]

# Marks the end of a connection's event stream
_END_OF_STREAM = object()


class SessionClientAdapter:
    """Wraps one protocol-library connection for one session.

    This adapter provides:
    - A uniform, ordered event stream (artifact, state, message)
    - Store-on-update persistence of rotated credential material
    - A synthetic close when the library stays silent past the open timeout
    - send / close commands with consistent error types

    Library callbacks are synchronous; they enqueue events and the owner
    drains them one at a time through ``events()``, so a session's events
    are always handled in arrival order.
    """

    def __init__(
        self,
        session_id: str,
        library: ProtocolLibrary,
        credential_store: CredentialStore,
        options: ConnectOptions | None = None,
        sleep: SleepFunc | None = None,
    ):
        """
        Initialize the adapter.

        Args:
            session_id: Session this connection belongs to
            library: Protocol library used to open the connection
            credential_store: Store used to persist rotated credentials
            options: Connection options (timeouts, keep-alive)
            sleep: Awaitable sleep used for the open timeout
        """
        self.session_id = session_id
        self.library = library
        self.credential_store = credential_store
        self.options = options or ConnectOptions()
        self._sleep = sleep or asyncio.sleep

        self._connection: ProtocolConnection | None = None
        self._credentials: CredentialHandle | None = None
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._open: bool = False
        self._finished: bool = False
        self._timeout_task: asyncio.Task[None] | None = None

    @property
    def connected(self) -> bool:
        """Check if the connection is open."""
        return self._open and not self._finished

    @property
    def finished(self) -> bool:
        """Check if the connection has ended (closed, logged out or dropped)."""
        return self._finished

    @property
    def identity(self) -> str | None:
        """Get the account identifier of the connected user."""
        if not self._connection:
            return None
        return extract_identity(getattr(self._connection, "user_id", None))

    async def open(self, credentials: CredentialHandle) -> None:
        """Start a connection attempt.

        Returns as soon as the library hands back a connection handle; all
        further progress arrives through ``events()``.

        Args:
            credentials: Credential material for the session

        Raises:
            ClientCreationFailed: If the library refuses to connect
        """
        if self._connection is not None:
            raise RuntimeError(f"Adapter already opened for session: {self.session_id}")

        self._credentials = credentials
        try:
            connection = await self.library.connect(credentials, self.options)
        except Exception as e:
            raise ClientCreationFailed(
                self.session_id, f"Protocol library failed to connect: {e}"
            ) from e

        self._connection = connection
        connection.on(LIBRARY_EVENT_ARTIFACT, self._on_artifact)
        connection.on(LIBRARY_EVENT_STATE, self._on_state)
        connection.on(LIBRARY_EVENT_CREDENTIALS, self._on_credentials)
        connection.on(LIBRARY_EVENT_MESSAGE, self._on_message)

        if self.options.connect_timeout_seconds > 0:
            self._timeout_task = asyncio.create_task(self._watch_open_timeout())

        logger.debug(
            "Adapter opened: session=%s, new_credentials=%s",
            self.session_id,
            credentials.is_new,
        )

    async def events(self) -> AsyncIterator[ClientEvent]:
        """Yield events in arrival order until the connection ends."""
        while True:
            item = await self._queue.get()
            if item is _END_OF_STREAM:
                return
            yield item

    async def send(self, jid: str, payload: dict[str, Any]) -> Any:
        """Send a message through the open connection.

        Args:
            jid: Protocol address of the recipient
            payload: Library message payload

        Returns:
            The library's acknowledgement

        Raises:
            NotConnected: If there is no open connection
            SendFailed: If the library rejects the send
        """
        if not self.connected or not self._connection:
            raise NotConnected(f"No open connection for session: {self.session_id}")
        try:
            return await self._connection.send_message(jid, payload)
        except Exception as e:
            raise SendFailed(self.session_id, jid, f"Send to {jid} failed: {e}") from e

    async def close(self) -> None:
        """Log out and end the connection (planned teardown).

        No close event is emitted for a planned teardown.
        """
        connection = self._finish()
        if connection:
            await connection.logout()
            logger.debug("Adapter logged out: %s", self.session_id)

    async def end(self) -> None:
        """End the connection without logging out."""
        connection = self._finish()
        if connection:
            await connection.end()
            logger.debug("Adapter ended: %s", self.session_id)

    def _finish(self) -> ProtocolConnection | None:
        """Stop the event stream and timers; return the connection to release."""
        self._cancel_timeout()
        if self._finished:
            return None
        self._finished = True
        self._open = False
        self._queue.put_nowait(_END_OF_STREAM)
        return self._connection

    def _cancel_timeout(self) -> None:
        if self._timeout_task and not self._timeout_task.done():
            if self._timeout_task is not asyncio.current_task():
                self._timeout_task.cancel()
        self._timeout_task = None

    def _push(self, event: ClientEvent) -> None:
        if self._finished:
            logger.debug("Dropping %s event after teardown: %s", event.type, self.session_id)
            return
        self._queue.put_nowait(event)

    async def _watch_open_timeout(self) -> None:
        """Raise a synthetic close if the library never reports progress."""
        await self._sleep(self.options.connect_timeout_seconds)
        if self._finished or self._open:
            return

        error = ConnectionOpenTimeout(self.session_id, self.options.connect_timeout_seconds)
        logger.warning("%s", error)
        self._timeout_task = None
        self._push(
            StateEvent(
                state=ConnectionState.CLOSE,
                reason=DisconnectReason.TIMED_OUT,
                meta={"error": str(error)},
            )
        )
        connection = self._finish()
        if connection:
            try:
                await connection.end()
            except Exception as e:
                logger.debug("Ending timed-out connection failed (ignored): %s", e)

    # Library callbacks

    def _on_artifact(self, artifact: str) -> None:
        self._cancel_timeout()
        self._push(ArtifactEvent(artifact=artifact))

    def _on_state(self, state: str | ConnectionState, meta: dict[str, Any] | None = None) -> None:
        meta = dict(meta or {})
        try:
            conn_state = ConnectionState(state)
        except ValueError:
            logger.warning("Unknown connection state %r for session %s", state, self.session_id)
            return

        if conn_state == ConnectionState.CONNECTING:
            self._push(StateEvent(state=conn_state, meta=meta))
            return

        self._cancel_timeout()
        if conn_state == ConnectionState.OPEN:
            self._open = True
            self._push(StateEvent(state=conn_state, meta=meta))
            return

        reason = DisconnectReason.parse(meta.get("reason", meta.get("status_code")))
        self._push(StateEvent(state=conn_state, reason=reason, meta=meta))
        # A closed connection emits nothing further
        self._finish()

    def _on_credentials(self, key: str, data: dict[str, Any]) -> None:
        if not self._credentials:
            return
        if self._finished:
            # Material may already have been deleted on logout
            logger.debug("Ignoring credential update after teardown: %s", self.session_id)
            return
        try:
            self.credential_store.save(self._credentials, key, data)
        except Exception:
            logger.exception("Failed to persist credentials: session=%s, key=%s", self.session_id, key)

    def _on_message(self, payload: MessagePayload) -> None:
        self._push(MessageEvent(payload=payload))
