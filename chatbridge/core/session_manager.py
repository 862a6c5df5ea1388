"""Lifecycle manager for many concurrent messaging sessions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from chatbridge.client.adapter import SessionClientAdapter
from chatbridge.client.types import (
    ArtifactEvent,
    ClientEvent,
    ConnectionState,
    ConnectOptions,
    DisconnectReason,
    MessageEvent,
    ProtocolLibrary,
    StateEvent,
)
from chatbridge.core.credentials import CredentialStore
from chatbridge.core.identifiers import normalize_recipient, parse_session_key
from chatbridge.core.reconnect import ReconnectConfig, ReconnectPolicy
from chatbridge.core.registry import (
    Session,
    SessionRegistry,
    SessionStatus,
    SessionStatusView,
    SessionSummary,
)
from chatbridge.errors import (
    ClientCreationFailed,
    NotConnected,
    RetryExhausted,
    SessionNotReady,
    SinkWriteFailed,
)
from chatbridge.sink.artifact import encode_artifact
from chatbridge.sink.base import SinkStatus, SinkUpdate, StatusSink

if TYPE_CHECKING:
    from chatbridge.config import ChatBridgeConfig
    from chatbridge.crm.forwarder import InboundForwarder

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]
AdapterFactory = Callable[[str], SessionClientAdapter]


class MessageContentType(Enum):
    """Kinds of outbound message content."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"


@dataclass(frozen=True)
class LifecycleConfig:
    """Configuration for the lifecycle manager.

    Attributes:
        settle_delay_seconds: Pause between "connected" and "ready"
        connect: Options handed to the protocol library
        reconnect: Backoff settings and attempt budget for the reconnect policy
    """

    settle_delay_seconds: float = 2.0
    connect: ConnectOptions = field(default_factory=ConnectOptions)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)

    @classmethod
    def from_config(cls, config: ChatBridgeConfig) -> LifecycleConfig:
        """Build from the file configuration."""
        return cls(
            settle_delay_seconds=config.sessions.settle_delay_seconds,
            connect=ConnectOptions(
                connect_timeout_seconds=config.connection.connect_timeout_seconds,
                keep_alive_seconds=config.connection.keep_alive_seconds,
            ),
            reconnect=ReconnectConfig.from_config(config),
        )

    @property
    def max_attempts(self) -> int:
        """Reconnection attempts allowed before a session is given up on."""
        return self.reconnect.max_attempts


@dataclass(frozen=True)
class SendResult:
    """Outcome of a successful send.

    Attributes:
        session_id: Session the message was sent through
        recipient: Protocol address the message was sent to
        message_id: Identifier assigned by the network, when reported
        sent_at: When the library acknowledged the send
        ack: The library's raw acknowledgement
    """

    session_id: str
    recipient: str
    message_id: str | None
    sent_at: datetime
    ack: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "recipient": self.recipient,
            "message_id": self.message_id,
            "sent_at": self.sent_at.isoformat(),
        }


def build_message_payload(
    content: str,
    content_type: MessageContentType | str = MessageContentType.TEXT,
    media_ref: str | None = None,
) -> dict[str, Any]:
    """Build a library message payload.

    Raises:
        ValueError: If the content type is unknown or media is missing
    """
    kind = MessageContentType(content_type)
    if kind == MessageContentType.TEXT:
        if not content:
            raise ValueError("Text messages need content")
        return {"text": content}

    if not media_ref:
        raise ValueError(f"{kind.value} messages need a media reference")
    payload: dict[str, Any] = {kind.value: {"url": media_ref}}
    if content and kind != MessageContentType.AUDIO:
        payload["caption"] = content
    return payload


def _extract_message_id(ack: Any) -> str | None:
    if isinstance(ack, dict):
        key = ack.get("key")
        if isinstance(key, dict) and key.get("id"):
            return str(key["id"])
        if ack.get("id"):
            return str(ack["id"])
        return None
    message_id = getattr(ack, "id", None)
    return str(message_id) if message_id else None


class SessionLifecycleManager:
    """Creates, tracks, reconnects and tears down messaging sessions.

    The manager handles:
    - Creating sessions from stored or fresh credential material
    - Driving each session's state machine from its adapter's events
    - Scheduling bounded reconnection with exponential backoff
    - Mirroring status transitions to the external status sink
    - Forwarding inbound messages to the CRM

    Each session's events are consumed by one task, so transitions for a
    session are applied strictly in arrival order. Sessions never share a
    task, so one session waiting on I/O does not hold up another.
    """

    def __init__(
        self,
        library: ProtocolLibrary,
        credential_store: CredentialStore,
        sink: StatusSink | None = None,
        config: LifecycleConfig | None = None,
        registry: SessionRegistry | None = None,
        policy: ReconnectPolicy | None = None,
        forwarder: InboundForwarder | None = None,
        adapter_factory: AdapterFactory | None = None,
        artifact_encoder: Callable[[str], str] | None = None,
        sleep: SleepFunc | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        """Initialize the lifecycle manager.

        Args:
            library: Protocol library connections are opened with
            credential_store: Store for per-session credential material
            sink: Optional external status sink
            config: Optional configuration
            registry: Registry to track sessions in
            policy: Reconnect policy (built from config if not given)
            forwarder: Optional destination for inbound messages
            adapter_factory: Builds the adapter for a session id
            artifact_encoder: Renders a login artifact for the sink
            sleep: Awaitable sleep used by every timer
            now: Clock used for timestamps
        """
        self.library = library
        self.credential_store = credential_store
        self.sink = sink
        self.config = config or LifecycleConfig()
        self._now = now or datetime.now
        self._sleep = sleep or asyncio.sleep
        self.registry = registry or SessionRegistry(now=self._now)
        self.policy = policy or ReconnectPolicy(self.config.reconnect)
        self.forwarder = forwarder
        self._adapter_factory = adapter_factory or self._default_adapter
        self._encode_artifact = artifact_encoder or encode_artifact

        self._adapters: dict[str, SessionClientAdapter] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._reconnect_timers: dict[str, asyncio.Task[None]] = {}
        self._ready_timers: dict[str, asyncio.Task[None]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _default_adapter(self, session_id: str) -> SessionClientAdapter:
        return SessionClientAdapter(
            session_id,
            self.library,
            self.credential_store,
            options=self.config.connect,
            sleep=self._sleep,
        )

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    # Caller-facing operations

    async def create(self, session_id: str) -> SessionClientAdapter | None:
        """Create (or return) the live connection for a session.

        Args:
            session_id: Caller-assigned session identifier

        Returns:
            The session's adapter, or None if the session has exhausted
            its reconnection attempts

        Raises:
            ClientCreationFailed: If credentials cannot be loaded or the
                library refuses to connect
        """
        async with self._lock_for(session_id):
            session = self.registry.get(session_id)
            if session is not None and session.has_live_connection:
                return session.connection

            orphan = self._adapters.get(session_id)
            if orphan is not None and not orphan.finished:
                self._adopt(session_id, orphan)
                logger.info("Re-registered live connection for session: %s", session_id)
                return orphan

            if session is not None and session.retry_count > self.config.max_attempts:
                logger.error(
                    "Refusing to create session %s: retry count %d exceeds %d",
                    session_id,
                    session.retry_count,
                    self.config.max_attempts,
                )
                self._cancel_timer(self._reconnect_timers, session_id)
                self.registry.upsert(
                    session_id,
                    status=SessionStatus.ERROR,
                    retry_count=0,
                    connection=None,
                )
                await self._write_sink(session_id, SinkStatus.ERROR)
                return None

            self._cancel_timer(self._reconnect_timers, session_id)
            self.registry.upsert(
                session_id,
                status=SessionStatus.INITIALIZING,
                connection=None,
                error_message=None,
            )

            try:
                handle = self.credential_store.load(session_id)
                adapter = self._adapter_factory(session_id)
                await adapter.open(handle)
            except ClientCreationFailed as e:
                await self._record_creation_failure(session_id, e)
                raise
            except Exception as e:
                error = ClientCreationFailed(session_id, f"Failed to create client: {e}")
                await self._record_creation_failure(session_id, error)
                raise error from e

            self.registry.upsert(session_id, credential_handle=handle, connection=adapter)
            self._adapters[session_id] = adapter
            self._tasks[session_id] = asyncio.create_task(self._run_session(session_id, adapter))

            logger.info(
                "Created session: id=%s, new_credentials=%s",
                session_id,
                handle.is_new,
            )
            return adapter

    def get_status(self, session_id: str) -> SessionStatusView | None:
        """Get a read-only status projection for a session."""
        session = self.registry.get(session_id)
        return session.status_view() if session else None

    def get_session(self, session_id: str) -> Session | None:
        return self.registry.get(session_id)

    def list_all(self) -> list[SessionSummary]:
        """List every registered session."""
        return [session.summary() for session in self.registry.list_all()]

    async def send_message(
        self,
        session_id: str,
        recipient: str,
        content: str,
        content_type: MessageContentType | str = MessageContentType.TEXT,
        media_ref: str | None = None,
    ) -> SendResult:
        """Send a message through a connected session.

        Failures are surfaced to the caller and never retried here.

        Args:
            session_id: The session to send through
            recipient: Phone number or protocol address
            content: Message text (caption for media)
            content_type: Kind of content
            media_ref: URL of the media for non-text content

        Returns:
            SendResult for the acknowledged send

        Raises:
            SessionNotReady: If the session is not connected or ready
            SendFailed: If the library rejects the send
            ValueError: If the recipient or content is invalid
        """
        session = self.registry.get(session_id)
        if session is None:
            raise SessionNotReady(session_id)
        if not session.status.can_send or not session.has_live_connection:
            raise SessionNotReady(session_id, session.status.value)

        jid = normalize_recipient(recipient)
        payload = build_message_payload(content, content_type, media_ref)

        try:
            ack = await session.connection.send(jid, payload)
        except NotConnected as e:
            raise SessionNotReady(session_id, session.status.value) from e

        logger.debug("Sent message: session=%s, to=%s", session_id, jid)
        return SendResult(
            session_id=session_id,
            recipient=jid,
            message_id=_extract_message_id(ack),
            sent_at=self._now(),
            ack=ack,
        )

    async def disconnect(self, session_id: str) -> None:
        """Log a session out and delete its credentials.

        Unknown ids are logged and ignored. Every teardown step runs even if
        an earlier one fails.
        """
        self._cancel_timer(self._reconnect_timers, session_id)
        self._cancel_timer(self._ready_timers, session_id)

        async with self._lock_for(session_id):
            session = self.registry.get(session_id)
            adapter = self._adapters.pop(session_id, None)
            if session is None and adapter is None:
                logger.warning("Disconnect requested for unknown session: %s", session_id)
                return

            if session is not None:
                self.registry.upsert(session_id, status=SessionStatus.DISCONNECTED)
                adapter = session.connection or adapter
            await self._write_sink(session_id, SinkStatus.DISCONNECTED)

            if adapter is not None:
                try:
                    await adapter.close()
                except Exception:
                    logger.exception("Error closing connection for session %s", session_id)

            try:
                self.credential_store.delete(session_id)
            except Exception:
                logger.exception("Error deleting credentials for session %s", session_id)

            try:
                self.registry.remove(session_id)
            except Exception:
                logger.exception("Error removing session %s from registry", session_id)

            self._cancel_timer(self._tasks, session_id)

        logger.info("Disconnected session: %s", session_id)

    async def restore_existing(self) -> list[str]:
        """Create a session for every id with stored credentials.

        Returns:
            The ids that were restored
        """
        restored = []
        for session_id in self.credential_store.list_sessions():
            try:
                adapter = await self.create(session_id)
            except ClientCreationFailed as e:
                logger.error("Failed to restore session %s: %s", session_id, e)
                continue
            if adapter is not None:
                restored.append(session_id)

        logger.info("Restored %d session(s)", len(restored))
        return restored

    def get_statistics(self) -> dict[str, Any]:
        """Get overall lifecycle statistics.

        Returns:
            Dictionary with statistics
        """
        sessions = self.registry.list_all()

        by_status: dict[str, int] = {}
        for status in SessionStatus:
            by_status[status.value] = sum(1 for s in sessions if s.status == status)

        return {
            "total_sessions": len(sessions),
            "live_connections": sum(1 for s in sessions if s.has_live_connection),
            "pending_reconnects": sum(1 for t in self._reconnect_timers.values() if not t.done()),
            "by_status": by_status,
        }

    async def shutdown(self) -> None:
        """Stop every session without logging out.

        Connections are ended and credentials kept, so the sessions can be
        restored on the next start.
        """
        logger.info("Shutting down lifecycle manager...")

        for timers in (self._reconnect_timers, self._ready_timers):
            for session_id in list(timers):
                self._cancel_timer(timers, session_id)

        for session_id, adapter in list(self._adapters.items()):
            try:
                await adapter.end()
            except Exception as e:
                logger.error("Error ending connection for session %s: %s", session_id, e)

        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._tasks.clear()
        self._adapters.clear()
        self.registry.clear()
        logger.info("Lifecycle manager shutdown complete")

    # Event processing

    async def _run_session(self, session_id: str, adapter: SessionClientAdapter) -> None:
        """Consume one connection's events until its stream ends.

        Args:
            session_id: The session ID
            adapter: The adapter whose events are consumed
        """
        try:
            async for event in adapter.events():
                try:
                    await self._handle_event(session_id, adapter, event)
                except Exception:
                    logger.exception("Error handling %s event for session %s", event.type, session_id)
        except asyncio.CancelledError:
            logger.debug("Session consumer cancelled: %s", session_id)
            raise
        finally:
            if self._tasks.get(session_id) is asyncio.current_task():
                self._tasks.pop(session_id, None)

    async def _handle_event(
        self,
        session_id: str,
        adapter: SessionClientAdapter,
        event: ClientEvent,
    ) -> None:
        if self._adapters.get(session_id) is not adapter:
            logger.debug("Ignoring %s event from stale connection: %s", event.type, session_id)
            return

        session = self.registry.get(session_id)
        if session is None or session.connection is not adapter:
            # Evicted by the health sweep while the connection stayed up
            session = self._adopt(session_id, adapter)

        if isinstance(event, ArtifactEvent):
            await self._on_artifact(session_id, event)
        elif isinstance(event, StateEvent):
            if event.state == ConnectionState.OPEN:
                await self._on_open(session_id, adapter)
            elif event.state == ConnectionState.CLOSE:
                await self._on_close(session_id, adapter, event)
            else:
                self.registry.upsert(session_id)
        elif isinstance(event, MessageEvent):
            await self._on_message(session_id, event)

    def _adopt(self, session_id: str, adapter: SessionClientAdapter) -> Session:
        """Re-register a live connection whose registry entry was evicted."""
        connected = adapter.connected
        session = self.registry.upsert(
            session_id,
            status=SessionStatus.CONNECTED if connected else SessionStatus.INITIALIZING,
            connection=adapter,
            identity=adapter.identity,
        )
        if connected:
            # Open was already seen, so settle again from here
            self._schedule_settle(session_id, adapter)
        return session

    async def _on_artifact(self, session_id: str, event: ArtifactEvent) -> None:
        self.registry.upsert(
            session_id,
            status=SessionStatus.AWAITING_CREDENTIAL_SCAN,
            pending_artifact=event.artifact,
        )
        logger.info("Session awaiting credential scan: %s", session_id)
        await self._write_sink(session_id, SinkStatus.QR, artifact=event.artifact)

    async def _on_open(self, session_id: str, adapter: SessionClientAdapter) -> None:
        identity = adapter.identity
        self.registry.upsert(
            session_id,
            status=SessionStatus.CONNECTED,
            retry_count=0,
            identity=identity,
            error_message=None,
        )
        logger.info("Session connected: id=%s, identity=%s", session_id, identity)
        await self._write_sink(session_id, SinkStatus.CONNECTED, identity=identity)
        self._schedule_settle(session_id, adapter)

    def _schedule_settle(self, session_id: str, adapter: SessionClientAdapter) -> None:
        self._cancel_timer(self._ready_timers, session_id)
        self._ready_timers[session_id] = asyncio.create_task(self._settle(session_id, adapter))

    async def _settle(self, session_id: str, adapter: SessionClientAdapter) -> None:
        """Promote a connected session to ready after the settle delay."""
        await self._sleep(self.config.settle_delay_seconds)
        if self._ready_timers.get(session_id) is asyncio.current_task():
            self._ready_timers.pop(session_id, None)

        try:
            session = self.registry.get(session_id)
            if (
                session is None
                or session.connection is not adapter
                or session.status != SessionStatus.CONNECTED
            ):
                logger.debug("Skipping ready transition for session %s", session_id)
                return

            self.registry.upsert(session_id, status=SessionStatus.READY)
            logger.info("Session ready: %s", session_id)
            await self._write_sink(session_id, SinkStatus.READY)
        except Exception:
            logger.exception("Error marking session %s ready", session_id)

    async def _on_close(
        self,
        session_id: str,
        adapter: SessionClientAdapter,
        event: StateEvent,
    ) -> None:
        if self._adapters.get(session_id) is adapter:
            self._adapters.pop(session_id, None)
        await self._handle_close(session_id, event.reason or DisconnectReason.UNKNOWN)

    async def _handle_close(self, session_id: str, reason: DisconnectReason) -> None:
        """Apply the reconnect policy to a closed connection."""
        session = self.registry.get(session_id)
        if session is None or session.status == SessionStatus.DISCONNECTED:
            return

        self._cancel_timer(self._ready_timers, session_id)
        decision = self.policy.decide(reason, session.retry_count)

        if decision.retry:
            attempt = session.retry_count + 1
            self.registry.upsert(
                session_id,
                status=SessionStatus.INITIALIZING,
                connection=None,
                retry_count=attempt,
                error_message=f"Connection closed: {reason.value}",
            )
            logger.warning(
                "Session %s closed (%s); reconnecting in %.1fs (attempt %d/%d)",
                session_id,
                reason.value,
                decision.delay_seconds,
                attempt,
                self.config.max_attempts,
            )
            self._cancel_timer(self._reconnect_timers, session_id)
            self._reconnect_timers[session_id] = asyncio.create_task(
                self._reconnect_later(session_id, decision.delay_seconds)
            )
        elif reason == DisconnectReason.LOGGED_OUT:
            await self._on_logged_out(session_id)
        else:
            await self._on_retry_exhausted(session_id, session.retry_count)

    async def _on_logged_out(self, session_id: str) -> None:
        self.registry.upsert(
            session_id,
            status=SessionStatus.LOGGED_OUT,
            connection=None,
            retry_count=0,
        )
        try:
            self.credential_store.delete(session_id)
        except Exception:
            logger.exception("Error deleting credentials for session %s", session_id)

        logger.info("Session logged out: %s", session_id)
        await self._write_sink(session_id, SinkStatus.LOGGED_OUT)

    async def _on_retry_exhausted(self, session_id: str, attempts: int) -> None:
        # Credentials are kept for inspection
        error = RetryExhausted(session_id, attempts)
        logger.error("%s", error)
        self.registry.upsert(
            session_id,
            status=SessionStatus.ERROR,
            connection=None,
            error_message=str(error),
        )
        await self._write_sink(session_id, SinkStatus.ERROR)
        self.registry.remove(session_id)

    async def _reconnect_later(self, session_id: str, delay_seconds: float) -> None:
        """Re-invoke create after the policy delay.

        The timer stays registered until create finishes, so a disconnect
        issued meanwhile can still cancel it.
        """
        try:
            await self._sleep(delay_seconds)

            session = self.registry.get(session_id)
            if session is None or session.status != SessionStatus.INITIALIZING:
                logger.debug("Skipping reconnect for session %s", session_id)
                return

            try:
                await self.create(session_id)
            except ClientCreationFailed as e:
                logger.warning("Reconnect failed for session %s: %s", session_id, e)
                await self._handle_close(session_id, DisconnectReason.UNKNOWN)
            except Exception:
                logger.exception("Unexpected error reconnecting session %s", session_id)
        finally:
            if self._reconnect_timers.get(session_id) is asyncio.current_task():
                self._reconnect_timers.pop(session_id, None)

    async def _on_message(self, session_id: str, event: MessageEvent) -> None:
        self.registry.upsert(session_id)
        payload = event.payload
        if payload is None or payload.from_me:
            return
        if self.forwarder is None:
            return

        key = parse_session_key(session_id)
        try:
            await self.forwarder.forward(session_id, key.location_id, payload)
        except Exception as e:
            logger.error(
                "Failed to forward message: session=%s, from=%s: %s",
                session_id,
                payload.sender,
                e,
            )

    # Helpers

    async def _record_creation_failure(
        self,
        session_id: str,
        error: ClientCreationFailed,
    ) -> None:
        logger.error("%s", error)
        self.registry.upsert(
            session_id,
            status=SessionStatus.ERROR,
            connection=None,
            error_message=str(error),
        )
        if self._reconnect_timers.get(session_id) is asyncio.current_task():
            # The reconnect path records the outcome once the policy has decided
            return
        await self._write_sink(session_id, SinkStatus.ERROR)

    async def _write_sink(
        self,
        session_id: str,
        status: SinkStatus,
        artifact: str | None = None,
        identity: str | None = None,
    ) -> None:
        """Mirror a transition to the status sink; failures are only logged."""
        if self.sink is None:
            return

        external_id = parse_session_key(session_id).external_id
        try:
            encoded = self._encode_artifact(artifact) if artifact else None
            await self.sink.upsert(external_id, SinkUpdate(status, encoded, identity))
        except Exception as e:
            error = e if isinstance(e, SinkWriteFailed) else SinkWriteFailed(str(e))
            logger.error(
                "Status sink write failed: session=%s, status=%s: %s",
                session_id,
                status.value,
                error,
            )

    @staticmethod
    def _cancel_timer(tasks: dict[str, asyncio.Task[None]], session_id: str) -> None:
        task = tasks.get(session_id)
        if task is None or task is asyncio.current_task():
            return
        tasks.pop(session_id, None)
        if not task.done():
            task.cancel()
