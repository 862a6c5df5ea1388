"""In-memory session registry."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from chatbridge.client.adapter import SessionClientAdapter
    from chatbridge.core.credentials import CredentialHandle

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class SessionStatus(Enum):
    """Lifecycle status of a session."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    AWAITING_CREDENTIAL_SCAN = "awaiting_credential_scan"
    CONNECTED = "connected"
    READY = "ready"
    DISCONNECTED = "disconnected"
    LOGGED_OUT = "logged_out"
    ERROR = "error"

    @property
    def can_send(self) -> bool:
        """Check if messages may be sent in this status."""
        return self in (SessionStatus.CONNECTED, SessionStatus.READY)

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.DISCONNECTED, SessionStatus.LOGGED_OUT, SessionStatus.ERROR)


@dataclass
class Session:
    """A tenant's logical connection to the messaging network.

    Attributes:
        id: Caller-assigned unique identifier
        status: Current lifecycle status
        credential_handle: Credential material owned by this session
        connection: The live adapter, if any
        retry_count: Reconnection attempts since the last successful open
        last_activity: When the session last saw an event or update
        pending_artifact: Login artifact awaiting a scan
        identity: Account identifier of the connected user
        created_at: When the session entered the registry
        error_message: Reason for the last failure, if any
    """

    id: str
    status: SessionStatus = SessionStatus.UNINITIALIZED
    credential_handle: CredentialHandle | None = None
    connection: SessionClientAdapter | None = None
    retry_count: int = 0
    last_activity: datetime = field(default_factory=datetime.now)
    pending_artifact: str | None = None
    identity: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    error_message: str | None = None

    def with_update(self, **kwargs: Any) -> Session:
        """Create a new session with updated fields (immutability pattern).

        Args:
            **kwargs: Fields to update

        Returns:
            A new Session with the updates applied
        """
        return dataclasses.replace(self, **kwargs)

    @property
    def has_live_connection(self) -> bool:
        """Check if the session holds a connection that has not ended."""
        return self.connection is not None and not self.connection.finished

    def status_view(self) -> SessionStatusView:
        return SessionStatusView(
            status=self.status,
            has_artifact=self.pending_artifact is not None,
            retry_count=self.retry_count,
            last_activity=self.last_activity,
        )

    def summary(self) -> SessionSummary:
        return SessionSummary(
            id=self.id,
            status=self.status,
            retry_count=self.retry_count,
            last_activity=self.last_activity,
            identity=self.identity,
            connected=self.has_live_connection,
        )


@dataclass(frozen=True)
class SessionStatusView:
    """Read-only status projection used by polling callers."""

    status: SessionStatus
    has_artifact: bool
    retry_count: int
    last_activity: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "has_artifact": self.has_artifact,
            "retry_count": self.retry_count,
            "last_activity": self.last_activity.isoformat(),
        }


@dataclass(frozen=True)
class SessionSummary:
    """One row of a session listing."""

    id: str
    status: SessionStatus
    retry_count: int
    last_activity: datetime
    identity: str | None = None
    connected: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_activity": self.last_activity.isoformat(),
            "identity": self.identity,
            "connected": self.connected,
        }


class SessionRegistry:
    """Maps session ids to their current Session record.

    Records are replaced, never edited in place, so a snapshot returned by
    ``list_all`` or ``get`` never changes underneath the reader. All writes
    come from the lifecycle manager's per-session event path and the
    health sweep; the registry itself does no locking.
    """

    def __init__(self, now: Clock | None = None):
        """Initialize the registry.

        Args:
            now: Clock used to stamp last_activity
        """
        self._now = now or datetime.now
        self._sessions: dict[str, Session] = {}

    def upsert(self, session_id: str, **patch: Any) -> Session:
        """Merge a partial update into a session, creating it if absent.

        ``last_activity`` is always refreshed, and a pending artifact is
        dropped whenever the resulting status is not awaiting a scan.

        Args:
            session_id: The session ID
            **patch: Session fields to change

        Returns:
            The stored Session
        """
        now = self._now()
        patch["last_activity"] = now

        current = self._sessions.get(session_id)
        if current is None:
            patch.setdefault("created_at", now)
            session = Session(id=session_id, **patch)
        else:
            session = current.with_update(**patch)

        if session.status != SessionStatus.AWAITING_CREDENTIAL_SCAN and session.pending_artifact:
            session = session.with_update(pending_artifact=None)

        self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Session | None:
        """Remove a session.

        Returns:
            The removed Session, or None if it was not registered
        """
        session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.debug("Removed session from registry: %s", session_id)
        return session

    def list_all(self) -> list[Session]:
        """Get a snapshot of every session."""
        return list(self._sessions.values())

    def clear(self) -> None:
        self._sessions.clear()

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
