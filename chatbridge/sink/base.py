"""Status sink interface."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class SinkStatus(Enum):
    """Session status values written to the sink."""

    QR = "qr"
    CONNECTED = "connected"
    READY = "ready"
    DISCONNECTED = "disconnected"
    LOGGED_OUT = "logged_out"
    ERROR = "error"


@dataclass(frozen=True)
class SinkUpdate:
    """One status write.

    Attributes:
        status: New status
        artifact: Encoded login artifact (only with status=qr)
        identity: Account identifier of the connected user
    """

    status: SinkStatus
    artifact: str | None = None
    identity: str | None = None


@runtime_checkable
class StatusSink(Protocol):
    """External projection of session status, keyed by external id."""

    async def upsert(self, external_id: str, update: SinkUpdate) -> None: ...


class LoggingStatusSink:
    """Sink that only logs writes, for runs without a database."""

    async def upsert(self, external_id: str, update: SinkUpdate) -> None:
        logger.info(
            "Status sink: id=%s, status=%s, identity=%s, artifact=%s",
            external_id,
            update.status.value,
            update.identity,
            "yes" if update.artifact else "no",
        )
