"""SQLite status sink.

Keeps the externally visible projection of session status in a ``sessions``
table that callers (the HTTP layer, dashboards, the CLI) poll. The in-memory
registry stays authoritative; this table may lag behind it.

The database is stored at ~/.chatbridge/data/chatbridge.db by default.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import aiosqlite

from chatbridge.errors import SinkWriteFailed
from chatbridge.sink.base import SinkStatus, SinkUpdate

logger = logging.getLogger(__name__)

# Default database location
DEFAULT_DB_PATH = Path.home() / ".chatbridge" / "data" / "chatbridge.db"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    qr TEXT,
    phone_number TEXT,
    updated_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);
"""

UPSERT_SQL = """
INSERT INTO sessions (id, status, qr, phone_number, updated_at)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    status = excluded.status,
    qr = excluded.qr,
    phone_number = COALESCE(excluded.phone_number, sessions.phone_number),
    updated_at = excluded.updated_at
"""


@dataclass(frozen=True)
class SqliteSinkConfig:
    """Configuration for the SQLite status sink.

    Attributes:
        db_path: Path to the SQLite database file
        busy_timeout: Timeout in milliseconds for busy connections
        journal_mode: SQLite journal mode (WAL recommended)
    """

    db_path: Path = DEFAULT_DB_PATH
    busy_timeout: int = 5000
    journal_mode: str = "WAL"


@dataclass(frozen=True)
class SinkRow:
    """A session status row as stored in the sink."""

    id: str
    status: str
    qr: str | None
    phone_number: str | None
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "qr": self.qr,
            "phone_number": self.phone_number,
            "updated_at": self.updated_at.isoformat(),
        }


class SqliteStatusSink:
    """aiosqlite-backed status sink.

    Usage:
        sink = SqliteStatusSink(SqliteSinkConfig(db_path=path))
        await sink.initialize()

        await sink.upsert("record-1", SinkUpdate(SinkStatus.CONNECTED, identity="1555..."))
        row = await sink.get("record-1")

        await sink.close()
    """

    def __init__(
        self,
        config: SqliteSinkConfig | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        """Initialize the sink.

        Args:
            config: Optional configuration. Uses defaults if not provided.
            now: Clock used for updated_at
        """
        self.config = config or SqliteSinkConfig()
        self._now = now or datetime.now
        self._connection: aiosqlite.Connection | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """Open the database and apply the schema."""
        if self._initialized:
            return

        self.config.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(
            self.config.db_path,
            timeout=self.config.busy_timeout / 1000.0,
        )
        await self._connection.execute(f"PRAGMA journal_mode={self.config.journal_mode}")
        await self._connection.execute(f"PRAGMA busy_timeout={self.config.busy_timeout}")
        self._connection.row_factory = aiosqlite.Row

        await self._connection.executescript(SCHEMA_SQL)
        await self._connection.commit()
        self._initialized = True

        logger.info("Status sink initialized: %s", self.config.db_path)

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            self._initialized = False
            logger.info("Status sink closed")

    def _require_connection(self) -> aiosqlite.Connection:
        if not self._initialized or self._connection is None:
            raise RuntimeError("Status sink not initialized. Call initialize() first.")
        return self._connection

    async def upsert(self, external_id: str, update: SinkUpdate) -> None:
        """Write a status row.

        The qr column only holds a value while status is qr; the phone number
        is kept once written.

        Raises:
            SinkWriteFailed: If the database rejects the write
        """
        connection = self._require_connection()
        qr = update.artifact if update.status == SinkStatus.QR else None
        try:
            await connection.execute(
                UPSERT_SQL,
                (
                    external_id,
                    update.status.value,
                    qr,
                    update.identity,
                    self._now().isoformat(),
                ),
            )
            await connection.commit()
        except aiosqlite.Error as e:
            raise SinkWriteFailed(f"Failed to write status for {external_id}: {e}") from e

    async def get(self, external_id: str) -> SinkRow | None:
        connection = self._require_connection()
        async with connection.execute(
            "SELECT * FROM sessions WHERE id = ?", (external_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_sink_row(row) if row else None

    async def list_rows(self, status: str | None = None) -> list[SinkRow]:
        """List status rows, most recently updated first.

        Args:
            status: Only return rows with this status
        """
        connection = self._require_connection()
        query = "SELECT * FROM sessions"
        params: tuple[Any, ...] = ()
        if status:
            query += " WHERE status = ?"
            params = (status,)
        query += " ORDER BY updated_at DESC"

        async with connection.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_sink_row(row) for row in rows]

    def _row_to_sink_row(self, row) -> SinkRow:
        return SinkRow(
            id=row["id"],
            status=row["status"],
            qr=row["qr"],
            phone_number=row["phone_number"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
