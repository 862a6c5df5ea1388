"""Unit tests for the status sinks and artifact encoding."""

from __future__ import annotations

import base64
from pathlib import Path

import pytest

from chatbridge.sink.artifact import DATA_URL_PREFIX, build_qr_png, encode_artifact
from chatbridge.sink.base import LoggingStatusSink, SinkStatus, SinkUpdate, StatusSink
from chatbridge.sink.sqlite import SqliteSinkConfig, SqliteStatusSink

from tests.conftest import FakeClock

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


class TestSqliteSinkConfig:
    """Tests for SqliteSinkConfig."""

    def test_default_values(self):
        config = SqliteSinkConfig()
        assert config.busy_timeout == 5000
        assert config.journal_mode == "WAL"
        assert config.db_path.name == "chatbridge.db"

    def test_immutable(self):
        config = SqliteSinkConfig()
        with pytest.raises(AttributeError):
            config.busy_timeout = 1


class TestSqliteStatusSink:
    """Tests for SqliteStatusSink."""

    @pytest.fixture
    def clock(self) -> FakeClock:
        return FakeClock()

    @pytest.fixture
    async def sink(self, tmp_path: Path, clock: FakeClock) -> SqliteStatusSink:
        """Create and initialize a sink."""
        sink = SqliteStatusSink(SqliteSinkConfig(db_path=tmp_path / "status.db"), now=clock)
        await sink.initialize()
        yield sink
        await sink.close()

    @pytest.mark.asyncio
    async def test_initialize_creates_database(self, tmp_path: Path):
        db_path = tmp_path / "nested" / "status.db"
        sink = SqliteStatusSink(SqliteSinkConfig(db_path=db_path))

        await sink.initialize()
        await sink.initialize()
        assert db_path.exists()

        await sink.close()

    @pytest.mark.asyncio
    async def test_operations_without_initialize_fail(self, tmp_path: Path):
        sink = SqliteStatusSink(SqliteSinkConfig(db_path=tmp_path / "status.db"))

        with pytest.raises(RuntimeError, match="not initialized"):
            await sink.get("s1")

    @pytest.mark.asyncio
    async def test_satisfies_protocol(self, sink: SqliteStatusSink):
        assert isinstance(sink, StatusSink)
        assert isinstance(LoggingStatusSink(), StatusSink)

    @pytest.mark.asyncio
    async def test_upsert_inserts_row(self, sink: SqliteStatusSink, clock: FakeClock):
        await sink.upsert("rec-1", SinkUpdate(SinkStatus.QR, artifact="data:image/png;base64,AAA"))

        row = await sink.get("rec-1")
        assert row.status == "qr"
        assert row.qr == "data:image/png;base64,AAA"
        assert row.phone_number is None
        assert row.updated_at == clock.current

    @pytest.mark.asyncio
    async def test_qr_cleared_outside_qr_status(self, sink: SqliteStatusSink):
        await sink.upsert("rec-1", SinkUpdate(SinkStatus.QR, artifact="data:..."))
        await sink.upsert("rec-1", SinkUpdate(SinkStatus.CONNECTED, identity="15550000000"))

        row = await sink.get("rec-1")
        assert row.status == "connected"
        assert row.qr is None
        assert row.phone_number == "15550000000"

    @pytest.mark.asyncio
    async def test_artifact_ignored_for_other_status(self, sink: SqliteStatusSink):
        await sink.upsert("rec-1", SinkUpdate(SinkStatus.READY, artifact="data:..."))
        assert (await sink.get("rec-1")).qr is None

    @pytest.mark.asyncio
    async def test_phone_number_kept(self, sink: SqliteStatusSink):
        await sink.upsert("rec-1", SinkUpdate(SinkStatus.CONNECTED, identity="15550000000"))
        await sink.upsert("rec-1", SinkUpdate(SinkStatus.READY))
        await sink.upsert("rec-1", SinkUpdate(SinkStatus.DISCONNECTED))

        row = await sink.get("rec-1")
        assert row.status == "disconnected"
        assert row.phone_number == "15550000000"

    @pytest.mark.asyncio
    async def test_get_missing(self, sink: SqliteStatusSink):
        assert await sink.get("missing") is None

    @pytest.mark.asyncio
    async def test_list_rows(self, sink: SqliteStatusSink, clock: FakeClock):
        await sink.upsert("a", SinkUpdate(SinkStatus.READY))
        clock.advance(10)
        await sink.upsert("b", SinkUpdate(SinkStatus.ERROR))
        clock.advance(10)
        await sink.upsert("c", SinkUpdate(SinkStatus.READY))

        assert [row.id for row in await sink.list_rows()] == ["c", "b", "a"]
        assert [row.id for row in await sink.list_rows(status="ready")] == ["c", "a"]

        row = (await sink.list_rows(status="error"))[0]
        assert row.to_dict()["updated_at"] == "2024-01-01T12:00:10"

    @pytest.mark.asyncio
    async def test_close_and_reopen(self, tmp_path: Path):
        config = SqliteSinkConfig(db_path=tmp_path / "status.db")

        first = SqliteStatusSink(config)
        await first.initialize()
        await first.upsert("rec-1", SinkUpdate(SinkStatus.LOGGED_OUT))
        await first.close()

        second = SqliteStatusSink(config)
        await second.initialize()
        row = await second.get("rec-1")
        await second.close()

        assert row.status == "logged_out"


class TestArtifactEncoding:
    """Tests for QR artifact rendering."""

    def test_build_png(self):
        assert build_qr_png("2@abc,def,ghi").startswith(PNG_SIGNATURE)

    def test_encode_data_url(self):
        encoded = encode_artifact("2@abc,def,ghi")

        assert encoded.startswith(DATA_URL_PREFIX)
        raw = base64.b64decode(encoded[len(DATA_URL_PREFIX):])
        assert raw.startswith(PNG_SIGNATURE)

    def test_empty_artifact_rejected(self):
        with pytest.raises(ValueError):
            encode_artifact("")
