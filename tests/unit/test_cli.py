"""Unit tests for CLI commands."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from typer.testing import CliRunner

from chatbridge import __version__
from chatbridge.cli import _format_status, app
from chatbridge.core.credentials import CredentialStore
from chatbridge.sink.base import SinkStatus, SinkUpdate
from chatbridge.sink.sqlite import SqliteSinkConfig, SqliteStatusSink

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """A config file whose data directory lives under tmp_path."""
    path = tmp_path / "config.toml"
    path.write_text(f'[storage]\ndata_dir = "{(tmp_path / "data").as_posix()}"\n')
    return path


class TestFormatStatus:
    """Tests for _format_status."""

    def test_known_statuses(self):
        assert "Ready" in _format_status("ready")
        assert "Awaiting scan" in _format_status("qr")
        assert "[red]" in _format_status("error")

    def test_unknown_status_passthrough(self):
        assert _format_status("weird") == "weird"


class TestBasicCommands:
    """Tests for version and help."""

    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "serve" in result.output


class TestConfigCommands:
    """Tests for the config command group."""

    def test_init_writes_file(self, tmp_path: Path):
        path = tmp_path / "nested" / "config.toml"

        result = runner.invoke(app, ["--config", str(path), "config", "init"])

        assert result.exit_code == 0
        assert path.exists()
        assert "[sessions]" in path.read_text()

    def test_init_keeps_existing(self, config_file: Path):
        before = config_file.read_text()

        result = runner.invoke(app, ["--config", str(config_file), "config", "init"])

        assert result.exit_code == 0
        assert "already exists" in result.output
        assert config_file.read_text() == before

    def test_init_force(self, config_file: Path):
        result = runner.invoke(app, ["--config", str(config_file), "config", "init", "--force"])

        assert result.exit_code == 0
        assert "[reconnect]" in config_file.read_text()

    def test_show(self, config_file: Path):
        result = runner.invoke(app, ["--config", str(config_file), "config", "show"])

        assert result.exit_code == 0
        assert "Max attempts: 5" in result.output
        assert "exists" in result.output


class TestCredentialsCommands:
    """Tests for the credentials command group."""

    def _store(self, tmp_path: Path) -> CredentialStore:
        return CredentialStore(tmp_path / "data" / "credentials")

    def test_list_empty(self, config_file: Path):
        result = runner.invoke(app, ["--config", str(config_file), "credentials", "list"])
        assert result.exit_code == 0
        assert "No stored credentials" in result.output

    def test_list(self, config_file: Path, tmp_path: Path):
        store = self._store(tmp_path)
        store.save(store.load("tenant-1"), "creds", {"registered": True})

        result = runner.invoke(app, ["--config", str(config_file), "credentials", "list"])

        assert result.exit_code == 0
        assert "tenant-1" in result.output

    def test_purge(self, config_file: Path, tmp_path: Path):
        store = self._store(tmp_path)
        store.save(store.load("tenant-1"), "creds", {"registered": True})

        result = runner.invoke(
            app, ["--config", str(config_file), "credentials", "purge", "tenant-1", "--force"]
        )

        assert result.exit_code == 0
        assert store.has_existing("tenant-1") is False

    def test_purge_cancelled(self, config_file: Path, tmp_path: Path):
        store = self._store(tmp_path)
        store.save(store.load("tenant-1"), "creds", {"registered": True})

        result = runner.invoke(
            app,
            ["--config", str(config_file), "credentials", "purge", "tenant-1"],
            input="n\n",
        )

        assert result.exit_code == 0
        assert store.has_existing("tenant-1") is True

    def test_purge_unknown(self, config_file: Path):
        result = runner.invoke(
            app, ["--config", str(config_file), "credentials", "purge", "missing", "--force"]
        )
        assert result.exit_code == 1


class TestSessionsCommand:
    """Tests for the sessions command."""

    def test_no_database(self, config_file: Path):
        result = runner.invoke(app, ["--config", str(config_file), "sessions"])
        assert result.exit_code == 0
        assert "No status database" in result.output

    def test_lists_rows(self, config_file: Path, tmp_path: Path):
        async def seed() -> None:
            sink = SqliteStatusSink(SqliteSinkConfig(db_path=tmp_path / "data" / "chatbridge.db"))
            await sink.initialize()
            await sink.upsert("rec-1", SinkUpdate(SinkStatus.READY, identity="15550000000"))
            await sink.upsert("rec-2", SinkUpdate(SinkStatus.ERROR))
            await sink.close()

        asyncio.run(seed())

        result = runner.invoke(app, ["--config", str(config_file), "sessions", "-s", "ready"])

        assert result.exit_code == 0
        assert "rec-1" in result.output
        assert "rec-2" not in result.output
