"""Unit tests for credential storage."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from chatbridge.core.credentials import CredentialStore
from chatbridge.errors import ClientCreationFailed, CredentialLoadFailed


class TestCredentialStoreLoad:
    """Tests for CredentialStore.load."""

    def test_load_creates_directory(self, tmp_path: Path):
        """Loading an unknown session initializes empty material in place."""
        store = CredentialStore(tmp_path)
        handle = store.load("s1")

        assert handle.is_new is True
        assert handle.files == {}
        assert handle.creds is None
        assert (tmp_path / "s1").is_dir()
        assert store.has_existing("s1") is False

    def test_load_existing_material(self, tmp_path: Path):
        """Existing JSON files are loaded keyed by stem."""
        session_dir = tmp_path / "s1"
        session_dir.mkdir()
        (session_dir / "creds.json").write_text(json.dumps({"me": {"id": "1555@s.whatsapp.net"}}))
        (session_dir / "pre-key-1.json").write_text(json.dumps({"key": "abc"}))

        handle = CredentialStore(tmp_path).load("s1")

        assert handle.is_new is False
        assert handle.creds == {"me": {"id": "1555@s.whatsapp.net"}}
        assert handle.files["pre-key-1"] == {"key": "abc"}

    def test_corrupt_material_raises(self, tmp_path: Path):
        """Unreadable material fails creation for that session."""
        session_dir = tmp_path / "s1"
        session_dir.mkdir()
        (session_dir / "creds.json").write_text("{not json")

        with pytest.raises(CredentialLoadFailed) as exc_info:
            CredentialStore(tmp_path).load("s1")
        assert isinstance(exc_info.value, ClientCreationFailed)
        assert exc_info.value.session_id == "s1"

    def test_unusable_root_raises(self, tmp_path: Path):
        """A root that is not a directory fails with CredentialLoadFailed."""
        root = tmp_path / "not-a-dir"
        root.write_text("")

        with pytest.raises(CredentialLoadFailed):
            CredentialStore(root).load("s1")

    def test_unsafe_id_stays_inside_root(self, tmp_path: Path):
        """Path separators in ids cannot escape the root."""
        store = CredentialStore(tmp_path / "root")
        handle = store.load("../escape")
        assert handle.directory.parent == tmp_path / "root"


class TestCredentialStoreSave:
    """Tests for CredentialStore.save."""

    def test_save_persists_and_updates_handle(self, tmp_path: Path):
        store = CredentialStore(tmp_path)
        handle = store.load("s1")

        path = store.save(handle, "creds", {"registered": True})

        assert path == tmp_path / "s1" / "creds.json"
        assert json.loads(path.read_text()) == {"registered": True}
        assert handle.creds == {"registered": True}
        assert handle.is_new is False
        assert store.has_existing("s1") is True
        assert not list((tmp_path / "s1").glob("*.tmp"))

    def test_save_overwrites(self, tmp_path: Path):
        """Rotated material replaces the previous file."""
        store = CredentialStore(tmp_path)
        handle = store.load("s1")
        store.save(handle, "creds", {"version": 1})
        store.save(handle, "creds", {"version": 2})

        assert store.load("s1").creds == {"version": 2}


class TestCredentialStoreDelete:
    """Tests for delete, has_existing and list_sessions."""

    def test_delete_removes_directory(self, tmp_path: Path):
        store = CredentialStore(tmp_path)
        store.save(store.load("s1"), "creds", {"a": 1})

        assert store.delete("s1") is True
        assert not (tmp_path / "s1").exists()
        assert store.has_existing("s1") is False

    def test_delete_is_idempotent(self, tmp_path: Path):
        store = CredentialStore(tmp_path)
        assert store.delete("missing") is False
        assert store.delete("missing") is False

    def test_list_sessions_skips_empty(self, tmp_path: Path):
        store = CredentialStore(tmp_path)
        store.save(store.load("b"), "creds", {})
        store.save(store.load("a"), "creds", {})
        store.load("empty")

        assert store.list_sessions() == ["a", "b"]

    def test_list_sessions_missing_root(self, tmp_path: Path):
        assert CredentialStore(tmp_path / "nope").list_sessions() == []


class TestCredentialStoreIsolation:
    """Each session id owns its own directory."""

    def test_similar_ids_do_not_share_material(self, tmp_path: Path):
        store = CredentialStore(tmp_path)
        store.save(store.load("tenant.a"), "creds", {"owner": "tenant.a"})

        other = store.load("tenant_a")

        assert other.is_new is True
        assert other.directory != store.load("tenant.a").directory

        store.delete("tenant_a")
        assert store.load("tenant.a").creds == {"owner": "tenant.a"}

    def test_list_sessions_returns_real_ids(self, tmp_path: Path):
        store = CredentialStore(tmp_path)
        for session_id in ("tenant.a", "tenant_a", "location_loc1_rec/1"):
            store.save(store.load(session_id), "creds", {})

        assert store.list_sessions() == ["location_loc1_rec/1", "tenant.a", "tenant_a"]

    @pytest.mark.parametrize("session_id", [".", ".."])
    def test_dot_ids_stay_inside_root(self, tmp_path: Path, session_id: str):
        store = CredentialStore(tmp_path / "root")
        handle = store.load(session_id)

        assert handle.directory.parent == tmp_path / "root"
        assert store.list_sessions() == []

    def test_empty_id_rejected(self, tmp_path: Path):
        with pytest.raises(ValueError):
            CredentialStore(tmp_path).load("")
