"""Per-session credential storage on the local filesystem."""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from chatbridge.core.identifiers import decode_path_component, encode_path_component
from chatbridge.errors import CredentialLoadFailed

logger = logging.getLogger(__name__)

# Default credentials location
DEFAULT_CREDENTIALS_DIR = Path.home() / ".chatbridge" / "data" / "credentials"


@dataclass
class CredentialHandle:
    """Credential material for one session.

    Attributes:
        session_id: Session that owns this material
        directory: Directory the material is persisted to
        files: Loaded material keyed by file stem (e.g. "creds")
        is_new: True if no material existed when the handle was loaded
    """

    session_id: str
    directory: Path
    files: dict[str, dict[str, Any]] = field(default_factory=dict)
    is_new: bool = True

    @property
    def creds(self) -> dict[str, Any] | None:
        """Get the primary credential record, if any."""
        return self.files.get("creds")


class CredentialStore:
    """Persists and loads per-session authentication material.

    Each session gets its own directory under ``root``, named by a
    reversible encoding of its id; every piece of material is a JSON file
    named after its key.
    """

    def __init__(self, root: Path | None = None):
        """Initialize the credential store.

        Args:
            root: Directory holding one subdirectory per session
        """
        self.root = root or DEFAULT_CREDENTIALS_DIR

    def _get_session_dir(self, session_id: str) -> Path:
        """Get the directory for a session's material."""
        if not session_id:
            raise ValueError("Session id must not be empty")
        return self.root / encode_path_component(session_id)

    def load(self, session_id: str) -> CredentialHandle:
        """Load existing material, or initialize an empty set in place.

        The session directory is created if it does not exist.

        Args:
            session_id: The session ID

        Returns:
            A CredentialHandle for the session

        Raises:
            CredentialLoadFailed: If the directory cannot be created or read
        """
        session_dir = self._get_session_dir(session_id)
        try:
            session_dir.mkdir(parents=True, exist_ok=True)
            files: dict[str, dict[str, Any]] = {}
            for path in sorted(session_dir.glob("*.json")):
                key = decode_path_component(path.stem)
                files[key] = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CredentialLoadFailed(session_id, f"Failed to load credentials: {e}") from e

        handle = CredentialHandle(
            session_id=session_id,
            directory=session_dir,
            files=files,
            is_new=not files,
        )
        logger.debug(
            "Loaded credentials: session=%s, files=%d, new=%s",
            session_id,
            len(files),
            handle.is_new,
        )
        return handle

    def save(self, handle: CredentialHandle, key: str, data: dict[str, Any]) -> Path:
        """Persist one piece of credential material.

        Args:
            handle: The session's credential handle
            key: Name of the material (file stem)
            data: JSON-serializable material

        Returns:
            Path to the written file
        """
        handle.directory.mkdir(parents=True, exist_ok=True)
        target = handle.directory / f"{encode_path_component(key)}.json"

        # Write atomically using a temp file
        temp_path = target.with_suffix(".tmp")
        try:
            temp_path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
            temp_path.replace(target)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise

        handle.files[key] = data
        handle.is_new = False
        logger.debug("Saved credentials: session=%s, key=%s", handle.session_id, key)
        return target

    def delete(self, session_id: str) -> bool:
        """Remove all material for a session.

        Args:
            session_id: The session ID

        Returns:
            True if deleted, False if nothing existed
        """
        session_dir = self._get_session_dir(session_id)
        if not session_dir.exists():
            return False

        shutil.rmtree(session_dir)
        logger.info("Deleted credentials for session: %s", session_id)
        return True

    def has_existing(self, session_id: str) -> bool:
        """Check whether a non-empty credential directory exists."""
        session_dir = self._get_session_dir(session_id)
        return session_dir.is_dir() and any(session_dir.iterdir())

    def list_sessions(self) -> list[str]:
        """List the ids of sessions holding credential material."""
        if not self.root.exists():
            return []
        return sorted(
            decode_path_component(path.name)
            for path in self.root.iterdir()
            if path.is_dir() and any(path.iterdir())
        )
