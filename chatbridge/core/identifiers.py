"""Session keys, account identities and recipient addresses."""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import quote, unquote

USER_SERVER = "s.whatsapp.net"

# location_<locationId>_<recordId>, as minted by the HTTP layer
_SESSION_KEY_RE = re.compile(r"^location_(?P<location>[A-Za-z0-9-]+)_(?P<record>[A-Za-z0-9_-]+)$")
_NON_DIGITS_RE = re.compile(r"\D")


@dataclass(frozen=True)
class SessionKey:
    """A parsed session identifier.

    Attributes:
        session_id: The identifier as passed to the manager
        external_id: Key used for the status sink
        location_id: CRM location the session belongs to, if encoded in the id
    """

    session_id: str
    external_id: str
    location_id: str | None = None


def parse_session_key(session_id: str) -> SessionKey:
    """Split a session id into its status-sink key and CRM location."""
    match = _SESSION_KEY_RE.match(session_id)
    if not match:
        return SessionKey(session_id=session_id, external_id=session_id)
    return SessionKey(
        session_id=session_id,
        external_id=match.group("record"),
        location_id=match.group("location"),
    )


def encode_path_component(value: str) -> str:
    """Encode a session id or key as a single, reversible path component.

    "tenant.a" -> "tenant%2Ea", "../x" -> "%2E%2E%2Fx"
    """
    return quote(value, safe="").replace(".", "%2E")


def decode_path_component(name: str) -> str:
    """Recover the value encoded by encode_path_component."""
    return unquote(name)


def extract_identity(user_id: str | None) -> str | None:
    """Extract the account's phone number from a protocol user id.

    "15551234567:12@s.whatsapp.net" -> "15551234567"
    """
    if not user_id:
        return None
    identity = user_id.split("@", 1)[0].split(":", 1)[0]
    return identity or None


def normalize_recipient(recipient: str) -> str:
    """Turn a phone number or address into a protocol address.

    Raises:
        ValueError: If no address can be built from the input
    """
    recipient = recipient.strip()
    if "@" in recipient:
        return recipient
    digits = _NON_DIGITS_RE.sub("", recipient)
    if not digits:
        raise ValueError(f"Invalid recipient: {recipient!r}")
    return f"{digits}@{USER_SERVER}"
