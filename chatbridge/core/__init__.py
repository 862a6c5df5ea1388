"""Core session lifecycle components."""

from chatbridge.core.credentials import CredentialHandle, CredentialStore
from chatbridge.core.health import HealthMonitor, HealthMonitorConfig
from chatbridge.core.identifiers import (
    SessionKey,
    decode_path_component,
    encode_path_component,
    extract_identity,
    normalize_recipient,
    parse_session_key,
)
from chatbridge.core.reconnect import ReconnectConfig, ReconnectDecision, ReconnectPolicy
from chatbridge.core.registry import (
    Session,
    SessionRegistry,
    SessionStatus,
    SessionStatusView,
    SessionSummary,
)

__all__ = [
    # Credentials
    "CredentialHandle",
    "CredentialStore",
    # Health
    "HealthMonitor",
    "HealthMonitorConfig",
    # Identifiers
    "SessionKey",
    "extract_identity",
    "normalize_recipient",
    "parse_session_key",
    "encode_path_component",
    "decode_path_component",
    # Reconnect
    "ReconnectConfig",
    "ReconnectDecision",
    "ReconnectPolicy",
    # Registry
    "Session",
    "SessionRegistry",
    "SessionStatus",
    "SessionStatusView",
    "SessionSummary",
]
