"""Configuration management for chatbridge.

Handles loading, saving, and validating configuration from TOML files.
Configuration is stored at ~/.chatbridge/config.toml by default.

Example configuration:
    [sessions]
    max_attempts = 5
    settle_delay_seconds = 2.0

    [reconnect]
    base_delay_ms = 10000
    max_delay_ms = 160000

    [connection]
    connect_timeout_seconds = 30
    keep_alive_seconds = 20

    [health]
    interval_seconds = 60
    stale_threshold_seconds = 600

    [storage]
    data_dir = "~/.chatbridge/data"

    [provider]
    name = "loopback"

    [forwarding]
    webhook_url = "https://crm.example.com/whatsapp/webhook"
    token = "env:CHATBRIDGE_WEBHOOK_TOKEN"

    [api]
    host = "127.0.0.1"
    port = 8080

    [logging]
    level = "INFO"
"""

from __future__ import annotations

import os
import sys
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# Python 3.11+ has tomllib in stdlib (read-only); 3.10 uses the tomli backport
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


@dataclass
class SessionsConfig:
    """Configuration for session lifecycle handling."""

    max_attempts: int = 5
    settle_delay_seconds: float = 2.0


@dataclass
class ReconnectSettings:
    """Configuration for reconnection backoff."""

    base_delay_ms: int = 10_000
    max_delay_ms: int = 160_000


@dataclass
class ConnectionConfig:
    """Configuration passed to the protocol library on connect."""

    connect_timeout_seconds: float = 30.0
    keep_alive_seconds: float = 20.0


@dataclass
class HealthConfig:
    """Configuration for the registry health sweep."""

    interval_seconds: float = 60.0
    stale_threshold_seconds: float = 600.0


@dataclass
class StorageConfig:
    """Configuration for on-disk storage."""

    data_dir: str = "~/.chatbridge/data"

    @property
    def data_path(self) -> Path:
        """Get the expanded data directory."""
        return Path(self.data_dir).expanduser()

    @property
    def credentials_path(self) -> Path:
        """Get the directory holding per-session credential directories."""
        return self.data_path / "credentials"

    @property
    def db_path(self) -> Path:
        """Get the full path to the status database."""
        return self.data_path / "chatbridge.db"


@dataclass
class ProviderConfig:
    """Configuration for the protocol library provider."""

    name: str = "loopback"
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class ForwardingConfig:
    """Configuration for forwarding inbound messages to the CRM."""

    webhook_url: str = ""
    token: str | None = None  # Can be "env:VAR_NAME" or a direct token
    timeout_seconds: float = 10.0

    @property
    def enabled(self) -> bool:
        """Check if forwarding is configured."""
        return bool(self.webhook_url)

    def get_token(self) -> str | None:
        """Get the actual token, resolving env: prefix."""
        if not self.token:
            return os.environ.get("CHATBRIDGE_WEBHOOK_TOKEN")
        if self.token.startswith("env:"):
            return os.environ.get(self.token[4:])
        return self.token


@dataclass
class ApiConfig:
    """Configuration for the HTTP surface."""

    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class LoggingConfig:
    """Configuration for log output."""

    level: str = "INFO"


@dataclass
class ChatBridgeConfig:
    """Complete chatbridge configuration."""

    sessions: SessionsConfig = field(default_factory=SessionsConfig)
    reconnect: ReconnectSettings = field(default_factory=ReconnectSettings)
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    forwarding: ForwardingConfig = field(default_factory=ForwardingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ChatBridgeConfig:
        """Create default configuration."""
        return cls()


# Default configuration file paths
DEFAULT_CONFIG_DIR = Path.home() / ".chatbridge"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.toml"


def _parse_sessions_config(data: dict[str, Any]) -> SessionsConfig:
    """Parse sessions configuration from dict."""
    return SessionsConfig(
        max_attempts=data.get("max_attempts", 5),
        settle_delay_seconds=data.get("settle_delay_seconds", 2.0),
    )


def _parse_reconnect_config(data: dict[str, Any]) -> ReconnectSettings:
    """Parse reconnect configuration from dict."""
    return ReconnectSettings(
        base_delay_ms=data.get("base_delay_ms", 10_000),
        max_delay_ms=data.get("max_delay_ms", 160_000),
    )


def _parse_connection_config(data: dict[str, Any]) -> ConnectionConfig:
    """Parse connection configuration from dict."""
    return ConnectionConfig(
        connect_timeout_seconds=data.get("connect_timeout_seconds", 30.0),
        keep_alive_seconds=data.get("keep_alive_seconds", 20.0),
    )


def _parse_health_config(data: dict[str, Any]) -> HealthConfig:
    """Parse health configuration from dict."""
    return HealthConfig(
        interval_seconds=data.get("interval_seconds", 60.0),
        stale_threshold_seconds=data.get("stale_threshold_seconds", 600.0),
    )


def _parse_storage_config(data: dict[str, Any]) -> StorageConfig:
    """Parse storage configuration from dict."""
    return StorageConfig(data_dir=data.get("data_dir", "~/.chatbridge/data"))


def _parse_provider_config(data: dict[str, Any]) -> ProviderConfig:
    """Parse provider configuration from dict."""
    return ProviderConfig(
        name=data.get("name", "loopback"),
        options=dict(data.get("options", {})),
    )


def _parse_forwarding_config(data: dict[str, Any]) -> ForwardingConfig:
    """Parse forwarding configuration from dict."""
    return ForwardingConfig(
        webhook_url=data.get("webhook_url", ""),
        token=data.get("token"),
        timeout_seconds=data.get("timeout_seconds", 10.0),
    )


def _parse_api_config(data: dict[str, Any]) -> ApiConfig:
    """Parse API configuration from dict."""
    return ApiConfig(
        host=data.get("host", "127.0.0.1"),
        port=data.get("port", 8080),
    )


def _parse_logging_config(data: dict[str, Any]) -> LoggingConfig:
    """Parse logging configuration from dict."""
    return LoggingConfig(level=str(data.get("level", "INFO")).upper())


def load_config(config_path: Path | None = None) -> ChatBridgeConfig:
    """Load configuration from TOML file.

    Args:
        config_path: Path to config file. Uses default if not provided.

    Returns:
        Loaded configuration, or default if file doesn't exist.
    """
    path = config_path or DEFAULT_CONFIG_PATH

    if not path.exists():
        return ChatBridgeConfig.default()

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except (tomllib.TOMLDecodeError, OSError) as e:
        warnings.warn(f"Failed to load config from {path}: {e}")
        return ChatBridgeConfig.default()

    return ChatBridgeConfig(
        sessions=_parse_sessions_config(data.get("sessions", {})),
        reconnect=_parse_reconnect_config(data.get("reconnect", {})),
        connection=_parse_connection_config(data.get("connection", {})),
        health=_parse_health_config(data.get("health", {})),
        storage=_parse_storage_config(data.get("storage", {})),
        provider=_parse_provider_config(data.get("provider", {})),
        forwarding=_parse_forwarding_config(data.get("forwarding", {})),
        api=_parse_api_config(data.get("api", {})),
        logging=_parse_logging_config(data.get("logging", {})),
    )


def _format_toml_value(value: Any) -> str:
    """Format a Python value as TOML."""
    if isinstance(value, bool):
        return "true" if value else "false"
    elif isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    elif isinstance(value, (int, float)):
        return str(value)
    elif isinstance(value, list):
        items = [_format_toml_value(item) for item in value]
        return "[" + ", ".join(items) + "]"
    else:
        return f'"{value}"'


def save_config(config: ChatBridgeConfig, config_path: Path | None = None) -> None:
    """Save configuration to TOML file.

    Args:
        config: Configuration to save
        config_path: Path to config file. Uses default if not provided.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)

    lines = [
        "# chatbridge configuration",
        "# Generated by chatbridge config init",
        "",
        "[sessions]",
        f"max_attempts = {config.sessions.max_attempts}",
        f"settle_delay_seconds = {config.sessions.settle_delay_seconds}",
        "",
        "[reconnect]",
        f"base_delay_ms = {config.reconnect.base_delay_ms}",
        f"max_delay_ms = {config.reconnect.max_delay_ms}",
        "",
        "[connection]",
        f"connect_timeout_seconds = {config.connection.connect_timeout_seconds}",
        f"keep_alive_seconds = {config.connection.keep_alive_seconds}",
        "",
        "[health]",
        f"interval_seconds = {config.health.interval_seconds}",
        f"stale_threshold_seconds = {config.health.stale_threshold_seconds}",
        "",
        "[storage]",
        f"data_dir = {_format_toml_value(config.storage.data_dir)}",
        "",
        "[provider]",
        f"name = {_format_toml_value(config.provider.name)}",
    ]

    if config.provider.options:
        lines.extend(["", "[provider.options]"])
        for key, value in config.provider.options.items():
            lines.append(f"{key} = {_format_toml_value(value)}")

    lines.extend(
        [
            "",
            "[forwarding]",
            f"webhook_url = {_format_toml_value(config.forwarding.webhook_url)}",
        ]
    )

    if config.forwarding.token:
        lines.append(f"token = {_format_toml_value(config.forwarding.token)}")
    else:
        lines.append('# token = "env:CHATBRIDGE_WEBHOOK_TOKEN"')

    lines.extend(
        [
            f"timeout_seconds = {config.forwarding.timeout_seconds}",
            "",
            "[api]",
            f"host = {_format_toml_value(config.api.host)}",
            f"port = {config.api.port}",
            "",
            "[logging]",
            f"level = {_format_toml_value(config.logging.level)}",
            "",
        ]
    )

    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines))


def generate_default_config() -> str:
    """Generate default configuration as TOML string.

    Returns:
        Default configuration in TOML format
    """
    return """# chatbridge configuration
# Copy this file to ~/.chatbridge/config.toml and customize

[sessions]
# Reconnection attempts before a session is forced into the error state
max_attempts = 5

# Pause between a connection opening and the session being marked ready
settle_delay_seconds = 2.0

[reconnect]
# Exponential backoff: min(base_delay_ms * 2^attempt, max_delay_ms)
base_delay_ms = 10000
max_delay_ms = 160000

[connection]
# Seconds to wait for the first connection signal before giving up
connect_timeout_seconds = 30

# Keep-alive interval handed to the protocol library
keep_alive_seconds = 20

[health]
# Seconds between registry sweeps
interval_seconds = 60

# Sessions silent for longer than this are evicted from the registry
stale_threshold_seconds = 600

[storage]
# Credentials and the status database live here
data_dir = "~/.chatbridge/data"

[provider]
# Protocol library: "loopback" or an installed chatbridge.providers entry point
name = "loopback"

[forwarding]
# CRM webhook receiving inbound messages (empty disables forwarding)
webhook_url = ""
# token = "env:CHATBRIDGE_WEBHOOK_TOKEN"
timeout_seconds = 10

[api]
host = "127.0.0.1"
port = 8080

[logging]
level = "INFO"
"""


# Global config instance (lazy loaded)
_config: ChatBridgeConfig | None = None


def get_config() -> ChatBridgeConfig:
    """Get the global configuration instance.

    Loads from file on first call, caches thereafter.

    Returns:
        The global configuration
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config(config_path: Path | None = None) -> ChatBridgeConfig:
    """Reload configuration from file.

    Returns:
        The reloaded configuration
    """
    global _config
    _config = load_config(config_path)
    return _config


def set_config(config: ChatBridgeConfig) -> None:
    """Set the global configuration instance.

    Useful for testing or programmatic configuration.

    Args:
        config: Configuration to set
    """
    global _config
    _config = config
