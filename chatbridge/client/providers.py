"""Protocol library factory.

This module creates the protocol library a session manager connects with,
based on the ``[provider]`` section of the chatbridge configuration.

The built-in "loopback" provider runs entirely in-process. Real network
libraries are plugged in through the ``chatbridge.providers`` entry-point
group: each entry point names a callable that takes the provider options
as keyword arguments and returns a ProtocolLibrary.

Usage:
    from chatbridge.client.providers import create_library
    from chatbridge.config import get_config

    config = get_config()
    library = create_library(config.provider)
"""

from __future__ import annotations

import logging
from importlib.metadata import entry_points
from typing import TYPE_CHECKING, Any

from chatbridge.client.loopback import LoopbackLibrary
from chatbridge.client.types import ProtocolLibrary
from chatbridge.errors import ProviderNotFound

if TYPE_CHECKING:
    from chatbridge.config import ProviderConfig

logger = logging.getLogger(__name__)

PROVIDER_GROUP = "chatbridge.providers"
BUILTIN_PROVIDERS = ("loopback",)


def create_library(provider_config: ProviderConfig) -> ProtocolLibrary:
    """Create a protocol library instance based on configuration.

    Args:
        provider_config: Provider configuration from chatbridge config

    Returns:
        Configured ProtocolLibrary instance

    Raises:
        ProviderNotFound: If no provider is registered under the configured name
    """
    name = provider_config.name.strip().lower()
    options = dict(provider_config.options)

    if name == "loopback":
        return _create_loopback_library(options)

    for entry_point in entry_points(group=PROVIDER_GROUP):
        if entry_point.name == name:
            factory = entry_point.load()
            logger.info("Using protocol provider %s (%s)", name, entry_point.value)
            return factory(**options)

    raise ProviderNotFound(
        f"Unknown provider: {provider_config.name}. "
        f"Available: {', '.join(list_providers())}"
    )


def _create_loopback_library(options: dict[str, Any]) -> LoopbackLibrary:
    """Create the in-process loopback library."""
    return LoopbackLibrary(
        auto_pair=bool(options.get("auto_pair", True)),
        user_id=str(options.get("user_id", "15550000000:1@s.whatsapp.net")),
    )


def list_providers() -> list[str]:
    """List built-in and installed provider names."""
    names = list(BUILTIN_PROVIDERS)
    for entry_point in entry_points(group=PROVIDER_GROUP):
        if entry_point.name not in names:
            names.append(entry_point.name)
    return names
