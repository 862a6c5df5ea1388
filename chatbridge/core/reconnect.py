"""Reconnection policy for dropped sessions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from chatbridge.client.types import DisconnectReason

if TYPE_CHECKING:
    from chatbridge.config import ChatBridgeConfig


@dataclass(frozen=True)
class ReconnectConfig:
    """Configuration for reconnection backoff.

    Attributes:
        max_attempts: Attempts allowed before a session is given up on
        base_delay_ms: Delay before the first reconnection attempt
        max_delay_ms: Upper bound on any single delay
    """

    max_attempts: int = 5
    base_delay_ms: int = 10_000
    max_delay_ms: int = 160_000

    @classmethod
    def from_config(cls, config: ChatBridgeConfig) -> ReconnectConfig:
        """Build from the sessions and reconnect sections of the file config."""
        return cls(
            max_attempts=config.sessions.max_attempts,
            base_delay_ms=config.reconnect.base_delay_ms,
            max_delay_ms=config.reconnect.max_delay_ms,
        )


@dataclass(frozen=True)
class ReconnectDecision:
    """Outcome of a reconnection decision.

    Attributes:
        retry: Whether to attempt another connection
        delay_ms: How long to wait before that attempt (0 when not retrying)
    """

    retry: bool
    delay_ms: int = 0

    @property
    def delay_seconds(self) -> float:
        return self.delay_ms / 1000


class ReconnectPolicy:
    """Maps (disconnect reason, attempt count) to a retry decision.

    The policy holds no state; the attempt count is owned by the session.
    """

    def __init__(self, config: ReconnectConfig | None = None):
        self.config = config or ReconnectConfig()

    def decide(self, reason: DisconnectReason | None, attempt: int) -> ReconnectDecision:
        """Decide whether and when to reconnect.

        Args:
            reason: Why the connection closed
            attempt: Reconnection attempts already made for this session

        Returns:
            A ReconnectDecision
        """
        if reason == DisconnectReason.LOGGED_OUT:
            return ReconnectDecision(retry=False)
        if attempt >= self.config.max_attempts:
            return ReconnectDecision(retry=False)
        return ReconnectDecision(retry=True, delay_ms=self.calculate_delay_ms(attempt))

    def calculate_delay_ms(self, attempt: int) -> int:
        """Exponential backoff: base * 2^attempt, capped at the maximum."""
        # Cap the exponent so huge attempt counts never build huge integers
        exponent = min(max(attempt, 0), 32)
        return min(self.config.base_delay_ms * (2**exponent), self.config.max_delay_ms)
