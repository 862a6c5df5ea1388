"""Periodic registry hygiene sweep."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from chatbridge.core.registry import SessionRegistry

if TYPE_CHECKING:
    from chatbridge.config import ChatBridgeConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthMonitorConfig:
    """Configuration for the health monitor.

    Attributes:
        interval_seconds: Time between sweeps
        stale_threshold_seconds: Inactivity after which an entry is evicted
    """

    interval_seconds: float = 60.0
    stale_threshold_seconds: float = 600.0

    @classmethod
    def from_config(cls, config: ChatBridgeConfig) -> HealthMonitorConfig:
        return cls(
            interval_seconds=config.health.interval_seconds,
            stale_threshold_seconds=config.health.stale_threshold_seconds,
        )


class HealthMonitor:
    """Evicts registry entries that have been silent for too long.

    Eviction only forgets the entry. The connection is not closed and the
    credentials are not deleted, since a quiet session is not necessarily
    a broken one.

    Usage:
        monitor = HealthMonitor(manager.registry)
        await monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        registry: SessionRegistry,
        config: HealthMonitorConfig | None = None,
        now: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.registry = registry
        self.config = config or HealthMonitorConfig()
        self._now = now or datetime.now
        self._sleep = sleep or asyncio.sleep
        self._task: asyncio.Task[None] | None = None
        self.last_sweep: datetime | None = None
        self.total_evicted = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep(self) -> list[str]:
        """Evict every entry whose last activity is older than the threshold.

        Returns:
            The evicted session ids
        """
        now = self._now()
        threshold = timedelta(seconds=self.config.stale_threshold_seconds)
        evicted = []

        for session in self.registry.list_all():
            if now - session.last_activity > threshold:
                self.registry.remove(session.id)
                evicted.append(session.id)
                logger.info(
                    "Evicted stale session: id=%s, status=%s, idle=%ds",
                    session.id,
                    session.status.value,
                    int((now - session.last_activity).total_seconds()),
                )

        self.last_sweep = now
        self.total_evicted += len(evicted)
        return evicted

    async def start(self) -> None:
        """Start sweeping in the background."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Health monitor started: interval=%ss, threshold=%ss",
            self.config.interval_seconds,
            self.config.stale_threshold_seconds,
        )

    async def stop(self) -> None:
        """Stop sweeping."""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Health monitor stopped")

    async def _loop(self) -> None:
        while True:
            await self._sleep(self.config.interval_seconds)
            try:
                self.sweep()
            except Exception:
                logger.exception("Health sweep failed")
