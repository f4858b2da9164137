"""Idle reaper — evicts half-open connections and collects empty channels.

Learn: A transport can die without a clean close (phone goes through a
tunnel, NAT entry expires). Nothing would ever write to it again, so
nothing would ever notice. The reaper polls the registry every N seconds:

  idle longer than idle_timeout        → deregister
  draining longer than drain_grace     → deregister
  empty channel quiet past retention   → garbage-collect

This runs as a background task in the service, alongside the dispatcher.
"""

import asyncio
from dataclasses import dataclass, field

import structlog

from chatcast.broadcast.registry import ConnectionRegistry

logger = structlog.get_logger()


@dataclass
class SweepResult:
    evicted: list[str] = field(default_factory=list)
    collected: list[str] = field(default_factory=list)


class IdleReaper:
    """Background sweeper for the connection registry."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        poll_interval: float = 15.0,
        idle_timeout: float = 300.0,
        drain_grace: float = 30.0,
        channel_retention: float = 60.0,
    ):
        self.registry = registry
        self.poll_interval = poll_interval
        self.idle_timeout = idle_timeout
        self.drain_grace = drain_grace
        self.channel_retention = channel_retention
        self._running = False

    def sweep(self) -> SweepResult:
        """Run one pass. Safe to call directly (tests, shutdown)."""
        result = SweepResult()
        for connection_id in self.registry.find_stale(
            self.idle_timeout, self.drain_grace
        ):
            if self.registry.deregister(connection_id):
                result.evicted.append(connection_id)

        result.collected = self.registry.collect_empty_channels(self.channel_retention)

        if result.evicted:
            logger.info(
                "broadcast.reaper_evicted",
                count=len(result.evicted),
                connection_ids=result.evicted,
            )
        return result

    async def run_loop(self) -> None:
        """Sweep every poll_interval seconds until stopped."""
        self._running = True
        logger.info("broadcast.reaper_started", interval=self.poll_interval)
        while self._running:
            try:
                await asyncio.sleep(self.poll_interval)
                if not self._running:
                    break
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("broadcast.reaper_sweep_failed")
                await asyncio.sleep(1)

    def stop(self) -> None:
        self._running = False
