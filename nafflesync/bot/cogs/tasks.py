"""
nafflesync.bot.cogs.tasks — Periodic Background Tasks
======================================================

Scheduled jobs that run on ``discord.ext.tasks`` loops:

- **Pending sync** — every 5 s, runs up to ``pick_batch`` ready operations.
- **Batch drain** — every 10 s, merges and applies queued batches.
- **Cleanup** — every 60 s, drops stale operations and expired cooldowns,
  and prunes policy quotas, anomaly windows and peer rate buckets.
- **Monitor** — every 30 s, samples the engine and raises alerts.

Intervals come from the config and are applied in ``cog_load``.  Each loop
body logs its own failures so one bad tick never stops the loop.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from discord.ext import commands, tasks

from nafflesync import constants as C

if TYPE_CHECKING:
    from nafflesync.bot.core import NaffleSyncBot

logger = logging.getLogger(__name__)


class PeriodicTasks(commands.Cog):
    """Cog that drives the sync engine and monitor."""

    def __init__(self, bot: NaffleSyncBot) -> None:
        self.bot = bot

    def _loops(self) -> list[tasks.Loop]:
        return [self.pending_loop, self.batch_loop, self.cleanup_loop, self.monitor_loop]

    async def cog_load(self) -> None:
        """Apply configured intervals and start the loops."""
        sync = self.bot.cfg.sync
        self.pending_loop.change_interval(seconds=sync.process_interval)
        self.batch_loop.change_interval(seconds=sync.batch_interval)
        self.cleanup_loop.change_interval(seconds=sync.cleanup_interval)
        self.monitor_loop.change_interval(seconds=self.bot.cfg.monitor.interval)
        for loop in self._loops():
            loop.start()

    async def cog_unload(self) -> None:
        for loop in self._loops():
            loop.cancel()

    # -------------------------------------------------------------------
    # Pending sync operations
    # -------------------------------------------------------------------
    @tasks.loop(seconds=C.PROCESS_INTERVAL_SECONDS)
    async def pending_loop(self):
        try:
            await self.bot.sync_engine.process_pending()
        except Exception:
            logger.exception("Pending sync tick failed", extra={"task": "pending"})

    # -------------------------------------------------------------------
    # Batch drain
    # -------------------------------------------------------------------
    @tasks.loop(seconds=C.BATCH_INTERVAL_SECONDS)
    async def batch_loop(self):
        try:
            await self.bot.sync_engine.process_batches()
        except Exception:
            logger.exception("Batch tick failed", extra={"task": "batch"})

    # -------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------
    @tasks.loop(seconds=C.CLEANUP_INTERVAL_SECONDS)
    async def cleanup_loop(self):
        """Prune engine state plus the policy, anomaly and ingress windows."""
        try:
            stale, expired = self.bot.sync_engine.cleanup()
            quotas = self.bot.policy.cleanup()
            windows = self.bot.anomalies.cleanup()
            peers = self.bot.rate_limiter.cleanup()
            if stale or expired:
                logger.info("Cleanup: %d stale operation(s), %d expired cooldown(s)", stale, expired)
            logger.debug("Cleanup: %d quota bucket(s), %d anomaly window(s), %d peer(s)", quotas, windows, peers)
        except Exception:
            logger.exception("Cleanup tick failed", extra={"task": "cleanup"})

    # -------------------------------------------------------------------
    # Monitor
    # -------------------------------------------------------------------
    @tasks.loop(seconds=C.MONITOR_INTERVAL_SECONDS)
    async def monitor_loop(self):
        await self.bot.monitor.tick()

    @pending_loop.before_loop
    async def _wait_pending(self):
        await self.bot.wait_until_ready()

    @batch_loop.before_loop
    async def _wait_batch(self):
        await self.bot.wait_until_ready()

    @monitor_loop.before_loop
    async def _wait_monitor(self):
        await self.bot.wait_until_ready()


async def setup(bot: NaffleSyncBot) -> None:
    await bot.add_cog(PeriodicTasks(bot))
