"""
nafflesync.services.throttle — Per-channel notification throttle
=================================================================

Sync notifications can burst (a webhook batch touching one busy task
channel, say).  Each channel gets a sliding window of sends; anything over
the limit waits on a per-channel queue that a background task drains every
few seconds.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass

import discord
from discord.abc import Messageable

from nafflesync.engine.clock import Clock

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PendingNotice:
    channel: Messageable
    content: str | None
    embed: discord.Embed | None


class NotificationThrottle:
    """Up to ``max_per_window`` sends per channel per ``window`` seconds."""

    def __init__(
        self,
        max_per_window: int = 5,
        window: float = 60,
        *,
        drain_every: float = 10,
        clock: Clock | None = None,
    ) -> None:
        self.max_per_window = max_per_window
        self.window = window
        self.drain_every = drain_every
        self.clock = clock or Clock()
        self._sent: dict[int, deque[float]] = defaultdict(deque)
        self._queues: dict[int, asyncio.Queue[PendingNotice]] = {}
        self._drain_task: asyncio.Task | None = None

    def is_allowed(self, channel_id: int) -> bool:
        """Claim a send slot for *channel_id* if one is free."""
        now = self.clock.now()
        sent = self._sent[channel_id]
        while sent and sent[0] <= now - self.window:
            sent.popleft()
        if len(sent) >= self.max_per_window:
            return False
        sent.append(now)
        return True

    def queued(self, channel_id: int) -> int:
        queue = self._queues.get(channel_id)
        return queue.qsize() if queue else 0

    async def send(
        self,
        channel: Messageable,
        *,
        content: str | None = None,
        embed: discord.Embed | None = None,
    ) -> bool:
        """Send now if the channel has room, else queue.  True when sent."""
        channel_id = channel.id
        if self.queued(channel_id) == 0 and self.is_allowed(channel_id):
            await channel.send(content=content, embed=embed)
            return True
        self._queues.setdefault(channel_id, asyncio.Queue()).put_nowait(
            PendingNotice(channel, content, embed)
        )
        logger.debug("Throttled notice for channel %d (%d queued)", channel_id, self.queued(channel_id))
        return False

    async def drain_once(self) -> int:
        """Deliver queued notices for channels whose window has reopened."""
        delivered = 0
        for channel_id, queue in list(self._queues.items()):
            while not queue.empty() and self.is_allowed(channel_id):
                notice = queue.get_nowait()
                try:
                    await notice.channel.send(content=notice.content, embed=notice.embed)
                    delivered += 1
                except discord.HTTPException:
                    logger.exception("Failed to send queued notice to channel %d", channel_id)
            if queue.empty():
                del self._queues[channel_id]
        return delivered

    def start(self) -> None:
        """Start the background drain task on the running loop."""
        if self._drain_task is not None:
            return

        async def _drain_loop() -> None:
            while True:
                await asyncio.sleep(self.drain_every)
                try:
                    await self.drain_once()
                except Exception:
                    logger.exception("Notification drain error")

        self._drain_task = asyncio.get_running_loop().create_task(
            _drain_loop(), name="notification-drain"
        )

    def stop(self) -> None:
        if self._drain_task:
            self._drain_task.cancel()
            self._drain_task = None
