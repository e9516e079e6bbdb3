"""
nafflesync.bot.cogs.membership — Member Join Tracking
======================================================

Feeds GUILD_MEMBER_ADD into the anomaly detector's mass-join window.
Requires the GUILD_MEMBERS privileged intent.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

if TYPE_CHECKING:
    from nafflesync.bot.core import NaffleSyncBot

logger = logging.getLogger(__name__)


class Membership(commands.Cog, name="Membership"):
    """Watches joins for raids of fresh accounts."""

    def __init__(self, bot: NaffleSyncBot) -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member) -> None:
        try:
            account_age = (datetime.now(UTC) - member.created_at).total_seconds()
            event = await self.bot.anomalies.on_member_join(
                str(member.guild.id), str(member.id), account_age,
            )
            if event is not None:
                logger.warning(
                    "Join of %s (ID: %d) tripped %s (%s)",
                    member.display_name, member.id, event.type, event.severity,
                )
        except Exception:
            logger.exception(
                "Error processing member_join for %s", member.id,
                extra={"event_type": "member_join", "user_id": member.id},
            )


async def setup(bot: NaffleSyncBot) -> None:
    await bot.add_cog(Membership(bot))
