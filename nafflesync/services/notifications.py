"""
nafflesync.services.notifications — Chat notifications for sync events
=======================================================================

Posts short notices next to the messages that mirror an entity, DMs guild
admins about community setting changes, and broadcasts maintenance windows
to every linked guild.

Notifications are best-effort: delivery failures are logged and never
fail the sync operation that triggered them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import discord

from nafflesync.services.embed_updates import resolve_channel
from nafflesync.services.embeds import (
    build_critical_alert_embed,
    build_maintenance_embed,
    build_participant_notice,
    build_settings_changed_embed,
    build_task_status_notice,
    build_winners_notice,
)
from nafflesync.services.monitor import AlertRecord
from nafflesync.services.record_store import SqlRecordStore
from nafflesync.services.throttle import NotificationThrottle

logger = logging.getLogger(__name__)


def pick_announcement_channel(guild: discord.Guild):
    """System channel, else a "general" channel, else the first text channel."""
    if guild.system_channel is not None:
        return guild.system_channel
    for channel in guild.text_channels:
        if "general" in channel.name.lower():
            return channel
    return guild.text_channels[0] if guild.text_channels else None


class Notifier:
    def __init__(
        self,
        client: discord.Client,
        store: SqlRecordStore,
        throttle: NotificationThrottle | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.throttle = throttle or NotificationThrottle()

    async def _entity_channels(self, entity_type: str, key: str) -> list[int]:
        refs = await self.store.lookup_entity_messages(entity_type, key)
        return list(dict.fromkeys(ref.channel_id for ref in refs))

    async def _post(self, channel_ids: list[int], *, content: str, embed: discord.Embed) -> int:
        posted = 0
        for channel_id in channel_ids:
            try:
                channel = await resolve_channel(self.client, channel_id)
                await self.throttle.send(channel, content=content, embed=embed)
                posted += 1
            except discord.HTTPException as exc:
                logger.warning("Failed to notify channel %d: %s", channel_id, exc)
        return posted

    # -----------------------------------------------------------------------
    # Entity notices
    # -----------------------------------------------------------------------
    async def task_status_changed(self, task_id: str, status: str, metadata: dict[str, Any]) -> int:
        channels = await self._entity_channels("task", task_id)
        return await self._post(
            channels,
            content=f"\U0001f4e2 Task status updated: **{status}**",
            embed=build_task_status_notice(task_id, status),
        )

    async def participant_added(self, allowlist_id: str, changes: dict[str, Any]) -> int:
        channels = await self._entity_channels("allowlist", allowlist_id)
        return await self._post(
            channels,
            content="\U0001f389 New participant joined the allowlist!",
            embed=build_participant_notice(changes.get("totalParticipants")),
        )

    async def winners_selected(self, allowlist_id: str, changes: dict[str, Any]) -> int:
        channels = await self._entity_channels("allowlist", allowlist_id)
        winners = changes.get("winners") or []
        return await self._post(
            channels,
            content="\U0001f3c6 Allowlist winners have been selected!",
            embed=build_winners_notice(allowlist_id, winners if isinstance(winners, list) else [winners]),
        )

    # -----------------------------------------------------------------------
    # Fan-outs
    # -----------------------------------------------------------------------
    def _admins_of(self, guild_ids: list[int]) -> list[discord.Member]:
        admins: list[discord.Member] = []
        for guild_id in guild_ids:
            guild = self.client.get_guild(guild_id)
            if guild is None:
                continue
            admins.extend(
                m for m in guild.members
                if not m.bot and m.guild_permissions.administrator
            )
        return admins

    async def _dm_all(self, admins: list[discord.Member], embed: discord.Embed) -> int:
        results = await asyncio.gather(*(m.send(embed=embed) for m in admins), return_exceptions=True)
        return sum(1 for r in results if not isinstance(r, BaseException))

    async def community_settings_changed(self, community_id: str, changes: dict[str, Any]) -> int:
        """DM every administrator of every guild linked to *community_id*."""
        admins = self._admins_of(await self.store.guilds_for_community(community_id))
        delivered = await self._dm_all(admins, build_settings_changed_embed(community_id, changes))
        if delivered < len(admins):
            logger.warning(
                "Settings notice for community %s reached %d/%d admins",
                community_id, delivered, len(admins),
            )
        return delivered

    async def critical_alert(self, alert: AlertRecord) -> int:
        """DM a critical monitor alert to the admins of every linked guild."""
        admins = self._admins_of(await self.store.all_linked_guilds())
        embed = build_critical_alert_embed(alert.alert_type, alert.message, alert.threshold, alert.current)
        return await self._dm_all(admins, embed)

    async def system_maintenance(self, data: dict[str, Any]) -> int:
        """Post a maintenance notice to every linked guild."""
        embed = build_maintenance_embed(data)
        posted = 0
        for guild_id in await self.store.all_linked_guilds():
            guild = self.client.get_guild(guild_id)
            channel = pick_announcement_channel(guild) if guild is not None else None
            if channel is None:
                continue
            try:
                await self.throttle.send(channel, embed=embed)
                posted += 1
            except discord.HTTPException as exc:
                logger.warning("Maintenance notice failed in guild %d: %s", guild_id, exc)
        return posted
