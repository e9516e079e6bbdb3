"""
nafflesync.services.embed_updates — Entity embed refresh
=========================================================

After a sync writes to the platform, every message that mirrors the entity
gets its embed rebuilt from the platform's current snapshot merged with
the update.  Components (buttons) are left as they are; only the embed is
replaced.

Edits run concurrently with all-settled semantics: one deleted message or
missing channel never blocks the others.  Messages Discord reports as gone
are pruned from the index.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import discord

from nafflesync.engine.operations import SyncKind
from nafflesync.errors import ErrorKind, PlatformError
from nafflesync.services.embeds import build_allowlist_embed, build_task_embed
from nafflesync.services.platform_client import PlatformClient
from nafflesync.services.record_store import MessageRef, SqlRecordStore

logger = logging.getLogger(__name__)

ENTITY_TYPES: dict[SyncKind, str] = {
    SyncKind.TASK_STATUS: "task",
    SyncKind.ALLOWLIST_UPDATE: "allowlist",
}


async def resolve_channel(client: discord.Client, channel_id: int):
    """Cached channel if the gateway has it, else a REST fetch."""
    channel = client.get_channel(channel_id)
    if channel is None:
        channel = await client.fetch_channel(channel_id)
    return channel


class EmbedRefresher:
    def __init__(self, client: discord.Client, store: SqlRecordStore, platform: PlatformClient) -> None:
        self.client = client
        self.store = store
        self.platform = platform

    def _snapshot_source(self, kind: SyncKind):
        return self.platform.get_task if kind is SyncKind.TASK_STATUS else self.platform.get_allowlist

    def _builder(self, kind: SyncKind) -> Callable[[dict[str, Any]], discord.Embed]:
        return build_task_embed if kind is SyncKind.TASK_STATUS else build_allowlist_embed

    async def refresh(self, kind: SyncKind, key: str, update: dict[str, Any]) -> int:
        """Rebuild every indexed message for ``(kind, key)``.

        Returns the number of messages edited.  A snapshot the platform no
        longer has is skipped; any other snapshot failure propagates so the
        engine can retry.
        """
        entity_type = ENTITY_TYPES.get(kind)
        if entity_type is None:
            return 0
        refs = await self.store.lookup_entity_messages(entity_type, key)
        if not refs:
            return 0

        try:
            snapshot = await self._snapshot_source(kind)(key)
        except PlatformError as exc:
            if exc.kind is ErrorKind.NOT_FOUND:
                logger.warning("No %s snapshot for %s; skipping embed refresh", entity_type, key)
                return 0
            raise

        embed = self._builder(kind)({"id": key, **snapshot, **update})
        results = await asyncio.gather(
            *(self._edit(ref, embed) for ref in refs), return_exceptions=True
        )
        edited = 0
        for ref, result in zip(refs, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(
                    "Failed to edit message %d in channel %d: %s",
                    ref.message_id, ref.channel_id, result,
                )
            elif result:
                edited += 1
        logger.debug("Refreshed %d/%d %s embed(s) for %s", edited, len(refs), entity_type, key)
        return edited

    async def _edit(self, ref: MessageRef, embed: discord.Embed) -> bool:
        try:
            channel = await resolve_channel(self.client, ref.channel_id)
            message = await channel.fetch_message(ref.message_id)
            await message.edit(embed=embed)
        except discord.NotFound:
            await self.store.forget_message(ref.channel_id, ref.message_id)
            logger.info("Message %d is gone; removed from index", ref.message_id)
            return False
        return True
