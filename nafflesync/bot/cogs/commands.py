"""
nafflesync.bot.cogs.commands — Policy-Gated Slash Commands
===========================================================

Every command here runs behind :func:`policy_gate`, which asks the
:class:`~nafflesync.engine.policy.PolicyLayer` for a decision before the
command body executes.  A denial reaches the user as an ephemeral message
carrying the policy's reason.

- /naffles-status — engine counters and health rollup
- /naffles-help — commands available in this server
- /naffles-security — anomaly statistics (admin)
- /naffles-post-task, /naffles-post-allowlist — post an entity embed and
  index the message so later syncs keep it current
- /naffles-task-status — queue a task status change (admin)
- /naffles-link-community — link this server to a Naffles community (admin)
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from nafflesync import constants as C
from nafflesync.engine.operations import SyncKind, TaskStatusPayload
from nafflesync.errors import ErrorKind, PlatformError
from nafflesync.services.embeds import (
    build_allowlist_embed,
    build_help_embed,
    build_security_embed,
    build_status_embed,
    build_task_embed,
)

if TYPE_CHECKING:
    from nafflesync.bot.core import NaffleSyncBot

logger = logging.getLogger(__name__)


class PolicyCheckFailure(app_commands.CheckFailure):
    """Raised by :func:`policy_gate`; carries the user-facing reason."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def policy_gate(command: str):
    """Decorator that routes the interaction through the policy layer."""
    async def predicate(interaction: discord.Interaction) -> bool:
        bot: NaffleSyncBot = interaction.client  # type: ignore[assignment]
        decision = await bot.policy.evaluate(interaction, command)
        if not decision.admit:
            raise PolicyCheckFailure(decision.reason)
        return True
    return app_commands.check(predicate)


class SyncCommands(commands.Cog, name="Naffles"):
    """Slash commands for the Naffles sync bridge."""

    def __init__(self, bot: NaffleSyncBot) -> None:
        self.bot = bot

    # -------------------------------------------------------------------
    # /naffles-status
    # -------------------------------------------------------------------
    @app_commands.command(name="naffles-status", description="Show Naffles sync status.")
    @policy_gate("naffles-status")
    async def status(self, interaction: discord.Interaction) -> None:
        health = await self.bot.monitor.check_health()
        embed = build_status_embed(self.bot.sync_engine.statistics(), health)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    # -------------------------------------------------------------------
    # /naffles-help
    # -------------------------------------------------------------------
    @app_commands.command(name="naffles-help", description="List Naffles bot commands.")
    @policy_gate("naffles-help")
    async def show_help(self, interaction: discord.Interaction) -> None:
        resolved = {
            name: asdict(self.bot.policy.resolve(interaction.guild_id, name))
            for name in C.DEFAULT_COMMAND_PERMISSIONS
        }
        await interaction.response.send_message(embed=build_help_embed(resolved), ephemeral=True)

    # -------------------------------------------------------------------
    # /naffles-security
    # -------------------------------------------------------------------
    @app_commands.command(name="naffles-security", description="Show recent security events.")
    @policy_gate("naffles-security")
    async def security(self, interaction: discord.Interaction) -> None:
        anomalies = self.bot.anomalies
        recent = [e.to_dict() for e in anomalies.recent_events(5)]
        embed = build_security_embed(anomalies.statistics(), recent)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    # -------------------------------------------------------------------
    # /naffles-post-task, /naffles-post-allowlist
    # -------------------------------------------------------------------
    @app_commands.command(name="naffles-post-task", description="Post a Naffles task in this channel.")
    @app_commands.describe(task_id="The Naffles task ID")
    @policy_gate("naffles-post-task")
    async def post_task(self, interaction: discord.Interaction, task_id: str) -> None:
        await self._post_entity(interaction, "task", task_id)

    @app_commands.command(name="naffles-post-allowlist", description="Post a Naffles allowlist in this channel.")
    @app_commands.describe(allowlist_id="The Naffles allowlist ID")
    @policy_gate("naffles-post-allowlist")
    async def post_allowlist(self, interaction: discord.Interaction, allowlist_id: str) -> None:
        await self._post_entity(interaction, "allowlist", allowlist_id)

    async def _post_entity(self, interaction: discord.Interaction, entity_type: str, key: str) -> None:
        await interaction.response.defer()
        fetch = self.bot.platform.get_task if entity_type == "task" else self.bot.platform.get_allowlist
        try:
            snapshot = await fetch(key)
        except PlatformError as exc:
            text = (
                f"❌ No {entity_type} `{key}` on Naffles."
                if exc.kind is ErrorKind.NOT_FOUND
                else f"❌ Could not load {entity_type} `{key}` right now."
            )
            await interaction.followup.send(text, ephemeral=True)
            return

        builder = build_task_embed if entity_type == "task" else build_allowlist_embed
        message = await interaction.followup.send(embed=builder({"id": key, **snapshot}), wait=True)
        await self.bot.store.index_message(
            entity_type=entity_type,
            entity_key=key,
            guild_id=interaction.guild_id,
            channel_id=message.channel.id,
            message_id=message.id,
            created_by=interaction.user.id,
        )

    # -------------------------------------------------------------------
    # /naffles-task-status
    # -------------------------------------------------------------------
    @app_commands.command(name="naffles-task-status", description="Change a task's status on Naffles.")
    @app_commands.describe(task_id="The Naffles task ID", status="New status")
    @app_commands.choices(
        status=[
            app_commands.Choice(name=s.title(), value=s)
            for s in ("active", "paused", "completed", "cancelled")
        ]
    )
    @policy_gate("naffles-task-status")
    async def task_status(self, interaction: discord.Interaction, task_id: str, status: str) -> None:
        sync_id = self.bot.sync_engine.enqueue(
            SyncKind.TASK_STATUS,
            task_id,
            TaskStatusPayload(
                new_status=status,
                metadata={"source": "discord_command", "updatedBy": str(interaction.user.id)},
            ),
        )
        await interaction.response.send_message(
            f"✅ Queued status **{status}** for task `{task_id}` (`{sync_id}`)", ephemeral=True,
        )

    # -------------------------------------------------------------------
    # /naffles-link-community
    # -------------------------------------------------------------------
    @app_commands.command(name="naffles-link-community", description="Link this server to a Naffles community.")
    @app_commands.describe(community_id="The Naffles community ID")
    @policy_gate("naffles-link-community")
    async def link_community(self, interaction: discord.Interaction, community_id: str) -> None:
        await self.bot.store.link_guild(interaction.guild_id, community_id, interaction.user.id)
        logger.info("Guild %s linked to community %s by %s", interaction.guild_id, community_id, interaction.user.id)
        await interaction.response.send_message(
            f"🔗 This server is now linked to community `{community_id}`.", ephemeral=True,
        )

    # -------------------------------------------------------------------
    # Error handler for policy denials
    # -------------------------------------------------------------------
    async def cog_app_command_error(
        self, interaction: discord.Interaction, error: app_commands.AppCommandError
    ) -> None:
        if isinstance(error, PolicyCheckFailure):
            await interaction.response.send_message(f"🔒 {error.reason}", ephemeral=True)
        else:
            raise error


async def setup(bot: NaffleSyncBot) -> None:
    await bot.add_cog(SyncCommands(bot))
