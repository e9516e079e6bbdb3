"""
nafflesync.services.embeds — Discord embed builders
====================================================

All embed construction lives here so the sync executor, notifier and cogs
only supply data.  Builders are deterministic in their input: rebuilding
an embed from the same entity snapshot yields the same embed, which keeps
repeated syncs from visibly changing a message.
"""

from __future__ import annotations

from typing import Any

import discord

from nafflesync import constants as C

FOOTER = "Powered by Naffles"
NAFFLES_BLUE = 0x3B82F6
NAFFLES_GREEN = 0x10B981


def _truncate(text: str | None, limit: int = 500) -> str:
    text = text or ""
    return text if len(text) <= limit else text[: limit - 1] + "…"


def status_color(status: str | None) -> int:
    return C.STATUS_COLORS.get((status or "").lower(), C.DEFAULT_STATUS_COLOR)


# ---------------------------------------------------------------------------
# Entity embeds (the ones kept in sync)
# ---------------------------------------------------------------------------
def build_task_embed(task: dict[str, Any]) -> discord.Embed:
    """Render a social task snapshot."""
    status = task.get("status")
    embed = discord.Embed(
        title=f"\U0001f3af {task.get('title') or 'Social Task'}",
        description=_truncate(task.get("description")),
        color=status_color(status) if status else NAFFLES_BLUE,
    )
    if task.get("points") is not None:
        embed.add_field(name="\U0001f4b0 Reward", value=f"{task['points']} points", inline=True)
    if status:
        embed.add_field(name="\U0001f4ca Status", value=str(status).replace("_", " ").title(), inline=True)
    if task.get("type"):
        embed.add_field(name="\U0001f3f7️ Type", value=str(task["type"]).replace("_", " ").title(), inline=True)
    if task.get("completedBy") is not None:
        completed_by = task["completedBy"]
        count = len(completed_by) if isinstance(completed_by, list) else completed_by
        embed.add_field(name="✅ Completed By", value=f"{count} users", inline=True)
    if task.get("requirements"):
        embed.add_field(name="Requirements", value="\n".join(map(str, task["requirements"])), inline=False)
    if task.get("thumbnailUrl"):
        embed.set_thumbnail(url=task["thumbnailUrl"])
    embed.set_footer(text=f"{FOOTER} • Task {task.get('id') or task.get('_id') or ''}".rstrip())
    return embed


def build_allowlist_embed(allowlist: dict[str, Any]) -> discord.Embed:
    """Render an allowlist snapshot."""
    embed = discord.Embed(
        title=f"\U0001f3ab {allowlist.get('title') or 'Allowlist'}",
        description=_truncate(allowlist.get("description")),
        color=NAFFLES_GREEN,
    )
    if allowlist.get("prize"):
        embed.add_field(name="\U0001f3c6 Prize", value=str(allowlist["prize"]), inline=True)
    winner_count = allowlist.get("winnerCount")
    if winner_count is not None:
        embed.add_field(
            name="\U0001f465 Winners",
            value="Everyone Wins!" if winner_count == "everyone" else str(winner_count),
            inline=True,
        )
    entry_price = allowlist.get("entryPrice")
    if entry_price is not None:
        embed.add_field(
            name="\U0001f3aa Entry Price",
            value="Free" if str(entry_price) == "0" else str(entry_price),
            inline=True,
        )
    participants = allowlist.get("totalParticipants", allowlist.get("participants"))
    if participants is not None:
        count = len(participants) if isinstance(participants, list) else participants
        embed.add_field(name="\U0001f465 Participants", value=str(count), inline=True)
    if allowlist.get("status"):
        embed.add_field(name="\U0001f4ca Status", value=str(allowlist["status"]).title(), inline=True)
    if allowlist.get("prizeImageUrl"):
        embed.set_image(url=allowlist["prizeImageUrl"])
    embed.set_footer(text=f"{FOOTER} • Allowlist {allowlist.get('id') or allowlist.get('_id') or ''}".rstrip())
    return embed


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------
def build_task_status_notice(task_id: str, status: str) -> discord.Embed:
    return discord.Embed(
        title="Task Status Update",
        description=f"Task {task_id} status changed to {status}",
        color=0x00FF00 if status == "completed" else 0xFFAA00,
    )


def build_participant_notice(total: Any) -> discord.Embed:
    return discord.Embed(
        title="Allowlist Update",
        description=f"Total participants: {total if total is not None else 'unknown'}",
        color=0x00FF00,
    )


def build_winners_notice(allowlist_id: str, winners: list[Any]) -> discord.Embed:
    embed = discord.Embed(
        title="\U0001f3c6 Winners Selected",
        description=f"Winners have been drawn for allowlist {allowlist_id}.",
        color=0xF59E0B,
    )
    embed.add_field(name="Winners", value=str(len(winners)), inline=True)
    return embed


def build_settings_changed_embed(community_id: str, changes: dict[str, Any]) -> discord.Embed:
    embed = discord.Embed(
        title="Community Settings Updated",
        description=f"Settings for community {community_id} were changed on Naffles.",
        color=NAFFLES_BLUE,
    )
    changed = ", ".join(sorted(changes)) or "none"
    embed.add_field(name="Changed", value=_truncate(changed, 1024), inline=False)
    return embed


def build_maintenance_embed(data: dict[str, Any]) -> discord.Embed:
    embed = discord.Embed(
        title="\U0001f6e0️ Scheduled Maintenance",
        description=_truncate(data.get("message") or "The Naffles platform will undergo maintenance."),
        color=0xF59E0B,
    )
    embed.add_field(name="Type", value=str(data.get("maintenanceType", "general")), inline=True)
    if data.get("scheduledTime"):
        embed.add_field(name="Scheduled", value=str(data["scheduledTime"]), inline=True)
    duration = data.get("duration", data.get("estimatedDuration"))
    if duration is not None:
        embed.add_field(name="Duration", value=f"{duration} minutes", inline=True)
    return embed


def build_critical_alert_embed(alert_type: str, message: str, threshold: float, current: float) -> discord.Embed:
    embed = discord.Embed(
        title="\U0001f6a8 Critical Sync Alert",
        description=message,
        color=0xEF4444,
    )
    embed.add_field(name="Alert Type", value=alert_type, inline=True)
    embed.add_field(name="Threshold", value=str(threshold), inline=True)
    embed.add_field(name="Current Value", value=str(current), inline=True)
    return embed


# ---------------------------------------------------------------------------
# Command responses
# ---------------------------------------------------------------------------
def build_status_embed(stats: dict[str, Any], health: dict[str, Any]) -> discord.Embed:
    """Engine counters plus the monitor's health rollup."""
    overall = health.get("overall", "healthy")
    embed = discord.Embed(
        title=f"{C.HEALTH_EMOJI.get(overall, '')} Naffles Sync Status".strip(),
        description=f"Overall health: **{overall}**",
        color={"healthy": 0x10B981, "warning": 0xF59E0B}.get(overall, 0xEF4444),
    )
    total = stats.get("syncOperations", 0)
    embed.add_field(name="Syncs", value=f"{stats.get('successfulSyncs', 0)}/{total} ok", inline=True)
    embed.add_field(name="Failed", value=str(stats.get("failedSyncs", 0)), inline=True)
    embed.add_field(name="Avg time", value=f"{stats.get('averageSyncTimeMs', 0):.0f} ms", inline=True)
    embed.add_field(name="Queue", value=str(stats.get("queueSize", 0)), inline=True)
    embed.add_field(name="Batches queued", value=str(stats.get("batchQueueSize", 0)), inline=True)
    embed.add_field(name="Cooldowns", value=str(stats.get("errorCooldowns", 0)), inline=True)
    for name, component in (health.get("components") or {}).items():
        emoji = C.HEALTH_EMOJI.get(component.get("status", ""), "")
        issues = "; ".join(component.get("issues") or []) or "OK"
        embed.add_field(name=f"{emoji} {name}", value=_truncate(issues, 1024), inline=False)
    return embed


def build_security_embed(stats: dict[str, Any], recent: list[dict[str, Any]]) -> discord.Embed:
    embed = discord.Embed(
        title="\U0001f6e1️ Security Overview",
        description=(
            f"**{stats.get('recentEvents', 0)}** events in the last hour, "
            f"**{stats.get('dailyEvents', 0)}** in the last day."
        ),
        color=0x7C3AED,
    )
    by_type = stats.get("eventsByType") or {}
    if by_type:
        lines = [f"`{name}` × {count}" for name, count in sorted(by_type.items(), key=lambda kv: -kv[1])]
        embed.add_field(name="By type", value=_truncate("\n".join(lines), 1024), inline=True)
    by_severity = stats.get("eventsBySeverity") or {}
    if by_severity:
        lines = [f"{name}: {count}" for name, count in by_severity.items()]
        embed.add_field(name="By severity", value="\n".join(lines), inline=True)
    if recent:
        lines = [
            f"`{e['type']}` ({e['severity']}) user={e.get('userId') or '-'}"
            for e in recent[:5]
        ]
        embed.add_field(name="Latest", value=_truncate("\n".join(lines), 1024), inline=False)
    embed.set_footer(text=f"Tracking {stats.get('trackedWindows', 0)} user windows")
    return embed


def build_help_embed(commands: dict[str, dict[str, Any]]) -> discord.Embed:
    embed = discord.Embed(
        title="Naffles Bot Help",
        description="Commands available in this server:",
        color=NAFFLES_BLUE,
    )
    for name, cfg in sorted(commands.items()):
        flags = []
        if cfg.get("admin_only"):
            flags.append("admin")
        flags.append(f"{cfg.get('max_uses_per_hour')}/h")
        if cfg.get("cooldown_seconds"):
            flags.append(f"{cfg['cooldown_seconds']:g}s cooldown")
        embed.add_field(name=f"/{name}", value=", ".join(flags), inline=True)
    return embed
