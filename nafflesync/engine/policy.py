"""
nafflesync.engine.policy — Interaction Policy Layer
====================================================

Every user-initiated interaction passes :meth:`PolicyLayer.evaluate` before
it may touch the platform or enqueue sync work.  Checks run in a fixed
order and the first denial wins:

1. guild context with a member
2. not a bot account
3. account at least 7 days old
4. admin-only commands: guild owner, Administrator / Manage Server, or a
   configured admin role
5. required capabilities (``discord.Permissions`` flags)
6. required roles (ID or case-insensitive name)
7. per-user-per-command hourly quota (recorded on admit)

Any exception inside evaluation is a HIGH-severity denial.  The layer never
admits on error.

Per-command settings are the defaults from :mod:`nafflesync.constants`
overlaid with the guild's overrides, resolved on every call so admins can
change them at runtime.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from nafflesync import constants as C
from nafflesync.engine.anomaly import AnomalyDetector, AnomalyType, Severity
from nafflesync.engine.clock import Clock

logger = logging.getLogger(__name__)

AuditSink = Callable[..., Awaitable[None]]

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def capability_attr(token: str) -> str:
    """``"ManageMessages"`` → ``"manage_messages"`` (a Permissions attribute)."""
    return _CAMEL_BOUNDARY.sub("_", token).lower()


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Decision:
    admit: bool
    reason: str
    severity: Severity = Severity.NONE
    remaining: int | None = None

    @classmethod
    def deny(cls, reason: str, severity: Severity) -> Decision:
        return cls(admit=False, reason=reason, severity=severity)


@dataclass(frozen=True, slots=True)
class CommandPolicy:
    """Resolved settings for one command in one guild."""

    admin_only: bool = False
    required_capabilities: tuple[str, ...] = ()
    required_roles: tuple[str, ...] = ()
    cooldown_seconds: float = 0
    max_uses_per_hour: int = 50

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> CommandPolicy:
        return cls(
            admin_only=bool(raw.get("admin_only", False)),
            required_capabilities=tuple(raw.get("required_capabilities") or ()),
            required_roles=tuple(str(r) for r in raw.get("required_roles") or ()),
            cooldown_seconds=float(raw.get("cooldown_seconds", 0)),
            max_uses_per_hour=int(raw.get("max_uses_per_hour", 50)),
        )


@dataclass(slots=True)
class RateBucket:
    """Sliding-window hit counter.

    ``window_start`` is the oldest hit still inside the window (or the time
    of the last prune when the bucket is empty), so
    ``window_start ≤ now < window_start + window`` always holds.
    """

    window: float
    window_start: float = 0.0
    hits: deque[float] = field(default_factory=deque)

    def prune(self, now: float) -> None:
        while self.hits and self.hits[0] <= now - self.window:
            self.hits.popleft()
        self.window_start = self.hits[0] if self.hits else now

    @property
    def request_count(self) -> int:
        return len(self.hits)

    def hit(self, now: float) -> None:
        if not self.hits:
            self.window_start = now
        self.hits.append(now)

    def retry_after(self, now: float) -> float:
        """Seconds until the oldest hit leaves the window."""
        return max(0.0, self.window - (now - self.window_start))


# ---------------------------------------------------------------------------
# Interaction adapters
# ---------------------------------------------------------------------------
def _member_of(interaction: Any) -> Any | None:
    """The guild member behind *interaction*, or None outside a guild."""
    user = getattr(interaction, "user", None)
    if getattr(interaction, "guild_id", None) is None or user is None:
        return None
    if getattr(user, "guild_permissions", None) is None:
        return None
    return user


class PolicyLayer:
    """Admit-or-reject gate for chat interactions."""

    def __init__(
        self,
        anomalies: AnomalyDetector | None = None,
        *,
        guild_overrides: Mapping[str, dict] | None = None,
        defaults: Mapping[str, dict] | None = None,
        clock: Clock | None = None,
        audit_sink: AuditSink | None = None,
    ) -> None:
        self.clock = clock or Clock()
        self.anomalies = anomalies or AnomalyDetector(self.clock)
        self.audit_sink = audit_sink
        self._defaults = dict(defaults or C.DEFAULT_COMMAND_PERMISSIONS)
        self._overrides: dict[str, dict] = {
            str(gid): dict(cfg) for gid, cfg in (guild_overrides or {}).items()
        }
        self._quotas: dict[tuple[str, str, str], RateBucket] = {}

    # -----------------------------------------------------------------------
    # Configuration
    # -----------------------------------------------------------------------
    def resolve(self, guild_id: str | int | None, command: str) -> CommandPolicy:
        """Defaults for *command* (or the fallback) overlaid with guild overrides."""
        base = self._defaults.get(command) or self._defaults[C.FALLBACK_COMMAND]
        override = {}
        if guild_id is not None:
            override = (self._overrides.get(str(guild_id), {}).get("commands") or {}).get(command) or {}
        return CommandPolicy.from_mapping({**base, **override})

    def admin_roles(self, guild_id: str | int) -> list[str]:
        return [str(r) for r in self._overrides.get(str(guild_id), {}).get("admin_roles") or []]

    def update_guild_overrides(self, guild_id: str | int, config: Mapping[str, Any]) -> None:
        """Merge *config* into the guild's overrides.  Takes effect immediately."""
        current = self._overrides.setdefault(str(guild_id), {})
        commands = {**(current.get("commands") or {})}
        for name, settings in (config.get("commands") or {}).items():
            commands[name] = {**commands.get(name, {}), **settings}
        current.update({k: v for k, v in config.items() if k != "commands"})
        current["commands"] = commands
        logger.info("Updated permission overrides for guild %s", guild_id)

    def reset_guild_overrides(self, guild_id: str | int) -> None:
        self._overrides.pop(str(guild_id), None)
        logger.info("Reset permission overrides for guild %s", guild_id)

    # -----------------------------------------------------------------------
    # Evaluation
    # -----------------------------------------------------------------------
    async def evaluate(self, interaction: Any, command: str) -> Decision:
        """Run the check chain for *interaction* invoking *command*."""
        try:
            decision = await self._evaluate(interaction, command)
        except Exception:
            logger.exception("Permission check failed for %s", command)
            decision = Decision.deny("Permission check failed", Severity.HIGH)

        if not decision.admit:
            await self._audit_denial(interaction, command, decision)
        return decision

    async def _evaluate(self, interaction: Any, command: str) -> Decision:
        member = _member_of(interaction)
        if member is None:
            return Decision.deny("Command can only be used in servers", Severity.LOW)

        guild_id = str(interaction.guild_id)
        user_id = str(member.id)
        policy = self.resolve(guild_id, command)
        now = self.clock.now()

        if member.bot:
            await self.anomalies.report(
                AnomalyType.BOT_DETECTION, Severity.HIGH,
                guild_id=guild_id, user_id=user_id,
                details={"command": command, "reason": "Bot account attempted command"},
            )
            return Decision.deny("Bots cannot use commands", Severity.MEDIUM)

        account_age = now - member.created_at.timestamp()
        denial = self._check_member(interaction, member, policy, account_age)
        if denial is None:
            denial = await self._check_quota(guild_id, user_id, command, policy, now)

        await self.anomalies.observe_command(
            guild_id, user_id, command,
            account_age=account_age,
            denied=denial is not None,
        )
        if denial is not None:
            return denial

        bucket = self._quotas[(guild_id, user_id, command)]
        return Decision(
            admit=True,
            reason="Permission granted",
            remaining=policy.max_uses_per_hour - bucket.request_count,
        )

    def _check_member(self, interaction: Any, member: Any, policy: CommandPolicy, account_age: float) -> Decision | None:
        if account_age < C.MIN_ACCOUNT_AGE_SECONDS:
            return Decision.deny(
                "Account must be at least 7 days old to use commands", Severity.MEDIUM,
            )

        if policy.admin_only and not self.is_admin(interaction, member):
            return Decision.deny(
                "This command requires administrator permissions", Severity.MEDIUM,
            )

        perms = member.guild_permissions
        missing = [
            token for token in policy.required_capabilities
            if not getattr(perms, capability_attr(token), False)
        ]
        if missing:
            return Decision.deny(
                f"Missing required permissions: {', '.join(missing)}", Severity.LOW,
            )

        missing_roles = [
            ident for ident in policy.required_roles
            if not any(
                str(role.id) == ident or role.name.lower() == ident.lower()
                for role in member.roles
            )
        ]
        if missing_roles:
            return Decision.deny(
                f"Missing required roles: {', '.join(missing_roles)}", Severity.LOW,
            )
        return None

    def is_admin(self, interaction: Any, member: Any) -> bool:
        """Owner, Administrator, Manage Server, or one of the guild's admin roles."""
        guild = interaction.guild
        if guild is not None and guild.owner_id == member.id:
            return True
        perms = member.guild_permissions
        if any(getattr(perms, cap, False) for cap in C.ADMIN_CAPABILITIES):
            return True
        admin_roles = set(self.admin_roles(interaction.guild_id))
        return any(str(role.id) in admin_roles for role in member.roles)

    async def _check_quota(
        self, guild_id: str, user_id: str, command: str, policy: CommandPolicy, now: float
    ) -> Decision | None:
        key = (guild_id, user_id, command)
        bucket = self._quotas.get(key)
        if bucket is None:
            bucket = self._quotas[key] = RateBucket(window=C.QUOTA_WINDOW_SECONDS, window_start=now)
        bucket.prune(now)

        if bucket.request_count >= policy.max_uses_per_hour:
            await self.anomalies.report(
                AnomalyType.RATE_LIMIT_EXCEEDED, Severity.MEDIUM,
                guild_id=guild_id, user_id=user_id,
                details={"command": command, "uses": bucket.request_count, "limit": policy.max_uses_per_hour},
            )
            return Decision.deny(
                f"Command usage limit exceeded ({policy.max_uses_per_hour} per hour)",
                Severity.MEDIUM,
            )

        bucket.hit(now)
        return None

    def quota_bucket(self, guild_id: str | int, user_id: str | int, command: str) -> RateBucket | None:
        return self._quotas.get((str(guild_id), str(user_id), command))

    async def _audit_denial(self, interaction: Any, command: str, decision: Decision) -> None:
        user = getattr(interaction, "user", None)
        logger.warning(
            "Denied /%s for user=%s guild=%s: %s (%s)",
            command, getattr(user, "id", None), getattr(interaction, "guild_id", None),
            decision.reason, decision.severity,
        )
        if self.audit_sink is None:
            return
        try:
            await self.audit_sink(
                category="policy",
                action="denied",
                subject=str(getattr(user, "id", "")),
                severity=decision.severity.value,
                details={
                    "command": command,
                    "guildId": str(getattr(interaction, "guild_id", "") or ""),
                    "reason": decision.reason,
                },
            )
        except Exception:
            logger.exception("Failed to audit policy denial")

    def cleanup(self) -> int:
        """Drop quota buckets with no hits left in their window."""
        now = self.clock.now()
        empty = []
        for key, bucket in self._quotas.items():
            bucket.prune(now)
            if not bucket.request_count:
                empty.append(key)
        for key in empty:
            del self._quotas[key]
        return len(empty)
