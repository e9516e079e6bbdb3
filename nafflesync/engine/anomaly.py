"""
nafflesync.engine.anomaly — Anomaly Sub-Engine
===============================================

Watches command traffic and member joins for abuse patterns.  Anomalies
are never denials by themselves: each detected :class:`AnomalyEvent` is
kept for a day (for ``/naffles-security``), logged, and handed to every
registered listener (the audit sink and the monitor).

Detectors
---------
- ``rapid_commands`` — one user fires ≥ 10 commands in 60 s.
- ``command_abuse`` — the same command ≥ 5 times in 5 min.
- ``suspicious_pattern`` — the last 5 commands arrive at near-identical
  intervals (every delta within 100 ms of the mean, mean < 5 s).
- ``new_account_activity`` — ≥ 3 commands from accounts younger than
  7 days within an hour, per guild.
- ``permission_denied`` — ≥ 5 denials for one user in 5 min.
- ``mass_joins`` — ≥ 10 joins in 5 min; HIGH when more than 5 of them are
  new accounts.
- ``bot_detection`` / ``rate_limit_exceeded`` — raised directly by the
  policy layer.
"""

from __future__ import annotations

import enum
import itertools
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from nafflesync import constants as C
from nafflesync.engine.clock import Clock

logger = logging.getLogger(__name__)


class Severity(enum.StrEnum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AnomalyType(enum.StrEnum):
    RAPID_COMMANDS = "rapid_commands"
    COMMAND_ABUSE = "command_abuse"
    SUSPICIOUS_PATTERN = "suspicious_pattern"
    NEW_ACCOUNT_ACTIVITY = "new_account_activity"
    PERMISSION_DENIED = "permission_denied"
    MASS_JOINS = "mass_joins"
    BOT_DETECTION = "bot_detection"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"


@dataclass(frozen=True, slots=True)
class AnomalyEvent:
    event_id: str
    type: AnomalyType
    severity: Severity
    guild_id: str | None
    user_id: str | None
    timestamp: float
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.event_id,
            "type": self.type.value,
            "severity": self.severity.value,
            "guildId": self.guild_id,
            "userId": self.user_id,
            "timestamp": self.timestamp,
            "details": dict(self.details),
        }


@dataclass(slots=True)
class AnomalyWindow:
    """Recent ``(timestamp, command)`` pairs for one user in one guild."""

    first_seen: float
    commands: deque[tuple[float, str]] = field(
        default_factory=lambda: deque(maxlen=C.ANOMALY_WINDOW_MAXLEN)
    )
    denials: deque[float] = field(
        default_factory=lambda: deque(maxlen=C.ANOMALY_WINDOW_MAXLEN)
    )

    def evict(self, cutoff: float) -> None:
        while self.commands and self.commands[0][0] <= cutoff:
            self.commands.popleft()
        while self.denials and self.denials[0] <= cutoff:
            self.denials.popleft()

    @property
    def empty(self) -> bool:
        return not self.commands and not self.denials


AnomalyListener = Callable[[AnomalyEvent], Awaitable[None]]


def _count_since(timestamps, since: float) -> int:
    return sum(1 for ts in timestamps if ts > since)


class AnomalyDetector:
    """Per-user and per-guild sliding windows plus the last day of events."""

    def __init__(
        self,
        clock: Clock | None = None,
        thresholds: dict[str, tuple[int, float]] | None = None,
    ) -> None:
        self.clock = clock or Clock()
        self.thresholds = {**C.ANOMALY_THRESHOLDS, **(thresholds or {})}
        self._widest = max(window for _, window in self.thresholds.values())

        self._windows: dict[tuple[str, str], AnomalyWindow] = {}
        self._new_accounts: dict[str, deque[tuple[float, str]]] = {}
        self._joins: dict[str, deque[tuple[float, str, float]]] = {}
        self._events: list[AnomalyEvent] = []
        self._listeners: list[AnomalyListener] = []
        self._seq = itertools.count(1)

    def add_listener(self, listener: AnomalyListener) -> None:
        self._listeners.append(listener)

    # -----------------------------------------------------------------------
    # Observation
    # -----------------------------------------------------------------------
    async def observe_command(
        self,
        guild_id: str,
        user_id: str,
        command: str,
        *,
        account_age: float | None = None,
        denied: bool = False,
    ) -> list[AnomalyEvent]:
        """Record one command attempt and run every command detector.

        ``account_age`` is the caller account's age in seconds, when known.
        """
        now = self.clock.now()
        key = (str(guild_id), str(user_id))
        window = self._windows.get(key)
        if window is None:
            window = self._windows[key] = AnomalyWindow(first_seen=now)
        window.evict(now - self._widest)
        window.commands.append((now, command))
        if denied:
            window.denials.append(now)

        found: list[AnomalyEvent] = []
        found += self._check_rapid(key, window, now)
        found += self._check_abuse(key, window, command, now)
        found += self._check_timing(key, window, now)
        if denied:
            found += self._check_denials(key, window, now)
        if account_age is not None and account_age < C.MIN_ACCOUNT_AGE_SECONDS:
            found += self._check_new_accounts(key, command, now)

        for event in found:
            await self._publish(event)
        return found

    async def on_member_join(
        self, guild_id: str, user_id: str, account_age: float
    ) -> AnomalyEvent | None:
        """Record a member join and check for a mass-join burst."""
        now = self.clock.now()
        count, span = self.thresholds["mass_joins"]
        joins = self._joins.setdefault(str(guild_id), deque(maxlen=C.ANOMALY_WINDOW_MAXLEN))
        while joins and joins[0][0] <= now - span:
            joins.popleft()
        joins.append((now, str(user_id), account_age))

        if len(joins) < count:
            return None
        new_accounts = sum(1 for _, _, age in joins if age < C.MIN_ACCOUNT_AGE_SECONDS)
        event = self._make(
            AnomalyType.MASS_JOINS,
            Severity.HIGH if new_accounts > 5 else Severity.MEDIUM,
            guild_id=str(guild_id),
            user_id=None,
            timestamp=now,
            details={
                "joinCount": len(joins),
                "newAccountCount": new_accounts,
                "timeWindow": span,
                "recentJoins": [uid for _, uid, _ in list(joins)[-5:]],
            },
        )
        await self._publish(event)
        return event

    async def report(
        self,
        type: AnomalyType,
        severity: Severity,
        *,
        guild_id: str | None,
        user_id: str | None,
        details: dict[str, Any] | None = None,
    ) -> AnomalyEvent:
        """Publish an anomaly detected elsewhere (bot caller, quota breach)."""
        event = self._make(
            type, severity,
            guild_id=guild_id, user_id=user_id,
            timestamp=self.clock.now(), details=details or {},
        )
        await self._publish(event)
        return event

    # -----------------------------------------------------------------------
    # Detectors
    # -----------------------------------------------------------------------
    def _check_rapid(self, key, window: AnomalyWindow, now: float) -> list[AnomalyEvent]:
        count, span = self.thresholds["rapid_commands"]
        recent = _count_since((ts for ts, _ in window.commands), now - span)
        if recent < count:
            return []
        return [self._make(
            AnomalyType.RAPID_COMMANDS, Severity.MEDIUM,
            guild_id=key[0], user_id=key[1], timestamp=now,
            details={"commandCount": recent, "timeWindow": span},
        )]

    def _check_abuse(self, key, window: AnomalyWindow, command: str, now: float) -> list[AnomalyEvent]:
        count, span = self.thresholds["command_abuse"]
        same = sum(1 for ts, name in window.commands if name == command and ts > now - span)
        if same < count:
            return []
        return [self._make(
            AnomalyType.COMMAND_ABUSE, Severity.MEDIUM,
            guild_id=key[0], user_id=key[1], timestamp=now,
            details={"command": command, "count": same, "timeWindow": span},
        )]

    def _check_timing(self, key, window: AnomalyWindow, now: float) -> list[AnomalyEvent]:
        sample = C.SUSPICIOUS_PATTERN_SAMPLE
        if len(window.commands) < sample:
            return []
        stamps = [ts for ts, _ in list(window.commands)[-sample:]]
        deltas = [b - a for a, b in itertools.pairwise(stamps)]
        mean = sum(deltas) / len(deltas)
        tolerance = C.SUSPICIOUS_PATTERN_TOLERANCE_SECONDS
        if mean >= C.SUSPICIOUS_PATTERN_MAX_MEAN_SECONDS:
            return []
        if any(abs(d - mean) >= tolerance for d in deltas):
            return []
        return [self._make(
            AnomalyType.SUSPICIOUS_PATTERN, Severity.MEDIUM,
            guild_id=key[0], user_id=key[1], timestamp=now,
            details={"pattern": "consistent_timing", "averageInterval": mean, "commandCount": sample},
        )]

    def _check_denials(self, key, window: AnomalyWindow, now: float) -> list[AnomalyEvent]:
        count, span = self.thresholds["failed_permissions"]
        recent = _count_since(window.denials, now - span)
        if recent < count:
            return []
        return [self._make(
            AnomalyType.PERMISSION_DENIED, Severity.MEDIUM,
            guild_id=key[0], user_id=key[1], timestamp=now,
            details={"failedAttempts": recent, "timeWindow": span},
        )]

    def _check_new_accounts(self, key, command: str, now: float) -> list[AnomalyEvent]:
        count, span = self.thresholds["new_account_activity"]
        guild_id, user_id = key
        seen = self._new_accounts.setdefault(guild_id, deque(maxlen=C.ANOMALY_WINDOW_MAXLEN))
        while seen and seen[0][0] <= now - span:
            seen.popleft()
        seen.append((now, user_id))
        if len(seen) < count:
            return []
        return [self._make(
            AnomalyType.NEW_ACCOUNT_ACTIVITY, Severity.MEDIUM,
            guild_id=guild_id, user_id=None, timestamp=now,
            details={
                "newAccountCount": len(seen),
                "timeWindow": span,
                "users": sorted({uid for _, uid in seen}),
                "command": command,
            },
        )]

    # -----------------------------------------------------------------------
    # Event plumbing
    # -----------------------------------------------------------------------
    def _make(self, type: AnomalyType, severity: Severity, *, guild_id, user_id, timestamp, details) -> AnomalyEvent:
        return AnomalyEvent(
            event_id=f"sec_{int(timestamp * 1000)}_{next(self._seq)}",
            type=type,
            severity=severity,
            guild_id=guild_id,
            user_id=user_id,
            timestamp=timestamp,
            details=details,
        )

    async def _publish(self, event: AnomalyEvent) -> None:
        self._events.append(event)
        cutoff = self.clock.now() - C.ANOMALY_RETENTION_SECONDS
        self._events = [e for e in self._events if e.timestamp > cutoff]

        level = logging.ERROR if event.severity in (Severity.HIGH, Severity.CRITICAL) else logging.WARNING
        logger.log(
            level, "Anomaly %s (%s) guild=%s user=%s %s",
            event.type, event.severity, event.guild_id, event.user_id, event.details,
        )
        for listener in self._listeners:
            try:
                await listener(event)
            except Exception:
                logger.exception("Anomaly listener failed for %s", event.event_id)

    # -----------------------------------------------------------------------
    # Reporting & housekeeping
    # -----------------------------------------------------------------------
    def statistics(self) -> dict[str, Any]:
        now = self.clock.now()
        last_hour = [e for e in self._events if e.timestamp > now - 3600]
        last_day = [e for e in self._events if e.timestamp > now - 86400]
        by_type: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        for event in last_day:
            by_type[event.type.value] = by_type.get(event.type.value, 0) + 1
            by_severity[event.severity.value] = by_severity.get(event.severity.value, 0) + 1
        return {
            "totalEvents": len(self._events),
            "recentEvents": len(last_hour),
            "dailyEvents": len(last_day),
            "eventsByType": by_type,
            "eventsBySeverity": by_severity,
            "trackedWindows": len(self._windows),
        }

    def recent_events(self, limit: int = 50) -> list[AnomalyEvent]:
        """Newest first."""
        return sorted(self._events, key=lambda e: e.timestamp, reverse=True)[:limit]

    def clear_user(self, user_id: str) -> int:
        """Forget every window kept for *user_id*.  Returns how many were dropped."""
        doomed = [key for key in self._windows if key[1] == str(user_id)]
        for key in doomed:
            del self._windows[key]
        logger.info("Cleared %d anomaly window(s) for user %s", len(doomed), user_id)
        return len(doomed)

    def cleanup(self) -> int:
        """Evict stale window entries and events past retention."""
        now = self.clock.now()
        cutoff = now - self._widest
        removed = 0
        for key in list(self._windows):
            window = self._windows[key]
            window.evict(cutoff)
            if window.empty:
                del self._windows[key]
                removed += 1
        for buckets in (self._new_accounts, self._joins):
            for guild_id in list(buckets):
                entries = buckets[guild_id]
                while entries and entries[0][0] <= cutoff:
                    entries.popleft()
                if not entries:
                    del buckets[guild_id]
        retention = now - C.ANOMALY_RETENTION_SECONDS
        self._events = [e for e in self._events if e.timestamp > retention]
        return removed
