"""
nafflesync.services.monitor — Sync Health, Alerts & Recommendations
====================================================================

**Why this file exists:**
The sync engine only counts.  The :class:`SyncMonitor` turns those counters
into something an operator can act on:

- **Snapshots** every 30 s into a bounded history ring; the newest one is
  also cached in Redis under ``metrics:performance`` for 5 minutes.
- **Health rollup** over four components (``syncQueue``,
  ``batchProcessing``, ``webhookIntegration``, ``errorRecovery``); the
  overall status is the worst of the four.
- **Alerts** when the newest snapshot crosses a threshold, at most one per
  alert type per cooldown.  Critical alerts are handed to the alert sink
  (DMs to guild admins) and stored under ``alerts:<type>_<ms>``.
- **Recommendations** from the trailing 10 snapshots, recomputed every
  5 minutes and cached for 10.
- **Event tails** — engine and ingress events are appended to bounded
  Redis lists for after-the-fact inspection.

Nothing in here is allowed to raise into the caller: every public coroutine
logs and carries on.
"""

from __future__ import annotations

import enum
import json
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from nafflesync import constants as C
from nafflesync.config import MonitorSettings
from nafflesync.engine.clock import Clock

if TYPE_CHECKING:
    from nafflesync.engine.sync_engine import SyncEngine
    from nafflesync.services.kv_cache import KVCache

logger = logging.getLogger(__name__)


class HealthStatus(enum.StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertSeverity(enum.StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


_RANK = {HealthStatus.HEALTHY: 0, HealthStatus.WARNING: 1, HealthStatus.CRITICAL: 2}


def worst(*statuses: HealthStatus) -> HealthStatus:
    return max(statuses, key=_RANK.__getitem__, default=HealthStatus.HEALTHY)


def trend(first: float, last: float, threshold: float = C.TREND_THRESHOLD_PERCENT) -> str:
    """``increasing`` / ``decreasing`` / ``stable`` from first→last change."""
    if first == 0:
        return "increasing" if last > 0 else "stable"
    change = (last - first) / abs(first) * 100
    if change > threshold:
        return "increasing"
    if change < -threshold:
        return "decreasing"
    return "stable"


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class HealthSnapshot:
    timestamp: float
    sync_operations: int
    successful_syncs: int
    failed_syncs: int
    queue_size: int
    active_count: int
    batch_queue_size: int
    batch_operations: int
    cooldowns: int
    average_sync_time_ms: float
    failure_rate: float
    webhook_events: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "syncOperations": self.sync_operations,
            "successfulSyncs": self.successful_syncs,
            "failedSyncs": self.failed_syncs,
            "queueSize": self.queue_size,
            "activeSyncs": self.active_count,
            "batchQueueSize": self.batch_queue_size,
            "batchOperations": self.batch_operations,
            "errorCooldowns": self.cooldowns,
            "averageSyncTimeMs": self.average_sync_time_ms,
            "failureRate": self.failure_rate,
            "webhookEvents": self.webhook_events,
        }


@dataclass(slots=True)
class AlertRecord:
    alert_type: str
    severity: AlertSeverity
    message: str
    threshold: float
    current: float
    first_seen_at: float
    cooled_until: float

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        return data


AlertSink = Callable[[AlertRecord], Awaitable[None]]


class SyncMonitor:
    """Samples a :class:`SyncEngine` and derives health, alerts and advice."""

    def __init__(
        self,
        engine: SyncEngine,
        *,
        kv: KVCache | None = None,
        settings: MonitorSettings | None = None,
        clock: Clock | None = None,
        alert_sink: AlertSink | None = None,
    ) -> None:
        self.engine = engine
        self.kv = kv
        self.settings = settings or MonitorSettings()
        self.clock = clock or Clock()
        self.alert_sink = alert_sink

        self.history: deque[HealthSnapshot] = deque(maxlen=self.settings.max_history)
        self.alerts: dict[str, AlertRecord] = {}
        self.health: dict[str, Any] = {"overall": HealthStatus.HEALTHY.value, "components": {}, "lastCheck": None}
        self._recommendations: list[dict[str, Any]] = []
        self._recommended_at: float | None = None
        self._started_at = self.clock.now()

    # -----------------------------------------------------------------------
    # Sampling
    # -----------------------------------------------------------------------
    async def sample(self) -> HealthSnapshot:
        """Snapshot the engine counters into the history ring."""
        m = self.engine.metrics
        snapshot = HealthSnapshot(
            timestamp=self.clock.now(),
            sync_operations=m.sync_operations,
            successful_syncs=m.successful_syncs,
            failed_syncs=m.failed_syncs,
            queue_size=self.engine.queue_size,
            active_count=self.engine.active_count,
            batch_queue_size=self.engine.batch_queue_size,
            batch_operations=m.batch_operations,
            cooldowns=self.engine.cooldown_count,
            average_sync_time_ms=m.average_sync_time_ms,
            failure_rate=m.failed_syncs / max(1, m.sync_operations),
            webhook_events=m.webhook_events,
        )
        self.history.append(snapshot)

        if self.kv is not None:
            try:
                await self.kv.set(
                    C.PERFORMANCE_KEY, json.dumps(snapshot.to_dict()), ttl=C.PERFORMANCE_TTL_SECONDS,
                )
            except Exception:
                logger.exception("Failed to cache performance snapshot")

        logger.debug(
            "Snapshot: queue=%d failure=%.2f%% avg=%.0fms",
            snapshot.queue_size, snapshot.failure_rate * 100, snapshot.average_sync_time_ms,
        )
        return snapshot

    async def tick(self) -> None:
        """One monitor interval: sample, roll up health, raise alerts.

        Recommendations are refreshed here too once they fall due.
        """
        try:
            await self.sample()
            await self.check_health()
            await self.check_alerts()
            now = self.clock.now()
            if self._recommended_at is None or now - self._recommended_at >= C.RECOMMENDATION_INTERVAL_SECONDS:
                self.recommendations(force=True)
        except Exception:
            logger.exception("Monitor tick failed")

    # -----------------------------------------------------------------------
    # Health
    # -----------------------------------------------------------------------
    def _queue_health(self, s: dict[str, Any]) -> tuple[HealthStatus, list[str]]:
        if s["queueSize"] > 200:
            return HealthStatus.CRITICAL, [f"queue size {s['queueSize']} > 200"]
        issues = []
        if s["queueSize"] > 100:
            issues.append(f"queue size {s['queueSize']} > 100")
        if s["activeSyncs"] > 50:
            issues.append(f"{s['activeSyncs']} active syncs > 50")
        return (HealthStatus.WARNING if issues else HealthStatus.HEALTHY), issues

    def _batch_health(self, s: dict[str, Any]) -> tuple[HealthStatus, list[str]]:
        issues = []
        if s["batchQueueSize"] > 100:
            issues.append(f"batch queue {s['batchQueueSize']} > 100")
        if s["batchOperations"] == 0 and s["syncOperations"] > 100:
            issues.append("no batches processed yet")
        return (HealthStatus.WARNING if issues else HealthStatus.HEALTHY), issues

    async def _webhook_health(self) -> tuple[HealthStatus, list[str]]:
        if self.kv is None:
            return HealthStatus.WARNING, ["no event store configured"]
        try:
            latest = await self.kv.list_range(C.WEBHOOK_EVENTS_KEY, 0, 0)
            if not latest:
                return HealthStatus.WARNING, ["no recent webhook events"]
            age = self.clock.now() - float(json.loads(latest[0])["timestamp"])
        except Exception as exc:
            logger.warning("Webhook health probe failed: %s", exc)
            return HealthStatus.CRITICAL, ["health probe failed"]
        if age > C.WEBHOOK_SILENCE_SECONDS:
            return HealthStatus.WARNING, [f"no webhook in {age / 60:.0f} min"]
        return HealthStatus.HEALTHY, []

    def _error_health(self, s: dict[str, Any]) -> tuple[HealthStatus, list[str]]:
        cooldowns = s["errorCooldowns"]
        if cooldowns > 20:
            return HealthStatus.CRITICAL, [f"{cooldowns} operations on cooldown"]
        if s["failedSyncs"] > s["successfulSyncs"]:
            return HealthStatus.CRITICAL, ["failures outnumber successes"]
        if cooldowns > 10:
            return HealthStatus.WARNING, [f"{cooldowns} operations on cooldown"]
        return HealthStatus.HEALTHY, []

    async def check_health(self) -> dict[str, Any]:
        """Recompute the four-component rollup."""
        stats = self.engine.statistics()
        components = {
            "syncQueue": self._queue_health(stats),
            "batchProcessing": self._batch_health(stats),
            "webhookIntegration": await self._webhook_health(),
            "errorRecovery": self._error_health(stats),
        }
        overall = worst(*(status for status, _ in components.values()))
        self.health = {
            "overall": overall.value,
            "components": {
                name: {"status": status.value, "issues": issues}
                for name, (status, issues) in components.items()
            },
            "lastCheck": self.clock.now(),
        }
        if overall is not HealthStatus.HEALTHY:
            logger.warning("Sync health %s: %s", overall, {
                name: issues for name, (status, issues) in components.items() if issues
            })
        return self.health

    # -----------------------------------------------------------------------
    # Alerts
    # -----------------------------------------------------------------------
    def _violations(self, snap: HealthSnapshot) -> list[tuple[str, AlertSeverity, str, float, float]]:
        t = self.settings.thresholds
        found = []
        if snap.failure_rate > t["failure_rate"]:
            found.append((
                "high_failure_rate", AlertSeverity.WARNING,
                f"Sync failure rate is {snap.failure_rate * 100:.1f}%",
                t["failure_rate"], snap.failure_rate,
            ))
        if snap.average_sync_time_ms > t["avg_sync_time_ms"]:
            found.append((
                "slow_sync_time", AlertSeverity.WARNING,
                f"Average sync time is {snap.average_sync_time_ms:.0f}ms",
                t["avg_sync_time_ms"], snap.average_sync_time_ms,
            ))
        if snap.queue_size > t["queue_size"]:
            found.append((
                "large_queue_size", AlertSeverity.WARNING,
                f"Sync queue size is {snap.queue_size}",
                t["queue_size"], snap.queue_size,
            ))
        if snap.cooldowns > t["cooldowns"]:
            found.append((
                "many_error_cooldowns", AlertSeverity.CRITICAL,
                f"{snap.cooldowns} operations on error cooldown",
                t["cooldowns"], snap.cooldowns,
            ))
        return found

    def alert_on_cooldown(self, alert_type: str) -> bool:
        record = self.alerts.get(alert_type)
        return record is not None and self.clock.now() < record.cooled_until

    async def check_alerts(self) -> list[AlertRecord]:
        """Raise an alert for each threshold the newest snapshot crosses."""
        if not self.history:
            return []
        now = self.clock.now()
        raised = []
        for alert_type, severity, message, threshold, current in self._violations(self.history[-1]):
            if self.alert_on_cooldown(alert_type):
                continue
            record = AlertRecord(
                alert_type=alert_type,
                severity=severity,
                message=message,
                threshold=threshold,
                current=current,
                first_seen_at=now,
                cooled_until=now + self.settings.alert_cooldown,
            )
            self.alerts[alert_type] = record
            raised.append(record)
            logger.warning("Sync alert [%s] %s (threshold %s)", severity, message, threshold)

            if severity is AlertSeverity.CRITICAL:
                await self._escalate(record)
        return raised

    async def _escalate(self, record: AlertRecord) -> None:
        if self.kv is not None:
            try:
                await self.kv.set(
                    f"{C.ALERT_KEY_PREFIX}{record.alert_type}_{int(record.first_seen_at * 1000)}",
                    json.dumps(record.to_dict()),
                    ttl=C.ALERT_TTL_SECONDS,
                )
            except Exception:
                logger.exception("Failed to store alert %s", record.alert_type)
        if self.alert_sink is not None:
            try:
                await self.alert_sink(record)
            except Exception:
                logger.exception("Failed to deliver critical alert %s", record.alert_type)

    # -----------------------------------------------------------------------
    # Recommendations & trends
    # -----------------------------------------------------------------------
    def recommendations(self, *, force: bool = False) -> list[dict[str, Any]]:
        """Tuning advice from the trailing snapshots (cached for 10 min)."""
        now = self.clock.now()
        fresh = self._recommended_at is not None and now - self._recommended_at < C.RECOMMENDATION_CACHE_SECONDS
        if fresh and not force:
            return list(self._recommendations)

        window = C.RECOMMENDATION_WINDOW
        if len(self.history) < window:
            return []
        recent = list(self.history)[-window:]
        advice: list[dict[str, Any]] = []

        if _mean([s.queue_size for s in recent]) > 50:
            advice.append({
                "type": "queue_optimization",
                "priority": "medium",
                "description": "Consider increasing batch processing frequency or size",
                "implementation": "Lower SYNC_BATCH_INTERVAL_SECONDS or raise SYNC_BATCH_SIZE",
            })
        if _mean([s.average_sync_time_ms for s in recent]) > 3000:
            advice.append({
                "type": "performance_optimization",
                "priority": "high",
                "description": "Sync operations are taking longer than optimal",
                "implementation": "Review platform timeouts and connection pooling",
            })
        if _mean([s.failure_rate for s in recent]) > 0.05:
            advice.append({
                "type": "reliability_optimization",
                "priority": "high",
                "description": "Sync failure rate is higher than expected",
                "implementation": "Review retry policy and endpoint idempotency",
            })
        batched = [s.batch_queue_size for s in recent if s.batch_queue_size > 0]
        if batched and _mean(batched) < 10:
            advice.append({
                "type": "batch_optimization",
                "priority": "low",
                "description": "Batch processing could be more efficient with larger batches",
                "implementation": "Raise SYNC_BATCH_SIZE or lengthen the batch interval",
            })

        self._recommendations = advice
        self._recommended_at = now
        if advice:
            logger.info("Generated %d optimization recommendation(s)", len(advice))
        return list(advice)

    def performance_trends(self, time_range: float = 3600) -> dict[str, Any]:
        cutoff = self.clock.now() - time_range
        recent = [s for s in self.history if s.timestamp > cutoff]
        if not recent:
            return {"error": "No data available for the specified time range"}
        first, last = recent[0], recent[-1]
        return {
            "timeRange": time_range,
            "dataPoints": len(recent),
            "trends": {
                "queueSize": trend(first.queue_size, last.queue_size),
                "failureRate": trend(first.failure_rate, last.failure_rate),
                "averageSyncTimeMs": trend(first.average_sync_time_ms, last.average_sync_time_ms),
                "syncOperations": trend(first.sync_operations, last.sync_operations),
            },
            "summary": {
                "avgQueueSize": _mean([s.queue_size for s in recent]),
                "avgFailureRate": _mean([s.failure_rate for s in recent]),
                "avgSyncTimeMs": _mean([s.average_sync_time_ms for s in recent]),
                "totalOperations": last.sync_operations - first.sync_operations,
            },
        }

    def statistics(self) -> dict[str, Any]:
        now = self.clock.now()
        return {
            "healthStatus": self.health,
            "activeAlerts": sum(1 for a in self.alerts.values() if now < a.cooled_until),
            "performanceHistorySize": len(self.history),
            "recommendations": len(self._recommendations),
            "uptime": now - self._started_at,
        }

    # -----------------------------------------------------------------------
    # Event tails
    # -----------------------------------------------------------------------
    async def record_event(self, channel: str, data: dict[str, Any]) -> None:
        """Engine listener: append sync/batch events to their KV tail."""
        key = C.BATCH_EVENTS_KEY if channel == "batch" else C.SYNC_EVENTS_KEY
        await self._push(key, data)

    async def record_webhook_event(self, data: dict[str, Any]) -> None:
        await self._push(C.WEBHOOK_EVENTS_KEY, {"type": "webhook_received", "timestamp": self.clock.now(), **data})

    async def _push(self, key: str, data: dict[str, Any]) -> None:
        if self.kv is None:
            return
        try:
            await self.kv.push_bounded(
                key, json.dumps(data, default=str),
                maxlen=C.EVENT_LIST_MAX, ttl=C.EVENT_LIST_TTL_SECONDS,
            )
        except Exception:
            logger.exception("Failed to record event to %s", key)

    async def shutdown(self) -> None:
        """Persist the newest snapshot under ``metrics:final`` for a day."""
        if self.kv is None or not self.history:
            return
        try:
            await self.kv.set(
                C.FINAL_METRICS_KEY, json.dumps(self.history[-1].to_dict()),
                ttl=C.FINAL_METRICS_TTL_SECONDS,
            )
        except Exception:
            logger.exception("Failed to persist final metrics")
        logger.info("Sync monitor stopped")
