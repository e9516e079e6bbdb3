"""
tests/test_monitor.py — Sync Monitor Tests
===========================================

Health rollup thresholds, alert cooldowns and escalation, trend and
recommendation derivation, and the KV event tails.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from nafflesync.engine.operations import SyncKind, TaskStatusPayload
from nafflesync.engine.sync_engine import SyncEngine
from nafflesync.services.monitor import (
    AlertSeverity,
    HealthStatus,
    SyncMonitor,
    trend,
    worst,
)


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


@pytest.fixture
def engine(clock, timers):
    return SyncEngine(MagicMock(), clock=clock, timers=timers)


@pytest.fixture
def sink():
    return AsyncMock()


@pytest.fixture
def monitor(engine, kv, clock, sink):
    return SyncMonitor(engine, kv=kv, clock=clock, alert_sink=sink)


def _fill_queue(engine, n):
    for i in range(n):
        engine.enqueue(SyncKind.TASK_STATUS, f"t{i}", TaskStatusPayload("active"))


def _cool_down(engine, clock, n):
    for i in range(n):
        engine._cooldowns[f"task_status_x{i}_1"] = clock.now() + 60


def _recent_webhook(kv, clock):
    kv.lists["events:webhook"] = [json.dumps({"type": "webhook_received", "timestamp": clock.now()})]


class TestHelpers:
    def test_worst(self):
        assert worst(HealthStatus.HEALTHY, HealthStatus.CRITICAL, HealthStatus.WARNING) is HealthStatus.CRITICAL
        assert worst() is HealthStatus.HEALTHY

    @pytest.mark.parametrize(
        "first, last, expected",
        [
            (100, 111, "increasing"),
            (100, 105, "stable"),
            (100, 80, "decreasing"),
            (0, 0, "stable"),
            (0, 3, "increasing"),
        ],
    )
    def test_trend(self, first, last, expected):
        assert trend(first, last) == expected


class TestHealth:
    def test_all_healthy(self, monitor, kv, clock):
        _recent_webhook(kv, clock)
        health = run_async(monitor.check_health())
        assert health["overall"] == "healthy"
        assert set(health["components"]) == {
            "syncQueue", "batchProcessing", "webhookIntegration", "errorRecovery",
        }

    def test_queue_over_200_is_critical(self, monitor, engine, kv, clock):
        _recent_webhook(kv, clock)
        _fill_queue(engine, 201)
        health = run_async(monitor.check_health())
        assert health["components"]["syncQueue"]["status"] == "critical"
        assert health["overall"] == "critical"

    def test_queue_over_100_is_warning(self, monitor, engine, kv, clock):
        _recent_webhook(kv, clock)
        _fill_queue(engine, 101)
        health = run_async(monitor.check_health())
        assert health["components"]["syncQueue"]["status"] == "warning"
        assert health["overall"] == "warning"

    def test_silent_webhooks_warn(self, monitor, kv, clock):
        _recent_webhook(kv, clock)
        clock.advance(601)
        health = run_async(monitor.check_health())
        assert health["components"]["webhookIntegration"]["status"] == "warning"

    def test_no_webhooks_yet_warns(self, monitor):
        health = run_async(monitor.check_health())
        assert health["components"]["webhookIntegration"]["issues"] == ["no recent webhook events"]

    def test_probe_failure_is_critical(self, monitor, kv):
        kv.list_range = AsyncMock(side_effect=ConnectionError("redis gone"))
        health = run_async(monitor.check_health())
        assert health["components"]["webhookIntegration"]["status"] == "critical"

    def test_error_recovery_levels(self, monitor, engine, kv, clock):
        _recent_webhook(kv, clock)
        _cool_down(engine, clock, 11)
        assert run_async(monitor.check_health())["components"]["errorRecovery"]["status"] == "warning"
        _cool_down(engine, clock, 21)
        assert run_async(monitor.check_health())["components"]["errorRecovery"]["status"] == "critical"

    def test_failures_outnumbering_successes_is_critical(self, monitor, engine):
        engine.metrics.sync_operations = 5
        engine.metrics.failed_syncs = 3
        engine.metrics.successful_syncs = 2
        health = run_async(monitor.check_health())
        assert health["components"]["errorRecovery"]["status"] == "critical"


class TestAlerts:
    def test_failure_rate_alert_and_cooldown(self, monitor, engine, clock, sink):
        engine.metrics.sync_operations = 100
        engine.metrics.failed_syncs = 11
        engine.metrics.successful_syncs = 89

        run_async(monitor.sample())
        raised = run_async(monitor.check_alerts())
        assert [a.alert_type for a in raised] == ["high_failure_rate"]
        assert raised[0].severity is AlertSeverity.WARNING
        sink.assert_not_awaited()

        clock.advance(60)
        run_async(monitor.sample())
        assert run_async(monitor.check_alerts()) == []

        clock.advance(240)
        run_async(monitor.sample())
        assert [a.alert_type for a in run_async(monitor.check_alerts())] == ["high_failure_rate"]

    def test_critical_alert_is_stored_and_escalated(self, monitor, engine, kv, clock, sink):
        _cool_down(engine, clock, 11)
        run_async(monitor.sample())
        [record] = run_async(monitor.check_alerts())

        assert record.alert_type == "many_error_cooldowns"
        assert record.severity is AlertSeverity.CRITICAL
        key = f"alerts:many_error_cooldowns_{clock.now_ms()}"
        assert kv.ttls[key] == 3600
        assert json.loads(kv.data[key])["severity"] == "critical"
        sink.assert_awaited_once_with(record)

    def test_sink_failure_is_contained(self, monitor, engine, clock, sink):
        sink.side_effect = RuntimeError("DMs closed")
        _cool_down(engine, clock, 11)
        run_async(monitor.sample())
        assert len(run_async(monitor.check_alerts())) == 1

    def test_no_history_no_alerts(self, monitor):
        assert run_async(monitor.check_alerts()) == []

    def test_slow_sync_and_large_queue(self, monitor, engine):
        engine.metrics.average_sync_time_ms = 6000
        _fill_queue(engine, 101)
        run_async(monitor.sample())
        types = {a.alert_type for a in run_async(monitor.check_alerts())}
        assert types == {"slow_sync_time", "large_queue_size"}


class TestSnapshots:
    def test_sample_caches_performance(self, monitor, engine, kv):
        engine.metrics.sync_operations = 4
        engine.metrics.failed_syncs = 1
        snapshot = run_async(monitor.sample())
        assert snapshot.failure_rate == 0.25
        assert kv.ttls["metrics:performance"] == 300
        assert json.loads(kv.data["metrics:performance"])["failureRate"] == 0.25

    def test_failure_rate_with_no_operations(self, monitor):
        assert run_async(monitor.sample()).failure_rate == 0

    def test_history_is_bounded(self, engine, clock):
        from nafflesync.config import MonitorSettings

        monitor = SyncMonitor(engine, clock=clock, settings=MonitorSettings(max_history=3))
        for _ in range(5):
            run_async(monitor.sample())
        assert len(monitor.history) == 3

    def test_trends(self, monitor, engine, clock):
        run_async(monitor.sample())
        _fill_queue(engine, 20)
        engine.metrics.sync_operations = 40
        clock.advance(30)
        run_async(monitor.sample())

        trends = monitor.performance_trends()
        assert trends["dataPoints"] == 2
        assert trends["trends"]["queueSize"] == "increasing"
        assert trends["trends"]["failureRate"] == "stable"
        assert trends["summary"]["totalOperations"] == 40

    def test_trends_without_data(self, monitor):
        assert "error" in monitor.performance_trends()

    def test_shutdown_persists_final_metrics(self, monitor, kv):
        run_async(monitor.sample())
        run_async(monitor.shutdown())
        assert kv.ttls["metrics:final"] == 86400


class TestRecommendations:
    def test_needs_ten_snapshots(self, monitor, engine):
        _fill_queue(engine, 60)
        for _ in range(9):
            run_async(monitor.sample())
        assert monitor.recommendations(force=True) == []

    def test_queue_and_reliability_advice(self, monitor, engine, clock):
        _fill_queue(engine, 60)
        engine.metrics.sync_operations = 100
        engine.metrics.failed_syncs = 10
        for _ in range(10):
            run_async(monitor.sample())
            clock.advance(30)

        types = {r["type"] for r in monitor.recommendations(force=True)}
        assert types == {"queue_optimization", "reliability_optimization"}

    def test_results_are_cached(self, monitor, engine, clock):
        for _ in range(10):
            run_async(monitor.sample())
        assert monitor.recommendations(force=True) == []

        engine.metrics.average_sync_time_ms = 4000
        for _ in range(10):
            run_async(monitor.sample())
        assert monitor.recommendations() == []

        clock.advance(601)
        assert [r["type"] for r in monitor.recommendations()] == ["performance_optimization"]

    def test_tick_runs_everything(self, monitor, engine, clock, sink):
        _cool_down(engine, clock, 11)
        run_async(monitor.tick())
        assert len(monitor.history) == 1
        assert monitor.health["lastCheck"] == clock.now()
        assert "many_error_cooldowns" in monitor.alerts
        assert monitor.statistics()["activeAlerts"] == 1


class TestEventTails:
    def test_engine_events_routed_by_channel(self, monitor, kv):
        run_async(monitor.record_event("sync", {"type": "completed"}))
        run_async(monitor.record_event("batch", {"type": "batch_processed"}))
        assert len(kv.lists["events:sync"]) == 1
        assert len(kv.lists["events:batch"]) == 1

    def test_webhook_tail_is_newest_first(self, monitor, kv, clock):
        run_async(monitor.record_webhook_event({"eventType": "a"}))
        clock.advance(1)
        run_async(monitor.record_webhook_event({"eventType": "b"}))
        newest = json.loads(kv.lists["events:webhook"][0])
        assert newest["eventType"] == "b"
        assert newest["timestamp"] == clock.now()

    def test_push_failure_is_contained(self, monitor, kv):
        kv.push_bounded = AsyncMock(side_effect=ConnectionError("down"))
        run_async(monitor.record_event("sync", {"type": "completed"}))
