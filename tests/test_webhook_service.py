"""
tests/test_webhook_service.py — Webhook Event Mapping Tests
============================================================

Each platform event type must land in the sync queue as the right kind,
key and payload, tagged ``source: "webhook"``.  Fan-out events go to the
notifier instead.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from nafflesync.engine.operations import (
    AllowlistPayload,
    SyncKind,
    TaskStatusPayload,
    UserProgressPayload,
)
from nafflesync.engine.sync_engine import SyncEngine
from nafflesync.services.webhook_service import (
    EventResult,
    EventType,
    UnknownEventType,
    WebhookService,
)


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


META = {"timestamp": "2026-03-01T12:00:00Z", "batchId": None}
WEBHOOK_META = {**META, "source": "webhook"}


@pytest.fixture
def engine(clock, timers):
    return SyncEngine(MagicMock(), clock=clock, timers=timers)


@pytest.fixture
def notifier():
    n = MagicMock()
    n.community_settings_changed = AsyncMock(return_value=1)
    n.system_maintenance = AsyncMock(return_value=2)
    return n


@pytest.fixture
def monitor():
    m = MagicMock()
    m.record_webhook_event = AsyncMock()
    return m


@pytest.fixture
def service(engine, notifier, monitor, clock):
    return WebhookService(engine, notifier=notifier, monitor=monitor, clock=clock)


def _only_op(engine):
    [op] = list(engine._queue.values())
    return op


class TestTaskEvents:
    def test_status_changed(self, service, engine):
        run_async(service.handle("task.status_changed", {
            "taskId": "t1", "oldStatus": "active", "newStatus": "paused", "changes": {"title": "x"},
        }, META))
        op = _only_op(engine)
        assert op.kind is SyncKind.TASK_STATUS
        assert op.key == "t1"
        assert op.payload == TaskStatusPayload(
            "paused", {"oldStatus": "active", "changes": {"title": "x"}, **WEBHOOK_META},
        )

    def test_progress_updated_has_no_status(self, service, engine):
        run_async(service.handle("task.progress_updated", {"taskId": "t1", "progressData": {"pct": 40}}, META))
        payload = _only_op(engine).payload
        assert payload.new_status is None
        assert payload.metadata == {"progressData": {"pct": 40}, **WEBHOOK_META}

    def test_completed(self, service, engine):
        run_async(service.handle("task.completed", {
            "taskId": 9, "completedBy": "u1", "completionData": {"proof": "url"},
        }, META))
        op = _only_op(engine)
        assert op.key == "9"
        assert op.payload.new_status == "completed"
        assert op.payload.metadata["completedBy"] == "u1"
        assert op.payload.metadata["completionData"] == {"proof": "url"}

    def test_missing_task_id_raises(self, service, engine):
        with pytest.raises(ValueError):
            run_async(service.handle("task.completed", {}, META))
        assert engine.queue_size == 0


class TestAllowlistEvents:
    def test_status_changed(self, service, engine):
        run_async(service.handle("allowlist.status_changed", {
            "allowlistId": "a1", "oldStatus": "live", "newStatus": "ended", "changes": {"endedBy": "admin"},
        }, META))
        op = _only_op(engine)
        assert op.kind is SyncKind.ALLOWLIST_UPDATE
        assert op.payload == AllowlistPayload("status_change", {
            "oldStatus": "live", "newStatus": "ended", "endedBy": "admin", **WEBHOOK_META,
        })

    def test_participant_added(self, service, engine):
        run_async(service.handle("allowlist.participant_added", {
            "allowlistId": "a1", "participant": {"userId": "u1"}, "totalParticipants": 12,
        }, META))
        changes = _only_op(engine).payload.changes
        assert changes["newParticipant"] == {"userId": "u1"}
        assert changes["totalParticipants"] == 12
        assert _only_op(engine).payload.update_type == "participant_added"

    def test_winner_selected(self, service, engine):
        run_async(service.handle("allowlist.winner_selected", {
            "allowlistId": "a1", "winners": ["u1", "u2"],
        }, META))
        payload = _only_op(engine).payload
        assert payload.update_type == "winner_selected"
        assert payload.changes["winners"] == ["u1", "u2"]
        assert payload.changes["completionData"] == {}


class TestUserEvents:
    def test_progress_updated_defaults_type(self, service, engine):
        run_async(service.handle("user.progress_updated", {"userId": "u1", "progressData": {"level": 3}}, META))
        assert _only_op(engine).payload == UserProgressPayload(
            "progress_updated", {"level": 3, **WEBHOOK_META},
        )

    def test_progress_updated_keeps_given_type(self, service, engine):
        run_async(service.handle("user.progress_updated", {"userId": "u1", "progressType": "level_up"}, META))
        assert _only_op(engine).payload.progress_type == "level_up"

    def test_points_earned(self, service, engine):
        run_async(service.handle("user.points_earned", {
            "userId": "u1", "pointsEarned": 50, "source": "task", "taskId": "t1",
        }, META))
        payload = _only_op(engine).payload
        assert payload.progress_type == "points_earned"
        assert payload.progress_data == {
            "pointsEarned": 50, "pointsSource": "task", "taskId": "t1", **WEBHOOK_META,
        }

    def test_points_earned_without_task(self, service, engine):
        run_async(service.handle("user.points_earned", {"userId": "u1", "pointsEarned": 5}, META))
        assert "taskId" not in _only_op(engine).payload.progress_data

    def test_achievement_unlocked(self, service, engine):
        run_async(service.handle("user.achievement_unlocked", {
            "userId": "u1", "achievement": {"name": "First Blood"}, "pointsEarned": 100,
        }, META))
        payload = _only_op(engine).payload
        assert payload.progress_type == "achievement_unlocked"
        assert payload.progress_data["achievement"] == {"name": "First Blood"}


class TestFanOutEvents:
    def test_community_settings_changed(self, service, engine, notifier):
        result = run_async(service.handle("community.settings_changed", {
            "communityId": "c1", "changes": {"pointsName": "gems"},
        }, META))
        assert result is None
        notifier.community_settings_changed.assert_awaited_once_with("c1", {"pointsName": "gems"})
        assert engine.queue_size == 0

    def test_system_maintenance(self, service, notifier):
        data = {"message": "DB upgrade", "duration": 30}
        run_async(service.handle("system.maintenance", data, META))
        notifier.system_maintenance.assert_awaited_once_with(data)

    def test_fan_out_without_notifier(self, engine, clock):
        service = WebhookService(engine, clock=clock)
        assert run_async(service.handle("system.maintenance", {}, META)) is None


class TestApply:
    def test_every_event_type_has_a_handler(self, service):
        assert service.handler_count == len(EventType) == 11

    def test_unknown_type(self, service):
        with pytest.raises(UnknownEventType):
            run_async(service.handle("raffle.drawn", {}, META))
        assert run_async(service.apply("raffle.drawn", {}, META)) is False
        assert run_async(service.apply(None, {}, META)) is False

    def test_apply_records_event(self, service, engine, monitor):
        assert run_async(service.apply("task.completed", {"taskId": "t1"}, {**META, "batchId": "b1"}))
        assert engine.metrics.webhook_events == 1
        monitor.record_webhook_event.assert_awaited_once_with(
            {"eventType": "task.completed", "processed": True, "batchId": "b1"}
        )

    def test_process_event_folds_errors(self, service):
        result = run_async(service.process_event("task.completed", {}, META))
        assert result.success is False
        assert "taskId" in result.error

    def test_process_batch_keeps_order(self, service, engine):
        results = run_async(service.process_batch(
            [
                {"eventType": "task.completed", "data": {"taskId": "t1"}},
                {"eventType": "mystery", "data": {}},
                "not-an-event",
                {"eventType": "user.points_earned", "data": {"userId": "u1"}},
            ],
            {"batchId": "b9"},
        ))
        assert [r.success for r in results] == [True, False, False, True]
        assert results[1] == EventResult("mystery", False, "No handler found")
        assert engine.queue_size == 2

    def test_process_batch_runs_at_most_ten_at_once(self, engine, clock):
        in_flight = 0
        peak = 0

        async def slow_broadcast(data):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            for _ in range(3):
                await asyncio.sleep(0)
            in_flight -= 1
            return 1

        notifier = MagicMock()
        notifier.system_maintenance = slow_broadcast
        service = WebhookService(engine, notifier=notifier, clock=clock)

        events = [{"eventType": "system.maintenance", "data": {"n": i}} for i in range(25)]
        results = run_async(service.process_batch(events, {"batchId": "b10"}))

        assert all(r.success for r in results)
        assert peak == 10
        assert in_flight == 0

    def test_mark_received(self, service, clock):
        service.mark_received()
        service.mark_received(batch=True)
        stats = service.statistics()
        assert stats["webhooksReceived"] == 2
        assert stats["batchWebhooks"] == 1
        assert stats["lastWebhookTime"].startswith("2023-11-14")
