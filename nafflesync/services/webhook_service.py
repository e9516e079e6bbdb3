"""
nafflesync.services.webhook_service — Platform event dispatch
==============================================================

Translates verified platform events into sync engine work.  Handlers only
*enqueue*; the engine performs the sync on its next tick, so a webhook
response never waits on Discord or on a platform round-trip.

Two event types have no entity to converge and fan out straight to the
:class:`~nafflesync.services.notifications.Notifier` instead:
``community.settings_changed`` and ``system.maintenance``.

Every enqueued operation carries ``source: "webhook"`` in its metadata,
changes or progress data.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from nafflesync import constants as C
from nafflesync.engine.clock import Clock
from nafflesync.engine.operations import (
    AllowlistPayload,
    SyncKind,
    TaskStatusPayload,
    UserProgressPayload,
)
from nafflesync.engine.sync_engine import SyncEngine
from nafflesync.services.monitor import SyncMonitor
from nafflesync.services.notifications import Notifier

logger = logging.getLogger(__name__)


class EventType(enum.StrEnum):
    TASK_STATUS_CHANGED = "task.status_changed"
    TASK_PROGRESS_UPDATED = "task.progress_updated"
    TASK_COMPLETED = "task.completed"
    ALLOWLIST_STATUS_CHANGED = "allowlist.status_changed"
    ALLOWLIST_PARTICIPANT_ADDED = "allowlist.participant_added"
    ALLOWLIST_WINNER_SELECTED = "allowlist.winner_selected"
    USER_PROGRESS_UPDATED = "user.progress_updated"
    USER_POINTS_EARNED = "user.points_earned"
    USER_ACHIEVEMENT_UNLOCKED = "user.achievement_unlocked"
    COMMUNITY_SETTINGS_CHANGED = "community.settings_changed"
    SYSTEM_MAINTENANCE = "system.maintenance"


@dataclass(slots=True)
class EventResult:
    event_type: str | None
    success: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"eventType": self.event_type, "success": self.success, "error": self.error}


@dataclass(slots=True)
class IngressCounters:
    webhooks_received: int = 0
    webhooks_processed: int = 0
    webhooks_failed: int = 0
    batch_webhooks: int = 0
    last_webhook_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "webhooksReceived": self.webhooks_received,
            "webhooksProcessed": self.webhooks_processed,
            "webhooksFailed": self.webhooks_failed,
            "batchWebhooks": self.batch_webhooks,
            "lastWebhookTime": self.last_webhook_time.isoformat() if self.last_webhook_time else None,
        }


class UnknownEventType(LookupError):
    """No handler is registered for the event type."""


def _require(data: dict[str, Any], name: str) -> str:
    value = data.get(name)
    if value in (None, ""):
        raise ValueError(f"missing required field {name!r}")
    return str(value)


@dataclass(slots=True)
class WebhookService:
    """Maps event types onto engine operations and keeps ingress counters."""

    engine: SyncEngine
    notifier: Notifier | None = None
    monitor: SyncMonitor | None = None
    clock: Clock = field(default_factory=Clock)
    concurrency: int = C.WEBHOOK_BATCH_CONCURRENCY
    counters: IngressCounters = field(default_factory=IngressCounters)

    @property
    def handler_count(self) -> int:
        return len(EventType)

    def mark_received(self, *, batch: bool = False) -> None:
        self.counters.webhooks_received += 1
        if batch:
            self.counters.batch_webhooks += 1
        self.counters.last_webhook_time = datetime.fromtimestamp(self.clock.now(), tz=UTC)

    # -----------------------------------------------------------------------
    # Dispatch
    # -----------------------------------------------------------------------
    async def handle(self, event_type: str, data: dict[str, Any], metadata: dict[str, Any]) -> str | None:
        """Apply one event.

        Returns the sync ID when an operation was enqueued, ``None`` for
        fan-out events.  Raises :class:`UnknownEventType` for unregistered
        types and ``ValueError`` for events missing their key field.
        """
        try:
            kind = EventType(event_type)
        except ValueError:
            raise UnknownEventType(event_type) from None
        data = data or {}
        meta = {**metadata, "source": "webhook"}

        match kind:
            case EventType.TASK_STATUS_CHANGED:
                return self.engine.enqueue(SyncKind.TASK_STATUS, _require(data, "taskId"), TaskStatusPayload(
                    new_status=data.get("newStatus"),
                    metadata={"oldStatus": data.get("oldStatus"), "changes": data.get("changes") or {}, **meta},
                ))
            case EventType.TASK_PROGRESS_UPDATED:
                return self.engine.enqueue(SyncKind.TASK_STATUS, _require(data, "taskId"), TaskStatusPayload(
                    new_status=None,
                    metadata={"progressData": data.get("progressData") or {}, **meta},
                ))
            case EventType.TASK_COMPLETED:
                return self.engine.enqueue(SyncKind.TASK_STATUS, _require(data, "taskId"), TaskStatusPayload(
                    new_status="completed",
                    metadata={
                        "completedBy": data.get("completedBy"),
                        "completionData": data.get("completionData") or {},
                        **meta,
                    },
                ))
            case EventType.ALLOWLIST_STATUS_CHANGED:
                return self.engine.enqueue(SyncKind.ALLOWLIST_UPDATE, _require(data, "allowlistId"), AllowlistPayload(
                    update_type="status_change",
                    changes={
                        "oldStatus": data.get("oldStatus"),
                        "newStatus": data.get("newStatus"),
                        **(data.get("changes") or {}),
                        **meta,
                    },
                ))
            case EventType.ALLOWLIST_PARTICIPANT_ADDED:
                return self.engine.enqueue(SyncKind.ALLOWLIST_UPDATE, _require(data, "allowlistId"), AllowlistPayload(
                    update_type="participant_added",
                    changes={
                        "newParticipant": data.get("participant"),
                        "totalParticipants": data.get("totalParticipants"),
                        **meta,
                    },
                ))
            case EventType.ALLOWLIST_WINNER_SELECTED:
                return self.engine.enqueue(SyncKind.ALLOWLIST_UPDATE, _require(data, "allowlistId"), AllowlistPayload(
                    update_type="winner_selected",
                    changes={
                        "winners": data.get("winners") or [],
                        "completionData": data.get("completionData") or {},
                        **meta,
                    },
                ))
            case EventType.USER_PROGRESS_UPDATED:
                return self.engine.enqueue(SyncKind.USER_PROGRESS, _require(data, "userId"), UserProgressPayload(
                    progress_type=data.get("progressType") or "progress_updated",
                    progress_data={**(data.get("progressData") or {}), **meta},
                ))
            case EventType.USER_POINTS_EARNED:
                progress = {"pointsEarned": data.get("pointsEarned"), "pointsSource": data.get("source"), **meta}
                if data.get("taskId") is not None:
                    progress["taskId"] = data["taskId"]
                return self.engine.enqueue(SyncKind.USER_PROGRESS, _require(data, "userId"), UserProgressPayload(
                    progress_type="points_earned", progress_data=progress,
                ))
            case EventType.USER_ACHIEVEMENT_UNLOCKED:
                return self.engine.enqueue(SyncKind.USER_PROGRESS, _require(data, "userId"), UserProgressPayload(
                    progress_type="achievement_unlocked",
                    progress_data={"achievement": data.get("achievement"), "pointsEarned": data.get("pointsEarned"), **meta},
                ))
            case EventType.COMMUNITY_SETTINGS_CHANGED:
                community_id = _require(data, "communityId")
                if self.notifier is not None:
                    await self.notifier.community_settings_changed(community_id, data.get("changes") or {})
                return None
            case EventType.SYSTEM_MAINTENANCE:
                if self.notifier is not None:
                    await self.notifier.system_maintenance(data)
                return None

    async def apply(self, event_type: str | None, data: dict[str, Any], metadata: dict[str, Any]) -> bool:
        """Handle one event and record it.

        Returns False (after a warning) for an unknown event type.  Handler
        exceptions propagate.
        """
        try:
            await self.handle(event_type or "", data, metadata)
        except UnknownEventType:
            logger.warning("No handler found for webhook event: %s", event_type)
            return False

        self.engine.record_webhook_event()
        if self.monitor is not None:
            await self.monitor.record_webhook_event({
                "eventType": event_type,
                "processed": True,
                "batchId": metadata.get("batchId"),
            })
        logger.debug("Webhook event processed: %s", event_type)
        return True

    async def process_event(
        self, event_type: str | None, data: dict[str, Any], metadata: dict[str, Any]
    ) -> EventResult:
        """Run :meth:`apply` and fold the outcome into an :class:`EventResult`."""
        try:
            processed = await self.apply(event_type, data, metadata)
        except Exception as exc:
            logger.exception("Error processing webhook event %s", event_type)
            return EventResult(event_type, False, str(exc))
        if not processed:
            return EventResult(event_type, False, "No handler found")
        return EventResult(event_type, True)

    async def process_batch(self, events: list[dict[str, Any]], metadata: dict[str, Any]) -> list[EventResult]:
        """Apply *events* with bounded concurrency; results keep input order."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(index: int, event: dict[str, Any]) -> EventResult:
            async with semaphore:
                return await self.process_event(
                    event.get("eventType"), event.get("data") or {}, {**metadata, "eventIndex": index},
                )

        outcomes = await asyncio.gather(
            *(_one(i, e if isinstance(e, dict) else {}) for i, e in enumerate(events)),
            return_exceptions=True,
        )
        results = []
        for event, outcome in zip(events, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                event_type = event.get("eventType") if isinstance(event, dict) else None
                results.append(EventResult(event_type, False, str(outcome)))
            else:
                results.append(outcome)
        return results

    def statistics(self) -> dict[str, Any]:
        return self.counters.to_dict()
