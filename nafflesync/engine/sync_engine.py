"""
nafflesync.engine.sync_engine — Queue, Retry & Batch Scheduler
===============================================================

**Why this file exists:**
Chat messages and platform entities drift apart whenever a webhook, a
button press, or a slash command changes one side.  The :class:`SyncEngine`
owns every in-flight piece of convergence work and drives it to completion
under at-least-once delivery:

1. ``enqueue()`` drops a :class:`SyncOperation` into the sync queue.
2. ``process_pending()`` (every 5 s) picks up to ``pick_batch`` ready
   operations and executes them in parallel.
3. Failures are classified: retryable ones come back after
   ``retry_delay_ms × retry_count``; terminal ones (or a third failure) are
   dropped and their ID is put on cooldown.
4. ``process_batches()`` (every 10 s) drains batch envelopes, merges
   same-key work, and dispatches one call per entity.
5. ``cleanup()`` (every 60 s) expires stale operations and cooldowns.

All state lives on one object and is only touched from the event loop, so
no locks are needed.  At most one operation per ``(kind, key)`` runs at any
instant.
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, cast

from nafflesync import constants as C
from nafflesync.config import SyncSettings
from nafflesync.engine.clock import Clock, Timers
from nafflesync.engine.merge import (
    group_operations,
    merge_allowlist,
    merge_task_status,
    ordered_progress,
)
from nafflesync.engine.operations import (
    AllowlistPayload,
    BatchEnvelope,
    Payload,
    Priority,
    SyncKind,
    SyncOperation,
    SyncState,
    TaskStatusPayload,
    UserProgressPayload,
    check_payload,
    make_sync_id,
)
from nafflesync.errors import is_retryable

if TYPE_CHECKING:
    from nafflesync.services.kv_cache import KVCache

logger = logging.getLogger(__name__)

EventListener = Callable[[str, dict[str, Any]], Awaitable[None]]


class SyncExecutor(Protocol):
    """Performs the side effects of one operation (platform + chat)."""

    async def sync_task_status(self, task_id: str, payload: TaskStatusPayload) -> None: ...

    async def sync_allowlist(self, allowlist_id: str, payload: AllowlistPayload) -> None: ...

    async def sync_user_progress(self, user_id: str, payload: UserProgressPayload) -> None: ...


@dataclass(slots=True)
class EngineMetrics:
    """Counters read by the monitor.  ``successful + failed ≤ sync_operations``."""

    sync_operations: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    batch_operations: int = 0
    webhook_events: int = 0
    average_sync_time_ms: float = 0.0
    last_sync_time: float | None = None
    timed_samples: int = 0


class SyncEngine:
    """Scheduler-owned sync queue, batch queue, retry and cooldown state.

    Parameters
    ----------
    executor:
        Carries out an operation against the platform API and Discord.
    settings:
        Engine timings and limits.
    kv:
        Optional KV cache used for restart recovery.
    clock, timers:
        Time source and one-shot scheduler (swapped out in tests).
    """

    def __init__(
        self,
        executor: SyncExecutor,
        settings: SyncSettings | None = None,
        *,
        kv: KVCache | None = None,
        clock: Clock | None = None,
        timers: Timers | None = None,
    ) -> None:
        self.executor = executor
        self.settings = settings or SyncSettings()
        self.kv = kv
        self.clock = clock or Clock()
        self.timers = timers or Timers()
        self.metrics = EngineMetrics()

        self._queue: dict[str, SyncOperation] = {}
        self._active: set[str] = set()
        self._active_keys: set[tuple[SyncKind, str]] = set()
        self._batch_queue: list[BatchEnvelope] = []
        self._cooldowns: dict[str, float] = {}
        self._batch_seq = itertools.count()
        self._listeners: list[EventListener] = []
        self._accepting = True

    # -----------------------------------------------------------------------
    # Read-only views
    # -----------------------------------------------------------------------
    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def batch_queue_size(self) -> int:
        return len(self._batch_queue)

    @property
    def cooldown_count(self) -> int:
        return len(self._cooldowns)

    def get_operation(self, sync_id: str) -> SyncOperation | None:
        return self._queue.get(sync_id)

    def is_active(self, sync_id: str) -> bool:
        return sync_id in self._active

    def is_cooling_down(self, sync_id: str) -> bool:
        cooled_until = self._cooldowns.get(sync_id)
        return cooled_until is not None and self.clock.now() < cooled_until

    def statistics(self) -> dict[str, Any]:
        """Counter snapshot in the wire format used by /metrics and the KV cache."""
        m = self.metrics
        return {
            "syncOperations": m.sync_operations,
            "successfulSyncs": m.successful_syncs,
            "failedSyncs": m.failed_syncs,
            "batchOperations": m.batch_operations,
            "webhookEvents": m.webhook_events,
            "averageSyncTimeMs": round(m.average_sync_time_ms, 2),
            "lastSyncTime": m.last_sync_time,
            "queueSize": self.queue_size,
            "activeSyncs": self.active_count,
            "batchQueueSize": self.batch_queue_size,
            "errorCooldowns": self.cooldown_count,
        }

    # -----------------------------------------------------------------------
    # Listeners
    # -----------------------------------------------------------------------
    def add_listener(self, listener: EventListener) -> None:
        """Subscribe to ``("sync", data)`` and ``("batch", data)`` events."""
        self._listeners.append(listener)

    async def _emit(self, channel: str, data: dict[str, Any]) -> None:
        for listener in self._listeners:
            try:
                await listener(channel, data)
            except Exception:
                logger.exception("Sync event listener failed (%s)", channel)

    def record_webhook_event(self) -> None:
        self.metrics.webhook_events += 1

    # -----------------------------------------------------------------------
    # Admission
    # -----------------------------------------------------------------------
    def enqueue(self, kind: SyncKind, key: str, payload: Payload) -> str:
        """Queue a new operation and return its ``kind_key_<now>`` sync ID.

        Identical ``(kind, key)`` pairs are not deduplicated here; the
        exclusive-active rule keeps them from running concurrently.
        """
        check_payload(kind, payload)
        key = str(key)
        now_ms = self.clock.now_ms()
        sync_id = make_sync_id(kind, key, now_ms)
        while sync_id in self._queue:
            now_ms += 1
            sync_id = make_sync_id(kind, key, now_ms)

        self._queue[sync_id] = SyncOperation(
            sync_id=sync_id,
            kind=kind,
            key=key,
            payload=payload,
            created_at=self.clock.now(),
        )
        logger.info("Queued sync %s", sync_id)
        return sync_id

    def enqueue_operation(self, op: SyncOperation) -> None:
        """Re-admit an existing operation (restart recovery, manual replay).

        An operation whose ID is still on cooldown is kept but marked
        COOLING_DOWN; the scheduler ignores it until the cooldown expires.
        """
        op.state = SyncState.COOLING_DOWN if self.is_cooling_down(op.sync_id) else SyncState.PENDING
        self._queue[op.sync_id] = op

    def enqueue_batch(
        self,
        operations: list[tuple[SyncKind, str, Payload]],
        priority: Priority = Priority.NORMAL,
    ) -> str:
        """Submit *operations* as one envelope for the next batch drain.

        Webhooks and slash commands enqueue single operations, so nothing in
        the bot calls this yet.  Until a bulk producer does, the batch drain
        is idle and ``batchOperations`` stays at 0.
        """
        now = self.clock.now()
        batch_id = f"batch_{self.clock.now_ms()}_{next(self._batch_seq)}"
        ops = []
        for index, (kind, key, payload) in enumerate(operations):
            check_payload(kind, payload)
            ops.append(SyncOperation(
                sync_id=f"{batch_id}_{index}",
                kind=kind,
                key=str(key),
                payload=payload,
                created_at=now,
            ))

        envelope = BatchEnvelope(
            batch_id=batch_id,
            priority=Priority(priority),
            operations=ops,
            enqueued_at=now,
            seq=next(self._batch_seq),
        )
        bisect.insort(self._batch_queue, envelope, key=lambda e: e.sort_key)
        logger.info(
            "Queued batch %s (%d ops, priority=%s)", batch_id, len(ops), envelope.priority,
        )
        return batch_id

    # -----------------------------------------------------------------------
    # Scheduler ticks
    # -----------------------------------------------------------------------
    def _ready_ids(self) -> list[str]:
        now = self.clock.now()
        picked: list[str] = []
        picked_keys: set[tuple[SyncKind, str]] = set()
        for sync_id, op in self._queue.items():
            if len(picked) >= self.settings.pick_batch:
                break
            entity = (op.kind, op.key)
            if (
                sync_id in self._active
                or self.is_cooling_down(sync_id)
                or op.not_before > now
                or entity in self._active_keys
                or entity in picked_keys
            ):
                continue
            picked.append(sync_id)
            picked_keys.add(entity)
        return picked

    async def process_pending(self) -> int:
        """Execute up to ``pick_batch`` ready operations in parallel.

        Returns the number of operations started.
        """
        if not self._accepting:
            return 0
        return await self._run_ready()

    async def _run_ready(self) -> int:
        ready = self._ready_ids()
        if ready:
            await asyncio.gather(*(self.execute(sync_id) for sync_id in ready))
        return len(ready)

    async def execute(self, sync_id: str) -> bool:
        """Run one queued operation.  Returns True on success.

        No-op (False) when the operation is gone, already active, cooling
        down, or another operation for the same entity is running.
        """
        op = self._queue.get(sync_id)
        if op is None or sync_id in self._active or self.is_cooling_down(sync_id):
            return False
        entity = (op.kind, op.key)
        if entity in self._active_keys:
            return False

        self._active.add(sync_id)
        self._active_keys.add(entity)
        op.state = SyncState.ACTIVE
        op.last_attempt_at = started = self.clock.now()
        # Counted before any outcome so listeners never see more outcomes than attempts.
        self.metrics.sync_operations += 1
        try:
            await self._dispatch(op.kind, op.key, op.payload)
        except Exception as exc:
            await self._handle_failure(op, exc)
            return False
        else:
            self._queue.pop(sync_id, None)
            await self._record_success(op, started)
            return True
        finally:
            self._active.discard(sync_id)
            self._active_keys.discard(entity)

    async def _retry(self, sync_id: str, attempt: int) -> bool:
        """Timer callback for a scheduled retry.

        Skipped when the operation has been attempted again since the timer
        was set (a scheduler tick got there first); that attempt scheduled
        its own timer.
        """
        op = self._queue.get(sync_id)
        if op is None or op.retry_count != attempt:
            return False
        return await self.execute(sync_id)

    async def _dispatch(self, kind: SyncKind, key: str, payload: Payload) -> None:
        match kind:
            case SyncKind.TASK_STATUS:
                await self.executor.sync_task_status(key, cast(TaskStatusPayload, payload))
            case SyncKind.ALLOWLIST_UPDATE:
                await self.executor.sync_allowlist(key, cast(AllowlistPayload, payload))
            case SyncKind.USER_PROGRESS:
                await self.executor.sync_user_progress(key, cast(UserProgressPayload, payload))

    async def _record_success(self, op: SyncOperation, started: float) -> None:
        now = self.clock.now()
        elapsed_ms = max(0.0, (now - started) * 1000)
        m = self.metrics
        m.successful_syncs += 1
        m.last_sync_time = now
        if m.timed_samples == 0:
            m.average_sync_time_ms = elapsed_ms
        else:
            w = C.SYNC_TIME_EWMA_WEIGHT
            m.average_sync_time_ms = m.average_sync_time_ms * (1 - w) + elapsed_ms * w
        m.timed_samples += 1

        logger.debug("Sync %s completed (%.0fms)", op.sync_id, elapsed_ms)
        await self._emit("sync", {
            "type": "completed",
            "syncId": op.sync_id,
            "syncType": op.kind.value,
            "duration": elapsed_ms,
            "success": True,
            "timestamp": now,
        })

    async def _handle_failure(self, op: SyncOperation, exc: BaseException) -> None:
        """Schedule a retry or drop *op* and put its ID on cooldown."""
        op.retry_count += 1
        op.last_error = str(exc)
        retryable = is_retryable(exc)

        if retryable and op.retry_count < self.settings.max_retries:
            delay = self.settings.retry_delay_ms * op.retry_count / 1000
            op.state = SyncState.PENDING
            op.not_before = self.clock.now() + delay
            attempt = op.retry_count
            self.timers.call_later(delay, lambda: self._retry(op.sync_id, attempt))
            logger.warning(
                "Sync %s failed (%s); retry %d/%d in %.0fs",
                op.sync_id, exc, op.retry_count + 1, self.settings.max_retries, delay,
            )
            return

        self._queue.pop(op.sync_id, None)
        op.state = SyncState.DROPPED
        now = self.clock.now()
        self._cooldowns[op.sync_id] = now + self.settings.cooldown
        self.metrics.failed_syncs += 1
        logger.error(
            "Sync %s dropped after %d attempt(s) (%s): %s",
            op.sync_id, op.retry_count,
            "retries exhausted" if retryable else "non-retryable",
            exc,
        )
        await self._emit("sync", {
            "type": "failed",
            "syncId": op.sync_id,
            "syncType": op.kind.value,
            "error": str(exc),
            "success": False,
            "timestamp": now,
        })

    # -----------------------------------------------------------------------
    # Batch drain
    # -----------------------------------------------------------------------
    async def process_batches(self) -> int:
        """Drain up to ``batch_size`` envelopes and dispatch merged work.

        Returns the number of merged dispatches attempted.
        """
        if not self._accepting or not self._batch_queue:
            return 0

        size = self.settings.batch_size
        drained, self._batch_queue = self._batch_queue[:size], self._batch_queue[size:]
        started = self.clock.now()
        batch_id = drained[0].batch_id if len(drained) == 1 else f"batch_{self.clock.now_ms()}"
        grouped = group_operations(drained)

        jobs: list[Awaitable[bool]] = []
        for kind, by_key in grouped.items():
            for key, ops in by_key.items():
                match kind:
                    case SyncKind.TASK_STATUS:
                        jobs.append(self._dispatch_merged(kind, key, [merge_task_status(ops)]))
                    case SyncKind.ALLOWLIST_UPDATE:
                        jobs.append(self._dispatch_merged(kind, key, [merge_allowlist(ops)]))
                    case SyncKind.USER_PROGRESS:
                        jobs.append(self._dispatch_merged(kind, key, ordered_progress(ops)))

        results = await asyncio.gather(*jobs)
        successful = sum(1 for ok in results if ok)
        failed = len(results) - successful
        self.metrics.batch_operations += 1

        logger.info(
            "Batch %s processed: %d envelope(s), %d successful, %d failed",
            batch_id, len(drained), successful, failed,
        )
        await self._emit("batch", {
            "type": "batch_processed",
            "batchId": batch_id,
            "operationCount": sum(len(e.operations) for e in drained),
            "successful": successful,
            "failed": failed,
            "duration": (self.clock.now() - started) * 1000,
            "timestamp": self.clock.now(),
        })
        return len(results)

    async def _dispatch_merged(
        self, kind: SyncKind, key: str, payloads: list[Payload]
    ) -> bool:
        """Apply merged payloads for one entity, in order.

        If the entity is busy, or an application fails, the remaining
        payloads go back into the sync queue so the normal retry policy
        takes over.
        """
        entity = (kind, key)
        if entity in self._active_keys:
            for payload in payloads:
                self.enqueue(kind, key, payload)
            return False

        self._active_keys.add(entity)
        try:
            for index, payload in enumerate(payloads):
                started = self.clock.now()
                op = SyncOperation(
                    sync_id=make_sync_id(kind, key, self.clock.now_ms()),
                    kind=kind,
                    key=key,
                    payload=payload,
                    created_at=started,
                    last_attempt_at=started,
                    state=SyncState.ACTIVE,
                )
                try:
                    await self._dispatch(kind, key, payload)
                except Exception as exc:
                    self.metrics.sync_operations += 1
                    while op.sync_id in self._queue:
                        op.sync_id += "_b"
                    self._queue[op.sync_id] = op
                    await self._handle_failure(op, exc)
                    for rest in payloads[index + 1:]:
                        self.enqueue(kind, key, rest)
                    return False
                self.metrics.sync_operations += 1
                await self._record_success(op, started)
            return True
        finally:
            self._active_keys.discard(entity)

    # -----------------------------------------------------------------------
    # Housekeeping
    # -----------------------------------------------------------------------
    def cleanup(self) -> tuple[int, int]:
        """Drop operations older than ``max_age`` and expired cooldowns.

        Returns ``(operations_dropped, cooldowns_expired)``.
        """
        now = self.clock.now()
        cutoff = now - self.settings.max_age

        stale = [
            sync_id
            for sync_id, op in self._queue.items()
            if op.created_at < cutoff and sync_id not in self._active
        ]
        for sync_id in stale:
            del self._queue[sync_id]
            logger.debug("Expired stale sync %s", sync_id)

        expired = [sid for sid, until in self._cooldowns.items() if until <= now]
        for sync_id in expired:
            del self._cooldowns[sync_id]
            op = self._queue.get(sync_id)
            if op is not None and op.state is SyncState.COOLING_DOWN:
                op.state = SyncState.PENDING

        if stale or expired:
            logger.info(
                "Sync cleanup: %d stale operation(s), %d cooldown(s) expired",
                len(stale), len(expired),
            )
        return len(stale), len(expired)

    # -----------------------------------------------------------------------
    # Restart recovery
    # -----------------------------------------------------------------------
    async def restore(self) -> int:
        """Reload operations persisted under ``sync:`` by a previous shutdown.

        Restored operations get a fresh ``created_at`` so cleanup doesn't
        expire them before they've had a chance to run.
        """
        if self.kv is None:
            return 0

        restored = 0
        for key in await self.kv.keys(C.SYNC_KEY_PREFIX):
            raw = await self.kv.get(key)
            await self.kv.delete(key)
            if raw is None:
                continue
            try:
                op = SyncOperation.from_dict(json.loads(raw))
            except (ValueError, KeyError, TypeError):
                logger.warning("Discarding unreadable sync snapshot %s", key)
                continue
            op.created_at = self.clock.now()
            self.enqueue_operation(op)
            restored += 1

        logger.info("Restored %d sync operation(s) from cache", restored)
        return restored

    async def shutdown(self, timeout: float = 10.0) -> int:
        """Stop scheduling, finish in-flight work, and persist the queue.

        Returns the number of operations persisted.
        """
        self._accepting = False
        self.timers.cancel_all()

        try:
            await asyncio.wait_for(self._wait_idle(), timeout)
        except TimeoutError:
            logger.warning("Shutdown timed out with %d active sync(s)", self.active_count)

        # Last chance for anything that became ready while we waited.
        await self._run_ready()
        self.timers.cancel_all()

        persisted = 0
        if self.kv is not None:
            for sync_id, op in list(self._queue.items()):
                if sync_id in self._active:
                    continue
                await self.kv.set(
                    f"{C.SYNC_KEY_PREFIX}{sync_id}",
                    json.dumps(op.to_dict()),
                    ttl=self.settings.persist_ttl,
                )
                persisted += 1

        logger.info("Sync engine stopped; persisted %d operation(s)", persisted)
        return persisted

    async def _wait_idle(self) -> None:
        while self._active or self._active_keys:
            await asyncio.sleep(0.05)
