"""
nafflesync.engine.operations — Sync Operation Data Model
=========================================================

A :class:`SyncOperation` is one unit of convergence work: "make chat and
platform agree about entity *key* of kind *kind*".  Its payload is a typed
record per kind, so merge functions and executors never guess at dict
shapes.

Operations serialize to plain dicts (``to_dict`` / ``from_dict``) for the
restart-recovery snapshot kept under ``sync:<syncId>`` in the KV cache.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class SyncKind(enum.StrEnum):
    """What a sync operation converges."""
    TASK_STATUS = "task_status"
    ALLOWLIST_UPDATE = "allowlist_update"
    USER_PROGRESS = "user_progress"


class SyncState(enum.StrEnum):
    """Lifecycle position of a sync operation."""
    PENDING = "pending"
    ACTIVE = "active"
    COOLING_DOWN = "cooling_down"
    DROPPED = "dropped"


class Priority(enum.StrEnum):
    NORMAL = "normal"
    HIGH = "high"


# ---------------------------------------------------------------------------
# Payloads — one typed record per kind
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TaskStatusPayload:
    """Task status change.  ``new_status`` is None for progress-only updates."""

    new_status: str | None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"newStatus": self.new_status, "metadata": dict(self.metadata)}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TaskStatusPayload:
        return cls(new_status=raw.get("newStatus"), metadata=dict(raw.get("metadata") or {}))


@dataclass(frozen=True, slots=True)
class AllowlistPayload:
    """Allowlist update: status change, participant added, winners, or a merged batch."""

    update_type: str
    changes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"updateType": self.update_type, "changes": dict(self.changes)}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AllowlistPayload:
        return cls(update_type=raw.get("updateType", "batch_update"), changes=dict(raw.get("changes") or {}))


@dataclass(frozen=True, slots=True)
class UserProgressPayload:
    """A user progress event (points, task completion, achievement)."""

    progress_type: str
    progress_data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"progressType": self.progress_type, "progressData": dict(self.progress_data)}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> UserProgressPayload:
        return cls(
            progress_type=raw.get("progressType", "unknown"),
            progress_data=dict(raw.get("progressData") or {}),
        )


Payload = TaskStatusPayload | AllowlistPayload | UserProgressPayload

_PAYLOAD_TYPES: dict[SyncKind, type] = {
    SyncKind.TASK_STATUS: TaskStatusPayload,
    SyncKind.ALLOWLIST_UPDATE: AllowlistPayload,
    SyncKind.USER_PROGRESS: UserProgressPayload,
}


def payload_from_dict(kind: SyncKind, raw: dict[str, Any]) -> Payload:
    """Decode a payload dict for *kind*."""
    return _PAYLOAD_TYPES[kind].from_dict(raw)


def check_payload(kind: SyncKind, payload: Payload) -> None:
    """Raise TypeError if *payload* isn't the record type for *kind*."""
    expected = _PAYLOAD_TYPES[kind]
    if not isinstance(payload, expected):
        raise TypeError(
            f"{kind} expects {expected.__name__}, got {type(payload).__name__}"
        )


def make_sync_id(kind: SyncKind, key: str, now_ms: int) -> str:
    """Build the ``kind_key_<now>`` identifier for a new operation."""
    return f"{kind.value}_{key}_{now_ms}"


# ---------------------------------------------------------------------------
# SyncOperation
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class SyncOperation:
    """One queued unit of convergence work.

    Only :class:`~nafflesync.engine.sync_engine.SyncEngine` mutates these.
    ``not_before`` holds the earliest time a retry may run.
    """

    sync_id: str
    kind: SyncKind
    key: str
    payload: Payload
    created_at: float
    last_attempt_at: float | None = None
    retry_count: int = 0
    state: SyncState = SyncState.PENDING
    not_before: float = 0.0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "syncId": self.sync_id,
            "kind": self.kind.value,
            "key": self.key,
            "payload": self.payload.to_dict(),
            "createdAt": self.created_at,
            "lastAttemptAt": self.last_attempt_at,
            "retryCount": self.retry_count,
            "state": self.state.value,
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SyncOperation:
        """Rebuild an operation from its persisted form.

        Restored operations come back as PENDING; whatever was in flight
        when the process stopped gets a fresh attempt.
        """
        kind = SyncKind(raw["kind"])
        return cls(
            sync_id=raw["syncId"],
            kind=kind,
            key=str(raw["key"]),
            payload=payload_from_dict(kind, raw.get("payload") or {}),
            created_at=float(raw["createdAt"]),
            last_attempt_at=raw.get("lastAttemptAt"),
            retry_count=int(raw.get("retryCount", 0)),
            state=SyncState.PENDING,
            last_error=raw.get("lastError"),
        )


# ---------------------------------------------------------------------------
# BatchEnvelope
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class BatchEnvelope:
    """A group of operations submitted together for merged dispatch."""

    batch_id: str
    priority: Priority
    operations: list[SyncOperation]
    enqueued_at: float
    seq: int = 0

    @property
    def sort_key(self) -> tuple[int, int]:
        """High before Normal, then FIFO by enqueue sequence."""
        return (0 if self.priority == Priority.HIGH else 1, self.seq)
