"""
nafflesync.engine.merge — Same-Key Batch Merge Rules
=====================================================

Pure functions over operation lists.  The batch drainer groups the
operations of every drained envelope by kind, then by key, and calls the
matching merge here:

- **TaskStatus** — the latest status wins; metadata is shallow-merged in
  enqueue order, so later keys overwrite earlier ones.
- **AllowlistUpdate** — ``updateType`` collapses to ``"batch_update"``;
  changes are shallow-merged in enqueue order.
- **UserProgress** — never merged; each event is applied in order.

A group holding a single operation is passed through untouched.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import cast

from nafflesync.engine.operations import (
    AllowlistPayload,
    BatchEnvelope,
    SyncKind,
    SyncOperation,
    TaskStatusPayload,
    UserProgressPayload,
)

BATCH_UPDATE = "batch_update"


def group_operations(
    envelopes: Iterable[BatchEnvelope],
) -> dict[SyncKind, dict[str, list[SyncOperation]]]:
    """Group every operation by kind, then by key, preserving order."""
    grouped: dict[SyncKind, dict[str, list[SyncOperation]]] = {}
    for envelope in envelopes:
        for op in envelope.operations:
            grouped.setdefault(op.kind, {}).setdefault(op.key, []).append(op)
    return grouped


def merge_task_status(ops: list[SyncOperation]) -> TaskStatusPayload:
    """Collapse same-task operations into one payload.

    Progress-only operations (``new_status`` is None) contribute metadata
    but never erase a status set by an earlier operation.
    """
    status: str | None = None
    metadata: dict = {}
    for op in ops:
        payload = cast(TaskStatusPayload, op.payload)
        if payload.new_status is not None:
            status = payload.new_status
        metadata.update(payload.metadata)
    return TaskStatusPayload(new_status=status, metadata=metadata)


def merge_allowlist(ops: list[SyncOperation]) -> AllowlistPayload:
    """Collapse same-allowlist operations into a ``batch_update``."""
    if len(ops) == 1:
        return cast(AllowlistPayload, ops[0].payload)

    changes: dict = {}
    for op in ops:
        payload = cast(AllowlistPayload, op.payload)
        changes.update(payload.changes)
    return AllowlistPayload(update_type=BATCH_UPDATE, changes=changes)


def ordered_progress(ops: list[SyncOperation]) -> list[UserProgressPayload]:
    """Return user progress payloads in their original enqueue order."""
    result: list[UserProgressPayload] = []
    for op in ops:
        result.append(cast(UserProgressPayload, op.payload))
    return result
