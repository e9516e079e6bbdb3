"""
nafflesync.services.sync_service — Per-kind sync execution
===========================================================

The side effects behind one :class:`~nafflesync.engine.sync_engine.SyncEngine`
operation:

- **TaskStatus** — PATCH the task status (skipped for progress-only
  updates), refresh the task's embeds, post a status notice.
- **AllowlistUpdate** — PATCH the allowlist, refresh its embeds, post a
  participant/winner notice depending on ``updateType``.
- **UserProgress** — PATCH the user's progress.

Platform and embed-refresh failures propagate so the engine can classify
and retry them.  Notices are best-effort.
"""

from __future__ import annotations

import logging
from typing import Any

from nafflesync.engine.operations import (
    AllowlistPayload,
    SyncKind,
    TaskStatusPayload,
    UserProgressPayload,
)
from nafflesync.services.embed_updates import EmbedRefresher
from nafflesync.services.notifications import Notifier
from nafflesync.services.platform_client import PlatformClient

logger = logging.getLogger(__name__)


class SyncService:
    """Implements the engine's executor interface."""

    def __init__(
        self,
        platform: PlatformClient,
        refresher: EmbedRefresher,
        notifier: Notifier,
        *,
        notify_on_status_change: bool = True,
    ) -> None:
        self.platform = platform
        self.refresher = refresher
        self.notifier = notifier
        self.notify_on_status_change = notify_on_status_change

    async def sync_task_status(self, task_id: str, payload: TaskStatusPayload) -> None:
        status = payload.new_status
        if status is not None:
            await self.platform.patch_task_status(task_id, status, payload.metadata)
            update: dict[str, Any] = {"status": status, **payload.metadata}
        else:
            update = dict(payload.metadata)

        await self.refresher.refresh(SyncKind.TASK_STATUS, task_id, update)

        if status is not None and self.notify_on_status_change:
            await self._notify(self.notifier.task_status_changed, task_id, status, payload.metadata)

    async def sync_allowlist(self, allowlist_id: str, payload: AllowlistPayload) -> None:
        await self.platform.patch_allowlist(allowlist_id, payload.update_type, payload.changes)
        await self.refresher.refresh(SyncKind.ALLOWLIST_UPDATE, allowlist_id, payload.changes)

        match payload.update_type:
            case "participant_added":
                await self._notify(self.notifier.participant_added, allowlist_id, payload.changes)
            case "winner_selected":
                await self._notify(self.notifier.winners_selected, allowlist_id, payload.changes)

    async def sync_user_progress(self, user_id: str, payload: UserProgressPayload) -> None:
        await self.platform.patch_user_progress(user_id, payload.progress_type, payload.progress_data)
        logger.debug("Synced %s progress for user %s", payload.progress_type, user_id)

    async def _notify(self, send, *args: Any) -> None:
        try:
            await send(*args)
        except Exception:
            logger.exception("Notification failed (%s)", getattr(send, "__name__", send))
