"""
nafflesync.services.platform_client — Naffles Platform API Client
==================================================================

Thin typed wrapper over one shared :class:`httpx.AsyncClient`.  Every call
carries the bearer key, ``X-Discord-Bot-Sync: true`` and a 5 s timeout,
and every failure leaves here as a classified
:class:`~nafflesync.errors.PlatformError`; callers never see raw httpx
exceptions.

Sync writes stamp ``source: "discord_bot"`` and an ISO timestamp so the
platform can tell bot-originated updates from its own.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from nafflesync import constants as C
from nafflesync.errors import classify_http_error

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _unwrap(body: Any) -> dict[str, Any]:
    """Snapshot endpoints answer either the entity or ``{"data": entity}``."""
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        return body["data"]
    return body if isinstance(body, dict) else {}


class PlatformClient:
    """Async client for the platform's sync and snapshot endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = C.PLATFORM_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                C.SYNC_HEADER: "true",
            },
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> Any:
        try:
            resp = await self._client.request(method, path, json=body)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            err = classify_http_error(exc)
            logger.warning("Platform call %s %s failed: %s (%s)", method, path, err, err.kind)
            raise err from exc
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

    # -----------------------------------------------------------------------
    # Sync writes
    # -----------------------------------------------------------------------
    async def patch_task_status(self, task_id: str, status: str, metadata: dict[str, Any]) -> Any:
        return await self._request("PATCH", f"/api/social-tasks/{task_id}/sync-status", {
            "status": status,
            "source": C.PLATFORM_SOURCE,
            "metadata": metadata,
            "timestamp": _now_iso(),
        })

    async def patch_allowlist(self, allowlist_id: str, update_type: str, changes: dict[str, Any]) -> Any:
        return await self._request("PATCH", f"/api/allowlists/{allowlist_id}/sync-update", {
            "updateType": update_type,
            "changes": changes,
            "source": C.PLATFORM_SOURCE,
            "timestamp": _now_iso(),
        })

    async def patch_user_progress(self, user_id: str, progress_type: str, progress_data: dict[str, Any]) -> Any:
        return await self._request("PATCH", f"/api/users/{user_id}/sync-progress", {
            "progressType": progress_type,
            "progressData": progress_data,
            "source": C.PLATFORM_SOURCE,
            "timestamp": _now_iso(),
        })

    # -----------------------------------------------------------------------
    # Snapshot reads
    # -----------------------------------------------------------------------
    async def get_task(self, task_id: str) -> dict[str, Any]:
        return _unwrap(await self._request("GET", f"/api/social-tasks/{task_id}"))

    async def get_allowlist(self, allowlist_id: str) -> dict[str, Any]:
        return _unwrap(await self._request("GET", f"/api/allowlists/{allowlist_id}"))

    # -----------------------------------------------------------------------
    # Registration
    # -----------------------------------------------------------------------
    async def register_webhook(self, url: str, events: list[str], secret: str) -> Any:
        """Tell the platform where to deliver webhooks for this bot."""
        return await self._request("POST", "/api/webhooks/discord-bot", {
            "url": url,
            "events": events,
            "secret": secret,
        })
