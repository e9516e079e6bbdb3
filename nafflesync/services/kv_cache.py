"""
nafflesync.services.kv_cache — Ephemeral KV Cache (Redis)
==========================================================

Restart snapshots (``sync:*``), the latest health snapshot, critical alert
records, and the bounded event tails all live in Redis.  Nothing here is
authoritative: losing the cache only loses in-flight work from before a
restart and the monitor's recent history.

Values are strings; callers JSON-encode their own payloads.
"""

from __future__ import annotations

import logging
from typing import Protocol

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class KVCache(Protocol):
    async def set(self, key: str, value: str, *, ttl: int | None = None) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, prefix: str) -> list[str]: ...

    async def push_bounded(self, key: str, value: str, *, maxlen: int, ttl: int | None = None) -> None: ...

    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> list[str]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class RedisKVCache:
    """:class:`KVCache` backed by ``redis.asyncio``.

    Lists are newest-first: :meth:`push_bounded` does ``LPUSH`` + ``LTRIM``,
    so ``list_range(key, 0, 0)`` is the latest entry.
    """

    def __init__(self, url: str = "redis://localhost:6379/0", *, client: redis.Redis | None = None) -> None:
        self.url = url
        self.client = client or redis.from_url(url, decode_responses=True)

    async def set(self, key: str, value: str, *, ttl: int | None = None) -> None:
        await self.client.set(key, value, ex=ttl)

    async def get(self, key: str) -> str | None:
        return await self.client.get(key)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def keys(self, prefix: str) -> list[str]:
        return [key async for key in self.client.scan_iter(match=f"{prefix}*")]

    async def push_bounded(self, key: str, value: str, *, maxlen: int, ttl: int | None = None) -> None:
        pipe = self.client.pipeline()
        pipe.lpush(key, value)
        pipe.ltrim(key, 0, maxlen - 1)
        if ttl is not None:
            pipe.expire(key, ttl)
        await pipe.execute()

    async def list_range(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        return await self.client.lrange(key, start, stop)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except redis.RedisError as exc:
            logger.warning("Redis ping failed: %s", exc)
            return False

    async def close(self) -> None:
        await self.client.aclose()
