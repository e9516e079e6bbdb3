"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import fnmatch

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB

from nafflesync.database.models import Base
from nafflesync.engine.clock import ManualClock

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with the record-store tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------
class FakeKV:
    """In-memory stand-in for :class:`RedisKVCache`.  TTLs are recorded, not enforced."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.ttls: dict[str, int | None] = {}
        self.healthy = True
        self.closed = False

    async def set(self, key, value, *, ttl=None):
        self.data[key] = value
        self.ttls[key] = ttl

    async def get(self, key):
        return self.data.get(key)

    async def delete(self, key):
        self.data.pop(key, None)
        self.lists.pop(key, None)

    async def keys(self, prefix):
        return sorted(k for k in self.data if fnmatch.fnmatch(k, f"{prefix}*"))

    async def push_bounded(self, key, value, *, maxlen, ttl=None):
        items = self.lists.setdefault(key, [])
        items.insert(0, value)
        del items[maxlen:]
        self.ttls[key] = ttl

    async def list_range(self, key, start=0, stop=-1):
        items = self.lists.get(key, [])
        return items[start:] if stop == -1 else items[start:stop + 1]

    async def ping(self):
        return self.healthy

    async def close(self):
        self.closed = True


class FakeTimers:
    """Records ``call_later`` requests instead of scheduling them."""

    def __init__(self) -> None:
        self.scheduled: list[tuple[float, object]] = []

    def call_later(self, delay, callback):
        self.scheduled.append((delay, callback))
        return None

    def spawn(self, coro):
        raise AssertionError("spawn is not used by the engine under test")

    def cancel_all(self):
        self.scheduled.clear()

    async def drain(self):
        return None

    @property
    def pending(self):
        return len(self.scheduled)

    async def fire_all(self):
        """Run every recorded callback once, in order."""
        scheduled, self.scheduled = self.scheduled, []
        for _, callback in scheduled:
            await callback()


@pytest.fixture
def kv() -> FakeKV:
    return FakeKV()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(1_700_000_000.0)


@pytest.fixture
def timers() -> FakeTimers:
    return FakeTimers()
