"""
tests/test_record_store.py — Record Store Tests (SQLite)
=========================================================
"""

from __future__ import annotations

import asyncio

from nafflesync.services.record_store import (
    MessageRef,
    SqlRecordStore,
    all_linked_guilds,
    forget_message,
    guilds_for_community,
    index_message,
    link_guild,
    lookup_entity_messages,
    recent_audit,
    record_audit,
)


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


def _index(engine, key="t1", channel_id=10, message_id=100, entity_type="task"):
    return index_message(
        engine,
        entity_type=entity_type,
        entity_key=key,
        guild_id=1,
        channel_id=channel_id,
        message_id=message_id,
        created_by=42,
    )


class TestEntityIndex:
    def test_lookup_returns_refs_in_insert_order(self, db_engine):
        _index(db_engine, message_id=100)
        _index(db_engine, channel_id=11, message_id=200)
        _index(db_engine, key="t2", message_id=300)

        refs = lookup_entity_messages(db_engine, "task", "t1")
        assert refs == [MessageRef(1, 10, 100), MessageRef(1, 11, 200)]

    def test_entity_type_is_part_of_the_key(self, db_engine):
        _index(db_engine, key="x1", entity_type="allowlist")
        assert lookup_entity_messages(db_engine, "task", "x1") == []
        assert len(lookup_entity_messages(db_engine, "allowlist", "x1")) == 1

    def test_duplicate_message_rejected(self, db_engine):
        assert _index(db_engine) is True
        assert _index(db_engine) is False
        assert len(lookup_entity_messages(db_engine, "task", "t1")) == 1

    def test_forget_message(self, db_engine):
        _index(db_engine)
        assert forget_message(db_engine, 10, 100) == 1
        assert forget_message(db_engine, 10, 100) == 0
        assert lookup_entity_messages(db_engine, "task", "t1") == []


class TestAudit:
    def test_newest_first_and_filtered(self, db_engine):
        record_audit(db_engine, category="policy", action="denied", subject="u1", severity="low",
                     details={"command": "naffles-status"})
        record_audit(db_engine, category="anomaly", action="rapid_commands", severity="medium")
        record_audit(db_engine, category="policy", action="denied", subject="u2")

        rows = recent_audit(db_engine)
        assert [r.subject for r in rows] == ["u2", None, "u1"]

        policy_rows = recent_audit(db_engine, "policy", limit=1)
        assert len(policy_rows) == 1
        assert policy_rows[0].subject == "u2"
        assert policy_rows[0].severity == "none"

    def test_details_round_trip(self, db_engine):
        record_audit(db_engine, category="sync", action="dropped", details={"syncId": "s1", "attempts": 3})
        [row] = recent_audit(db_engine, "sync")
        assert row.details == {"syncId": "s1", "attempts": 3}


class TestServerMappings:
    def test_link_and_relink(self, db_engine):
        link_guild(db_engine, 1, "c1", linked_by=42)
        link_guild(db_engine, 2, "c1")
        link_guild(db_engine, 3, "c2")
        assert sorted(guilds_for_community(db_engine, "c1")) == [1, 2]

        link_guild(db_engine, 2, "c2")
        assert guilds_for_community(db_engine, "c1") == [1]
        assert sorted(guilds_for_community(db_engine, "c2")) == [2, 3]
        assert sorted(all_linked_guilds(db_engine)) == [1, 2, 3]

    def test_unknown_community(self, db_engine):
        assert guilds_for_community(db_engine, "nope") == []


class TestAsyncFacade:
    def test_round_trip_through_threads(self, db_engine):
        store = SqlRecordStore(db_engine)

        async def _inner():
            assert await store.index_message(
                entity_type="allowlist", entity_key="a1", guild_id=5, channel_id=6, message_id=7,
            )
            refs = await store.lookup_entity_messages("allowlist", "a1")
            assert refs == [MessageRef(5, 6, 7)]
            assert await store.forget_message(6, 7) == 1

            await store.link_guild(5, "c9", 42)
            assert await store.guilds_for_community("c9") == [5]
            assert await store.all_linked_guilds() == [5]

            await store.record_audit(category="policy", action="denied", subject="u")
            rows = await store.recent_audit("policy")
            assert rows[0].action == "denied"

        run_async(_inner())
