"""
nafflesync.services.record_store — Durable Record Store
========================================================

The narrow storage interface the sync core talks to:

- ``lookup_entity_messages`` / ``index_message`` / ``forget_message`` —
  the entity → message index used by embed refresh and notifications.
- ``record_audit`` — append-only audit sink for policy denials, anomalies
  and dropped syncs.
- ``guilds_for_community`` / ``all_linked_guilds`` / ``link_guild`` —
  guild ↔ community mappings used by the fan-out handlers.

Plain sync functions take an engine and open their own session; the
:class:`SqlRecordStore` wraps each one in :func:`run_db` for async callers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nafflesync.database.engine import get_session, run_db
from nafflesync.database.models import AuditEntry, EntityMessage, ServerMapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MessageRef:
    guild_id: int
    channel_id: int
    message_id: int


# ---------------------------------------------------------------------------
# Entity → message index
# ---------------------------------------------------------------------------
def lookup_entity_messages(engine, entity_type: str, entity_key: str) -> list[MessageRef]:
    """Every message that displays ``entity_type:entity_key``, oldest first."""
    with Session(engine) as session:
        rows = session.scalars(
            select(EntityMessage)
            .where(
                EntityMessage.entity_type == entity_type,
                EntityMessage.entity_key == str(entity_key),
            )
            .order_by(EntityMessage.id)
        ).all()
        return [MessageRef(r.guild_id, r.channel_id, r.message_id) for r in rows]


def index_message(
    engine,
    *,
    entity_type: str,
    entity_key: str,
    guild_id: int,
    channel_id: int,
    message_id: int,
    created_by: int | None = None,
) -> bool:
    """Add a message to the index.  Returns False if it was already there."""
    try:
        with get_session(engine) as session:
            session.add(EntityMessage(
                entity_type=entity_type,
                entity_key=str(entity_key),
                guild_id=guild_id,
                channel_id=channel_id,
                message_id=message_id,
                created_by=created_by,
            ))
    except IntegrityError:
        return False
    logger.info("Indexed message %d for %s:%s", message_id, entity_type, entity_key)
    return True


def forget_message(engine, channel_id: int, message_id: int) -> int:
    """Remove a deleted message from the index.  Returns rows removed."""
    with get_session(engine) as session:
        rows = session.scalars(
            select(EntityMessage).where(
                EntityMessage.channel_id == channel_id,
                EntityMessage.message_id == message_id,
            )
        ).all()
        for row in rows:
            session.delete(row)
        return len(rows)


# ---------------------------------------------------------------------------
# Audit sink
# ---------------------------------------------------------------------------
def record_audit(
    engine,
    *,
    category: str,
    action: str,
    subject: str | None = None,
    severity: str = "none",
    details: dict[str, Any] | None = None,
) -> None:
    with get_session(engine) as session:
        session.add(AuditEntry(
            category=category,
            action=action,
            subject=subject,
            severity=severity,
            details=details,
        ))


def recent_audit(engine, category: str | None = None, limit: int = 20) -> list[AuditEntry]:
    with Session(engine) as session:
        stmt = select(AuditEntry).order_by(AuditEntry.id.desc()).limit(limit)
        if category is not None:
            stmt = stmt.where(AuditEntry.category == category)
        rows = session.scalars(stmt).all()
        for r in rows:
            session.expunge(r)
        return list(rows)


# ---------------------------------------------------------------------------
# Guild ↔ community mappings
# ---------------------------------------------------------------------------
def link_guild(engine, guild_id: int, community_id: str, linked_by: int | None = None) -> None:
    """Point *guild_id* at *community_id*, replacing any earlier link."""
    with get_session(engine) as session:
        row = session.get(ServerMapping, guild_id)
        if row is None:
            session.add(ServerMapping(
                guild_id=guild_id, community_id=str(community_id), linked_by=linked_by,
            ))
        else:
            row.community_id = str(community_id)
            row.linked_by = linked_by
    logger.info("Guild %d linked to community %s", guild_id, community_id)


def guilds_for_community(engine, community_id: str) -> list[int]:
    with Session(engine) as session:
        return list(session.scalars(
            select(ServerMapping.guild_id).where(ServerMapping.community_id == str(community_id))
        ).all())


def all_linked_guilds(engine) -> list[int]:
    with Session(engine) as session:
        return list(session.scalars(select(ServerMapping.guild_id)).all())


# ---------------------------------------------------------------------------
# Async facade
# ---------------------------------------------------------------------------
class SqlRecordStore:
    """Async wrapper over the functions above, bound to one engine."""

    def __init__(self, engine) -> None:
        self.engine = engine

    async def lookup_entity_messages(self, entity_type: str, entity_key: str) -> list[MessageRef]:
        return await run_db(lookup_entity_messages, self.engine, entity_type, entity_key)

    async def index_message(self, **kwargs: Any) -> bool:
        return await run_db(index_message, self.engine, **kwargs)

    async def forget_message(self, channel_id: int, message_id: int) -> int:
        return await run_db(forget_message, self.engine, channel_id, message_id)

    async def record_audit(self, **kwargs: Any) -> None:
        await run_db(record_audit, self.engine, **kwargs)

    async def recent_audit(self, category: str | None = None, limit: int = 20) -> list[AuditEntry]:
        return await run_db(recent_audit, self.engine, category, limit)

    async def link_guild(self, guild_id: int, community_id: str, linked_by: int | None = None) -> None:
        await run_db(link_guild, self.engine, guild_id, community_id, linked_by)

    async def guilds_for_community(self, community_id: str) -> list[int]:
        return await run_db(guilds_for_community, self.engine, community_id)

    async def all_linked_guilds(self) -> list[int]:
        return await run_db(all_linked_guilds, self.engine)
