"""
nafflesync.database.models — SQLAlchemy 2.0 Data Models
========================================================

The durable record store behind the sync core.  The core only reads and
appends; nothing here is mutated in a hot path.

Tables:
- entity_messages  — entity → (channel, message) index kept visually in sync
- server_mappings  — Discord guild ↔ platform community links
- audit_log        — append-only policy / anomaly / sync audit trail
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all nafflesync ORM models."""


class EntityType(enum.StrEnum):
    """Platform entities that have chat messages mirroring them."""
    TASK = "task"
    ALLOWLIST = "allowlist"


# ---------------------------------------------------------------------------
# EntityMessage — which messages display which platform entity
# ---------------------------------------------------------------------------
class EntityMessage(Base):
    __tablename__ = "entity_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_key: Mapped[str] = mapped_column(String(100), nullable=False)
    guild_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    channel_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    message_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("channel_id", "message_id", name="uq_entity_messages_message"),
        Index("ix_entity_messages_entity", "entity_type", "entity_key"),
    )

    def __repr__(self) -> str:
        return (
            f"<EntityMessage {self.entity_type}:{self.entity_key} "
            f"channel={self.channel_id} message={self.message_id}>"
        )


# ---------------------------------------------------------------------------
# ServerMapping — guild ↔ community link
# ---------------------------------------------------------------------------
class ServerMapping(Base):
    __tablename__ = "server_mappings"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)  # Discord snowflake
    community_id: Mapped[str] = mapped_column(String(100), nullable=False)
    linked_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    linked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_server_mappings_community", "community_id"),
    )

    def __repr__(self) -> str:
        return f"<ServerMapping guild={self.guild_id} community={self.community_id!r}>"


# ---------------------------------------------------------------------------
# AuditEntry — append-only audit trail
# ---------------------------------------------------------------------------
class AuditEntry(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category: Mapped[str] = mapped_column(String(30), nullable=False)  # policy, anomaly, sync
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(100), nullable=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_audit_log_category_time", "category", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AuditEntry id={self.id} {self.category}.{self.action} severity={self.severity}>"
