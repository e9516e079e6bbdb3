"""Create record-store tables

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0a1b2c3d4e5f"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the entity index, guild mappings and audit log."""
    op.create_table(
        "entity_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_key", sa.String(100), nullable=False),
        sa.Column("guild_id", sa.BigInteger(), nullable=False),
        sa.Column("channel_id", sa.BigInteger(), nullable=False),
        sa.Column("message_id", sa.BigInteger(), nullable=False),
        sa.Column("created_by", sa.BigInteger(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("channel_id", "message_id", name="uq_entity_messages_message"),
    )
    op.create_index(
        "ix_entity_messages_entity",
        "entity_messages",
        ["entity_type", "entity_key"],
    )

    op.create_table(
        "server_mappings",
        sa.Column("guild_id", sa.BigInteger(), primary_key=True),
        sa.Column("community_id", sa.String(100), nullable=False),
        sa.Column("linked_by", sa.BigInteger(), nullable=True),
        sa.Column(
            "linked_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_server_mappings_community", "server_mappings", ["community_id"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("category", sa.String(30), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("subject", sa.String(100), nullable=True),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_audit_log_category_time", "audit_log", ["category", "timestamp"])


def downgrade() -> None:
    op.drop_index("ix_audit_log_category_time", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("ix_server_mappings_community", table_name="server_mappings")
    op.drop_table("server_mappings")
    op.drop_index("ix_entity_messages_entity", table_name="entity_messages")
    op.drop_table("entity_messages")
