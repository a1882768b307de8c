"""Initial PostgreSQL schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create messages, ingest_events and pii_detections."""

    op.create_table(
        "messages",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("external_id", sa.String(length=50), nullable=False),
        sa.Column("channel_id", sa.String(length=50), nullable=False),
        sa.Column("text", sa.Text(), nullable=False, server_default=""),
        sa.Column("author_id", sa.String(length=50), nullable=False),
        sa.Column("author_display", sa.String(length=200), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("thread_root_external_id", sa.String(length=50), nullable=True),
        sa.Column(
            "is_thread_reply", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("parent_message_id", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "external_id", "channel_id", name="uq_messages_external_id_channel"
        ),
    )
    op.create_index(
        "idx_messages_thread_root",
        "messages",
        ["channel_id", "thread_root_external_id"],
    )

    op.create_table(
        "ingest_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("external_event_id", sa.String(length=100), nullable=True),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("event_subtype", sa.String(length=50), nullable=True),
        sa.Column(
            "raw_payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False
        ),
        sa.Column("channel_id", sa.String(length=50), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("resulting_message_id", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'SUCCESS', 'FAILED', 'SKIPPED')",
            name="ck_ingest_events_status",
        ),
    )
    op.create_index(
        "idx_ingest_events_status", "ingest_events", ["status", "created_at"]
    )
    op.create_index(
        "idx_ingest_events_external_id", "ingest_events", ["external_event_id"]
    )

    op.create_table(
        "pii_detections",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column(
            "source_type", sa.String(length=20), nullable=False, server_default="MESSAGE"
        ),
        sa.Column("source_id", sa.String(length=36), nullable=False),
        sa.Column("pii_type", sa.String(length=50), nullable=False),
        sa.Column("span_text", sa.Text(), nullable=False),
        sa.Column("span_start", sa.Integer(), nullable=False),
        sa.Column("span_end", sa.Integer(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_pii_detections_source", "pii_detections", ["source_type", "source_id"]
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("idx_pii_detections_source", table_name="pii_detections")
    op.drop_table("pii_detections")
    op.drop_index("idx_ingest_events_external_id", table_name="ingest_events")
    op.drop_index("idx_ingest_events_status", table_name="ingest_events")
    op.drop_table("ingest_events")
    op.drop_index("idx_messages_thread_root", table_name="messages")
    op.drop_table("messages")
