"""add product analytics events

Revision ID: 0003_product_analytics_events
Revises: 0002_user_access_controls
Create Date: 2026-09-28
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0003_product_analytics_events"
down_revision = "0002_user_access_controls"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "product_analytics_events",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("event_name", sa.String(), nullable=False),
        sa.Column("path", sa.String(), nullable=True),
        sa.Column("referrer", sa.String(), nullable=True),
        sa.Column("source", sa.String(), nullable=False, server_default="web"),
        sa.Column("properties", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_product_analytics_events_occurred_at",
        "product_analytics_events",
        [sa.text("occurred_at DESC")],
        unique=False,
    )
    op.create_index("ix_product_analytics_events_session_id", "product_analytics_events", ["session_id"])
    op.create_index("ix_product_analytics_events_event_name", "product_analytics_events", ["event_name"])
    op.create_index("ix_product_analytics_events_user_id", "product_analytics_events", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_product_analytics_events_user_id", table_name="product_analytics_events")
    op.drop_index("ix_product_analytics_events_event_name", table_name="product_analytics_events")
    op.drop_index("ix_product_analytics_events_session_id", table_name="product_analytics_events")
    op.drop_index("ix_product_analytics_events_occurred_at", table_name="product_analytics_events")
    op.drop_table("product_analytics_events")
