"""add per-user access controls

Revision ID: 0002_user_access_controls
Revises: 0001_core_tables
Create Date: 2026-09-21
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0002_user_access_controls"
down_revision = "0001_core_tables"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Absent rows mean the account is open; see the access gate.
    op.create_table(
        "user_access_controls",
        sa.Column("user_id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("account_status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("purchase_state", sa.String(length=16), nullable=False, server_default="trial"),
        sa.Column("subscription_plan", sa.String(), nullable=False, server_default="free"),
        sa.Column("ai_features_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("blocked_reason", sa.Text(), nullable=True),
        sa.Column("blocked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("last_admin_action_by", sa.String(length=36), nullable=True),
        sa.Column("last_admin_action_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "account_status IN ('active', 'suspended', 'blocked')",
            name="ck_user_access_controls_account_status",
        ),
        sa.CheckConstraint(
            "purchase_state IN ('trial', 'active', 'past_due', 'canceled', 'manual')",
            name="ck_user_access_controls_purchase_state",
        ),
    )
    op.create_index(
        "ix_user_access_controls_status",
        "user_access_controls",
        ["account_status", "purchase_state"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_user_access_controls_status", table_name="user_access_controls")
    op.drop_table("user_access_controls")
