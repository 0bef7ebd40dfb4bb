"""initial schema

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "leads",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("project_description", sa.Text(), nullable=False),
        sa.Column("design_id", sa.String(length=36), nullable=True),
        sa.Column("source", sa.String(length=100), nullable=False),
        sa.Column("engagement_level", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("session_id", sa.String(length=255), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("referral_source", sa.String(length=255), nullable=True),
        sa.Column("device_type", sa.String(length=20), nullable=True),
        sa.Column("browser_type", sa.String(length=50), nullable=True),
        sa.Column("ip_address_hash", sa.String(length=64), nullable=True),
        sa.Column("engagement_duration", sa.Integer(), nullable=False),
        sa.Column("dedupe_key", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedupe_key", name="uq_leads_dedupe_key"),
    )
    op.create_index("ix_leads_email_created", "leads", ["email", "created_at"])
    op.create_index("ix_leads_session_created", "leads", ["session_id", "created_at"])
    op.create_index("ix_leads_ip_hash_created", "leads", ["ip_address_hash", "created_at"])

    op.create_table(
        "quota_counters",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("subject_key", sa.String(length=128), nullable=False),
        sa.Column("day_key", sa.String(length=10), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.Column("last_incremented_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subject_key", "day_key", name="uq_quota_counters_subject_day"),
        sa.CheckConstraint("count >= 0", name="ck_quota_counters_count_non_negative"),
    )
    op.create_index("ix_quota_counters_day", "quota_counters", ["day_key"])


def downgrade() -> None:
    op.drop_index("ix_quota_counters_day", table_name="quota_counters")
    op.drop_table("quota_counters")
    op.drop_index("ix_leads_ip_hash_created", table_name="leads")
    op.drop_index("ix_leads_session_created", table_name="leads")
    op.drop_index("ix_leads_email_created", table_name="leads")
    op.drop_table("leads")
