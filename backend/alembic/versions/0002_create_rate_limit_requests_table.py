"""create rate limit request event log

Revision ID: 0002_create_rate_limit_requests_table
Revises: 0001_create_api_keys_table
Create Date: 2026-10-18
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_create_rate_limit_requests_table"
down_revision = "0001_create_api_keys_table"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "rate_limit_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("identifier", sa.String(length=128), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
    )
    # Window counts filter on identifier + time; pruning on time alone
    op.create_index(
        "ix_rate_limit_requests_identifier_occurred_at",
        "rate_limit_requests",
        ["identifier", "occurred_at"],
    )
    op.create_index(
        "ix_rate_limit_requests_occurred_at",
        "rate_limit_requests",
        ["occurred_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_rate_limit_requests_occurred_at", table_name="rate_limit_requests")
    op.drop_index("ix_rate_limit_requests_identifier_occurred_at", table_name="rate_limit_requests")
    op.drop_table("rate_limit_requests")
