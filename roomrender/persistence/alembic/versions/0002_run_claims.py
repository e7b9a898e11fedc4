"""add composite run executor claims

Revision ID: 0002_run_claims
Revises: 0001_init
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_run_claims"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Executors stamp the run they drive so the poll loop skips live work.
    op.add_column(
        "composite_runs",
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_composite_runs_status_claimed",
        "composite_runs",
        ["status", "claimed_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_composite_runs_status_claimed", table_name="composite_runs")
    op.drop_column("composite_runs", "claimed_at")
