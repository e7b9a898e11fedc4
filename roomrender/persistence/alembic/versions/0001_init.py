"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, *, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _shop_fk(*, nullable: bool = False) -> sa.Column:
    return sa.Column(
        "shop_id",
        sa.String(),
        sa.ForeignKey("shops.id", ondelete="CASCADE"),
        nullable=nullable,
    )


def upgrade() -> None:
    op.create_table(
        "shops",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("shop_domain", sa.String(), nullable=False),
        sa.Column("access_token", sa.String(), nullable=True),
        sa.Column("plan", sa.String(), nullable=False, server_default="free"),
        _ts("installed_at", nullable=False),
        _ts("uninstalled_at"),
    )
    op.create_index("ix_shops_shop_domain", "shops", ["shop_domain"], unique=True)

    op.create_table(
        "plan_limits",
        sa.Column("shop_id", sa.String(), sa.ForeignKey("shops.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("operation", sa.String(), primary_key=True),
        sa.Column("daily_limit", sa.Integer(), nullable=True),
        sa.Column("monthly_limit", sa.Integer(), nullable=True),
        _ts("updated_at", nullable=False),
    )

    op.create_table(
        "usage_counters",
        sa.Column("shop_id", sa.String(), sa.ForeignKey("shops.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("operation", sa.String(), primary_key=True),
        sa.Column("period_type", sa.String(), primary_key=True),
        sa.Column("period_start", sa.DateTime(timezone=True), primary_key=True),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        _ts("updated_at", nullable=False),
    )

    op.create_table(
        "product_assets",
        sa.Column("id", sa.String(), primary_key=True),
        _shop_fk(),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("product_title", sa.String(), nullable=True),
        sa.Column("source_image_url", sa.Text(), nullable=True),
        sa.Column("source_image_id", sa.String(), nullable=True),
        sa.Column("prepared_image_key", sa.String(), nullable=True),
        sa.Column("prepared_image_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("prep_strategy", sa.String(), nullable=False, server_default="manual"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("render_instructions", sa.Text(), nullable=True),
        sa.Column("placement_hints", postgresql.JSONB(), nullable=True),
        sa.Column("provider_file_uri", sa.String(), nullable=True),
        _ts("provider_file_expires_at"),
        _ts("prep_started_at"),
        _ts("next_attempt_at"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        # Backs the atomic find-or-create for (shop, product).
        sa.UniqueConstraint("shop_id", "product_id", name="uq_product_assets_shop_product"),
    )
    op.create_index("ix_product_assets_shop_id", "product_assets", ["shop_id"])
    op.create_index("ix_product_assets_status", "product_assets", ["status"])
    op.create_index("ix_product_assets_status_next_attempt", "product_assets", ["status", "next_attempt_at"])

    op.create_table(
        "room_sessions",
        sa.Column("id", sa.String(), primary_key=True),
        _shop_fk(),
        sa.Column("original_image_key", sa.String(), nullable=True),
        sa.Column("cleaned_image_key", sa.String(), nullable=True),
        sa.Column("provider_file_uri", sa.String(), nullable=True),
        _ts("provider_file_expires_at"),
        _ts("expires_at", nullable=False),
        _ts("last_used_at"),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_room_sessions_shop_id", "room_sessions", ["shop_id"])
    op.create_index("ix_room_sessions_expires_at", "room_sessions", ["expires_at"])

    op.create_table(
        "saved_rooms",
        sa.Column("id", sa.String(), primary_key=True),
        _shop_fk(),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("original_image_key", sa.String(), nullable=True),
        sa.Column("cleaned_image_key", sa.String(), nullable=True),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_saved_rooms_shop_id", "saved_rooms", ["shop_id"])

    op.create_table(
        "render_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        _shop_fk(),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column(
            "room_session_id",
            sa.String(),
            sa.ForeignKey("room_sessions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "product_asset_id",
            sa.String(),
            sa.ForeignKey("product_assets.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", sa.String(), nullable=False, server_default="queued"),
        sa.Column("input_json", postgresql.JSONB(), nullable=True),
        sa.Column("output_image_key", sa.String(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        _ts("started_at"),
        _ts("created_at", nullable=False),
        _ts("completed_at"),
    )
    op.create_index("ix_render_jobs_shop_id", "render_jobs", ["shop_id"])
    op.create_index("ix_render_jobs_status_created", "render_jobs", ["status", "created_at"])

    op.create_table(
        "composite_runs",
        sa.Column("id", sa.String(), primary_key=True),
        _shop_fk(),
        sa.Column(
            "product_asset_id",
            sa.String(),
            sa.ForeignKey("product_assets.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "room_session_id",
            sa.String(),
            sa.ForeignKey("room_sessions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("trace_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="in_flight"),
        sa.Column("requested_variants", postgresql.JSONB(), nullable=False),
        sa.Column("placement_snapshot", postgresql.JSONB(), nullable=False),
        sa.Column("resolved_facts_snapshot", postgresql.JSONB(), nullable=False),
        sa.Column("product_image_ref", sa.String(), nullable=True),
        sa.Column("room_image_ref", sa.String(), nullable=True),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("fail_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("timeout_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quota_reserved", sa.Integer(), nullable=False, server_default="0"),
        _ts("created_at", nullable=False),
        _ts("completed_at"),
        sa.Column("total_duration_ms", sa.Integer(), nullable=True),
    )
    op.create_index("ix_composite_runs_shop_id", "composite_runs", ["shop_id"])
    op.create_index("ix_composite_runs_shop_created", "composite_runs", ["shop_id", "created_at"])

    op.create_table(
        "variant_results",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "run_id",
            sa.String(),
            sa.ForeignKey("composite_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("variant_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("output_image_key", sa.String(), nullable=True),
        _ts("created_at", nullable=False),
        # First write wins for each (run, variant).
        sa.UniqueConstraint("run_id", "variant_id", name="uq_variant_results_run_variant"),
    )
    op.create_index("ix_variant_results_run_id", "variant_results", ["run_id"])

    op.create_table(
        "monitor_events",
        sa.Column("id", sa.String(), primary_key=True),
        _ts("ts", nullable=False),
        _shop_fk(nullable=True),
        sa.Column("run_id", sa.String(), nullable=True),
        sa.Column("variant_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False, server_default="info"),
        sa.Column("payload", postgresql.JSONB(), nullable=True),
        sa.Column("overflow_artifact_id", sa.String(), nullable=True),
    )
    op.create_index("ix_monitor_events_ts", "monitor_events", ["ts"])
    op.create_index("ix_monitor_events_run_id", "monitor_events", ["run_id"])
    op.create_index("ix_monitor_events_shop_ts", "monitor_events", ["shop_id", "ts"])

    op.create_table(
        "monitor_artifacts",
        sa.Column("id", sa.String(), primary_key=True),
        _ts("ts", nullable=False),
        _shop_fk(nullable=True),
        sa.Column("run_id", sa.String(), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("blob_key", sa.String(), nullable=False),
        sa.Column("content_type", sa.String(), nullable=False),
        sa.Column("byte_size", sa.Integer(), nullable=False),
        sa.Column("sha256", sa.String(), nullable=True),
        sa.Column("retention_class", sa.String(), nullable=False, server_default="standard"),
        _ts("expires_at", nullable=False),
    )
    op.create_index("ix_monitor_artifacts_run_id", "monitor_artifacts", ["run_id"])
    op.create_index("ix_monitor_artifacts_expires_at", "monitor_artifacts", ["expires_at"])


def downgrade() -> None:
    op.drop_table("monitor_artifacts")
    op.drop_table("monitor_events")
    op.drop_table("variant_results")
    op.drop_table("composite_runs")
    op.drop_table("render_jobs")
    op.drop_table("saved_rooms")
    op.drop_table("room_sessions")
    op.drop_table("product_assets")
    op.drop_table("usage_counters")
    op.drop_table("plan_limits")
    op.drop_table("shops")
