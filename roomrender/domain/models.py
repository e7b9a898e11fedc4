from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class UtcDateTime(TypeDecorator):
    # SQLite drops tzinfo on read; always hand back aware UTC instants.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite).
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Shop(Base):
    __tablename__ = "shops"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    # Stable merchant identifier from the origin platform.
    shop_domain: Mapped[str] = mapped_column(String, unique=True, index=True)
    # Opaque origin catalog credential; never logged.
    access_token: Mapped[str | None] = mapped_column(String, nullable=True)
    plan: Mapped[str] = mapped_column(String, default="free")
    installed_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    # Soft delete marker; cleared on reinstall.
    uninstalled_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class PlanLimit(Base):
    __tablename__ = "plan_limits"

    shop_id: Mapped[str] = mapped_column(
        String, ForeignKey("shops.id", ondelete="CASCADE"), primary_key=True
    )
    # Operation class: render | prep | cleanup.
    operation: Mapped[str] = mapped_column(String, primary_key=True)
    # Null means unlimited for that period.
    daily_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    monthly_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, onupdate=_utc_now)


class UsageCounter(Base):
    __tablename__ = "usage_counters"

    shop_id: Mapped[str] = mapped_column(
        String, ForeignKey("shops.id", ondelete="CASCADE"), primary_key=True
    )
    operation: Mapped[str] = mapped_column(String, primary_key=True)
    period_type: Mapped[str] = mapped_column(String, primary_key=True)
    period_start: Mapped[datetime] = mapped_column(UtcDateTime, primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, onupdate=_utc_now)


class ProductAsset(Base):
    __tablename__ = "product_assets"
    __table_args__ = (
        UniqueConstraint("shop_id", "product_id", name="uq_product_assets_shop_product"),
        Index("ix_product_assets_status_next_attempt", "status", "next_attempt_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    shop_id: Mapped[str] = mapped_column(String, ForeignKey("shops.id", ondelete="CASCADE"), index=True)
    product_id: Mapped[str] = mapped_column(String)
    product_title: Mapped[str | None] = mapped_column(String, nullable=True)
    source_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_image_id: Mapped[str | None] = mapped_column(String, nullable=True)
    prepared_image_key: Mapped[str | None] = mapped_column(String, nullable=True)
    # Bumped on every successful preparation; part of the blob key.
    prepared_image_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    prep_strategy: Mapped[str] = mapped_column(String, default="manual")
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Merchant override text fed into composite prompts.
    render_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    placement_hints: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    provider_file_uri: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_file_expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    prep_started_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, onupdate=_utc_now)


class RoomSession(Base):
    __tablename__ = "room_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    shop_id: Mapped[str] = mapped_column(String, ForeignKey("shops.id", ondelete="CASCADE"), index=True)
    original_image_key: Mapped[str | None] = mapped_column(String, nullable=True)
    cleaned_image_key: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_file_uri: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_file_expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime, index=True)
    last_used_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)


class SavedRoom(Base):
    __tablename__ = "saved_rooms"

    # Durable copy of a room session's images; survives session expiry.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    shop_id: Mapped[str] = mapped_column(String, ForeignKey("shops.id", ondelete="CASCADE"), index=True)
    title: Mapped[str | None] = mapped_column(String, nullable=True)
    original_image_key: Mapped[str | None] = mapped_column(String, nullable=True)
    cleaned_image_key: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)


class RenderJob(Base):
    __tablename__ = "render_jobs"
    __table_args__ = (Index("ix_render_jobs_status_created", "status", "created_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    shop_id: Mapped[str] = mapped_column(String, ForeignKey("shops.id", ondelete="CASCADE"), index=True)
    # cleanup | render
    kind: Mapped[str] = mapped_column(String)
    room_session_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("room_sessions.id", ondelete="SET NULL"), nullable=True
    )
    product_asset_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("product_assets.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str] = mapped_column(String, default="queued")
    input_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    output_image_key: Mapped[str | None] = mapped_column(String, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class CompositeRun(Base):
    __tablename__ = "composite_runs"
    __table_args__ = (
        Index("ix_composite_runs_shop_created", "shop_id", "created_at"),
        Index("ix_composite_runs_status_claimed", "status", "claimed_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    shop_id: Mapped[str] = mapped_column(String, ForeignKey("shops.id", ondelete="CASCADE"), index=True)
    product_asset_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("product_assets.id", ondelete="SET NULL"), nullable=True
    )
    room_session_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("room_sessions.id", ondelete="SET NULL"), nullable=True
    )
    trace_id: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="in_flight")
    requested_variants: Mapped[list[str]] = mapped_column(JsonType)
    # Verbatim variant specs as submitted; never rewritten.
    placement_snapshot: Mapped[list[dict[str, Any]]] = mapped_column(JsonType)
    resolved_facts_snapshot: Mapped[dict[str, Any]] = mapped_column(JsonType)
    product_image_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    room_image_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    fail_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    timeout_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Render quota reserved up front; non-success variants are refunded at finalize.
    quota_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    total_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Set by the executor driving the run; stale claims are re-driven.
    claimed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class VariantResult(Base):
    __tablename__ = "variant_results"
    __table_args__ = (UniqueConstraint("run_id", "variant_id", name="uq_variant_results_run_variant"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    run_id: Mapped[str] = mapped_column(
        String, ForeignKey("composite_runs.id", ondelete="CASCADE"), index=True
    )
    variant_id: Mapped[str] = mapped_column(String)
    # success | failed | timeout
    status: Mapped[str] = mapped_column(String)
    # Null when the provider call never returned (timeout).
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    output_image_key: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)


class MonitorEvent(Base):
    __tablename__ = "monitor_events"
    __table_args__ = (Index("ix_monitor_events_shop_ts", "shop_id", "ts"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    ts: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, index=True)
    shop_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("shops.id", ondelete="CASCADE"), nullable=True
    )
    # Runs are never pruned, so events only reference them loosely.
    run_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    variant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    source: Mapped[str] = mapped_column(String)
    type: Mapped[str] = mapped_column(String)
    severity: Mapped[str] = mapped_column(String, default="info")
    payload: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    overflow_artifact_id: Mapped[str | None] = mapped_column(String, nullable=True)


class MonitorArtifact(Base):
    __tablename__ = "monitor_artifacts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    ts: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    shop_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("shops.id", ondelete="CASCADE"), nullable=True
    )
    run_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    type: Mapped[str] = mapped_column(String)
    blob_key: Mapped[str] = mapped_column(String)
    content_type: Mapped[str] = mapped_column(String)
    byte_size: Mapped[int] = mapped_column(Integer)
    sha256: Mapped[str | None] = mapped_column(String, nullable=True)
    # short | standard | long
    retention_class: Mapped[str] = mapped_column(String, default="standard")
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime, index=True)
