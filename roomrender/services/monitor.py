from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal

from sqlalchemy import select

from roomrender.core.errors import NotFoundError
from roomrender.domain.models import MonitorArtifact, MonitorEvent, Shop, new_id
from roomrender.persistence.repos import runs as runs_repo


logger = logging.getLogger(__name__)

Severity = Literal["debug", "info", "warn", "error"]
RetentionClass = Literal["short", "standard", "long"]

RETENTION_DAYS: dict[str, int] = {"short": 7, "standard": 30, "long": 90}

_SENSITIVE_KEY_PATTERNS = ["apikey", "api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"
_PREVIEW_CHARS = 1000

# Event types emitted by the engine.
EVENT_PREP_QUEUED = "prep.queued"
EVENT_PREP_STARTED = "prep.started"
EVENT_PREP_COMPLETED = "prep.completed"
EVENT_PREP_FAILED = "prep.failed"
EVENT_ASSET_LIVE_CHANGED = "asset.live_changed"
EVENT_ROOM_CLEANUP_COMPLETED = "room.cleanup.completed"
EVENT_ROOM_CLEANUP_FAILED = "room.cleanup.failed"
EVENT_RENDER_JOB_COMPLETED = "render.job.completed"
EVENT_RENDER_JOB_FAILED = "render.job.failed"
EVENT_RUN_CREATED = "render.run.created"
EVENT_VARIANT_COMPLETED = "render.variant.completed"
EVENT_RUN_COMPLETED = "render.run.completed"
EVENT_PRUNE_COMPLETED = "maintenance.prune.completed"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def scrub_payload(value: Any) -> Any:
    # Recursively scrub secret-looking keys while preserving structure.
    if isinstance(value, dict):
        scrubbed: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                scrubbed[key] = _REDACTED_VALUE
            else:
                scrubbed[key] = scrub_payload(raw_value)
        return scrubbed
    if isinstance(value, (list, tuple)):
        return [scrub_payload(item) for item in value]
    return value


def retention_expiry(container, retention_class: str):
    days = RETENTION_DAYS.get(retention_class, RETENTION_DAYS["standard"])
    return container.clock() + timedelta(days=days)


async def store_artifact(
    container,
    *,
    type: str,
    data: bytes,
    content_type: str,
    shop_id: str | None = None,
    run_id: str | None = None,
    retention_class: RetentionClass = "standard",
) -> MonitorArtifact:
    # Blob first, then the row; a row never points at a missing blob.
    artifact_id = new_id()
    extension = "json" if content_type == "application/json" else "bin"
    blob_key = f"monitor/{shop_id or 'global'}/{run_id or 'none'}/{artifact_id}.{extension}"
    await container.blob_store.upload(blob_key, data, content_type=content_type)
    artifact = MonitorArtifact(
        id=artifact_id,
        ts=container.clock(),
        shop_id=shop_id,
        run_id=run_id,
        type=type,
        blob_key=blob_key,
        content_type=content_type,
        byte_size=len(data),
        sha256=hashlib.sha256(data).hexdigest(),
        retention_class=retention_class,
        expires_at=retention_expiry(container, retention_class),
    )
    async with container.session_factory() as session:
        session.add(artifact)
        await session.commit()
    return artifact


async def emit_event(
    container,
    *,
    type: str,
    source: str,
    severity: Severity = "info",
    shop_id: str | None = None,
    run_id: str | None = None,
    variant_id: str | None = None,
    request_id: str | None = None,
    payload: dict[str, Any] | None = None,
    ts: datetime | None = None,
) -> bool:
    """Append a MonitorEvent; returns False instead of raising on any failure.

    Oversized payloads are moved to an artifact and the event keeps a preview.
    """
    try:
        body = scrub_payload(payload or {})
        serialized = json.dumps(body, default=str, separators=(",", ":"))
        overflow_artifact_id = None
        if len(serialized) > container.settings.monitor_max_payload_bytes:
            artifact = await store_artifact(
                container,
                type="event_payload_overflow",
                data=serialized.encode("utf-8"),
                content_type="application/json",
                shop_id=shop_id,
                run_id=run_id,
            )
            overflow_artifact_id = artifact.id
            body = {
                "truncated": True,
                "size": len(serialized),
                "preview": serialized[:_PREVIEW_CHARS],
            }
        else:
            body = json.loads(serialized)
        async with container.session_factory() as session:
            session.add(
                MonitorEvent(
                    ts=ts or container.clock(),
                    shop_id=shop_id,
                    run_id=run_id,
                    variant_id=variant_id,
                    request_id=request_id,
                    source=source,
                    type=type,
                    severity=severity,
                    payload=body,
                    overflow_artifact_id=overflow_artifact_id,
                )
            )
            await session.commit()
        return True
    except Exception as exc:  # noqa: BLE001 - telemetry must never break the caller
        logger.warning("monitor_emit_failed type=%s run_id=%s error=%s", type, run_id, exc)
        return False


def emit(container, **kwargs: Any) -> None:
    # Fire-and-forget; the container keeps the task referenced until it finishes.
    # Stamp now so the feed orders by occurrence, not by write.
    kwargs.setdefault("ts", container.clock())
    container.spawn(emit_event(container, **kwargs))


@dataclass(frozen=True)
class EventView:
    event_id: str
    ts: datetime
    type: str
    source: str
    severity: str
    variant_id: str | None
    request_id: str | None
    payload: dict[str, Any] | None
    overflow_artifact_id: str | None


async def list_run_events(container, shop: Shop, run_id: str, *, limit: int = 200) -> list[EventView]:
    """Events recorded for one run, oldest first.

    Runs owned by another shop look absent. Events already pruned are simply
    missing from the feed.
    """
    limit = max(1, min(limit, 500))
    async with container.session_factory() as session:
        run = await runs_repo.get_run(session, shop.id, run_id)
        if run is None:
            raise NotFoundError("Run not found")
        rows = (
            await session.execute(
                select(MonitorEvent)
                .where(MonitorEvent.run_id == run_id, MonitorEvent.shop_id == shop.id)
                .order_by(MonitorEvent.ts, MonitorEvent.id)
                .limit(limit)
            )
        ).scalars().all()
    return [
        EventView(
            event_id=row.id,
            ts=row.ts,
            type=row.type,
            source=row.source,
            severity=row.severity,
            variant_id=row.variant_id,
            request_id=row.request_id,
            payload=row.payload,
            overflow_artifact_id=row.overflow_artifact_id,
        )
        for row in rows
    ]
