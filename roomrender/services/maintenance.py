from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Literal

from sqlalchemy import delete, select, update

from roomrender.core.errors import StorageError
from roomrender.domain.models import CompositeRun, MonitorArtifact, MonitorEvent, RenderJob, RoomSession
from roomrender.persistence.repos import rooms as rooms_repo
from roomrender.services import monitor
from roomrender.services.container import ServiceContainer
from roomrender.services.rooms import room_prefix


logger = logging.getLogger(__name__)

MaintenanceTask = Literal["prune_telemetry", "prune_expired_room_sessions"]


@dataclass
class PruneResult:
    events_deleted: int = 0
    artifacts_deleted: int = 0
    blobs_deleted: int = 0
    artifacts_skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "events_deleted": self.events_deleted,
            "artifacts_deleted": self.artifacts_deleted,
            "blobs_deleted": self.blobs_deleted,
            "artifacts_skipped": self.artifacts_skipped,
            "errors": list(self.errors),
        }


@dataclass
class SessionCleanupResult:
    sessions_deleted: int = 0
    blobs_deleted: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "sessions_deleted": self.sessions_deleted,
            "blobs_deleted": self.blobs_deleted,
            "errors": list(self.errors),
        }


async def prune_events(container: ServiceContainer) -> int:
    # Delete events past the retention window in bounded batches.
    settings = container.settings
    cutoff = container.clock() - timedelta(days=settings.monitor_event_retention_days)
    deleted = 0
    for _ in range(settings.monitor_prune_max_batches):
        async with container.session_factory() as session:
            ids = (
                await session.execute(
                    select(MonitorEvent.id)
                    .where(MonitorEvent.ts < cutoff)
                    .order_by(MonitorEvent.ts)
                    .limit(settings.monitor_prune_batch_size)
                )
            ).scalars().all()
            if not ids:
                break
            result = await session.execute(delete(MonitorEvent).where(MonitorEvent.id.in_(ids)))
            await session.commit()
        deleted += int(result.rowcount or 0)
        if len(ids) < settings.monitor_prune_batch_size:
            break
    return deleted


async def prune_artifacts(container: ServiceContainer, result: PruneResult) -> None:
    """Delete expired artifacts, blob first and row second.

    An artifact whose blob delete fails keeps its row so a later prune can
    retry; it is excluded for the rest of this pass.
    """
    settings = container.settings
    now = container.clock()
    skipped: set[str] = set()
    for _ in range(settings.monitor_prune_max_batches):
        async with container.session_factory() as session:
            stmt = (
                select(MonitorArtifact)
                .where(MonitorArtifact.expires_at < now)
                .order_by(MonitorArtifact.expires_at)
                .limit(settings.monitor_prune_batch_size)
            )
            if skipped:
                stmt = stmt.where(MonitorArtifact.id.not_in(skipped))
            artifacts = list((await session.execute(stmt)).scalars().all())
        if not artifacts:
            break

        removable: list[str] = []
        for artifact in artifacts:
            try:
                if await container.blob_store.delete(artifact.blob_key):
                    result.blobs_deleted += 1
            except StorageError as exc:
                logger.warning("artifact_blob_delete_failed id=%s key=%s error=%s", artifact.id, artifact.blob_key, exc)
                skipped.add(artifact.id)
                result.artifacts_skipped += 1
                continue
            removable.append(artifact.id)

        if removable:
            async with container.session_factory() as session:
                deleted = await session.execute(delete(MonitorArtifact).where(MonitorArtifact.id.in_(removable)))
                await session.commit()
            result.artifacts_deleted += int(deleted.rowcount or 0)
        if len(artifacts) < settings.monitor_prune_batch_size:
            break


async def prune_telemetry(container: ServiceContainer) -> PruneResult:
    """Retention pass over monitor events and artifacts.

    Idempotent, and never touches runs, variant results, jobs or assets. A
    failure in one category is reported and does not stop the other.
    """
    result = PruneResult()
    try:
        result.events_deleted = await prune_events(container)
    except Exception as exc:  # noqa: BLE001 - report and continue with artifacts
        logger.exception("prune_events_failed")
        result.errors.append(f"events: {exc}")
    try:
        await prune_artifacts(container, result)
    except Exception as exc:  # noqa: BLE001 - report partial progress to the caller
        logger.exception("prune_artifacts_failed")
        result.errors.append(f"artifacts: {exc}")

    logger.info(
        "telemetry_pruned events=%s artifacts=%s blobs=%s skipped=%s errors=%s",
        result.events_deleted,
        result.artifacts_deleted,
        result.blobs_deleted,
        result.artifacts_skipped,
        len(result.errors),
    )
    await monitor.emit_event(
        container,
        type=monitor.EVENT_PRUNE_COMPLETED,
        source="maintenance",
        severity="warn" if result.errors else "info",
        payload=result.as_dict(),
    )
    return result


async def prune_expired_room_sessions(container: ServiceContainer) -> SessionCleanupResult:
    """Remove expired room sessions and their stored images.

    Runs and jobs that referenced a session keep their rows; only the
    reference is cleared.
    """
    settings = container.settings
    result = SessionCleanupResult()
    async with container.session_factory() as session:
        expired = await rooms_repo.list_expired_room_sessions(
            session, now=container.clock(), limit=settings.session_cleanup_batch_size
        )
    for room in expired:
        try:
            result.blobs_deleted += await container.blob_store.delete_prefix(room_prefix(room.shop_id, room.id))
        except StorageError as exc:
            # Keep the row so the blobs are retried on the next pass.
            logger.warning("room_blob_cleanup_failed session_id=%s error=%s", room.id, exc)
            result.errors.append(f"{room.id}: {exc}")
            continue
        async with container.session_factory() as session:
            await session.execute(
                update(CompositeRun).where(CompositeRun.room_session_id == room.id).values(room_session_id=None)
            )
            await session.execute(
                update(RenderJob).where(RenderJob.room_session_id == room.id).values(room_session_id=None)
            )
            await session.execute(delete(RoomSession).where(RoomSession.id == room.id))
            await session.commit()
        result.sessions_deleted += 1
    logger.info(
        "room_sessions_cleaned sessions=%s blobs=%s errors=%s",
        result.sessions_deleted,
        result.blobs_deleted,
        len(result.errors),
    )
    return result


async def run_maintenance_task(container: ServiceContainer, task: MaintenanceTask) -> dict[str, object]:
    # Dispatch scheduled maintenance tasks by name.
    if task == "prune_telemetry":
        return (await prune_telemetry(container)).as_dict()
    if task == "prune_expired_room_sessions":
        return (await prune_expired_room_sessions(container)).as_dict()
    raise ValueError(f"Unknown maintenance task: {task}")
