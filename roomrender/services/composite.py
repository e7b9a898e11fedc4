"""Composite run engine.

One visualization request fans out into N variant attempts that run
concurrently against the image provider. Each variant persists its own
result row the moment it finishes; the run's status is always derivable
from those rows, so a crashed worker never leaves a run in an
unexplainable state.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from roomrender.core.errors import (
    InputValidationError,
    NotFoundError,
    ProviderError,
    ProviderTimeoutError,
    StorageError,
)
from roomrender.domain.models import CompositeRun, Shop, new_id
from roomrender.domain.states import (
    RENDERABLE_ASSET_STATUSES,
    AssetStatus,
    RunStatus,
    VariantStatus,
    aggregate_run_status,
)
from roomrender.persistence.repos import assets as assets_repo
from roomrender.persistence.repos import rooms as rooms_repo
from roomrender.persistence.repos import runs as runs_repo
from roomrender.providers.imagegen.base import ImageInput
from roomrender.services import file_cache, monitor
from roomrender.services.container import ServiceContainer
from roomrender.services.images import extension_for
from roomrender.services.prompts import build_composite_prompt
from roomrender.services.queue import TaskPayload, enqueue_task


logger = logging.getLogger(__name__)

_MAX_ERROR_CHARS = 500


class VariantSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    variant_id: str = Field(min_length=1, max_length=64)
    placement: dict[str, Any] = Field(default_factory=dict)
    style_hint: str | None = Field(default=None, max_length=500)


@dataclass(frozen=True)
class RunCreated:
    run_id: str
    status: str
    variant_ids: list[str]


@dataclass(frozen=True)
class VariantView:
    variant_id: str
    status: str
    latency_ms: int | None
    error_code: str | None
    error_message: str | None
    image_ref: str | None


@dataclass(frozen=True)
class RunDetail:
    run_id: str
    status: str
    product_id: str | None
    room_session_id: str | None
    variants: list[VariantView]
    success_count: int
    fail_count: int
    timeout_count: int
    created_at: datetime
    completed_at: datetime | None
    total_duration_ms: int | None


@dataclass(frozen=True)
class RunSummary:
    run_id: str
    status: str
    requested: int
    success_count: int
    created_at: datetime
    total_duration_ms: int | None


def parse_variant_specs(raw_specs: list[Any], *, max_variants: int) -> list[VariantSpec]:
    # Reject the whole request on any bad spec; nothing is reserved yet.
    if not raw_specs:
        raise InputValidationError("At least one variant is required")
    if len(raw_specs) > max_variants:
        raise InputValidationError(f"At most {max_variants} variants per run")
    specs: list[VariantSpec] = []
    for raw in raw_specs:
        if isinstance(raw, VariantSpec):
            specs.append(raw)
            continue
        try:
            specs.append(VariantSpec.model_validate(raw))
        except ValidationError as exc:
            raise InputValidationError(f"Invalid variant spec: {exc.errors()[0]['msg']}") from exc
    ids = [spec.variant_id for spec in specs]
    if len(set(ids)) != len(ids):
        raise InputValidationError("Variant ids must be unique within a run")
    return specs


async def create_composite_run(
    container: ServiceContainer,
    shop: Shop,
    *,
    product_id: str,
    room_session_id: str,
    variant_specs: list[Any],
    request_id: str | None = None,
) -> RunCreated:
    settings = container.settings
    specs = parse_variant_specs(variant_specs, max_variants=settings.max_variants_per_run)
    now = container.clock()
    run_id = new_id()

    async with container.session_factory() as session:
        asset = await assets_repo.get_asset(session, shop.id, product_id)
        if asset is None:
            raise NotFoundError("Asset not found")
        if AssetStatus(asset.status) not in RENDERABLE_ASSET_STATUSES or not asset.prepared_image_key:
            raise InputValidationError("Product asset is not ready")
        room = await rooms_repo.get_room_session(session, shop.id, room_session_id)
        if room is None:
            raise NotFoundError("Room session not found")
        if room.expires_at <= now:
            raise InputValidationError("Room session expired")
        room_key = file_cache.current_room_image_key(room)
        if not room_key:
            raise InputValidationError("Room image has not been uploaded")

        await container.quota.reserve_quota(session, shop.id, "render", len(specs))

        resolved_facts = {
            "product": {
                "product_id": asset.product_id,
                "asset_id": asset.id,
                "title": asset.product_title,
                "prepared_image_version": asset.prepared_image_version,
                "render_instructions": asset.render_instructions,
                "placement_hints": asset.placement_hints,
            },
            "room": {
                "session_id": room.id,
                "image_key": room_key,
                "cleaned": room.cleaned_image_key is not None,
            },
            "pipeline": {
                "model": settings.gemini_image_model,
                "variant_timeout_ms": settings.variant_timeout_ms,
            },
        }
        session.add(
            CompositeRun(
                id=run_id,
                shop_id=shop.id,
                product_asset_id=asset.id,
                room_session_id=room.id,
                trace_id=request_id or run_id,
                status=RunStatus.IN_FLIGHT.value,
                requested_variants=[spec.variant_id for spec in specs],
                placement_snapshot=[spec.model_dump() for spec in specs],
                resolved_facts_snapshot=resolved_facts,
                product_image_ref=asset.prepared_image_key,
                room_image_ref=room_key,
                quota_reserved=len(specs),
                created_at=now,
            )
        )
        room.last_used_at = now
        await session.commit()

    monitor.emit(
        container,
        type=monitor.EVENT_RUN_CREATED,
        source="composite",
        shop_id=shop.id,
        run_id=run_id,
        request_id=request_id,
        payload={"product_id": product_id, "variants": [spec.variant_id for spec in specs]},
    )
    await enqueue_task(container, TaskPayload(task="composite_run", entity_id=run_id, request_id=request_id))
    return RunCreated(
        run_id=run_id,
        status=RunStatus.IN_FLIGHT.value,
        variant_ids=[spec.variant_id for spec in specs],
    )


async def execute_run(container: ServiceContainer, run_id: str) -> RunStatus:
    """Run every variant that has no result yet, then finalize the run.

    Safe to call again for the same run: finished variants are skipped and
    result writes are first-write-wins. A run another executor claimed
    within the stale window is left alone.
    """
    now = container.clock()
    stale_before = now - timedelta(seconds=container.settings.run_stale_after_s)
    async with container.session_factory() as session:
        claimed = await runs_repo.claim_run(session, run_id, now=now, stale_before=stale_before)
        await session.commit()

    async with container.session_factory() as session:
        run = await runs_repo.get_run_by_id(session, run_id)
        if run is None:
            raise NotFoundError("Run not found")
        if run.status != RunStatus.IN_FLIGHT.value:
            return RunStatus(run.status)
        if not claimed:
            logger.info("run_claim_skipped run_id=%s", run_id)
            return RunStatus.IN_FLIGHT
        done = {result.variant_id for result in await runs_repo.list_variant_results(session, run_id)}
        pending = [spec for spec in run.placement_snapshot if spec["variant_id"] not in done]

        inputs: tuple[ImageInput, ImageInput] | None = None
        input_error: str | None = None
        if pending:
            try:
                inputs = await _resolve_inputs(session, container, run)
                await session.commit()
            except (InputValidationError, StorageError) as exc:
                input_error = str(exc)

    if pending:
        if inputs is None:
            logger.warning("run_inputs_unavailable run_id=%s error=%s", run_id, input_error)
            for spec in pending:
                await _record_variant(
                    container,
                    run,
                    variant_id=spec["variant_id"],
                    status=VariantStatus.FAILED,
                    latency_ms=None,
                    error_code="INPUT_UNAVAILABLE",
                    error_message=input_error,
                )
        else:
            product_input, room_input = inputs
            # Join barrier: every variant settles (success, failure or timeout) before finalize.
            await asyncio.gather(
                *(
                    _run_variant(container, run, spec, product_input=product_input, room_input=room_input)
                    for spec in pending
                )
            )
    return await finalize_run(container, run_id)


async def _resolve_inputs(
    session: AsyncSession, container: ServiceContainer, run: CompositeRun
) -> tuple[ImageInput, ImageInput]:
    asset = await assets_repo.get_asset_by_id(session, run.product_asset_id or "")
    room = await rooms_repo.get_room_session_by_id(session, run.room_session_id or "")
    if asset is None or room is None or not run.product_image_ref or not run.room_image_ref:
        raise InputValidationError("Run inputs no longer exist")
    product_input = await file_cache.resolve_image_input(
        session,
        container,
        asset,
        image_key=run.product_image_ref,
        display_name=f"asset-{asset.id}-v{asset.prepared_image_version}",
    )
    room_input = await file_cache.resolve_image_input(
        session, container, room, image_key=run.room_image_ref, display_name=f"room-{room.id}"
    )
    return product_input, room_input


async def _run_variant(
    container: ServiceContainer,
    run: CompositeRun,
    spec: dict[str, Any],
    *,
    product_input: ImageInput,
    room_input: ImageInput,
) -> None:
    # Never raises: every outcome becomes a VariantResult row.
    variant_id = spec["variant_id"]
    timeout_s = container.settings.variant_timeout_ms / 1000.0
    prompt = build_composite_prompt(run.resolved_facts_snapshot or {}, spec)
    async with container.variant_bulkhead.slot():
        started = time.monotonic()
        try:
            image = await asyncio.wait_for(
                container.image_provider.generate_composite(
                    room=room_input,
                    product=product_input,
                    prompt=prompt,
                    variant_id=variant_id,
                ),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError:
            await _record_variant(
                container,
                run,
                variant_id=variant_id,
                status=VariantStatus.TIMEOUT,
                latency_ms=None,
                error_code="TIMEOUT",
                error_message=f"Variant timed out after {container.settings.variant_timeout_ms} ms",
            )
            return
        except ProviderTimeoutError:
            # Provider-side deadline; same outcome as our own.
            await _record_variant(
                container,
                run,
                variant_id=variant_id,
                status=VariantStatus.TIMEOUT,
                latency_ms=None,
                error_code="TIMEOUT",
                error_message="Provider call timed out",
            )
            return
        except ProviderError as exc:
            await _record_variant(
                container,
                run,
                variant_id=variant_id,
                status=VariantStatus.FAILED,
                latency_ms=_elapsed_ms(started),
                error_code=exc.code,
                error_message=str(exc),
            )
            return
        except Exception as exc:  # noqa: BLE001 - one variant's crash must not affect siblings
            logger.exception("variant_crashed run_id=%s variant_id=%s", run.id, variant_id)
            await _record_variant(
                container,
                run,
                variant_id=variant_id,
                status=VariantStatus.FAILED,
                latency_ms=_elapsed_ms(started),
                error_code="PROVIDER_ERROR",
                error_message=str(exc) or type(exc).__name__,
            )
            return
        latency_ms = _elapsed_ms(started)

    output_key = f"runs/{run.id}/{variant_id}.{extension_for(image.mime_type)}"
    try:
        await container.blob_store.upload(output_key, image.data, content_type=image.mime_type)
    except StorageError as exc:
        await _record_variant(
            container,
            run,
            variant_id=variant_id,
            status=VariantStatus.FAILED,
            latency_ms=latency_ms,
            error_code="STORAGE_ERROR",
            error_message=str(exc),
        )
        return
    await _record_variant(
        container,
        run,
        variant_id=variant_id,
        status=VariantStatus.SUCCESS,
        latency_ms=latency_ms,
        output_image_key=output_key,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def _record_variant(
    container: ServiceContainer,
    run: CompositeRun,
    *,
    variant_id: str,
    status: VariantStatus,
    latency_ms: int | None,
    error_code: str | None = None,
    error_message: str | None = None,
    output_image_key: str | None = None,
) -> bool:
    # Each variant commits through its own session as soon as it settles.
    values = {
        "run_id": run.id,
        "variant_id": variant_id,
        "status": status.value,
        "latency_ms": latency_ms,
        "error_code": error_code,
        "error_message": (error_message or "")[:_MAX_ERROR_CHARS] or None,
        "output_image_key": output_image_key,
        "created_at": container.clock(),
    }
    async with container.session_factory() as session:
        inserted = await runs_repo.insert_variant_result(session, values)
        await session.commit()
    if not inserted:
        logger.info("variant_result_duplicate run_id=%s variant_id=%s", run.id, variant_id)
        return False
    monitor.emit(
        container,
        type=monitor.EVENT_VARIANT_COMPLETED,
        source="composite",
        severity="info" if status == VariantStatus.SUCCESS else "warn",
        shop_id=run.shop_id,
        run_id=run.id,
        variant_id=variant_id,
        payload={"status": status.value, "latency_ms": latency_ms, "error_code": error_code},
    )
    return True


async def finalize_run(container: ServiceContainer, run_id: str) -> RunStatus:
    """Persist counts, duration and status once every variant has settled.

    Unused render reservations (variants that did not succeed) are returned
    to the quota ledger exactly once.
    """
    async with container.session_factory() as session:
        run = await runs_repo.get_run_by_id(session, run_id)
        if run is None:
            raise NotFoundError("Run not found")
        results = await runs_repo.list_variant_results(session, run_id)
        statuses = {result.variant_id: result.status for result in results}
        status = aggregate_run_status(run.requested_variants, statuses)
        if status == RunStatus.IN_FLIGHT or run.status != RunStatus.IN_FLIGHT.value:
            return RunStatus(run.status) if run.status != RunStatus.IN_FLIGHT.value else status

        success = sum(1 for value in statuses.values() if value == VariantStatus.SUCCESS.value)
        failed = sum(1 for value in statuses.values() if value == VariantStatus.FAILED.value)
        timed_out = sum(1 for value in statuses.values() if value == VariantStatus.TIMEOUT.value)
        completed_at = max((result.created_at for result in results), default=container.clock())
        total_ms = max(int((completed_at - run.created_at).total_seconds() * 1000), 0)

        # Conditional update so concurrent finalizers release quota once.
        finalized = await session.execute(
            update(CompositeRun)
            .where(CompositeRun.id == run_id, CompositeRun.status == RunStatus.IN_FLIGHT.value)
            .values(
                status=status.value,
                success_count=success,
                fail_count=failed,
                timeout_count=timed_out,
                completed_at=completed_at,
                total_duration_ms=total_ms,
                quota_reserved=success,
            )
            .execution_options(synchronize_session=False)
        )
        if finalized.rowcount != 1:
            await session.rollback()
            return status
        unused = max(run.quota_reserved - success, 0)
        if unused:
            await container.quota.release_quota(
                session, run.shop_id, "render", unused, reserved_at=run.created_at
            )
        await session.commit()

    logger.info(
        "composite_run_finalized run_id=%s status=%s success=%s failed=%s timeout=%s duration_ms=%s",
        run_id,
        status.value,
        success,
        failed,
        timed_out,
        total_ms,
    )
    monitor.emit(
        container,
        type=monitor.EVENT_RUN_COMPLETED,
        source="composite",
        severity="info" if status == RunStatus.COMPLETE else "warn",
        shop_id=run.shop_id,
        run_id=run_id,
        payload={
            "status": status.value,
            "success": success,
            "failed": failed,
            "timeout": timed_out,
            "total_duration_ms": total_ms,
        },
    )
    return status


async def get_run_detail(container: ServiceContainer, shop: Shop, run_id: str) -> RunDetail:
    async with container.session_factory() as session:
        run = await runs_repo.get_run(session, shop.id, run_id)
        if run is None:
            raise NotFoundError("Run not found")
        results = await runs_repo.list_variant_results(session, run_id)
        asset = await assets_repo.get_asset_by_id(session, run.product_asset_id) if run.product_asset_id else None

    by_variant = {result.variant_id: result for result in results}
    # Status is recomputed from result rows on every read.
    status = aggregate_run_status(run.requested_variants, {k: v.status for k, v in by_variant.items()})
    variants: list[VariantView] = []
    for variant_id in run.requested_variants:
        result = by_variant.get(variant_id)
        if result is None:
            variants.append(VariantView(variant_id, "pending", None, None, None, None))
            continue
        image_ref = None
        if result.output_image_key:
            image_ref = await container.blob_store.signed_read_url(
                result.output_image_key, ttl_s=container.settings.signed_url_ttl_s
            )
        variants.append(
            VariantView(
                variant_id=variant_id,
                status=result.status,
                latency_ms=result.latency_ms,
                error_code=result.error_code,
                error_message=result.error_message,
                image_ref=image_ref,
            )
        )
    return RunDetail(
        run_id=run.id,
        status=status.value,
        product_id=asset.product_id if asset else None,
        room_session_id=run.room_session_id,
        variants=variants,
        success_count=sum(1 for v in variants if v.status == VariantStatus.SUCCESS.value),
        fail_count=sum(1 for v in variants if v.status == VariantStatus.FAILED.value),
        timeout_count=sum(1 for v in variants if v.status == VariantStatus.TIMEOUT.value),
        created_at=run.created_at,
        completed_at=run.completed_at,
        total_duration_ms=run.total_duration_ms,
    )


async def list_runs(container: ServiceContainer, shop: Shop, *, limit: int = 50) -> list[RunSummary]:
    limit = max(1, min(limit, 200))
    async with container.session_factory() as session:
        runs = await runs_repo.list_runs(session, shop.id, limit=limit)
    return [
        RunSummary(
            run_id=run.id,
            status=run.status,
            requested=len(run.requested_variants or []),
            success_count=run.success_count,
            created_at=run.created_at,
            total_duration_ms=run.total_duration_ms,
        )
        for run in runs
    ]


async def list_stale_runs(container: ServiceContainer, *, limit: int) -> list[str]:
    # In-flight runs with no live executor claim; re-driving them is idempotent.
    now = container.clock()
    cutoff = now - timedelta(seconds=container.settings.run_stale_after_s)
    async with container.session_factory() as session:
        return await runs_repo.list_stale_run_ids(
            session, created_before=cutoff, stale_before=cutoff, limit=limit
        )
