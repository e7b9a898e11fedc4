from __future__ import annotations

from enum import Enum
from typing import Iterable, Literal

from roomrender.core.errors import InvalidTransitionError


class AssetStatus(str, Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    FAILED = "failed"
    LIVE = "live"


# Every legal asset move; anything else is a bug or a stale caller.
ASSET_TRANSITIONS: dict[AssetStatus, frozenset[AssetStatus]] = {
    AssetStatus.PENDING: frozenset({AssetStatus.PREPARING}),
    AssetStatus.PREPARING: frozenset({AssetStatus.READY, AssetStatus.LIVE, AssetStatus.FAILED}),
    AssetStatus.READY: frozenset({AssetStatus.LIVE, AssetStatus.PENDING}),
    AssetStatus.LIVE: frozenset({AssetStatus.READY, AssetStatus.PENDING}),
    AssetStatus.FAILED: frozenset({AssetStatus.PREPARING, AssetStatus.PENDING}),
}

# Statuses a composite run may render from.
RENDERABLE_ASSET_STATUSES = frozenset({AssetStatus.READY, AssetStatus.LIVE})


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class RunStatus(str, Enum):
    IN_FLIGHT = "in_flight"
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


class VariantStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


QuotaOperation = Literal["render", "prep", "cleanup"]


def can_transition_asset(current: str, target: str) -> bool:
    try:
        return AssetStatus(target) in ASSET_TRANSITIONS[AssetStatus(current)]
    except ValueError:
        return False


def transition_asset(asset, target: AssetStatus) -> None:
    # Apply the move on the ORM row or raise without touching it.
    if not can_transition_asset(asset.status, target.value):
        raise InvalidTransitionError(str(asset.status), target.value)
    asset.status = target.value


def transition_job(job, target: JobStatus) -> None:
    try:
        allowed = JOB_TRANSITIONS[JobStatus(job.status)]
    except ValueError:
        raise InvalidTransitionError(str(job.status), target.value) from None
    if target not in allowed:
        raise InvalidTransitionError(str(job.status), target.value)
    job.status = target.value


def aggregate_run_status(
    requested_variant_ids: Iterable[str],
    results: dict[str, str],
) -> RunStatus:
    """Derive the run status from per-variant outcomes.

    ``results`` maps variant id to its terminal status. A run stays in flight
    until every requested variant has a row; afterwards it is complete when all
    succeeded, failed when none did, and partial otherwise.
    """
    requested = list(requested_variant_ids)
    if not requested:
        return RunStatus.FAILED
    if any(variant_id not in results for variant_id in requested):
        return RunStatus.IN_FLIGHT
    successes = sum(1 for variant_id in requested if results[variant_id] == VariantStatus.SUCCESS.value)
    if successes == len(requested):
        return RunStatus.COMPLETE
    if successes == 0:
        return RunStatus.FAILED
    return RunStatus.PARTIAL
