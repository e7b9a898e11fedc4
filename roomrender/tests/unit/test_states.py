from __future__ import annotations

from types import SimpleNamespace

import pytest

from roomrender.core.errors import InvalidTransitionError
from roomrender.domain.states import (
    AssetStatus,
    JobStatus,
    RunStatus,
    aggregate_run_status,
    can_transition_asset,
    transition_asset,
    transition_job,
)


def test_aggregate_run_status_truth_table() -> None:
    requested = ["v1", "v2", "v3"]
    cases = [
        ({}, RunStatus.IN_FLIGHT),
        ({"v1": "success", "v2": "success"}, RunStatus.IN_FLIGHT),
        ({"v1": "success", "v2": "success", "v3": "success"}, RunStatus.COMPLETE),
        ({"v1": "failed", "v2": "timeout", "v3": "failed"}, RunStatus.FAILED),
        ({"v1": "success", "v2": "timeout", "v3": "failed"}, RunStatus.PARTIAL),
    ]
    for results, expected in cases:
        assert aggregate_run_status(requested, results) == expected


def test_aggregate_run_status_empty_request_is_failed() -> None:
    assert aggregate_run_status([], {}) == RunStatus.FAILED


def test_aggregate_ignores_unrequested_results() -> None:
    # Stray rows for variants that were never requested do not count.
    results = {"v1": "success", "extra": "failed"}
    assert aggregate_run_status(["v1"], results) == RunStatus.COMPLETE


def test_asset_transition_table() -> None:
    allowed = [
        ("pending", "preparing"),
        ("preparing", "ready"),
        ("preparing", "live"),
        ("preparing", "failed"),
        ("ready", "live"),
        ("live", "ready"),
        ("failed", "preparing"),
        ("failed", "pending"),
    ]
    rejected = [
        ("pending", "ready"),
        ("pending", "live"),
        ("ready", "failed"),
        ("live", "failed"),
        ("failed", "live"),
        ("preparing", "pending"),
        ("unknown", "ready"),
    ]
    for current, target in allowed:
        assert can_transition_asset(current, target), (current, target)
    for current, target in rejected:
        assert not can_transition_asset(current, target), (current, target)


def test_transition_asset_leaves_row_untouched_on_rejection() -> None:
    asset = SimpleNamespace(status=AssetStatus.PENDING.value)
    with pytest.raises(InvalidTransitionError) as excinfo:
        transition_asset(asset, AssetStatus.LIVE)
    assert asset.status == "pending"
    assert excinfo.value.current == "pending"
    assert excinfo.value.target == "live"

    transition_asset(asset, AssetStatus.PREPARING)
    assert asset.status == "preparing"


def test_job_terminal_states_are_final() -> None:
    job = SimpleNamespace(status=JobStatus.QUEUED.value)
    transition_job(job, JobStatus.PROCESSING)
    transition_job(job, JobStatus.COMPLETED)
    with pytest.raises(InvalidTransitionError):
        transition_job(job, JobStatus.FAILED)

    broken = SimpleNamespace(status="bogus")
    with pytest.raises(InvalidTransitionError):
        transition_job(broken, JobStatus.PROCESSING)
