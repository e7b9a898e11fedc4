from __future__ import annotations

from datetime import datetime, timedelta, timezone

from roomrender.services.quota import (
    QuotaResult,
    QuotaSnapshot,
    _blocked_period,
    _day_start,
    _month_start,
    quota_error_detail,
    quota_headers,
)


def _result(*, day: QuotaSnapshot, month: QuotaSnapshot, blocked: str | None = None) -> QuotaResult:
    return QuotaResult(allowed=blocked is None, operation="render", day=day, month=month, blocked_period=blocked)


def test_quota_headers_render_unlimited_token() -> None:
    result = _result(
        day=QuotaSnapshot(limit=10, used=4, remaining=6),
        month=QuotaSnapshot(limit=None, used=40, remaining=None),
    )
    headers = quota_headers(result)
    assert headers == {
        "X-Quota-Operation": "render",
        "X-Quota-Day-Limit": "10",
        "X-Quota-Day-Used": "4",
        "X-Quota-Day-Remaining": "6",
        "X-Quota-Month-Limit": "unlimited",
        "X-Quota-Month-Used": "40",
        "X-Quota-Month-Remaining": "unlimited",
    }


def test_quota_error_detail_reports_blocked_period() -> None:
    result = _result(
        day=QuotaSnapshot(limit=5, used=5, remaining=0),
        month=QuotaSnapshot(limit=100, used=20, remaining=80),
        blocked="day",
    )
    detail = quota_error_detail(result)
    assert detail == {
        "code": "QUOTA_EXCEEDED",
        "message": "Daily render quota exceeded",
        "operation": "render",
        "period": "day",
        "limit": 5,
        "used": 5,
        "remaining": 0,
    }


def test_blocked_period_prefers_month() -> None:
    usage = _result(
        day=QuotaSnapshot(limit=5, used=5, remaining=0),
        month=QuotaSnapshot(limit=5, used=5, remaining=0),
    )
    assert _blocked_period(usage, 1) == "month"
    day_only = _result(
        day=QuotaSnapshot(limit=5, used=4, remaining=1),
        month=QuotaSnapshot(limit=None, used=4, remaining=None),
    )
    assert _blocked_period(day_only, 1) is None
    assert _blocked_period(day_only, 2) == "day"


def test_period_boundaries_are_utc() -> None:
    # 23:30 at UTC-5 is already the next day (and month) in UTC.
    local = datetime(2026, 1, 31, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
    assert _day_start(local) == datetime(2026, 2, 1, tzinfo=timezone.utc)
    assert _month_start(local) == datetime(2026, 2, 1, tzinfo=timezone.utc)
