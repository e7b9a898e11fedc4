from __future__ import annotations

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable

from roomrender.core.config import Settings, get_settings
from roomrender.core.errors import CatalogError, InputValidationError, StorageError


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, StorageError, CatalogError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, InputValidationError):
        return False
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize external retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            logger.info("external_call_retry attempt=%s error=%s", attempt, type(exc).__name__)
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1


@dataclass(frozen=True)
class PrepRetryPolicy:
    """Single source of truth for asset preparation retries.

    Worker pickup and manual re-triggers both consult this policy; a manual
    re-trigger resets the retry count instead of bypassing the cap.
    """

    max_retries: int
    backoff_s: int

    def can_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    def next_attempt_at(self, retry_count: int, now: datetime) -> datetime | None:
        # Exponential backoff from the failure count; None once exhausted.
        if not self.can_retry(retry_count):
            return None
        delay = self.backoff_s * (2 ** max(retry_count - 1, 0))
        return now + timedelta(seconds=delay)


def prep_retry_policy(settings: Settings | None = None) -> PrepRetryPolicy:
    settings = settings or get_settings()
    return PrepRetryPolicy(max_retries=settings.prep_max_retries, backoff_s=settings.prep_retry_backoff_s)


class Bulkhead:
    def __init__(self, name: str, limit: int) -> None:
        # Use asyncio semaphores to cap concurrency for expensive operations.
        self._name = name
        self._limit = max(1, limit)
        self._sem = asyncio.Semaphore(self._limit)

    @property
    def name(self) -> str:
        return self._name

    @property
    def limit(self) -> int:
        return self._limit

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        # Wait for capacity instead of rejecting; used for fan-out work.
        await self._sem.acquire()
        try:
            yield
        finally:
            self._sem.release()
