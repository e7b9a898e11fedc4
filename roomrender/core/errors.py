from __future__ import annotations

from typing import Any


class RoomRenderError(Exception):
    """Base error for RoomRender."""


class InputValidationError(RoomRenderError):
    """Caller input rejected before any work started; never retried."""


class NotFoundError(RoomRenderError):
    """Requested entity does not exist for this shop."""


class InvalidTransitionError(RoomRenderError):
    """Asset or job state change not allowed by the transition table."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot transition from {current} to {target}")
        self.current = current
        self.target = target


class QuotaExceededError(RoomRenderError):
    """Plan limit would be exceeded by the requested operation."""

    def __init__(self, message: str, *, result: Any) -> None:
        super().__init__(message)
        # QuotaResult from services.quota; typed loosely to avoid an import cycle.
        self.result = result


class ProviderConfigError(RoomRenderError):
    """Missing or invalid provider configuration."""


class ProviderError(RoomRenderError):
    """Image-generation provider call failed."""

    def __init__(self, message: str, *, code: str = "PROVIDER_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ProviderTimeoutError(ProviderError):
    """Image-generation provider call exceeded its deadline."""

    def __init__(self, message: str = "Provider call timed out") -> None:
        super().__init__(message, code="TIMEOUT")


class StorageError(RoomRenderError):
    """Blob store read/write failure."""


class CatalogError(RoomRenderError):
    """Origin catalog request failure."""
