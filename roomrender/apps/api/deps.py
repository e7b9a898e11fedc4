from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, Request, status

from roomrender.apps.api.response import get_request_id
from roomrender.domain.models import Shop
from roomrender.services.container import ServiceContainer
from roomrender.services.shops import resolve_shop


def get_container(request: Request) -> ServiceContainer:
    # The app factory stores the composition root on app.state.
    return request.app.state.container


def request_id(request: Request) -> str:
    return get_request_id(request)


async def get_current_shop(
    x_shop_domain: str | None = Header(default=None, alias="X-Shop-Domain"),
    container: ServiceContainer = Depends(get_container),
) -> Shop:
    # Unknown and uninstalled shops share the same 404 to avoid leaking tenancy.
    if not x_shop_domain:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": "Shop not found"},
        )
    return await resolve_shop(container, x_shop_domain)


def _cron_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_cron_secret(
    authorization: str | None = Header(default=None),
    container: ServiceContainer = Depends(get_container),
) -> None:
    """Authenticate scheduled maintenance calls with the shared bearer secret.

    Without a configured secret the check is skipped outside production so
    local runs can trigger maintenance by hand.
    """
    settings = container.settings
    secret = settings.cron_secret
    if not secret:
        if settings.environment.lower() == "production":
            raise _cron_error("Cron secret is not configured")
        return
    if not authorization or not authorization.lower().startswith("bearer "):
        raise _cron_error("Missing or invalid cron secret")
    provided = authorization[len("bearer "):].strip()
    if not hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
        raise _cron_error("Missing or invalid cron secret")
