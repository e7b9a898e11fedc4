from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from roomrender.apps.api.deps import get_container, require_cron_secret
from roomrender.apps.api.openapi import CRON_ERROR_RESPONSES
from roomrender.apps.api.response import SuccessEnvelope, success_response
from roomrender.services import shops
from roomrender.services.container import ServiceContainer


# Lifecycle hooks called by the platform integration, not by storefronts.
router = APIRouter(
    prefix="/shops",
    tags=["shops"],
    responses=CRON_ERROR_RESPONSES,
    dependencies=[Depends(require_cron_secret)],
)


class InstallRequest(BaseModel):
    model_config = {"extra": "forbid"}

    shop_domain: str = Field(min_length=3)
    access_token: str | None = None
    plan: str | None = None


class ShopDomainRequest(BaseModel):
    model_config = {"extra": "forbid"}

    shop_domain: str = Field(min_length=3)


class ShopResponse(BaseModel):
    shop_id: str
    shop_domain: str
    plan: str
    active: bool


class RedactResponse(BaseModel):
    shop_domain: str
    existed: bool
    runs_deleted: int
    blobs_deleted: int


@router.post("/install", response_model=SuccessEnvelope[ShopResponse])
async def install(
    payload: InstallRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    shop = await shops.install_shop(
        container, payload.shop_domain, access_token=payload.access_token, plan=payload.plan
    )
    data = ShopResponse(shop_id=shop.id, shop_domain=shop.shop_domain, plan=shop.plan, active=True)
    return success_response(request=request, data=data)


@router.post("/uninstall", response_model=SuccessEnvelope[ShopDomainRequest])
async def uninstall(
    payload: ShopDomainRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    # Unknown shops are a no-op so platform retries stay harmless.
    await shops.uninstall_shop(container, payload.shop_domain)
    return success_response(request=request, data=payload)


@router.post("/redact", response_model=SuccessEnvelope[RedactResponse])
async def redact(
    payload: ShopDomainRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    result = await shops.redact_shop(container, payload.shop_domain)
    data = RedactResponse(
        shop_domain=result.shop_domain,
        existed=result.existed,
        runs_deleted=result.runs_deleted,
        blobs_deleted=result.blobs_deleted,
    )
    return success_response(request=request, data=data)
