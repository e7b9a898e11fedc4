from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from roomrender.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    quota_exceeded_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from roomrender.apps.api.response import API_VERSION
from roomrender.apps.api.routes.assets import router as assets_router
from roomrender.apps.api.routes.health import router as health_router
from roomrender.apps.api.routes.jobs import router as jobs_router
from roomrender.apps.api.routes.maintenance import router as maintenance_router
from roomrender.apps.api.routes.rooms import router as rooms_router
from roomrender.apps.api.routes.runs import router as runs_router
from roomrender.apps.api.routes.shops import router as shops_router
from roomrender.core.errors import QuotaExceededError, RoomRenderError
from roomrender.core.logging import configure_logging
from roomrender.services.container import ServiceContainer, build_container


logger = logging.getLogger(__name__)


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Build the composition root lazily so importing the module has no side effects.
        if getattr(app.state, "container", None) is None:
            app.state.container = build_container()
        yield
        await app.state.container.close()

    app = FastAPI(title="RoomRender API", version=API_VERSION, lifespan=lifespan)
    app.state.container = container

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        response.headers.setdefault("X-Request-Id", request_id)
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(QuotaExceededError)
    async def _quota_exceeded_handler(request: Request, exc: QuotaExceededError):
        return await quota_exceeded_handler(request, exc)

    @app.exception_handler(RoomRenderError)
    async def _domain_exception_handler(request: Request, exc: RoomRenderError):
        return await domain_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(assets_router, prefix=f"/{API_VERSION}")
    app.include_router(rooms_router, prefix=f"/{API_VERSION}")
    app.include_router(jobs_router, prefix=f"/{API_VERSION}")
    app.include_router(runs_router, prefix=f"/{API_VERSION}")
    # Cron and platform hooks share the bearer secret check.
    app.include_router(maintenance_router, prefix=f"/{API_VERSION}")
    app.include_router(shops_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
