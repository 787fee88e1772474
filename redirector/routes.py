"""FastAPI route definitions for the slug redirector.

API Endpoint Overview
=====================
::
    GET  /health
        └─ HealthResponse (200)

    GET  /favicon.ico, /apple-touch-icon*.png
        └─ 204, cached for a year (no store or cache access)

    ANY  /:name.ext
        └─ 404, cached for a day (no store or cache access)

    ANY  /:slug
        └─ 302 client redirect, 404 or 405

Request Flow Diagram
====================
::
    ┌─────────────┐
    │  HTTP       │
    │  Request    │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Inject      │
    │ context +   │
    │ resolver    │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ resolve()   │
    └──────┬──────┘
           ▼
    ┌─────────────┐     ┌────────────────────────┐
    │ HTTP        │────►│ BackgroundTasks: cache │
    │ Response    │     │ write, telemetry       │
    └─────────────┘     └────────────────────────┘

How to Use
===========
**Step 1 — Import and include router**::
    from redirector.routes import router
    app.include_router(router)

**Step 2 — Access endpoints**::
    # Health check
    GET http://localhost:8000/health

    # Redirect
    GET http://localhost:8000/abc123

Key Behaviours
===============
- Static routes are registered before the slug route so they win.
- Deferred work runs after the response has been sent, through FastAPI's
  ``BackgroundTasks``.
- Every HTTP method reaches the slug handler; the resolver answers 405 for
  anything other than GET and HEAD.
"""

import re

from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import PlainTextResponse, Response

from redirector.context import RequestContext
from redirector.dependencies import ServiceManager, get_request_context, get_resolver, get_service_manager
from redirector.enums import HealthStatus
from redirector.resolver import RedirectResolver
from redirector.schemas import HealthResponse

__all__ = ["router"]

router = APIRouter()

STATIC_ASSET_CACHE_CONTROL = "public, max-age=31536000, immutable"
FILE_NOT_FOUND_CACHE_CONTROL = "public, max-age=86400"
FILE_PATTERN = re.compile(r"[^/]+\.[a-zA-Z0-9]+")

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def build_no_content_response() -> Response:
    return Response(status_code=204, headers={"Cache-Control": STATIC_ASSET_CACHE_CONTROL})


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(
    ctx: RequestContext = Depends(get_request_context),
    manager: ServiceManager = Depends(get_service_manager),
) -> HealthResponse:
    ctx.logger.info("Health check requested")
    cache_status = HealthStatus.HEALTHY

    try:
        await manager.cache_writer.ping()
        ctx.logger.debug("Cache health check passed")
    except Exception as e:
        ctx.logger.error(f"Cache health check failed: {e}")
        cache_status = HealthStatus.UNHEALTHY

    ctx.logger.info(f"Health check completed: {cache_status.value}")
    return HealthResponse(status=cache_status, cache=cache_status)


@router.get("/favicon.ico", include_in_schema=False)
@router.get("/apple-touch-icon.png", include_in_schema=False)
@router.get("/apple-touch-icon-precomposed.png", include_in_schema=False)
async def static_icon() -> Response:
    return build_no_content_response()


@router.get("/apple-touch-icon-{variant}.png", include_in_schema=False)
async def sized_touch_icon(variant: str) -> Response:
    return build_no_content_response()


@router.api_route("/{slug}", methods=ALL_METHODS, tags=["redirect"])
async def redirect(
    slug: str,
    background_tasks: BackgroundTasks,
    ctx: RequestContext = Depends(get_request_context),
    resolver: RedirectResolver = Depends(get_resolver),
) -> Response:
    if FILE_PATTERN.fullmatch(slug):
        ctx.logger.debug(f"Skipping file request {slug}")
        return PlainTextResponse("Not found", status_code=404, headers={"Cache-Control": FILE_NOT_FOUND_CACHE_CONTROL})

    outcome = await resolver.resolve(slug, ctx)
    for task in outcome.deferred:
        background_tasks.add_task(task)
    return outcome.response
