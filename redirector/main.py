"""FastAPI application entry point for the slug redirector.

Application Lifecycle Diagram
=============================
::
    ┌──────────────┐
    │  uvicorn     │
    │  startup     │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ Create       │
    │ FastAPI app  │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ CORS +       │
    │ /metrics     │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ lifespan()   │
    │ startup:     │
    │ services     │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ Serve HTTP   │
    │ requests     │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ lifespan()   │
    │ shutdown:    │
    │ close redis, │
    │ http client  │
    └──────────────┘

How to Use
===========
**Step 1 — Run with uvicorn**::
    uvicorn redirector.main:app --host 0.0.0.0 --port 8000

**Step 2 — Follow a short link**::
    curl -i http://localhost:8000/abc123

Key Behaviours
===============
- Redis clients and the outbound httpx client are created once on startup.
- Prometheus metrics are exposed at /metrics.
- CORS is enabled for all origins.
"""

__all__ = ["app"]

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from redirector.config import get_settings
from redirector.dependencies import _service_manager
from redirector.routes import router

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await _service_manager.initialize()
    yield
    # Shutdown
    await _service_manager.cleanup()


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Edge redirect service for short links",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_respect_env_var=False,
).instrument(app).expose(app)

app.include_router(router)
