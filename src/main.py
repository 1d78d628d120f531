"""SyncGuard API: FastAPI application entry point.

Serves the push dispatcher's job callbacks, calendar push notifications,
and the admin monitoring endpoints.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from src.config import Settings, get_settings
from src.jobs.runtime import JobRuntime, build_runtime
from src.middleware.oidc_auth import OIDCAuthMiddleware, OIDCVerifier
from src.routers import health, jobs, monitoring, webhooks

logger = logging.getLogger("syncguard")


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


# ---------- App factory ----------

def create_app(
    settings: Settings | None = None,
    runtime: JobRuntime | None = None,
    verifier: OIDCVerifier | None = None,
) -> FastAPI:
    """Build the API app.

    A ``runtime`` passed in is used as-is and left open on shutdown; otherwise
    the lifespan builds one from ``settings`` and closes it.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(
            "Starting SyncGuard API v%s [%s]",
            settings.app_version,
            settings.environment,
        )
        owned = runtime is None
        app.state.runtime = runtime or await build_runtime(settings)
        yield
        if owned:
            await app.state.runtime.close()
        logger.info("SyncGuard API shut down")

    app = FastAPI(
        title="SyncGuard API",
        description=(
            "Background job dispatch and sync reliability for third-party "
            "calendar and contacts integrations."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    if runtime is not None:
        app.state.runtime = runtime

    # OIDC verification for /api/jobs/* callbacks
    app.add_middleware(OIDCAuthMiddleware, settings=settings, verifier=verifier)

    app.include_router(health.router)
    app.include_router(jobs.router)
    app.include_router(webhooks.router)
    app.include_router(monitoring.router)

    return app


app = create_app()
