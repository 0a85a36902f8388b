"""Feeder Sync API — FastAPI application entry point.

Run locally:
    uvicorn feedersync.main:create_app --factory --reload --port 8080
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from feedersync.config import Settings, get_settings
from feedersync.dependencies import AppServices, build_services
from feedersync.errors import ApiError
from feedersync.middleware.operator_auth import OperatorAuthMiddleware
from feedersync.middleware.security import SecurityHeadersMiddleware
from feedersync.routers import admin, device, health
from feedersync.services.postgres import close_pool, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("feedersync")


# ---------- Error handlers ----------

async def _api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code})


async def _validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "invalid_request_body"})


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled server error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "internal_error"})


# ---------- App factory ----------

def create_app(
    settings: Settings | None = None,
    services: AppServices | None = None,
) -> FastAPI:
    """Build the application.

    ``services`` lets callers supply pre-built service objects; the database
    pool is then left alone, which is how the test suite runs the app.
    """
    settings = settings or get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Startup / shutdown hooks."""
        logger.info(
            "Starting Feeder Sync API v%s [%s]",
            settings.app_version,
            settings.environment,
        )
        if services is not None:
            yield
            return

        await init_pool(settings)
        app.state.services = build_services(settings)
        yield
        await close_pool()
        logger.info("Feeder Sync API shut down")

    app = FastAPI(
        title="Feeder Sync API",
        description="Poll-based synchronization service for intermittently connected feeders.",
        version=settings.app_version,
        debug=settings.debug,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    if services is not None:
        app.state.services = services

    app.add_exception_handler(ApiError, _api_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    # ---------- Middleware (last added is outermost) ----------

    # Operator JWT authentication for /api/v1/admin
    app.add_middleware(OperatorAuthMiddleware, settings=settings)

    # CORS wraps auth so 401s still carry CORS headers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Security headers on every response, including auth rejections
    app.add_middleware(SecurityHeadersMiddleware)

    # ---------- Health check (always at /health) ----------
    app.include_router(health.router)

    # ---------- Device protocol ----------
    app.include_router(device.router)

    # ---------- Management API v1 ----------
    app.include_router(admin.router, prefix="/api/v1")

    return app
