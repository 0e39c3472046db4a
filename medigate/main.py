"""
Medigate - authentication, authorization and audit core of the consultation portal.

Application factory. Nothing is built at import time:

    uvicorn medigate.main:get_app --factory
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from medigate.core.config import Settings, get_settings
from medigate.core.container import AuthServices, build_services
from medigate.core.errors import setup_exception_handlers
from medigate.core.logging_config import setup_logging
from medigate.core.logging_middleware import RequestContextMiddleware
from medigate.core.timeout import TimeoutMiddleware
from medigate.routers import admin, health, users

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


def create_app(settings: Optional[Settings] = None, services: Optional[AuthServices] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Pass `services` to run against pre-built stores (tests do); otherwise
    they are wired from `settings`.
    """
    settings = settings or (services.settings if services else get_settings())
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.startup()
        try:
            yield
        finally:
            await services.shutdown()

    app = FastAPI(
        title="Medigate",
        description="Authentication, authorization and audit for the healthcare consultation portal",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    setup_exception_handlers(app)

    # Last added runs first: request ids are assigned before the budget starts.
    app.add_middleware(TimeoutMiddleware, timeout=settings.request_budget_seconds)
    app.add_middleware(RequestContextMiddleware)

    app.include_router(health.router, tags=["Health"])
    app.include_router(users.router, prefix=f"{API_PREFIX}/users", tags=["Users"])
    app.include_router(admin.router, prefix=f"{API_PREFIX}/admin", tags=["Admin"])

    return app


def get_app() -> FastAPI:
    """ASGI factory: configures logging from settings, then builds the app."""
    settings = get_settings()
    setup_logging(level=settings.log_level, json_format=settings.log_json)
    logger.info("Starting Medigate")
    return create_app(settings)
