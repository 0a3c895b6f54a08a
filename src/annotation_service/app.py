"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from annotation_service.config import get_settings
from annotation_service.core.exceptions import register_exception_handlers
from annotation_service.core.lifespan import lifespan
from annotation_service.core.middleware import RequestValidationMiddleware
from annotation_service.routers import admin, annotations, health, qa, tasks


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI instance with all routers registered.
    """
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.service.name} Service",
        version=settings.service.version,
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Operations"])
    app.include_router(tasks.router, tags=["Tasks"])
    app.include_router(annotations.router, tags=["Annotations"])
    app.include_router(qa.router, tags=["Review"])
    app.include_router(admin.router, tags=["Review"])

    app.add_middleware(
        RequestValidationMiddleware,
        max_body_size=settings.request.max_body_size,
    )

    return app
