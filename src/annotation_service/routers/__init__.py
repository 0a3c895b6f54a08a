"""API routers."""

from annotation_service.routers import admin, annotations, health, qa, tasks

__all__ = ["admin", "annotations", "health", "qa", "tasks"]
