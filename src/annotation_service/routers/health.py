"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from annotation_service.core.state import get_app_state
from annotation_service.schemas import BackgroundStats, HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return cache and background task statistics."""
    state = get_app_state()
    cache_entries: dict[str, int] = {}
    if state.cache is not None:
        cache_entries = state.cache.sizes()
    background = BackgroundStats(pending=0, completed=0, failed=0)
    if state.background is not None:
        background = BackgroundStats(**state.background.stats())
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        cache_entries=cache_entries,
        background=background,
    )
