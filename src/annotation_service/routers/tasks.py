"""Task listing endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from annotation_service.core.exceptions import ValidationError
from annotation_service.routers.validation import get_actor, get_manager
from annotation_service.schemas import TaskListResponse

router = APIRouter()

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def _parse_page(raw: str | None) -> int:
    if raw is None or not raw.strip():
        raise ValidationError("Query parameter 'page' is required", error="INVALID_PAGE")
    try:
        page = int(raw)
    except ValueError as exc:
        raise ValidationError("page must be an integer", error="INVALID_PAGE") from exc
    if page < 1:
        raise ValidationError("page must be >= 1", error="INVALID_PAGE")
    return page


def _parse_page_size(raw: str | None) -> int:
    if raw is None:
        return DEFAULT_PAGE_SIZE
    try:
        page_size = int(raw)
    except ValueError:
        return DEFAULT_PAGE_SIZE
    return min(MAX_PAGE_SIZE, max(1, page_size))


@router.get("/tasks", response_model=TaskListResponse, response_model_exclude_none=True)
async def list_tasks(request: Request) -> dict[str, Any]:
    """List task rows still open to the requesting worker."""
    actor = get_actor(request)
    page = _parse_page(request.query_params.get("page"))
    page_size = _parse_page_size(request.query_params.get("pageSize"))
    file_id = request.query_params.get("fileId") or None

    return await get_manager().list_tasks(actor, page, page_size, file_id)
