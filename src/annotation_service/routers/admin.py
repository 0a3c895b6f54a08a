"""Admin disposition endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from annotation_service.routers.validation import (
    get_actor,
    get_manager,
    optional_string,
    parse_json_body,
    require_string,
)

router = APIRouter()


@router.post("/admin/verify")
async def admin_verify(request: Request) -> JSONResponse:
    """Approve, send back, or invalidate an annotation."""
    actor = get_actor(request)
    data = parse_json_body(await request.body())
    spreadsheet_id = require_string(data, "spreadsheetId")
    row_id = require_string(data, "rowId")

    result = await get_manager().admin_disposition(
        actor,
        spreadsheet_id,
        row_id,
        data.get("action"),
        comments=optional_string(data, "comments"),
        invalidity_reason=optional_string(data, "invalidityReason"),
    )
    return JSONResponse(status_code=200, content=result)
