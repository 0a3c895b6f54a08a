"""QA disposition endpoint."""

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


@router.post("/qa/verify")
async def qa_verify(request: Request) -> JSONResponse:
    """Approve, escalate, or defer an annotation under QA review."""
    actor = get_actor(request)
    data = parse_json_body(await request.body())
    spreadsheet_id = require_string(data, "spreadsheetId")
    row_id = require_string(data, "rowId")

    result = await get_manager().qa_disposition(
        actor,
        spreadsheet_id,
        row_id,
        data.get("action"),
        comments=optional_string(data, "comments"),
    )
    return JSONResponse(status_code=200, content=result)
