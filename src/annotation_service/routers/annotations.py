"""Annotation submission and review-queue endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from annotation_service.core.exceptions import ValidationError
from annotation_service.routers.validation import (
    get_actor,
    get_manager,
    optional_bool,
    parse_json_body,
    require_object,
    require_string,
)
from annotation_service.services.submission_guard import SubmissionKind

router = APIRouter()


async def _submit(request: Request, kind: SubmissionKind) -> JSONResponse:
    actor = get_actor(request)
    data = parse_json_body(await request.body())
    spreadsheet_id = require_string(data, "spreadsheetId")
    annotation = require_object(data, "annotation")

    result = await get_manager().submit(
        actor,
        kind,
        spreadsheet_id,
        annotation,
        force_formula_update=optional_bool(data, "forceFormulaUpdate"),
        debug_perf=optional_bool(data, "debugPerf"),
    )
    return JSONResponse(status_code=200, content=result)


@router.post("/annotations/regular")
async def submit_regular(request: Request) -> JSONResponse:
    """Log an annotation of a non-English source row."""
    return await _submit(request, SubmissionKind.REGULAR)


@router.post("/annotations/translation")
async def submit_translation(request: Request) -> JSONResponse:
    """Log a translation of an English source row."""
    return await _submit(request, SubmissionKind.TRANSLATION)


@router.post("/annotations/revision")
async def submit_revision(request: Request) -> JSONResponse:
    """Resubmit an annotation that an admin sent back for revision."""
    actor = get_actor(request)
    data = parse_json_body(await request.body())
    spreadsheet_id = require_string(data, "spreadsheetId")
    annotation = require_object(data, "annotation")

    result = await get_manager().resubmit_revision(
        actor,
        spreadsheet_id,
        annotation,
        force_formula_update=optional_bool(data, "forceFormulaUpdate"),
    )
    return JSONResponse(status_code=200, content=result)


@router.get("/annotations")
async def review_queue(request: Request) -> dict[str, Any]:
    """List annotations the actor may review."""
    actor = get_actor(request)
    spreadsheet_id = request.query_params.get("spreadsheetId")
    if not spreadsheet_id:
        raise ValidationError("Query parameter 'spreadsheetId' is required")
    return await get_manager().review_queue(actor, spreadsheet_id)
