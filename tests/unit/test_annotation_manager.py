"""Tests for AnnotationManager paths not reached through the HTTP layer."""

from __future__ import annotations

import pytest

from annotation_service.clients.session_verifier import ActorSession
from annotation_service.clients.sheets_client import RowStoreErrorKind
from annotation_service.config import CacheConfig, WorkspaceConfig
from annotation_service.core.exceptions import ValidationError
from annotation_service.services.annotation_manager import AnnotationManager
from annotation_service.services.background import BackgroundRunner
from annotation_service.services.cache import KeyedLock, TTLCache
from annotation_service.services.cached_store import CachedStore
from annotation_service.services.finalization import FinalizationEngine
from annotation_service.services.lifecycle import ActorRole
from annotation_service.services.payment_dispatcher import PaymentDispatcher
from annotation_service.services.records import (
    ANNOTATION_COLUMNS,
    ANNOTATIONS_SHEET,
    AnnotationRecord,
    AnnotationStatus,
)
from annotation_service.services.submission_guard import SubmissionGuard
from tests.helpers import FakeSheetsClient, task_csv, task_row

ANNOTATOR = ActorSession(
    user_id="u-bo",
    email="Bo@example.org",
    role=ActorRole.ANNOTATOR,
    access_token="t",
    translation_languages=frozenset({"ha", "yo"}),
)
ADMIN = ActorSession(
    user_id="u-admin", email="admin@example.org", role=ActorRole.ADMIN, access_token="t"
)


async def _no_sleep(_seconds: float) -> None:
    return None


def _build(
    sheets: FakeSheetsClient, **workspace: str
) -> tuple[AnnotationManager, BackgroundRunner]:
    ids = {
        "task_file_id": "tasks",
        "annotation_spreadsheet_id": "annotations",
        "final_dataset_spreadsheet_id": "dataset",
        "users_spreadsheet_id": "users",
    }
    ids.update(workspace)
    ttls = CacheConfig(
        task_rows_ttl_seconds=30,
        row_ids_ttl_seconds=45,
        annotations_ttl_seconds=60,
        worker_languages_ttl_seconds=300,
        finalized_ids_ttl_seconds=600,
    )
    store = CachedStore(client=sheets, cache=TTLCache(), ttls=ttls)
    locks = KeyedLock()
    runner = BackgroundRunner(max_attempts=1, retry_delay_seconds=0, sleep=_no_sleep)
    manager = AnnotationManager(
        store=store,
        guard=SubmissionGuard(store=store, locks=locks),
        finalizer=FinalizationEngine(store=store, locks=locks),
        payments=PaymentDispatcher(
            store=store, runner=runner, per_row_rate=1, per_translation_rate=1, debounce_seconds=0
        ),
        runner=runner,
        locks=locks,
        workspace=WorkspaceConfig(**ids),
    )
    return manager, runner


@pytest.fixture
def sheets() -> FakeSheetsClient:
    fake = FakeSheetsClient()
    fake.files["tasks"] = task_csv(task_row("R1", "en"), task_row("R2", "ha"), task_row("R3", "yo"))
    fake.sheet("annotations", ANNOTATIONS_SHEET).append(list(ANNOTATION_COLUMNS))
    fake.sheet("users", "Users").extend(
        [
            ["id", "name", "email", "", "", "", "", "", "", "languages"],
            ["1", "Bo", "bo@example.org", "", "", "", "", "", "", "yo"],
        ]
    )
    return fake


def _ids(result) -> list[str]:
    return [item["data"][0] for item in result["items"]]


@pytest.mark.unit
async def test_users_sheet_languages_override_session(sheets):
    manager, _ = _build(sheets)
    result = await manager.list_tasks(ANNOTATOR, 1, 10)
    assert _ids(result) == ["R1", "R3"]
    assert result["items"][0]["targetsRemaining"] == ["yo"]


@pytest.mark.unit
async def test_unlisted_worker_falls_back_to_session_languages(sheets):
    manager, _ = _build(sheets, users_spreadsheet_id="")
    result = await manager.list_tasks(ANNOTATOR, 1, 10)
    assert _ids(result) == ["R1", "R2", "R3"]


@pytest.mark.unit
async def test_users_sheet_failure_falls_back_to_session_languages(sheets):
    sheets.fail("get_values", "users", RowStoreErrorKind.PERMISSION)
    manager, _ = _build(sheets)
    result = await manager.list_tasks(ANNOTATOR, 1, 10)
    assert _ids(result) == ["R1", "R2", "R3"]


@pytest.mark.unit
async def test_missing_task_source_is_reported(sheets):
    manager, _ = _build(sheets, task_file_id="")
    with pytest.raises(ValidationError) as exc_info:
        await manager.list_tasks(ANNOTATOR, 1, 10)
    assert exc_info.value.error == "TASK_SOURCE_NOT_CONFIGURED"


@pytest.mark.unit
async def test_approval_without_dataset_skips_finalization(sheets):
    sheets.sheet("annotations", ANNOTATIONS_SHEET).append(
        AnnotationRecord(
            row_id="R2", annotator_id="u-bo", claim_text="c", status=AnnotationStatus.COMPLETED
        ).to_row()
    )
    manager, runner = _build(sheets, final_dataset_spreadsheet_id="")
    result = await manager.admin_disposition(ADMIN, "annotations", "R2", "approve")
    await runner.drain()

    assert result["status"] == "verified"
    assert sheets.calls_to("append_values") == []
    assert runner.stats()["completed"] == 1


@pytest.mark.unit
async def test_approval_finalizes_with_source_row_fields(sheets):
    sheets.sheet("annotations", ANNOTATIONS_SHEET).append(
        AnnotationRecord(
            row_id="R3", annotator_id="u-bo", status=AnnotationStatus.COMPLETED
        ).to_row()
    )
    manager, runner = _build(sheets)
    await manager.admin_disposition(ADMIN, "annotations", "R3", "approve")
    await runner.drain()

    entry = sheets.sheet("dataset", "Final_Dataset")[1]
    assert entry[:4] == ["R3", "A claim", "false", "yo"]
    assert entry[7] == "health"


@pytest.mark.unit
async def test_review_queue_after_disposition_reflects_new_status(sheets):
    sheets.sheet("annotations", ANNOTATIONS_SHEET).append(
        AnnotationRecord(row_id="R2", annotator_id="u-cy").to_row()
    )
    manager, runner = _build(sheets)
    before = await manager.review_queue(ANNOTATOR, "annotations")
    assert [r["status"] for r in before["annotations"]] == ["in-progress"]

    sheets.sheet("annotations", ANNOTATIONS_SHEET)[1][8] = "completed"
    await manager.qa_disposition(ANNOTATOR, "annotations", "R2", "defer")
    after = await manager.review_queue(ANNOTATOR, "annotations")
    assert [r["status"] for r in after["annotations"]] == ["qa-pending"]
    await runner.drain()
