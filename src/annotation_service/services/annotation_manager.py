"""Task listing, submissions and dispositions: the request-level business logic."""

from __future__ import annotations

import time
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from annotation_service.clients.sheets_client import RowStoreError
from annotation_service.core.exceptions import (
    NotFoundError,
    PermissionDeniedError,
    ServiceError,
    ValidationError,
)
from annotation_service.logging import get_logger
from annotation_service.services.availability import filter_available, paginate, unfiltered
from annotation_service.services.lifecycle import (
    ADMIN_ACTIONS,
    DISPOSITION_MESSAGES,
    QA_ACTIONS,
    DispositionAction,
    apply_disposition,
    parse_action,
)
from annotation_service.services.records import (
    ANNOTATIONS_SHEET,
    AnnotationRecord,
    AnnotationStatus,
    TaskRow,
    submission_from_payload,
)
from annotation_service.services.submission_guard import (
    SubmissionKind,
    shape_regular,
    shape_translation,
)

if TYPE_CHECKING:
    from annotation_service.clients.session_verifier import ActorSession
    from annotation_service.config import WorkspaceConfig
    from annotation_service.services.background import BackgroundRunner
    from annotation_service.services.cache import KeyedLock
    from annotation_service.services.cached_store import CachedStore
    from annotation_service.services.finalization import FinalizationEngine
    from annotation_service.services.payment_dispatcher import PaymentDispatcher
    from annotation_service.services.submission_guard import SubmissionGuard

PAYMENT_WARNING = "Annotation saved, but payment formulas not updated."

# Columns rewritten by a disposition: I:J (status, verified by) and W:Z (review fields)
_STATUS_COLUMNS = ("I", "J")
_REVIEW_COLUMNS = ("W", "Z")

# Fields an annotator may change when resubmitting a revision
_REVISABLE_FIELDS = (
    "claim_text",
    "source_links",
    "translation",
    "start_time",
    "end_time",
    "duration_minutes",
    "verdict",
    "source_url",
    "claim_links",
    "claim_text_ha",
    "claim_text_yo",
    "article_body_ha",
    "article_body_yo",
)


class _Timer:
    """Millisecond checkpoints for the optional perf breakdown."""

    def __init__(self) -> None:
        self._start = time.perf_counter()
        self._last = self._start
        self.marks: dict[str, float] = {}

    def mark(self, name: str) -> None:
        now = time.perf_counter()
        self.marks[name] = round((now - self._last) * 1000, 2)
        self._last = now

    def result(self) -> dict[str, float]:
        return {**self.marks, "total": round((time.perf_counter() - self._start) * 1000, 2)}


def _find_record(
    located: list[tuple[int, AnnotationRecord]], row_id: str
) -> tuple[int, AnnotationRecord]:
    """Return the sheet row number and record of the first entry for ``row_id``."""
    for row_number, record in located:
        if record.row_id == row_id:
            return row_number, record
    raise NotFoundError(
        f"Annotation for row '{row_id}' not found",
        error="ANNOTATION_NOT_FOUND",
        details={"rowId": row_id},
    )


class AnnotationManager:
    """
    Serves task listings, annotation submissions, revisions and
    QA/admin dispositions.

    Delegates reads to CachedStore, appends to SubmissionGuard, state
    changes to the lifecycle module, and approval side effects to the
    FinalizationEngine and PaymentDispatcher via the BackgroundRunner.
    """

    def __init__(
        self,
        store: CachedStore,
        guard: SubmissionGuard,
        finalizer: FinalizationEngine,
        payments: PaymentDispatcher,
        runner: BackgroundRunner,
        locks: KeyedLock,
        workspace: WorkspaceConfig,
    ) -> None:
        self._store = store
        self._guard = guard
        self._finalizer = finalizer
        self._payments = payments
        self._runner = runner
        self._locks = locks
        self._workspace = workspace
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def _worker_languages(self, actor: ActorSession) -> frozenset[str]:
        users_id = self._workspace.users_spreadsheet_id
        if not users_id:
            return actor.translation_languages
        try:
            by_email = await self._store.worker_languages(actor.access_token, users_id)
        except RowStoreError as exc:
            self._logger.warning(
                "Worker language lookup failed, using session languages",
                extra={"error_kind": exc.kind.value, "user_id": actor.user_id},
            )
            return actor.translation_languages
        return by_email.get(actor.email.lower(), actor.translation_languages)

    async def _finalized_ids(self, access_token: str) -> set[str]:
        dataset_id = self._workspace.final_dataset_spreadsheet_id
        if not dataset_id:
            return set()
        try:
            return await self._store.finalized_ids(access_token, dataset_id)
        except RowStoreError as exc:
            self._logger.warning(
                "Finalized id lookup failed, filtering without it",
                extra={"error_kind": exc.kind.value},
            )
            return set()

    async def list_tasks(
        self,
        actor: ActorSession,
        page: int,
        page_size: int,
        file_id: str | None = None,
    ) -> dict[str, Any]:
        """Return one page of the rows still open to ``actor``."""
        source_id = file_id or self._workspace.task_file_id
        if not source_id:
            raise ValidationError("CSV file not configured", error="TASK_SOURCE_NOT_CONFIGURED")

        rows = await self._store.task_rows(actor.access_token, source_id)

        annotations: list[AnnotationRecord] | None = []
        annotation_id = self._workspace.annotation_spreadsheet_id
        if annotation_id:
            try:
                annotations = await self._store.annotations(actor.access_token, annotation_id)
            except RowStoreError as exc:
                self._logger.warning(
                    "Annotation lookup failed, returning unfiltered rows",
                    extra={"error_kind": exc.kind.value, "file_id": source_id},
                )
                annotations = None

        if annotations is None:
            available = unfiltered(rows)
        else:
            languages = await self._worker_languages(actor)
            finalized = await self._finalized_ids(actor.access_token)
            available = filter_available(rows, annotations, finalized, languages)

        items, total = paginate(available, page, page_size)
        return {
            "items": [item.to_payload() for item in items],
            "total": total,
            "page": page,
            "pageSize": page_size,
        }

    async def review_queue(self, actor: ActorSession, spreadsheet_id: str) -> dict[str, Any]:
        """Records the actor may review: never their own, and non-admins see no verified ones."""
        records = await self._store.annotations(actor.access_token, spreadsheet_id)
        visible = [record for record in records if record.annotator_id != actor.user_id]
        if not actor.is_admin:
            visible = [
                record
                for record in visible
                if record.status is not AnnotationStatus.VERIFIED and not record.verified_by
            ]
        return {"annotations": [record.to_payload() for record in visible]}

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def _dispatch_payments(
        self,
        actor: ActorSession,
        spreadsheet_id: str,
        force: bool,
    ) -> dict[str, Any]:
        if not force:
            self._payments.request(actor.access_token, spreadsheet_id)
            return {"formulasUpdated": False, "formulaMode": "background"}
        try:
            await self._payments.recompute(actor.access_token, spreadsheet_id)
        except (RowStoreError, ServiceError) as exc:
            self._logger.warning(
                "Immediate payment recompute failed",
                extra={"spreadsheet_id": spreadsheet_id, "error": str(exc)},
            )
            return {
                "formulasUpdated": False,
                "formulaMode": "immediate",
                "warning": PAYMENT_WARNING,
            }
        return {"formulasUpdated": True, "formulaMode": "immediate"}

    async def submit(
        self,
        actor: ActorSession,
        kind: SubmissionKind,
        spreadsheet_id: str,
        annotation: dict[str, Any],
        *,
        force_formula_update: bool = False,
        debug_perf: bool = False,
    ) -> dict[str, Any]:
        """
        Log a new annotation record.

        Raises:
            ValidationError: missing rowId/annotatorId or malformed fields
            PermissionDeniedError: submitting for another annotator, or no edit access
            DuplicateSubmissionError: row id already logged
        """
        timer = _Timer()
        submission = submission_from_payload(annotation)
        if not actor.is_admin and submission.record.annotator_id != actor.user_id:
            raise PermissionDeniedError(
                "Annotators may only submit their own annotations",
                details={"annotatorId": submission.record.annotator_id},
            )
        timer.mark("validate")

        await self._guard.guard_and_append(spreadsheet_id, actor, submission, kind)
        timer.mark("append")

        result: dict[str, Any] = {"success": True}
        result.update(await self._dispatch_payments(actor, spreadsheet_id, force_formula_update))
        timer.mark("payments")

        if debug_perf:
            result["perf"] = timer.result()
        return result

    async def resubmit_revision(
        self,
        actor: ActorSession,
        spreadsheet_id: str,
        annotation: dict[str, Any],
        *,
        force_formula_update: bool = False,
    ) -> dict[str, Any]:
        """Amend a needs-revision record in place and move it back to completed."""
        submission = submission_from_payload(annotation)
        row_id = submission.record.row_id
        await self._guard.ensure_write_access(actor.access_token, spreadsheet_id)

        async with self._locks.hold(("record", spreadsheet_id, row_id)):
            located = await self._store.read_located_annotations(
                actor.access_token, spreadsheet_id
            )
            row_number, existing = _find_record(located, row_id)
            reopened = apply_disposition(
                existing,
                DispositionAction.RESUBMIT,
                actor_id=actor.user_id,
                actor_email=actor.email,
                role=actor.role,
            )

            revised = replace(
                submission.record,
                original_language=existing.original_language,
                translation_language=(
                    submission.record.translation_language or existing.translation_language
                ),
            )
            shaped_submission = replace(submission, record=revised)
            if existing.requires_translation:
                shaped = shape_translation(shaped_submission, actor.user_id)
            else:
                shaped = shape_regular(shaped_submission)
            updated = replace(
                reopened,
                **{name: getattr(shaped, name) for name in _REVISABLE_FIELDS},
            )

            await self._store.client.update_values(
                actor.access_token,
                spreadsheet_id,
                f"{ANNOTATIONS_SHEET}!A{row_number}:Z{row_number}",
                [updated.to_row()],
                value_input_option="RAW",
            )
            self._store.record_update(spreadsheet_id, updated)

        self._logger.info(
            "Revision resubmitted",
            extra={"row_id": row_id, "spreadsheet_id": spreadsheet_id},
        )
        result: dict[str, Any] = {
            "success": True,
            "message": DISPOSITION_MESSAGES[DispositionAction.RESUBMIT],
        }
        result.update(await self._dispatch_payments(actor, spreadsheet_id, force_formula_update))
        return result

    # ------------------------------------------------------------------
    # Dispositions
    # ------------------------------------------------------------------

    async def admin_disposition(
        self,
        actor: ActorSession,
        spreadsheet_id: str,
        row_id: str,
        action: Any,
        comments: str | None = None,
        invalidity_reason: str | None = None,
    ) -> dict[str, Any]:
        """Apply approve, needs-revision or mark-invalid."""
        if not actor.is_admin:
            raise PermissionDeniedError(
                "Admin role required", details={"role": actor.role.value}
            )
        parsed = parse_action(action, ADMIN_ACTIONS)
        return await self._dispose(
            actor, spreadsheet_id, row_id, parsed, comments, invalidity_reason
        )

    async def qa_disposition(
        self,
        actor: ActorSession,
        spreadsheet_id: str,
        row_id: str,
        action: Any,
        comments: str | None = None,
    ) -> dict[str, Any]:
        """Apply qa-approve, escalate or defer."""
        parsed = parse_action(action, QA_ACTIONS)
        return await self._dispose(actor, spreadsheet_id, row_id, parsed, comments, None)

    async def _dispose(
        self,
        actor: ActorSession,
        spreadsheet_id: str,
        row_id: str,
        action: DispositionAction,
        comments: str | None,
        invalidity_reason: str | None,
    ) -> dict[str, Any]:
        async with self._locks.hold(("record", spreadsheet_id, row_id)):
            located = await self._store.read_located_annotations(
                actor.access_token, spreadsheet_id
            )
            row_number, existing = _find_record(located, row_id)
            updated = apply_disposition(
                existing,
                action,
                actor_id=actor.user_id,
                actor_email=actor.email,
                role=actor.role,
                comments=comments,
                invalidity_reason=invalidity_reason,
            )

            cells = updated.to_row()
            await self._store.client.batch_update_values(
                actor.access_token,
                spreadsheet_id,
                [
                    (
                        f"{ANNOTATIONS_SHEET}!{_STATUS_COLUMNS[0]}{row_number}:"
                        f"{_STATUS_COLUMNS[1]}{row_number}",
                        [cells[8:10]],
                    ),
                    (
                        f"{ANNOTATIONS_SHEET}!{_REVIEW_COLUMNS[0]}{row_number}:"
                        f"{_REVIEW_COLUMNS[1]}{row_number}",
                        [cells[22:26]],
                    ),
                ],
            )
            self._store.record_update(spreadsheet_id, updated)

        self._logger.info(
            "Disposition applied",
            extra={
                "row_id": row_id,
                "action": action.value,
                "from_status": existing.status.value,
                "to_status": updated.status.value,
                "actor_id": actor.user_id,
            },
        )

        if action is DispositionAction.APPROVE:
            self._schedule_finalization(actor, updated)
            self._payments.request(actor.access_token, spreadsheet_id)

        return {
            "success": True,
            "message": DISPOSITION_MESSAGES[action],
            "status": updated.status.value,
        }

    async def _source_row(self, access_token: str, row_id: str) -> TaskRow | None:
        file_id = self._workspace.task_file_id
        if not file_id:
            return None
        try:
            rows = await self._store.task_rows(access_token, file_id)
        except (RowStoreError, ServiceError) as exc:
            self._logger.warning(
                "Task source unavailable for finalization, using record fields",
                extra={"row_id": row_id, "error": str(exc)},
            )
            return None
        return next((row for row in rows if row.id == row_id), None)

    def _schedule_finalization(self, actor: ActorSession, record: AnnotationRecord) -> None:
        dataset_id = self._workspace.final_dataset_spreadsheet_id
        if not dataset_id:
            self._logger.warning(
                "Final dataset not configured, skipping finalization",
                extra={"row_id": record.row_id},
            )
            return

        async def run() -> int:
            source_row = await self._source_row(actor.access_token, record.row_id)
            entries = await self._finalizer.finalize(
                actor.access_token, dataset_id, record, source_row
            )
            return len(entries)

        self._runner.schedule("finalize", run, context={"row_id": record.row_id})
