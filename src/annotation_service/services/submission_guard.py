"""Write-permission preflight, duplicate rejection and language shaping for submissions."""

from __future__ import annotations

from dataclasses import replace
from enum import Enum
from typing import TYPE_CHECKING

from annotation_service.core.exceptions import (
    DuplicateSubmissionError,
    PermissionDeniedError,
    ValidationError,
)
from annotation_service.logging import get_logger
from annotation_service.services.records import (
    ANNOTATIONS_APPEND_RANGE,
    ENGLISH,
    AnnotationRecord,
    AnnotationStatus,
    AnnotationSubmission,
)

if TYPE_CHECKING:
    from annotation_service.clients.session_verifier import ActorSession
    from annotation_service.services.cache import KeyedLock
    from annotation_service.services.cached_store import CachedStore


class SubmissionKind(Enum):
    """Entry points a submission arrives through."""

    REGULAR = "regular"
    TRANSLATION = "translation"


def shape_regular(submission: AnnotationSubmission) -> AnnotationRecord:
    """Copy claim and article body into the source-language columns."""
    record = submission.record
    language = record.original_language
    changes: dict[str, object] = {
        "requires_translation": False,
        "status": AnnotationStatus.COMPLETED,
    }
    if language in ("ha", "yo"):
        claim_field = f"claim_text_{language}"
        body_field = f"article_body_{language}"
        changes[claim_field] = getattr(record, claim_field) or record.claim_text
        changes[body_field] = getattr(record, body_field) or submission.article_body
    return replace(record, **changes)


def shape_translation(submission: AnnotationSubmission, actor_id: str) -> AnnotationRecord:
    """Mark the record as a translation and stamp the translator columns with the actor."""
    record = submission.record
    changes: dict[str, object] = {
        "requires_translation": True,
        "original_language": record.original_language or ENGLISH,
        "status": AnnotationStatus.COMPLETED,
    }
    if submission.is_dual_translator:
        if not (record.claim_text_ha.strip() and record.claim_text_yo.strip()):
            raise ValidationError(
                "Dual translation requires both claim_text_ha and claim_text_yo",
                details={"rowId": record.row_id},
            )
        changes["translator_ha_id"] = actor_id
        changes["translator_yo_id"] = actor_id
    elif record.translation_language == "ha":
        changes["translator_ha_id"] = actor_id
    elif record.translation_language == "yo":
        changes["translator_yo_id"] = actor_id
    return replace(record, **changes)


class SubmissionGuard:
    """Appends new annotation records, at most one per row id."""

    def __init__(self, store: CachedStore, locks: KeyedLock) -> None:
        self._store = store
        self._locks = locks
        self._logger = get_logger(__name__)

    async def ensure_write_access(self, access_token: str, spreadsheet_id: str) -> None:
        """
        Fail closed unless the credential may edit the spreadsheet.

        Raises:
            PermissionDeniedError: the file is visible but not editable
            RowStoreError: the capability lookup itself failed (e.g. file not found)
        """
        capabilities = await self._store.client.get_file_capabilities(access_token, spreadsheet_id)
        if capabilities.get("canEdit") is not True:
            raise PermissionDeniedError(
                "No edit permission on the annotation spreadsheet; "
                "ask its owner to share it with edit access",
                error="NO_EDIT_ACCESS",
                details={"resource": spreadsheet_id},
            )

    async def guard_and_append(
        self,
        spreadsheet_id: str,
        actor: ActorSession,
        submission: AnnotationSubmission,
        kind: SubmissionKind,
    ) -> AnnotationRecord:
        """
        Append the shaped record unless its row id is already logged.

        Raises:
            PermissionDeniedError: no write capability
            DuplicateSubmissionError: the row id is already present, in any language
            ValidationError: dual translation without both target claims
        """
        await self.ensure_write_access(actor.access_token, spreadsheet_id)

        row_id = submission.record.row_id
        async with self._locks.hold(("submission", spreadsheet_id, row_id)):
            row_ids = await self._store.row_ids(actor.access_token, spreadsheet_id)
            if row_id in row_ids:
                self._logger.info(
                    "Duplicate submission rejected",
                    extra={"row_id": row_id, "spreadsheet_id": spreadsheet_id},
                )
                raise DuplicateSubmissionError(row_id)

            if kind is SubmissionKind.TRANSLATION:
                record = shape_translation(submission, actor.user_id)
            else:
                record = shape_regular(submission)

            await self._store.client.append_values(
                actor.access_token,
                spreadsheet_id,
                ANNOTATIONS_APPEND_RANGE,
                [record.to_row()],
            )
            self._store.record_append(spreadsheet_id, record)

        self._logger.info(
            "Annotation appended",
            extra={
                "row_id": row_id,
                "spreadsheet_id": spreadsheet_id,
                "kind": kind.value,
                "annotator_id": record.annotator_id,
            },
        )
        return record
