"""Record shapes, sheet column layouts and conversions between them."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from annotation_service.core.exceptions import ValidationError

ENGLISH = "en"
TARGET_LANGUAGES: tuple[str, ...] = ("ha", "yo")

LINK_SEPARATOR = "; "
CLAIM_SEPARATOR = " | "

# Positions inside a task row's data vector
COL_ID = 0
COL_CLAIM = 1
COL_VERDICT = 2
COL_DOMAIN = 3
COL_LANGUAGE = 4
COL_CLAIM_LINKS = 5
COL_PLATFORMS = 6
COL_SOURCE_URL = 7
COL_ARTICLE_BODY = 8

ANNOTATIONS_SHEET = "Annotations_Log"
ANNOTATIONS_FIRST_ROW = 2
ANNOTATIONS_READ_RANGE = f"{ANNOTATIONS_SHEET}!A{ANNOTATIONS_FIRST_ROW}:Z"
ANNOTATIONS_APPEND_RANGE = f"{ANNOTATIONS_SHEET}!A:Z"
ANNOTATION_COLUMNS: tuple[str, ...] = (
    "Row_ID",
    "Annotator_ID",
    "Claim_Text",
    "Source_Links",
    "Translation",
    "Start_Time",
    "End_Time",
    "Duration_Minutes",
    "Status",
    "Verified_By",
    "Verdict",
    "Source_URL",
    "Claim_Links",
    "Claim_Text_HA",
    "Claim_Text_YO",
    "Article_Body_HA",
    "Article_Body_YO",
    "Translation_Language",
    "Requires_Translation",
    "Original_Language",
    "Translator_HA_ID",
    "Translator_YO_ID",
    "QA_Comments",
    "Admin_Comments",
    "Is_Valid",
    "Invalidity_Reason",
)

USERS_READ_RANGE = "Users!A2:J"
USERS_EMAIL_COLUMN = 2
USERS_LANGUAGES_COLUMN = 9

FINAL_DATASET_SHEET = "Final_Dataset"
FINAL_DATASET_HEADER_RANGE = f"{FINAL_DATASET_SHEET}!A1:I1"
FINAL_DATASET_READ_RANGE = f"{FINAL_DATASET_SHEET}!A2:I"
FINAL_DATASET_APPEND_RANGE = f"{FINAL_DATASET_SHEET}!A:I"
FINAL_DATASET_COLUMNS: tuple[str, ...] = (
    "id",
    "claim",
    "label",
    "language",
    "reasoning",
    "sources",
    "claim_source",
    "domain",
    "id_in_source",
)


def normalize_language(raw: str | None) -> str:
    """Lower-case a language tag; ``english`` collapses to ``en``."""
    value = (raw or "").strip().lower()
    if value == "english":
        return ENGLISH
    return value


def split_links(raw: str | None) -> list[str]:
    return [part.strip() for part in (raw or "").split(LINK_SEPARATOR) if part.strip()]


def join_links(links: list[str] | None) -> str:
    return LINK_SEPARATOR.join(links or [])


def format_timestamp(value: datetime | None) -> str:
    if value is None:
        return ""
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(raw: str) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_bool(raw: str) -> bool | None:
    value = raw.strip().lower()
    if value == "true":
        return True
    if value == "false":
        return False
    return None


def _format_bool(value: bool | None) -> str:
    if value is None:
        return ""
    return "TRUE" if value else "FALSE"


class AnnotationStatus(Enum):
    """Lifecycle states of an annotation record."""

    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    QA_PENDING = "qa-pending"
    QA_APPROVED = "qa-approved"
    ADMIN_REVIEW = "admin-review"
    VERIFIED = "verified"
    INVALID = "invalid"
    NEEDS_REVISION = "needs-revision"

    @classmethod
    def parse(cls, raw: str) -> AnnotationStatus:
        """Read a status cell. Empty cells are in-progress; ``approved`` is a legacy alias."""
        value = raw.strip().lower()
        if not value:
            return cls.IN_PROGRESS
        if value == "approved":
            return cls.VERIFIED
        try:
            return cls(value)
        except ValueError as exc:
            msg = f"Unknown annotation status: {raw!r}"
            raise ValueError(msg) from exc


@dataclass(frozen=True)
class TaskRow:
    """One unit of raw work from the task source."""

    id: str
    index: int
    data: tuple[str, ...]
    header: tuple[str, ...]

    def cell(self, position: int) -> str:
        return self.data[position] if position < len(self.data) else ""

    @property
    def source_language(self) -> str:
        return normalize_language(self.cell(COL_LANGUAGE))

    @property
    def is_english(self) -> bool:
        return self.source_language == ENGLISH


@dataclass
class AnnotationRecord:
    """One row of the annotation log."""

    row_id: str
    annotator_id: str
    claim_text: str = ""
    source_links: list[str] = field(default_factory=list)
    translation: str = ""
    start_time: str = ""
    end_time: str = ""
    duration_minutes: int | None = None
    status: AnnotationStatus = AnnotationStatus.IN_PROGRESS
    verified_by: str = ""
    verdict: str = ""
    source_url: str = ""
    claim_links: list[str] = field(default_factory=list)
    claim_text_ha: str = ""
    claim_text_yo: str = ""
    article_body_ha: str = ""
    article_body_yo: str = ""
    translation_language: str = ""
    requires_translation: bool | None = None
    original_language: str = ""
    translator_ha_id: str = ""
    translator_yo_id: str = ""
    qa_comments: str = ""
    admin_comments: str = ""
    is_valid: bool | None = None
    invalidity_reason: str = ""

    def to_row(self) -> list[str]:
        """Serialize into the positional Annotations_Log layout."""
        return [
            self.row_id,
            self.annotator_id,
            self.claim_text,
            join_links(self.source_links),
            self.translation,
            self.start_time,
            self.end_time,
            "" if self.duration_minutes is None else str(self.duration_minutes),
            self.status.value,
            self.verified_by,
            self.verdict,
            self.source_url,
            join_links(self.claim_links),
            self.claim_text_ha,
            self.claim_text_yo,
            self.article_body_ha,
            self.article_body_yo,
            self.translation_language,
            _format_bool(self.requires_translation),
            self.original_language,
            self.translator_ha_id,
            self.translator_yo_id,
            self.qa_comments,
            self.admin_comments,
            _format_bool(self.is_valid),
            self.invalidity_reason,
        ]

    @classmethod
    def from_row(cls, row: list[str]) -> AnnotationRecord:
        """Parse a positional Annotations_Log row; short rows are padded with blanks."""
        cells = [str(cell) for cell in row] + [""] * (len(ANNOTATION_COLUMNS) - len(row))
        duration_raw = cells[7].strip()
        try:
            duration = int(float(duration_raw)) if duration_raw else None
        except ValueError:
            duration = None
        try:
            status = AnnotationStatus.parse(cells[8])
        except ValueError:
            status = AnnotationStatus.IN_PROGRESS
        return cls(
            row_id=cells[0].strip(),
            annotator_id=cells[1],
            claim_text=cells[2],
            source_links=split_links(cells[3]),
            translation=cells[4],
            start_time=cells[5],
            end_time=cells[6],
            duration_minutes=duration,
            status=status,
            verified_by=cells[9],
            verdict=cells[10],
            source_url=cells[11],
            claim_links=split_links(cells[12]),
            claim_text_ha=cells[13],
            claim_text_yo=cells[14],
            article_body_ha=cells[15],
            article_body_yo=cells[16],
            translation_language=normalize_language(cells[17]),
            requires_translation=_parse_bool(cells[18]),
            original_language=normalize_language(cells[19]),
            translator_ha_id=cells[20],
            translator_yo_id=cells[21],
            qa_comments=cells[22],
            admin_comments=cells[23],
            is_valid=_parse_bool(cells[24]),
            invalidity_reason=cells[25],
        )

    def to_payload(self) -> dict[str, Any]:
        """JSON-friendly view used in API responses."""
        return {
            "rowId": self.row_id,
            "annotatorId": self.annotator_id,
            "claimText": self.claim_text,
            "sourceLinks": list(self.source_links),
            "translation": self.translation,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "durationMinutes": self.duration_minutes,
            "status": self.status.value,
            "verifiedBy": self.verified_by,
            "verdict": self.verdict,
            "sourceUrl": self.source_url,
            "claimLinks": list(self.claim_links),
            "claim_text_ha": self.claim_text_ha,
            "claim_text_yo": self.claim_text_yo,
            "article_body_ha": self.article_body_ha,
            "article_body_yo": self.article_body_yo,
            "translationLanguage": self.translation_language,
            "requiresTranslation": self.requires_translation,
            "originalLanguage": self.original_language,
            "translator_ha_id": self.translator_ha_id,
            "translator_yo_id": self.translator_yo_id,
            "qaComments": self.qa_comments,
            "adminComments": self.admin_comments,
            "isValid": self.is_valid,
            "invalidityReason": self.invalidity_reason,
        }


@dataclass
class AnnotationSubmission:
    """A submitted annotation plus the request-only fields that shape it."""

    record: AnnotationRecord
    article_body: str = ""
    is_dual_translator: bool = False


def _string_field(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if value is None:
        return ""
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise ValidationError(f"Field '{key}' must be a string")
    return str(value)


def _links_field(payload: dict[str, Any], key: str) -> list[str]:
    value = payload.get(key)
    if value is None:
        return []
    if isinstance(value, str):
        return split_links(value)
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValidationError(f"Field '{key}' must be a list of strings")
    return [item.strip() for item in value if item.strip()]


def submission_from_payload(payload: dict[str, Any]) -> AnnotationSubmission:
    """
    Build an AnnotationSubmission from a request ``annotation`` object.

    Raises:
        ValidationError: rowId or annotatorId missing, or a field has the wrong type
    """
    row_id = _string_field(payload, "rowId").strip()
    annotator_id = _string_field(payload, "annotatorId").strip()
    if not row_id or not annotator_id:
        raise ValidationError(
            "Invalid annotation payload",
            details={"reason": "rowId and annotatorId are required"},
        )

    duration_raw = payload.get("durationMinutes")
    duration: int | None = None
    if duration_raw is not None and duration_raw != "":
        if isinstance(duration_raw, bool):
            raise ValidationError("Field 'durationMinutes' must be a number")
        try:
            duration = round(float(duration_raw))
        except (TypeError, ValueError) as exc:
            raise ValidationError("Field 'durationMinutes' must be a number") from exc

    record = AnnotationRecord(
        row_id=row_id,
        annotator_id=annotator_id,
        claim_text=_string_field(payload, "claimText"),
        source_links=_links_field(payload, "sourceLinks"),
        translation=_string_field(payload, "translation"),
        start_time=_string_field(payload, "startTime"),
        end_time=_string_field(payload, "endTime"),
        duration_minutes=duration,
        status=AnnotationStatus.COMPLETED,
        verdict=_string_field(payload, "verdict"),
        source_url=_string_field(payload, "sourceUrl"),
        claim_links=_links_field(payload, "claimLinks"),
        claim_text_ha=_string_field(payload, "claim_text_ha"),
        claim_text_yo=_string_field(payload, "claim_text_yo"),
        article_body_ha=_string_field(payload, "article_body_ha"),
        article_body_yo=_string_field(payload, "article_body_yo"),
        translation_language=normalize_language(_string_field(payload, "translationLanguage")),
        original_language=normalize_language(_string_field(payload, "originalLanguage")),
    )
    return AnnotationSubmission(
        record=record,
        article_body=_string_field(payload, "articleBody"),
        is_dual_translator=payload.get("isDualTranslator") is True,
    )


@dataclass(frozen=True)
class WorkerCapability:
    """A worker and the target languages they translate into."""

    id: str
    email: str = ""
    translation_languages: frozenset[str] = frozenset()

    @property
    def is_dual_translator(self) -> bool:
        return len(self.translation_languages) >= 2


def parse_translation_languages(raw: str | list[Any] | None) -> frozenset[str]:
    """Read a language list (comma separated or list); unknown codes are dropped."""
    if raw is None:
        return frozenset()
    items = raw.split(",") if isinstance(raw, str) else [str(item) for item in raw]
    return frozenset(
        code for code in (normalize_language(item) for item in items) if code in TARGET_LANGUAGES
    )


def worker_languages_from_rows(rows: list[list[str]]) -> dict[str, frozenset[str]]:
    """Map lower-cased email to translation languages from Users sheet rows."""
    languages: dict[str, frozenset[str]] = {}
    for row in rows:
        email = row[USERS_EMAIL_COLUMN].strip().lower() if len(row) > USERS_EMAIL_COLUMN else ""
        if not email:
            continue
        raw = row[USERS_LANGUAGES_COLUMN] if len(row) > USERS_LANGUAGES_COLUMN else ""
        languages[email] = parse_translation_languages(raw)
    return languages


@dataclass(frozen=True)
class FinalizedEntry:
    """One row of the canonical output dataset."""

    id: str
    claim: str
    label: str
    language: str
    reasoning: str
    sources: str
    claim_source: str
    domain: str
    id_in_source: str

    def to_row(self) -> list[str]:
        return [getattr(self, item.name) for item in fields(self)]


def finalized_ids_from_rows(rows: list[list[str]]) -> set[str]:
    """Collect both the ``id`` and ``id_in_source`` columns of the dataset."""
    ids: set[str] = set()
    for row in rows:
        for position in (0, 8):
            if len(row) > position and row[position].strip():
                ids.add(row[position].strip())
    return ids


# ---------------------------------------------------------------------------
# Worker draft <-> annotation record mapping
# ---------------------------------------------------------------------------


@dataclass
class AnnotationDraft:
    """A worker's in-progress work on one task row, as held by review screens."""

    row: TaskRow
    claims: list[str]
    source_links: list[str] = field(default_factory=list)
    verdict: str = ""
    translation: str = ""
    translation_language: str = ""
    translation_ha: str = ""
    translation_yo: str = ""
    article_body: str = ""
    article_body_ha: str = ""
    article_body_yo: str = ""
    source_url: str = ""
    claim_links: list[str] | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    annotator_id: str = ""
    status: AnnotationStatus = AnnotationStatus.IN_PROGRESS
    admin_comments: str = ""
    is_valid: bool | None = None
    invalidity_reason: str = ""


def task_to_annotation(draft: AnnotationDraft, annotator_id: str) -> AnnotationRecord:
    """Shape a worker's finished draft into a completed annotation record."""
    duration = 0
    if draft.start_time is not None and draft.end_time is not None:
        duration = round((draft.end_time - draft.start_time).total_seconds() / 60)

    language = draft.row.source_language
    is_english = language == ENGLISH
    target = normalize_language(draft.translation_language) if draft.translation else ""
    combined_claim = CLAIM_SEPARATOR.join(draft.claims)

    per_language = dict.fromkeys(
        ("claim_text_ha", "claim_text_yo", "article_body_ha", "article_body_yo"), ""
    )
    chosen = target if is_english else language
    if chosen == "ha":
        per_language["claim_text_ha"] = draft.translation_ha or combined_claim
        per_language["article_body_ha"] = draft.article_body_ha or draft.article_body
    elif chosen == "yo":
        per_language["claim_text_yo"] = draft.translation_yo or combined_claim
        per_language["article_body_yo"] = draft.article_body_yo or draft.article_body
    elif is_english:
        per_language["claim_text_ha"] = draft.translation_ha
        per_language["claim_text_yo"] = draft.translation_yo
        per_language["article_body_ha"] = draft.article_body_ha
        per_language["article_body_yo"] = draft.article_body_yo

    claim_links = (
        list(draft.claim_links) if draft.claim_links is not None else list(draft.source_links[1:])
    )
    return AnnotationRecord(
        row_id=draft.row.id,
        annotator_id=annotator_id,
        claim_text=combined_claim,
        source_links=list(draft.source_links),
        translation=draft.translation,
        start_time=format_timestamp(draft.start_time),
        end_time=format_timestamp(draft.end_time),
        duration_minutes=duration,
        status=AnnotationStatus.COMPLETED,
        verdict=draft.verdict,
        source_url=draft.source_url or (draft.source_links[0] if draft.source_links else ""),
        claim_links=claim_links,
        translation_language=target,
        requires_translation=is_english,
        original_language=ENGLISH if is_english else language,
        **per_language,
    )


_REVIEWABLE_DRAFT_STATUSES = frozenset(
    {
        AnnotationStatus.IN_PROGRESS,
        AnnotationStatus.COMPLETED,
        AnnotationStatus.QA_PENDING,
        AnnotationStatus.QA_APPROVED,
        AnnotationStatus.ADMIN_REVIEW,
    }
)


def annotation_row_to_task(record: AnnotationRecord) -> AnnotationDraft:
    """Rebuild a reviewable draft from a logged annotation record."""
    has_target_fields = any(
        (record.claim_text_ha, record.article_body_ha, record.claim_text_yo, record.article_body_yo)
    )
    language = record.original_language or (
        ENGLISH if has_target_fields or record.translation_language else ""
    )
    data = [""] * (COL_ARTICLE_BODY + 1)
    data[COL_ID] = record.row_id
    data[COL_CLAIM] = record.claim_text
    data[COL_VERDICT] = record.verdict
    data[COL_LANGUAGE] = language
    data[COL_CLAIM_LINKS] = join_links(record.claim_links)
    data[COL_SOURCE_URL] = record.source_url

    status = (
        record.status
        if record.status in _REVIEWABLE_DRAFT_STATUSES
        else AnnotationStatus.QA_PENDING
    )
    claims = [part for part in record.claim_text.split(CLAIM_SEPARATOR) if part] or [""]
    return AnnotationDraft(
        row=TaskRow(id=record.row_id, index=0, data=tuple(data), header=()),
        claims=claims,
        source_links=list(record.source_links),
        verdict=record.verdict,
        translation=record.translation,
        translation_language=record.translation_language,
        translation_ha=record.claim_text_ha,
        translation_yo=record.claim_text_yo,
        article_body_ha=record.article_body_ha,
        article_body_yo=record.article_body_yo,
        source_url=record.source_url,
        claim_links=list(record.claim_links),
        start_time=parse_timestamp(record.start_time),
        end_time=parse_timestamp(record.end_time),
        annotator_id=record.annotator_id,
        status=status,
        admin_comments=record.admin_comments,
        is_valid=record.is_valid,
        invalidity_reason=record.invalidity_reason,
    )
