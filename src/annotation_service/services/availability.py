"""Per-worker availability of task rows."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from annotation_service.services.records import TARGET_LANGUAGES

if TYPE_CHECKING:
    from collections.abc import Iterable

    from annotation_service.services.records import AnnotationRecord, TaskRow

COMPLETED_TAG = "completed"


@dataclass(frozen=True)
class AvailableTask:
    """A task row offered to a worker, with the target languages still open to them."""

    row: TaskRow
    targets_remaining: tuple[str, ...] | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "index": self.row.index,
            "data": list(self.row.data),
            "header": list(self.row.header),
        }
        if self.targets_remaining is not None:
            payload["targetsRemaining"] = list(self.targets_remaining)
        return payload


def translated_languages(record: AnnotationRecord) -> set[str]:
    """
    Target languages a record translates into.

    A dual-translator record leaves ``translation_language`` empty and is
    recognised by its translator ids or its per-language claim text.
    """
    languages = {record.translation_language} if record.translation_language else set()
    for language in TARGET_LANGUAGES:
        if getattr(record, f"translator_{language}_id").strip():
            languages.add(language)
        elif record.requires_translation and getattr(record, f"claim_text_{language}").strip():
            languages.add(language)
    return languages


def completed_languages(
    rows: Iterable[TaskRow],
    annotations: Iterable[AnnotationRecord],
) -> dict[str, set[str]]:
    """
    Map row id to the completion tags recorded against it.

    A record against an English source row contributes the languages it
    translates into. A record against any other row contributes
    ``COMPLETED_TAG``. Records for ids
    missing from ``rows`` are ignored.
    """
    source_language = {row.id: row.source_language for row in rows if row.id}
    tags: dict[str, set[str]] = {}
    for record in annotations:
        language = source_language.get(record.row_id)
        if language is None:
            continue
        row_tags = tags.setdefault(record.row_id, set())
        if language == "en":
            row_tags.update(translated_languages(record))
        else:
            row_tags.add(COMPLETED_TAG)
    return tags


def filter_available(
    rows: list[TaskRow],
    annotations: Iterable[AnnotationRecord],
    finalized_ids: set[str],
    worker_languages: frozenset[str],
) -> list[AvailableTask]:
    """Order-preserving subset of ``rows`` the worker may still take."""
    done = completed_languages(rows, annotations)
    targets = frozenset(TARGET_LANGUAGES)
    available: list[AvailableTask] = []

    for row in rows:
        if not row.id:
            # Rows without a key cannot be deduplicated
            available.append(
                AvailableTask(row, tuple(sorted(targets)) if row.is_english else None)
            )
            continue

        if row.id in finalized_ids:
            continue

        row_done = done.get(row.id, set())
        if row.is_english:
            remaining = targets - row_done
            if not remaining:
                continue
            if worker_languages:
                remaining = remaining & worker_languages
                if not remaining:
                    continue
            available.append(AvailableTask(row, tuple(sorted(remaining))))
            continue

        if COMPLETED_TAG in row_done:
            continue
        if worker_languages and row.source_language not in worker_languages:
            continue
        available.append(AvailableTask(row))

    return available


def unfiltered(rows: list[TaskRow]) -> list[AvailableTask]:
    """All rows, without ``targetsRemaining`` since nothing was computed."""
    return [AvailableTask(row) for row in rows]


def paginate(
    items: list[AvailableTask], page: int, page_size: int
) -> tuple[list[AvailableTask], int]:
    """Return the 1-based ``page`` of ``items`` and the total item count."""
    start = (page - 1) * page_size
    return items[start : start + page_size], len(items)
