"""Consolidation of approved annotations into the canonical output dataset."""

from __future__ import annotations

from typing import TYPE_CHECKING

from annotation_service.logging import get_logger
from annotation_service.services.records import (
    COL_ARTICLE_BODY,
    COL_CLAIM,
    COL_DOMAIN,
    COL_SOURCE_URL,
    COL_VERDICT,
    ENGLISH,
    FINAL_DATASET_APPEND_RANGE,
    FINAL_DATASET_COLUMNS,
    FINAL_DATASET_HEADER_RANGE,
    TARGET_LANGUAGES,
    FinalizedEntry,
    join_links,
    normalize_language,
)

if TYPE_CHECKING:
    from annotation_service.services.cache import KeyedLock
    from annotation_service.services.cached_store import CachedStore
    from annotation_service.services.records import AnnotationRecord, TaskRow


def build_entries(record: AnnotationRecord, source_row: TaskRow | None) -> list[FinalizedEntry]:
    """
    Shape the dataset entries an approved record yields.

    English-source records yield one entry per populated target-language
    claim, with ids suffixed by the language. Any other source yields a single
    entry keyed by the row id.
    """
    language = source_row.source_language if source_row is not None else ""
    if not language:
        language = normalize_language(record.original_language)

    def source_cell(position: int) -> str:
        return source_row.cell(position) if source_row is not None else ""

    label = record.verdict or source_cell(COL_VERDICT)
    sources = join_links(record.source_links or record.claim_links)
    claim_source = record.source_url or source_cell(COL_SOURCE_URL)
    domain = source_cell(COL_DOMAIN)

    if language == ENGLISH:
        entries: list[FinalizedEntry] = []
        for target in TARGET_LANGUAGES:
            claim = getattr(record, f"claim_text_{target}").strip()
            if not claim:
                continue
            entries.append(
                FinalizedEntry(
                    id=f"{record.row_id}_{target}",
                    claim=claim,
                    label=label,
                    language=target,
                    reasoning=getattr(record, f"article_body_{target}"),
                    sources=sources,
                    claim_source=claim_source,
                    domain=domain,
                    id_in_source=record.row_id,
                )
            )
        return entries

    reasoning = ""
    if language in TARGET_LANGUAGES:
        reasoning = getattr(record, f"article_body_{language}")
    return [
        FinalizedEntry(
            id=record.row_id,
            claim=record.claim_text or source_cell(COL_CLAIM),
            label=label,
            language=language,
            reasoning=reasoning or source_cell(COL_ARTICLE_BODY),
            sources=sources,
            claim_source=claim_source,
            domain=domain,
            id_in_source=record.row_id,
        )
    ]


class FinalizationEngine:
    """Appends dataset entries for approved records, at most once per row id."""

    def __init__(self, store: CachedStore, locks: KeyedLock) -> None:
        self._store = store
        self._locks = locks
        self._headers_ensured: set[str] = set()
        self._logger = get_logger(__name__)

    async def ensure_header(self, access_token: str, dataset_id: str) -> None:
        if dataset_id in self._headers_ensured:
            return
        client = self._store.client
        rows = await client.get_values(access_token, dataset_id, FINAL_DATASET_HEADER_RANGE)
        if not rows or [cell.strip() for cell in rows[0]] != list(FINAL_DATASET_COLUMNS):
            await client.update_values(
                access_token,
                dataset_id,
                FINAL_DATASET_HEADER_RANGE,
                [list(FINAL_DATASET_COLUMNS)],
                value_input_option="RAW",
            )
            self._logger.info("Final dataset header written", extra={"dataset_id": dataset_id})
        self._headers_ensured.add(dataset_id)

    async def finalize(
        self,
        access_token: str,
        dataset_id: str,
        record: AnnotationRecord,
        source_row: TaskRow | None,
    ) -> list[FinalizedEntry]:
        """Write the record's dataset entries unless its row id is already finalized."""
        async with self._locks.hold(("finalize", dataset_id, record.row_id)):
            await self.ensure_header(access_token, dataset_id)

            finalized = await self._store.finalized_ids(access_token, dataset_id)
            if record.row_id in finalized:
                self._logger.info(
                    "Row already finalized, skipping",
                    extra={"row_id": record.row_id, "dataset_id": dataset_id},
                )
                return []

            entries = build_entries(record, source_row)
            if not entries:
                self._logger.warning(
                    "Approved record has nothing to finalize",
                    extra={"row_id": record.row_id, "entries_written": 0},
                )
                return []

            await self._store.client.append_values(
                access_token,
                dataset_id,
                FINAL_DATASET_APPEND_RANGE,
                [entry.to_row() for entry in entries],
                value_input_option="RAW",
            )
            self._store.record_finalized(
                dataset_id, {record.row_id} | {entry.id for entry in entries}
            )
            self._logger.info(
                "Row finalized",
                extra={
                    "row_id": record.row_id,
                    "dataset_id": dataset_id,
                    "entries_written": len(entries),
                },
            )
            return entries
