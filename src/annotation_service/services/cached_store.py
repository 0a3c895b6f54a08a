"""Row-store reads routed through the TTL cache, and owner updates after writes."""

from __future__ import annotations

from typing import TYPE_CHECKING

from annotation_service.logging import get_logger
from annotation_service.services.cache import CacheKind
from annotation_service.services.records import (
    ANNOTATIONS_FIRST_ROW,
    ANNOTATIONS_READ_RANGE,
    FINAL_DATASET_READ_RANGE,
    USERS_READ_RANGE,
    AnnotationRecord,
    TaskRow,
    finalized_ids_from_rows,
    worker_languages_from_rows,
)
from annotation_service.services.task_source import load_task_rows

if TYPE_CHECKING:
    from annotation_service.clients.sheets_client import SheetsClient
    from annotation_service.config import CacheConfig
    from annotation_service.services.cache import TTLCache

_ROW_ID_RANGE = "Annotations_Log!A2:A"


class CachedStore:
    """
    Every read the engine makes of the row store goes through here.

    Reads are memoized per (kind, spreadsheet or file id) with the TTL
    configured for that kind. The ``record_*`` methods are called by the
    component that just completed the corresponding write, so later reads
    see it without a full re-fetch.
    """

    def __init__(self, client: SheetsClient, cache: TTLCache, ttls: CacheConfig) -> None:
        self._client = client
        self._cache = cache
        self._ttls = ttls
        self._logger = get_logger(__name__)

    @property
    def client(self) -> SheetsClient:
        return self._client

    async def task_rows(self, access_token: str, file_id: str) -> list[TaskRow]:
        async def fetch() -> list[TaskRow]:
            text = await self._client.download_file(access_token, file_id)
            rows = load_task_rows(text)
            self._logger.info("Task source loaded", extra={"file_id": file_id, "rows": len(rows)})
            return rows

        rows: list[TaskRow] = await self._cache.get_or_fetch(
            (CacheKind.TASK_ROWS, file_id), self._ttls.task_rows_ttl_seconds, fetch
        )
        return rows

    async def annotations(self, access_token: str, spreadsheet_id: str) -> list[AnnotationRecord]:
        async def fetch() -> list[AnnotationRecord]:
            return await self.read_annotations_uncached(access_token, spreadsheet_id)

        records: list[AnnotationRecord] = await self._cache.get_or_fetch(
            (CacheKind.ANNOTATIONS, spreadsheet_id), self._ttls.annotations_ttl_seconds, fetch
        )
        return records

    async def read_annotations_uncached(
        self, access_token: str, spreadsheet_id: str
    ) -> list[AnnotationRecord]:
        """Read the log directly; used where a stale status would be wrong."""
        located = await self.read_located_annotations(access_token, spreadsheet_id)
        return [record for _, record in located]

    async def read_located_annotations(
        self, access_token: str, spreadsheet_id: str
    ) -> list[tuple[int, AnnotationRecord]]:
        """Uncached read pairing each record with its 1-based sheet row number."""
        rows = await self._client.get_values(access_token, spreadsheet_id, ANNOTATIONS_READ_RANGE)
        # Blank rows are skipped but still count towards the row number
        return [
            (ANNOTATIONS_FIRST_ROW + offset, AnnotationRecord.from_row(row))
            for offset, row in enumerate(rows)
            if row
        ]

    async def row_ids(self, access_token: str, spreadsheet_id: str) -> set[str]:
        async def fetch() -> set[str]:
            rows = await self._client.get_values(access_token, spreadsheet_id, _ROW_ID_RANGE)
            return {row[0].strip() for row in rows if row and row[0].strip()}

        ids: set[str] = await self._cache.get_or_fetch(
            (CacheKind.ROW_IDS, spreadsheet_id), self._ttls.row_ids_ttl_seconds, fetch
        )
        return ids

    async def finalized_ids(self, access_token: str, spreadsheet_id: str) -> set[str]:
        async def fetch() -> set[str]:
            rows = await self._client.get_values(
                access_token, spreadsheet_id, FINAL_DATASET_READ_RANGE
            )
            return finalized_ids_from_rows(rows)

        ids: set[str] = await self._cache.get_or_fetch(
            (CacheKind.FINALIZED_IDS, spreadsheet_id),
            self._ttls.finalized_ids_ttl_seconds,
            fetch,
        )
        return ids

    async def worker_languages(
        self, access_token: str, spreadsheet_id: str
    ) -> dict[str, frozenset[str]]:
        async def fetch() -> dict[str, frozenset[str]]:
            rows = await self._client.get_values(access_token, spreadsheet_id, USERS_READ_RANGE)
            return worker_languages_from_rows(rows)

        languages: dict[str, frozenset[str]] = await self._cache.get_or_fetch(
            (CacheKind.WORKER_LANGUAGES, spreadsheet_id),
            self._ttls.worker_languages_ttl_seconds,
            fetch,
        )
        return languages

    # ------------------------------------------------------------------
    # Owner updates
    # ------------------------------------------------------------------

    def record_append(self, spreadsheet_id: str, record: AnnotationRecord) -> None:
        """Reflect a successful annotation append in the row-id set and cached log."""
        self._cache.update_if_present(
            (CacheKind.ROW_IDS, spreadsheet_id), lambda ids: ids.add(record.row_id)
        )
        self._cache.update_if_present(
            (CacheKind.ANNOTATIONS, spreadsheet_id), lambda records: records.append(record)
        )

    def record_update(self, spreadsheet_id: str, record: AnnotationRecord) -> None:
        """Replace the first cached record with the same row id after an in-place write."""

        def replace(records: list[AnnotationRecord]) -> None:
            for position, existing in enumerate(records):
                if existing.row_id == record.row_id:
                    records[position] = record
                    return

        self._cache.update_if_present((CacheKind.ANNOTATIONS, spreadsheet_id), replace)

    def record_finalized(self, spreadsheet_id: str, ids: set[str]) -> None:
        """Add newly written dataset ids to the cached finalized-id set."""
        self._cache.update_if_present(
            (CacheKind.FINALIZED_IDS, spreadsheet_id), lambda cached: cached.update(ids)
        )
