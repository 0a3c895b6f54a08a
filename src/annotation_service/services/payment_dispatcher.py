"""Recomputation of the per-annotator payment formulas block."""

from __future__ import annotations

from typing import TYPE_CHECKING

from annotation_service.logging import get_logger

if TYPE_CHECKING:
    from annotation_service.services.background import BackgroundRunner
    from annotation_service.services.cached_store import CachedStore

PAYMENTS_SHEET = "Payments"


def _quote(value: str) -> str:
    return value.replace('"', '""')


def payment_rows(
    annotator_ids: list[str],
    per_row_rate: int,
    per_translation_rate: int,
) -> list[list[str]]:
    """
    Build one formula row per annotator, starting at sheet row 2.

    Columns: Annotator_ID, Total_Rows, Translations, Avg_Rows_Per_Hour,
    Total_Hours, Payment_Rows, Payment_Translations, Total_Payment.
    """
    rows: list[list[str]] = []
    for offset, annotator_id in enumerate(annotator_ids):
        n = offset + 2
        quoted = _quote(annotator_id)
        rows.append(
            [
                annotator_id,
                f'=COUNTIF(Annotations_Log!B:B,"{quoted}")',
                f'=COUNTIFS(Annotations_Log!B:B,"{quoted}",Annotations_Log!E:E,"<>")',
                f"=IF(E{n}=0,0,B{n}/E{n})",
                f'=SUMIFS(Annotations_Log!H:H,Annotations_Log!B:B,"{quoted}")/60',
                f"=B{n}*{per_row_rate}",
                f"=C{n}*{per_translation_rate}",
                f"=F{n}+G{n}",
            ]
        )
    return rows


class PaymentDispatcher:
    """
    Rebuilds ``Payments!A2:H`` from the annotation log.

    Background requests are coalesced per spreadsheet: while one is waiting
    out the debounce delay, further requests only refresh the credential it
    will use.
    """

    def __init__(
        self,
        store: CachedStore,
        runner: BackgroundRunner,
        per_row_rate: int,
        per_translation_rate: int,
        debounce_seconds: float,
    ) -> None:
        self._store = store
        self._runner = runner
        self._per_row_rate = per_row_rate
        self._per_translation_rate = per_translation_rate
        self._debounce_seconds = debounce_seconds
        self._queued: dict[str, str] = {}
        self._logger = get_logger(__name__)

    def is_queued(self, spreadsheet_id: str) -> bool:
        return spreadsheet_id in self._queued

    async def recompute(self, access_token: str, spreadsheet_id: str) -> int:
        """Write the formulas block now; returns the number of annotator rows written."""
        records = await self._store.read_annotations_uncached(access_token, spreadsheet_id)
        annotator_ids = list(dict.fromkeys(r.annotator_id for r in records if r.annotator_id))
        rows = payment_rows(annotator_ids, self._per_row_rate, self._per_translation_rate)
        if rows:
            await self._store.client.update_values(
                access_token,
                spreadsheet_id,
                f"{PAYMENTS_SHEET}!A2:H{len(rows) + 1}",
                rows,
            )
        self._logger.info(
            "Payment formulas updated",
            extra={"spreadsheet_id": spreadsheet_id, "annotators": len(rows)},
        )
        return len(rows)

    def request(self, access_token: str, spreadsheet_id: str) -> bool:
        """Queue a debounced background recompute. Returns False when one was already queued."""
        already_queued = spreadsheet_id in self._queued
        self._queued[spreadsheet_id] = access_token
        if already_queued:
            return False

        async def run() -> int:
            token = self._queued.pop(spreadsheet_id, access_token)
            return await self.recompute(token, spreadsheet_id)

        self._runner.schedule(
            "payment_recompute",
            run,
            delay=self._debounce_seconds,
            context={"spreadsheet_id": spreadsheet_id},
        )
        return True
