"""Async HTTP adapter for the remote spreadsheet (row store) and drive APIs."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any
from urllib.parse import quote

import httpx

from annotation_service.logging import get_logger

_QUOTA_REASONS = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded", "dailyLimitExceeded"}
)


class RowStoreErrorKind(Enum):
    """Classification of a failed row-store call."""

    QUOTA = "quota"
    UNAUTHENTICATED = "unauthenticated"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"
    BAD_RESPONSE = "bad_response"


class RowStoreError(Exception):
    """Typed failure raised by SheetsClient for every non-success outcome."""

    def __init__(
        self,
        kind: RowStoreErrorKind,
        message: str,
        *,
        resource: str,
        status_code: int | None = None,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.resource = resource
        self.status_code = status_code
        self.retry_after = retry_after


def _error_reasons(body: Any) -> tuple[str | None, set[str]]:
    """Pull the status string and per-error reasons out of a Google error body."""
    if not isinstance(body, dict):
        return None, set()
    error = body.get("error")
    if not isinstance(error, dict):
        return None, set()
    status = error.get("status") if isinstance(error.get("status"), str) else None
    reasons: set[str] = set()
    for item in error.get("errors") or []:
        if isinstance(item, dict) and isinstance(item.get("reason"), str):
            reasons.add(item["reason"])
    return status, reasons


class SheetsClient:
    """
    Client for range reads, writes and appends against the spreadsheet API,
    plus file capability lookups and raw downloads against the drive API.

    Every call is made with the acting user's bearer credential. Failures are
    raised as RowStoreError with a RowStoreErrorKind; callers never inspect
    error message text.
    """

    def __init__(
        self,
        sheets_base_url: str,
        drive_base_url: str,
        timeout_seconds: int,
        default_retry_after_seconds: int,
    ) -> None:
        self._sheets_base_url = sheets_base_url.rstrip("/")
        self._drive_base_url = drive_base_url.rstrip("/")
        self._default_retry_after = default_retry_after_seconds
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Spreadsheet values
    # ------------------------------------------------------------------

    async def get_values(
        self,
        access_token: str,
        spreadsheet_id: str,
        cell_range: str,
    ) -> list[list[str]]:
        """Read a range; returns rows of cell strings (missing trailing cells are absent)."""
        url = f"{self._values_url(spreadsheet_id)}/{quote(cell_range, safe='')}"
        response = await self._send("GET", url, access_token, resource=spreadsheet_id)
        body = self._json(response, spreadsheet_id)
        rows = body.get("values") or []
        return [[str(cell) for cell in row] for row in rows]

    async def append_values(
        self,
        access_token: str,
        spreadsheet_id: str,
        cell_range: str,
        rows: list[list[Any]],
        *,
        value_input_option: str = "USER_ENTERED",
    ) -> None:
        """Append rows after the last non-empty row of a range."""
        url = f"{self._values_url(spreadsheet_id)}/{quote(cell_range, safe='')}:append"
        await self._send(
            "POST",
            url,
            access_token,
            resource=spreadsheet_id,
            params={"valueInputOption": value_input_option, "insertDataOption": "INSERT_ROWS"},
            json_body={"values": rows},
        )

    async def update_values(
        self,
        access_token: str,
        spreadsheet_id: str,
        cell_range: str,
        rows: list[list[Any]],
        *,
        value_input_option: str = "USER_ENTERED",
    ) -> None:
        """Overwrite a range."""
        url = f"{self._values_url(spreadsheet_id)}/{quote(cell_range, safe='')}"
        await self._send(
            "PUT",
            url,
            access_token,
            resource=spreadsheet_id,
            params={"valueInputOption": value_input_option},
            json_body={"values": rows},
        )

    async def batch_update_values(
        self,
        access_token: str,
        spreadsheet_id: str,
        data: list[tuple[str, list[list[Any]]]],
        *,
        value_input_option: str = "RAW",
    ) -> None:
        """Overwrite several ranges in one request."""
        url = f"{self._values_url(spreadsheet_id)}:batchUpdate"
        await self._send(
            "POST",
            url,
            access_token,
            resource=spreadsheet_id,
            json_body={
                "valueInputOption": value_input_option,
                "data": [{"range": cell_range, "values": values} for cell_range, values in data],
            },
        )

    # ------------------------------------------------------------------
    # Drive files
    # ------------------------------------------------------------------

    async def get_file_capabilities(self, access_token: str, file_id: str) -> dict[str, Any]:
        """Return the capability map of a file for the acting credential."""
        url = f"{self._drive_base_url}/files/{quote(file_id, safe='')}"
        response = await self._send(
            "GET",
            url,
            access_token,
            resource=file_id,
            params={"fields": "id,capabilities"},
        )
        body = self._json(response, file_id)
        capabilities = body.get("capabilities")
        return capabilities if isinstance(capabilities, dict) else {}

    async def download_file(self, access_token: str, file_id: str) -> str:
        """Download a file's raw content as text."""
        url = f"{self._drive_base_url}/files/{quote(file_id, safe='')}"
        response = await self._send(
            "GET",
            url,
            access_token,
            resource=file_id,
            params={"alt": "media"},
        )
        return response.text

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _values_url(self, spreadsheet_id: str) -> str:
        return f"{self._sheets_base_url}/spreadsheets/{quote(spreadsheet_id, safe='')}/values"

    async def _send(
        self,
        method: str,
        url: str,
        access_token: str,
        *,
        resource: str,
        params: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            self._logger.warning(
                "Row store connection failed",
                extra={"error": str(exc), "resource": resource},
            )
            raise RowStoreError(
                RowStoreErrorKind.UNAVAILABLE,
                "Cannot connect to row store",
                resource=resource,
            ) from exc
        except httpx.HTTPError as exc:
            self._logger.warning(
                "Row store HTTP error",
                extra={"error": str(exc), "resource": resource},
            )
            raise RowStoreError(
                RowStoreErrorKind.UNAVAILABLE,
                "Row store request failed",
                resource=resource,
            ) from exc

        if 200 <= response.status_code < 300:
            return response

        raise self._classify(response, resource)

    def _classify(self, response: httpx.Response, resource: str) -> RowStoreError:
        status_code = response.status_code
        try:
            body: Any = response.json()
        except (json.JSONDecodeError, ValueError):
            body = None
        status, reasons = _error_reasons(body)

        self._logger.warning(
            "Row store returned error status",
            extra={"status_code": status_code, "resource": resource, "reasons": sorted(reasons)},
        )

        if status_code == 429 or status == "RESOURCE_EXHAUSTED" or reasons & _QUOTA_REASONS:
            return RowStoreError(
                RowStoreErrorKind.QUOTA,
                "Row store quota exceeded",
                resource=resource,
                status_code=status_code,
                retry_after=self._retry_after(response),
            )
        if status_code == 401:
            return RowStoreError(
                RowStoreErrorKind.UNAUTHENTICATED,
                "Row store rejected the credential",
                resource=resource,
                status_code=status_code,
            )
        if status_code == 403:
            return RowStoreError(
                RowStoreErrorKind.PERMISSION,
                "Row store denied access",
                resource=resource,
                status_code=status_code,
            )
        if status_code == 404:
            return RowStoreError(
                RowStoreErrorKind.NOT_FOUND,
                "Row store resource not found",
                resource=resource,
                status_code=status_code,
            )
        if status_code >= 500:
            return RowStoreError(
                RowStoreErrorKind.UNAVAILABLE,
                "Row store is unavailable",
                resource=resource,
                status_code=status_code,
            )
        return RowStoreError(
            RowStoreErrorKind.BAD_RESPONSE,
            f"Row store returned unexpected status {status_code}",
            resource=resource,
            status_code=status_code,
        )

    def _retry_after(self, response: httpx.Response) -> int:
        header = response.headers.get("Retry-After")
        if header is not None and header.strip().isdigit():
            return int(header.strip())
        return self._default_retry_after

    def _json(self, response: httpx.Response, resource: str) -> dict[str, Any]:
        try:
            body = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise RowStoreError(
                RowStoreErrorKind.BAD_RESPONSE,
                "Row store returned a non-JSON body",
                resource=resource,
                status_code=response.status_code,
            ) from exc
        if not isinstance(body, dict):
            raise RowStoreError(
                RowStoreErrorKind.BAD_RESPONSE,
                "Row store returned an unexpected body",
                resource=resource,
                status_code=response.status_code,
            )
        return body
