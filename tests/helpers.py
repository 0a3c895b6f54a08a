"""Shared test helpers: session tokens and an in-memory row store."""

from __future__ import annotations

import base64
import json
import re
from typing import Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from joserfc import jws
from joserfc.jwk import OKPKey

from annotation_service.clients.sheets_client import RowStoreError, RowStoreErrorKind

SESSION_ISSUER = "annotation-portal"

TASK_HEADER = [
    "id",
    "claim",
    "verdict",
    "domain",
    "language",
    "claim_links",
    "platforms",
    "source_url",
    "article_body",
]


def generate_keypair() -> tuple[Ed25519PrivateKey, bytes]:
    """Generate Ed25519 keypair -> (private_key, PEM-encoded public key)."""
    private_key = Ed25519PrivateKey.generate()
    public_pem = private_key.public_key().public_bytes(
        Encoding.PEM, PublicFormat.SubjectPublicKeyInfo
    )
    return private_key, public_pem


def make_jws_token(private_key: Ed25519PrivateKey, payload: dict[str, Any]) -> str:
    """Create a real JWS compact token signed by the given key."""
    raw_private = private_key.private_bytes_raw()
    raw_public = private_key.public_key().public_bytes_raw()
    jwk_dict = {
        "kty": "OKP",
        "crv": "Ed25519",
        "d": base64.urlsafe_b64encode(raw_private).rstrip(b"=").decode(),
        "x": base64.urlsafe_b64encode(raw_public).rstrip(b"=").decode(),
    }
    key = OKPKey.import_key(jwk_dict)
    protected = {"alg": "EdDSA"}
    payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    return jws.serialize_compact(protected, payload_bytes, key, algorithms=["EdDSA"])


def make_session_token(
    private_key: Ed25519PrivateKey,
    user_id: str,
    *,
    role: str = "annotator",
    email: str | None = None,
    access_token: str = "row-store-token",
    translation_languages: list[str] | None = None,
    **extra: Any,
) -> str:
    """Create a signed actor session token."""
    payload: dict[str, Any] = {
        "user_id": user_id,
        "email": email or f"{user_id}@example.org",
        "role": role,
        "access_token": access_token,
        "iss": SESSION_ISSUER,
    }
    if translation_languages is not None:
        payload["translation_languages"] = translation_languages
    payload.update(extra)
    return make_jws_token(private_key, payload)


def tamper_jws(token: str) -> str:
    """Alter the payload of a JWS after signing (creates invalid signature)."""
    parts = token.split(".")
    payload_bytes = base64.urlsafe_b64decode(parts[1] + "==")
    payload = json.loads(payload_bytes)
    payload["role"] = "admin"
    new_payload = base64.urlsafe_b64encode(json.dumps(payload).encode()).rstrip(b"=").decode()
    return f"{parts[0]}.{new_payload}.{parts[2]}"


def task_csv(*rows: list[str], header: list[str] | None = None) -> str:
    """Render task rows as CSV text with the standard header."""
    lines = [header or TASK_HEADER, *rows]
    return "\n".join(",".join(_csv_cell(cell) for cell in line) for line in lines) + "\n"


def _csv_cell(value: str) -> str:
    if any(ch in value for ch in ',"\n'):
        return '"' + value.replace('"', '""') + '"'
    return value


def task_row(
    row_id: str,
    language: str,
    *,
    claim: str = "A claim",
    verdict: str = "false",
    domain: str = "health",
    source_url: str = "https://example.org/article",
    article_body: str = "Body text",
) -> list[str]:
    """A task source row in the standard column order."""
    return [row_id, claim, verdict, domain, language, "", "", source_url, article_body]


# ---------------------------------------------------------------------------
# In-memory row store
# ---------------------------------------------------------------------------

_RANGE_RE = re.compile(
    r"^(?P<sheet>[^!]+)!(?P<c1>[A-Z]+)(?P<r1>\d*)(?::(?P<c2>[A-Z]+)(?P<r2>\d*))?$"
)


def _column_index(letters: str) -> int:
    index = 0
    for letter in letters:
        index = index * 26 + (ord(letter) - ord("A") + 1)
    return index - 1


def _parse_range(cell_range: str) -> tuple[str, int, int | None, int, int]:
    """Return (sheet, first row, last row or None, first col, last col), rows 1-based."""
    match = _RANGE_RE.match(cell_range)
    if match is None:
        msg = f"Unsupported range: {cell_range}"
        raise AssertionError(msg)
    c1 = _column_index(match["c1"])
    c2 = _column_index(match["c2"]) if match["c2"] else c1
    r1 = int(match["r1"]) if match["r1"] else 1
    r2 = int(match["r2"]) if match["r2"] else None
    return match["sheet"], r1, r2, c1, c2


class FakeSheetsClient:
    """
    Stand-in for SheetsClient backed by dictionaries.

    ``sheets[spreadsheet_id][sheet_name]`` is a list of rows, row 1 first.
    ``files[file_id]`` holds downloadable text, ``capabilities[file_id]`` the
    capability map (editable by default). ``failures[(method, resource)]``
    raises the given error on the next matching call.
    """

    def __init__(self) -> None:
        self.sheets: dict[str, dict[str, list[list[str]]]] = {}
        self.files: dict[str, str] = {}
        self.capabilities: dict[str, dict[str, Any]] = {}
        self.failures: dict[tuple[str, str], RowStoreError] = {}
        self.calls: list[tuple[str, str, str]] = []

    # -- test setup -------------------------------------------------------

    def sheet(self, spreadsheet_id: str, name: str) -> list[list[str]]:
        return self.sheets.setdefault(spreadsheet_id, {}).setdefault(name, [])

    def fail(self, method: str, resource: str, kind: RowStoreErrorKind, **kwargs: Any) -> None:
        self.failures[(method, resource)] = RowStoreError(
            kind, f"injected {kind.value}", resource=resource, **kwargs
        )

    def calls_to(self, method: str) -> list[tuple[str, str, str]]:
        return [call for call in self.calls if call[0] == method]

    def _check(self, method: str, resource: str, detail: str) -> None:
        self.calls.append((method, resource, detail))
        error = self.failures.pop((method, resource), None)
        if error is not None:
            raise error

    # -- SheetsClient surface --------------------------------------------

    async def get_values(
        self, access_token: str, spreadsheet_id: str, cell_range: str
    ) -> list[list[str]]:
        self._check("get_values", spreadsheet_id, cell_range)
        name, r1, r2, c1, c2 = _parse_range(cell_range)
        rows = self.sheet(spreadsheet_id, name)
        selected = rows[r1 - 1 : r2]
        result: list[list[str]] = []
        for row in selected:
            cells = row[c1 : c2 + 1]
            while cells and cells[-1] == "":
                cells = cells[:-1]
            result.append(list(cells))
        while result and not result[-1]:
            result.pop()
        return result

    async def append_values(
        self,
        access_token: str,
        spreadsheet_id: str,
        cell_range: str,
        rows: list[list[Any]],
        *,
        value_input_option: str = "USER_ENTERED",
    ) -> None:
        self._check("append_values", spreadsheet_id, cell_range)
        name = cell_range.split("!")[0]
        self.sheet(spreadsheet_id, name).extend([[str(cell) for cell in row] for row in rows])

    async def update_values(
        self,
        access_token: str,
        spreadsheet_id: str,
        cell_range: str,
        rows: list[list[Any]],
        *,
        value_input_option: str = "USER_ENTERED",
    ) -> None:
        self._check("update_values", spreadsheet_id, cell_range)
        self._write(spreadsheet_id, cell_range, rows)

    async def batch_update_values(
        self,
        access_token: str,
        spreadsheet_id: str,
        data: list[tuple[str, list[list[Any]]]],
        *,
        value_input_option: str = "RAW",
    ) -> None:
        self._check("batch_update_values", spreadsheet_id, ",".join(r for r, _ in data))
        for cell_range, rows in data:
            self._write(spreadsheet_id, cell_range, rows)

    async def get_file_capabilities(self, access_token: str, file_id: str) -> dict[str, Any]:
        self._check("get_file_capabilities", file_id, "")
        return self.capabilities.get(file_id, {"canEdit": True})

    async def download_file(self, access_token: str, file_id: str) -> str:
        self._check("download_file", file_id, "")
        if file_id not in self.files:
            raise RowStoreError(RowStoreErrorKind.NOT_FOUND, "not found", resource=file_id)
        return self.files[file_id]

    async def close(self) -> None:
        return None

    def _write(self, spreadsheet_id: str, cell_range: str, rows: list[list[Any]]) -> None:
        name, r1, _r2, c1, _c2 = _parse_range(cell_range)
        sheet = self.sheet(spreadsheet_id, name)
        for offset, values in enumerate(rows):
            row_number = r1 + offset
            while len(sheet) < row_number:
                sheet.append([])
            target = sheet[row_number - 1]
            needed = c1 + len(values)
            if len(target) < needed:
                target.extend([""] * (needed - len(target)))
            for position, value in enumerate(values):
                target[c1 + position] = str(value)
