"""Router test fixtures with an in-memory row store and locally signed sessions."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from annotation_service.app import create_app
from annotation_service.config import clear_settings_cache
from annotation_service.core.lifespan import lifespan
from annotation_service.core.state import get_app_state, reset_app_state
from annotation_service.services.records import (
    ANNOTATION_COLUMNS,
    ANNOTATIONS_SHEET,
    AnnotationRecord,
    AnnotationStatus,
)
from tests.helpers import (
    FakeSheetsClient,
    generate_keypair,
    make_session_token,
    task_csv,
    task_row,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

# ---------------------------------------------------------------------------
# Fixed workspace and actor IDs
# ---------------------------------------------------------------------------
TASK_FILE_ID = "task-file-id"
ANNOTATION_SHEET_ID = "annotation-sheet-id"
FINAL_DATASET_ID = "final-dataset-id"
USERS_SHEET_ID = "users-sheet-id"

ALICE_ID = "u-alice"
BOB_ID = "u-bob"
ADMIN_ID = "u-admin"


# ---------------------------------------------------------------------------
# Keypair + session fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def session_keypair() -> tuple[Ed25519PrivateKey, bytes]:
    """Generate the session service keypair."""
    return generate_keypair()


def auth_headers(
    private_key: Ed25519PrivateKey,
    user_id: str,
    *,
    role: str = "annotator",
    translation_languages: list[str] | None = None,
) -> dict[str, str]:
    """Authorization header for a signed actor session."""
    token = make_session_token(
        private_key,
        user_id,
        role=role,
        translation_languages=translation_languages,
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def alice_headers(session_keypair: tuple[Ed25519PrivateKey, bytes]) -> dict[str, str]:
    """Annotator who translates into both target languages."""
    return auth_headers(session_keypair[0], ALICE_ID, translation_languages=["ha", "yo"])


@pytest.fixture
def bob_headers(session_keypair: tuple[Ed25519PrivateKey, bytes]) -> dict[str, str]:
    """Annotator who translates into Hausa only."""
    return auth_headers(session_keypair[0], BOB_ID, translation_languages=["ha"])


@pytest.fixture
def admin_headers(session_keypair: tuple[Ed25519PrivateKey, bytes]) -> dict[str, str]:
    """Admin actor."""
    return auth_headers(session_keypair[0], ADMIN_ID, role="admin")


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def sheets() -> FakeSheetsClient:
    """In-memory row store seeded with a task source and an empty annotation log."""
    fake = FakeSheetsClient()
    fake.files[TASK_FILE_ID] = task_csv(
        task_row("R1", "en"),
        task_row("R2", "ha"),
        task_row("R3", "yo"),
        task_row("R4", "en"),
    )
    fake.sheet(ANNOTATION_SHEET_ID, ANNOTATIONS_SHEET).append(list(ANNOTATION_COLUMNS))
    return fake


@pytest.fixture
async def app(
    tmp_path: Path,
    session_keypair: tuple[Ed25519PrivateKey, bytes],
    sheets: FakeSheetsClient,
) -> AsyncIterator[Any]:
    """Create a test app whose row-store client is replaced by the in-memory fake."""
    public_key_path = tmp_path / "session-public.pem"
    public_key_path.write_bytes(session_keypair[1])
    config_content = f"""\
service:
  name: "annotation-service"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{tmp_path / 'logs'}"
request:
  max_body_size: 4096
sessions:
  public_key_path: "{public_key_path}"
  issuer: "annotation-portal"
row_store:
  sheets_base_url: "http://sheets.test/v4"
  drive_base_url: "http://drive.test/v3"
  timeout_seconds: 5
  default_retry_after_seconds: 60
workspace:
  task_file_id: "{TASK_FILE_ID}"
  annotation_spreadsheet_id: "{ANNOTATION_SHEET_ID}"
  final_dataset_spreadsheet_id: "{FINAL_DATASET_ID}"
  users_spreadsheet_id: ""
cache:
  task_rows_ttl_seconds: 30
  row_ids_ttl_seconds: 45
  annotations_ttl_seconds: 60
  worker_languages_ttl_seconds: 300
  finalized_ids_ttl_seconds: 600
payments:
  per_row_rate: 100
  per_translation_rate: 150
  debounce_seconds: 0
background:
  max_attempts: 2
  retry_delay_seconds: 0
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()
        state.sheets_client = sheets

        # Every service reaches the row store through the manager's store
        if state.annotation_manager is not None:
            state.annotation_manager._store._client = sheets

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
async def drain_background() -> None:
    """Wait for finalization and payment work scheduled by the last request."""
    background = get_app_state().background
    assert background is not None
    await background.drain()


def seed_annotation(
    sheets: FakeSheetsClient,
    row_id: str,
    annotator_id: str,
    *,
    status: AnnotationStatus = AnnotationStatus.COMPLETED,
    **fields: Any,
) -> AnnotationRecord:
    """Append a record straight into the fake annotation log."""
    record = AnnotationRecord(row_id=row_id, annotator_id=annotator_id, status=status, **fields)
    sheets.sheet(ANNOTATION_SHEET_ID, ANNOTATIONS_SHEET).append(record.to_row())
    return record


def logged_record(sheets: FakeSheetsClient, row_id: str) -> AnnotationRecord:
    """Read back the first logged record for ``row_id``."""
    for row in sheets.sheet(ANNOTATION_SHEET_ID, ANNOTATIONS_SHEET)[1:]:
        if row and row[0] == row_id:
            return AnnotationRecord.from_row(row)
    msg = f"No logged record for {row_id}"
    raise AssertionError(msg)


def annotation_body(row_id: str, annotator_id: str, **fields: Any) -> dict[str, Any]:
    """Request body for a submission endpoint."""
    annotation: dict[str, Any] = {
        "rowId": row_id,
        "annotatorId": annotator_id,
        "claimText": "A claim",
        "sourceLinks": ["https://example.org/a", "https://example.org/b"],
        "verdict": "false",
        "startTime": "2026-01-01T10:00:00.000Z",
        "endTime": "2026-01-01T10:12:00.000Z",
        "durationMinutes": 12,
    }
    annotation.update(fields)
    return {"spreadsheetId": ANNOTATION_SHEET_ID, "annotation": annotation}
