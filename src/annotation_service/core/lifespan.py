"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from annotation_service.clients.session_verifier import SessionVerifier
from annotation_service.clients.sheets_client import SheetsClient
from annotation_service.config import get_settings
from annotation_service.core.state import init_app_state
from annotation_service.logging import get_logger, setup_logging
from annotation_service.services.annotation_manager import AnnotationManager
from annotation_service.services.background import BackgroundRunner
from annotation_service.services.cache import KeyedLock, TTLCache
from annotation_service.services.cached_store import CachedStore
from annotation_service.services.finalization import FinalizationEngine
from annotation_service.services.payment_dispatcher import PaymentDispatcher
from annotation_service.services.submission_guard import SubmissionGuard

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(
        settings.logging.level,
        settings.logging.directory,
        service_name=settings.service.name,
        service_version=settings.service.version,
    )
    logger = get_logger(__name__)

    state = init_app_state()

    # Session tokens are verified locally against the session service's public key
    session_verifier = SessionVerifier.from_pem_file(
        settings.sessions.public_key_path,
        issuer=settings.sessions.issuer,
    )
    state.session_verifier = session_verifier

    sheets_client = SheetsClient(
        sheets_base_url=settings.row_store.sheets_base_url,
        drive_base_url=settings.row_store.drive_base_url,
        timeout_seconds=settings.row_store.timeout_seconds,
        default_retry_after_seconds=settings.row_store.default_retry_after_seconds,
    )
    state.sheets_client = sheets_client

    cache = TTLCache()
    state.cache = cache
    locks = KeyedLock()

    background = BackgroundRunner(
        max_attempts=settings.background.max_attempts,
        retry_delay_seconds=settings.background.retry_delay_seconds,
    )
    state.background = background

    store = CachedStore(client=sheets_client, cache=cache, ttls=settings.cache)
    payments = PaymentDispatcher(
        store=store,
        runner=background,
        per_row_rate=settings.payments.per_row_rate,
        per_translation_rate=settings.payments.per_translation_rate,
        debounce_seconds=settings.payments.debounce_seconds,
    )
    state.annotation_manager = AnnotationManager(
        store=store,
        guard=SubmissionGuard(store=store, locks=locks),
        finalizer=FinalizationEngine(store=store, locks=locks),
        payments=payments,
        runner=background,
        locks=locks,
        workspace=settings.workspace,
    )

    logger.info(
        "Service starting",
        extra={
            "port": settings.server.port,
            "sheets_base_url": settings.row_store.sheets_base_url,
            "task_file_configured": bool(settings.workspace.task_file_id),
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info(
        "Service shutting down",
        extra={"uptime_seconds": state.uptime_seconds, "pending_tasks": background.pending},
    )

    await background.shutdown()
    await sheets_client.close()
