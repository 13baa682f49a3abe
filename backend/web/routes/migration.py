"""
Admin migration API: Nova history import and its progress stream.

Why:
    Administrators move volunteers' shift history out of the legacy Nova panel
    from the migration page. Imports run inside the POST request; the page
    watches a parallel SSE stream keyed by a client-chosen `sessionId`.

Permissions:
    Every route requires role `admin`. Unauthenticated callers are stopped by
    the auth middleware (401) before reaching these handlers.

Security:
    - Responses carry `Cache-Control: private, no-store`.
    - Write routes reject cross-origin browser requests (CSRF).
    - The Nova base URL is validated against local/private hosts (SSRF).
"""
from __future__ import annotations

import logging
import os
from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from backend.migration.config import load_migration_config
from backend.migration.legacy_client import InvalidBaseUrlError, NovaClient, mask_email, validate_base_url
from backend.migration.models import ImportOptions, LegacyCredentials
from backend.migration.orchestrator import HistoryImportOrchestrator
from backend.migration.progress import HEARTBEAT_INTERVAL_SECONDS, ProgressRegistry
from backend.migration.repo_memory import InMemoryMigrationStore
from backend.web.auth_utils import is_admin
from backend.web.routes.security import _is_same_origin


logger = logging.getLogger("volunteer_portal.web")

migration_router = APIRouter(tags=["Migration"])

MAX_BATCH_USERS = 1000


class LegacyConfigPayload(BaseModel):
    baseUrl: str | None = Field(default=None)
    email: str | None = Field(default=None)
    password: str | None = Field(default=None)


class ImportOptionsPayload(BaseModel):
    dryRun: bool = False
    includeShifts: bool = True
    includeSignups: bool = True


class _ImportPayload(BaseModel):
    novaConfig: LegacyConfigPayload | None = None
    legacyCredentials: LegacyConfigPayload | None = None
    options: ImportOptionsPayload | None = None
    sessionId: str | None = Field(default=None, max_length=200)


class ScrapeUserPayload(_ImportPayload):
    targetEmail: str | None = None


class BatchImportPayload(_ImportPayload):
    userEmails: list[str] | None = None


class TestConnectionPayload(BaseModel):
    novaConfig: LegacyConfigPayload | None = None
    legacyCredentials: LegacyConfigPayload | None = None


class ProgressPayload(BaseModel):
    """External progress event; unknown counters pass through to the stream."""

    model_config = ConfigDict(extra="allow")

    sessionId: str | None = Field(default=None, max_length=200)
    type: str | None = None
    message: str | None = None
    stage: str | None = None


# --- Helpers -------------------------------------------------------------------


def _private_no_store() -> dict:
    return {"Cache-Control": "private, no-store"}


def _json(payload: Any, *, status_code: int = 200) -> JSONResponse:
    return JSONResponse(payload, status_code=status_code, headers=_private_no_store())


def _bad_request(detail: str) -> JSONResponse:
    return _json({"error": "bad_request", "detail": detail}, status_code=400)


def _guard_admin(request: Request) -> JSONResponse | None:
    if not is_admin(getattr(request.state, "user", None)):
        return _json({"error": "forbidden"}, status_code=403)
    return None


def _csrf_guard(request: Request) -> JSONResponse | None:
    """Reject cross-origin writes; prod additionally requires Origin/Referer."""
    strict = (os.getenv("PORTAL_ENV", "dev") or "").lower() in ("prod", "production")
    if strict and not (request.headers.get("origin") or request.headers.get("referer")):
        return _json({"error": "forbidden", "detail": "csrf_violation"}, status_code=403)
    if not _is_same_origin(request):
        return _json({"error": "forbidden", "detail": "csrf_violation"}, status_code=403)
    return None


def get_progress_registry(request: Request) -> ProgressRegistry:
    registry = getattr(request.app.state, "progress_registry", None)
    if registry is None:
        registry = ProgressRegistry()
        request.app.state.progress_registry = registry
    return registry


def get_migration_store(request: Request):
    """Return the app's migration store (Postgres when configured)."""
    store = getattr(request.app.state, "migration_store", None)
    if store is None:
        store = build_default_store()
        request.app.state.migration_store = store
    return store


def build_default_store():
    cfg = load_migration_config()
    if cfg.database_url:
        from backend.migration.repo_db import DBMigrationStore, HAVE_PSYCOPG

        if HAVE_PSYCOPG:
            return DBMigrationStore(cfg.database_url)
        logger.warning("psycopg unavailable; migration store falls back to memory")
    return InMemoryMigrationStore()


async def connect_legacy_client(credentials: LegacyCredentials):
    """Nova connection factory; tests replace this with a fake client."""
    return await NovaClient.connect(credentials, config=load_migration_config())


def build_orchestrator(request: Request) -> HistoryImportOrchestrator:
    return HistoryImportOrchestrator(
        get_migration_store(request),
        progress=get_progress_registry(request),
        config=load_migration_config(),
        client_factory=connect_legacy_client,
    )


def _resolve_credentials(
    payload: _ImportPayload | TestConnectionPayload,
) -> tuple[LegacyCredentials | None, JSONResponse | None]:
    credentials = None
    # First complete block wins; an empty `novaConfig: {}` must not hide `legacyCredentials`
    for raw in (payload.novaConfig, payload.legacyCredentials):
        credentials = LegacyCredentials.from_mapping(raw.model_dump() if raw else None)
        if credentials is not None:
            break
    if credentials is None:
        return None, _bad_request("missing_nova_config")
    try:
        base_url = validate_base_url(
            credentials.base_url, allow_private=load_migration_config().allow_private_hosts
        )
    except InvalidBaseUrlError as exc:
        return None, _json({"error": "bad_request", "detail": str(exc)}, status_code=400)
    return LegacyCredentials(base_url=base_url, email=credentials.email, password=credentials.password), None


def _options(payload: _ImportPayload) -> ImportOptions:
    raw = payload.options or ImportOptionsPayload()
    return ImportOptions(
        dry_run=bool(raw.dryRun),
        include_shifts=bool(raw.includeShifts),
        include_signups=bool(raw.includeSignups),
    )


def _session_id(raw: Optional[str]) -> Optional[str]:
    value = (raw or "").strip()
    return value or None


# --- Routes --------------------------------------------------------------------


@migration_router.post("/api/admin/migration/scrape-user-history")
async def scrape_user_history(request: Request, payload: ScrapeUserPayload):
    """Import one volunteer's Nova history (admin only).

    Behavior:
        - 400 when `targetEmail` or any Nova credential is missing, or the base
          URL is not allowed; nothing is contacted in that case.
        - 500 with the summary when Nova login fails.
        - 200 with `{success, userFound, userCreated, userAlreadyExists,
          shiftsFound, shiftsImported, signupsFound, signupsImported, errors,
          outcome, details?}` otherwise. `details` only on dry runs.
    """
    denied = _guard_admin(request) or _csrf_guard(request)
    if denied:
        return denied
    email = (payload.targetEmail or "").strip().lower()
    if not email or "@" not in email:
        return _bad_request("missing_target_email")
    credentials, error = _resolve_credentials(payload)
    if error:
        return error
    options = _options(payload)
    logger.info("Single-user history import requested for %s dry_run=%s", mask_email(email), options.dry_run)
    result = await build_orchestrator(request).import_user(
        email, credentials, options=options, session_id=_session_id(payload.sessionId)
    )
    return _json(result.to_dict(), status_code=200 if result.success else 500)


@migration_router.post("/api/admin/migration/batch-import-history")
async def batch_import_history(request: Request, payload: BatchImportPayload):
    """Import Nova history for a list of existing local users (admin only).

    Behavior:
        - 400 when `userEmails` is empty or credentials are incomplete.
        - 500 with the summary when Nova login fails (batch never started).
        - 200 with `{success, totalUsers, usersProcessed, usersWithHistory,
          totalShifts, totalSignups, errors, duration, userResults}`; per-user
          failures are reported inside `userResults`, not as HTTP errors.
    """
    denied = _guard_admin(request) or _csrf_guard(request)
    if denied:
        return denied
    emails = [e.strip() for e in (payload.userEmails or []) if isinstance(e, str) and e.strip()]
    if not emails:
        return _bad_request("missing_user_emails")
    if len(emails) > MAX_BATCH_USERS:
        return _bad_request("too_many_users")
    credentials, error = _resolve_credentials(payload)
    if error:
        return error
    options = _options(payload)
    logger.info("Batch history import requested users=%d dry_run=%s", len(emails), options.dry_run)
    result = await build_orchestrator(request).run_batch(
        emails, credentials, options=options, session_id=_session_id(payload.sessionId)
    )
    return _json(result.to_dict(), status_code=200 if result.success else 500)


@migration_router.get("/api/admin/migration/progress-stream")
async def progress_stream(request: Request, sessionId: str | None = None):
    """Server-Sent Events stream of import progress for one session (admin only)."""
    denied = _guard_admin(request)
    if denied:
        return denied
    session_id = _session_id(sessionId)
    if not session_id:
        return _bad_request("missing_session_id")
    subscription = get_progress_registry(request).subscribe(session_id)
    logger.info("Progress stream opened session=%s", session_id)
    headers = {
        "Cache-Control": "no-cache, no-transform",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(
        subscription.stream(heartbeat_interval=HEARTBEAT_INTERVAL_SECONDS),
        media_type="text/event-stream",
        headers=headers,
    )


@migration_router.post("/api/admin/migration/progress")
async def publish_progress(request: Request, payload: ProgressPayload):
    """Relay a progress event from another worker to the session's stream."""
    denied = _guard_admin(request) or _csrf_guard(request)
    if denied:
        return denied
    session_id = _session_id(payload.sessionId)
    if not session_id:
        return _bad_request("missing_session_id")
    event = payload.model_dump(exclude_none=True)
    event.pop("sessionId", None)
    event.setdefault("type", "progress")
    delivered = get_progress_registry(request).publish(session_id, event)
    return _json({"ok": True, "delivered": delivered})


@migration_router.post("/api/admin/migration/test-nova-connection")
async def test_nova_connection(request: Request, payload: TestConnectionPayload):
    """Log in to Nova with the given credentials and report the outcome."""
    denied = _guard_admin(request) or _csrf_guard(request)
    if denied:
        return denied
    credentials, error = _resolve_credentials(payload)
    if error:
        return error
    try:
        client = await connect_legacy_client(credentials)
    except Exception as exc:
        logger.warning("Nova connection test failed: %s", exc.__class__.__name__)
        return _json({"success": False, "error": str(exc) or "Connection failed"}, status_code=400)
    await client.aclose()
    return _json({"success": True, "message": "Successfully connected to Laravel Nova"})
