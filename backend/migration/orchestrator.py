"""
History import orchestrator: Nova users, applications and events into local
shifts and signups.

Why:
    Volunteers kept their shift history in the legacy Nova panel. The import
    replays that history into the local store once per user, safely re-runnable
    and with live progress for the admin watching the migration page.

Behavior (per user):
    1. Resolve the local user by lowercased email. Batch runs skip unknown
       users; single-user runs create them from the Nova record.
    2. Search Nova and accept only an exact, case-insensitive email match.
    3. Page through the user's event applications until an empty page, a
       missing `next_page_url` or the configured page ceiling.
    4. Group by event id (first-seen order), fetch each event, filter with
       `should_import_signup`, skip events without survivors.
    5. Find-or-create shift type, shift (by ``Nova ID: {id}`` token) and
       signup (by user + shift). Dry runs read but never create; placeholder
       ids stand in for would-be rows.

Failure scopes:
    - Connecting/authenticating to Nova is fatal for the run.
    - A failed or auth-rejected event fetch skips only that event.
    - An exception while persisting one event is recorded on the user and
      the remaining events continue.
    - Anything else escaping one user marks that user failed; the batch goes on.
    No retries at any level.
"""
from __future__ import annotations

import functools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from . import telemetry
from .config import MigrationConfig, load_migration_config
from .legacy_client import LegacyAuthError, NovaClient, mask_email
from .models import (
    BatchImportResult,
    ImportOptions,
    LegacyCredentials,
    ScrapeUserResult,
    SignupPosition,
    UserImportResult,
    UserOutcome,
    fields_as_dict,
)
from .ports import LegacyClientProtocol, MigrationStore, NullProgressSink, ProgressSink
from .resources import LegacyEvent, LegacySignup, LegacyUser
from .status_filter import should_import_signup
from .transformer import HistoryTransformer, legacy_reference


logger = logging.getLogger("volunteer_portal.migration")

ClientFactory = Callable[[LegacyCredentials], Awaitable[LegacyClientProtocol]]

PROGRESS_EVERY_N_EVENTS = 5
DRY_RUN_PREFIX = "dry-run-"


def _normalize_emails(emails: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    out: List[str] = []
    for raw in emails or []:
        if not isinstance(raw, str):
            continue
        email = raw.strip().lower()
        if email and email not in seen:
            seen.add(email)
            out.append(email)
    return out


def should_report_event(index: int, total: int) -> bool:
    """Throttle per-event progress: every 5th, the last, or all when few."""
    return total <= PROGRESS_EVERY_N_EVENTS or index % PROGRESS_EVERY_N_EVENTS == 0 or index == total


def _is_placeholder(row_id: str) -> bool:
    return str(row_id).startswith(DRY_RUN_PREFIX)


def _legacy_user_details(user: LegacyUser) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "firstName": user.first_name,
        "lastName": user.last_name,
    }


@dataclass
class _RunState:
    """Rows planned or touched during one run; collapses duplicates in dry runs."""

    options: ImportOptions
    session_id: Optional[str]
    shift_types: Dict[str, dict] = field(default_factory=dict)
    shifts: Dict[int, dict] = field(default_factory=dict)
    signups: Set[Tuple[str, str]] = field(default_factory=set)
    created_signups: Set[Tuple[str, str]] = field(default_factory=set)


class HistoryImportOrchestrator:
    def __init__(
        self,
        store: MigrationStore,
        *,
        progress: Optional[ProgressSink] = None,
        config: Optional[MigrationConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        transformer: Optional[HistoryTransformer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.progress = progress or NullProgressSink()
        self.config = config or load_migration_config()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.transformer = transformer or HistoryTransformer(clock=self._clock)
        self._client_factory = client_factory or functools.partial(NovaClient.connect, config=self.config)

    # --- Progress -----------------------------------------------------------

    def _emit(self, state: _RunState, type_: str, stage: str, message: str, **counters: Any) -> None:
        if not state.session_id:
            return
        event = {"type": type_, "stage": stage, "message": message}
        event.update({k: v for k, v in counters.items() if v is not None})
        try:
            self.progress.publish(state.session_id, event)
        except Exception as exc:
            logger.warning("Progress publish failed: %s", exc.__class__.__name__)

    # --- Entry points -------------------------------------------------------

    async def run_batch(
        self,
        emails: Iterable[str],
        credentials: LegacyCredentials,
        *,
        options: Optional[ImportOptions] = None,
        session_id: Optional[str] = None,
    ) -> BatchImportResult:
        started = time.monotonic()
        targets = _normalize_emails(emails)
        state = _RunState(options=options or ImportOptions(), session_id=session_id)
        result = BatchImportResult(total_users=len(targets))
        self._emit(state, "status", "connecting", "Connecting to Nova", totalUsers=len(targets))
        try:
            client = await self._client_factory(credentials)
        except Exception as exc:
            logger.warning("Batch import aborted: Nova connection failed (%s)", exc.__class__.__name__)
            result.success = False
            result.errors = [f"Batch import failed: {exc}"]
            result.duration_ms = int((time.monotonic() - started) * 1000)
            self._emit(state, "error", "connecting", f"Batch import failed: {exc}")
            return result

        self._emit(state, "status", "fetching", f"Connected to Nova; importing {len(targets)} users")
        try:
            for index, email in enumerate(targets, start=1):
                self._emit(
                    state,
                    "progress",
                    "processing",
                    f"Processing {email} ({index}/{len(targets)})",
                    currentUser=email,
                    usersProcessed=index - 1,
                    totalUsers=len(targets),
                )
                user_result = await self._process_user(client, email, state, create_missing=False)
                result.add(user_result)
                self._report_user(state, user_result)
        finally:
            await client.aclose()

        result.duration_ms = int((time.monotonic() - started) * 1000)
        self._emit(
            state,
            "complete",
            "complete",
            f"Import complete: {result.users_processed} users, {result.total_shifts} shifts, "
            f"{result.total_signups} signups",
            usersProcessed=result.users_processed,
            totalUsers=result.total_users,
        )
        logger.info(
            "Batch import finished users=%d with_history=%d shifts=%d signups=%d errors=%d",
            result.users_processed,
            result.users_with_history,
            result.total_shifts,
            result.total_signups,
            len(result.errors),
        )
        return result

    async def import_user(
        self,
        email: str,
        credentials: LegacyCredentials,
        *,
        options: Optional[ImportOptions] = None,
        session_id: Optional[str] = None,
    ) -> ScrapeUserResult:
        state = _RunState(options=options or ImportOptions(), session_id=session_id)
        target = (email or "").strip().lower()
        self._emit(state, "status", "connecting", "Connecting to Nova")
        try:
            client = await self._client_factory(credentials)
        except Exception as exc:
            logger.warning("Single-user import aborted: Nova connection failed (%s)", exc.__class__.__name__)
            self._emit(state, "error", "connecting", f"Nova scraping failed: {exc}")
            return ScrapeUserResult(success=False, errors=[f"Nova scraping failed: {exc}"])
        try:
            user_result = await self._process_user(client, target, state, create_missing=True)
        finally:
            await client.aclose()
        self._report_user(state, user_result)
        self._emit(
            state,
            "complete",
            "complete",
            f"Import complete: {user_result.shifts_imported} shifts, {user_result.signups_imported} signups",
        )
        errors = [user_result.error] if user_result.error else []
        errors.extend(user_result.event_errors)
        return ScrapeUserResult(
            success=True,
            user_found=user_result.user_found,
            user_created=user_result.user_created,
            user_already_exists=user_result.user_already_exists,
            shifts_found=user_result.shifts_found,
            shifts_imported=user_result.shifts_imported,
            signups_found=user_result.signups_found,
            signups_imported=user_result.signups_imported,
            errors=errors,
            outcome=user_result.outcome,
            details=user_result.details if state.options.dry_run else None,
        )

    def _report_user(self, state: _RunState, result: UserImportResult) -> None:
        telemetry.record_user_outcome(result.outcome.value)
        if result.outcome is UserOutcome.FAILED:
            self._emit(state, "error", "processing", f"Failed {result.email}: {result.error}", currentUser=result.email)
        elif result.outcome in (UserOutcome.SKIPPED_NOT_FOUND_LOCALLY, UserOutcome.SKIPPED_NOT_FOUND_REMOTELY):
            self._emit(state, "status", "processing", f"Skipped {result.email}: {result.error}", currentUser=result.email)
        else:
            self._emit(
                state,
                "status",
                "processing",
                f"Finished {result.email}: {result.shifts_imported} shifts, {result.signups_imported} signups",
                currentUser=result.email,
            )

    # --- Per user -----------------------------------------------------------

    async def _process_user(
        self,
        client: LegacyClientProtocol,
        email: str,
        state: _RunState,
        *,
        create_missing: bool,
    ) -> UserImportResult:
        result = UserImportResult(email=email)
        options = state.options
        if options.dry_run:
            result.details = {"userData": None, "shifts": [], "signups": []}
        try:
            local_user = await self.store.find_user_by_email(email)
            result.user_already_exists = local_user is not None
            if local_user is None and not create_missing:
                result.outcome = UserOutcome.SKIPPED_NOT_FOUND_LOCALLY
                result.error = "User not found in local database"
                return result

            self._emit(state, "status", "fetching", f"Searching Nova for {email}", currentUser=email)
            legacy_user = await self._find_legacy_user(client, email)
            if legacy_user is None:
                result.outcome = UserOutcome.SKIPPED_NOT_FOUND_REMOTELY
                result.error = "User not found in Nova"
                return result
            result.user_found = True
            result.legacy_user_id = legacy_user.id
            if result.details is not None:
                result.details["userData"] = _legacy_user_details(legacy_user)

            if local_user is None:
                fields = await self.transformer.transform_user(legacy_user, client, email=email)
                if options.dry_run:
                    local_user = {"id": f"{DRY_RUN_PREFIX}user-{email}", "email": email}
                else:
                    local_user = await self.store.create_user(fields)
                    result.user_created = True
                    telemetry.record_row_created("user")
                    logger.info("Created local user %s from Nova id=%s", mask_email(email), legacy_user.id)

            if not options.include_shifts:
                result.outcome = UserOutcome.NO_HISTORY
                return result

            signups = await self._fetch_signups(client, legacy_user.id)
            groups = self._group_by_event(signups)
            self._emit(
                state,
                "status",
                "fetching",
                f"Found {len(signups)} applications across {len(groups)} events for {email}",
                currentUser=email,
                totalEvents=len(groups),
            )
            await self._process_events(client, str(local_user["id"]), groups, result, state)
            result.outcome = UserOutcome.IMPORTED if result.shifts_found else UserOutcome.NO_HISTORY
        except Exception as exc:
            logger.warning("History import failed for %s: %s", mask_email(email), exc.__class__.__name__)
            result.outcome = UserOutcome.FAILED
            result.error = str(exc) or exc.__class__.__name__
        return result

    async def _find_legacy_user(self, client: LegacyClientProtocol, email: str) -> Optional[LegacyUser]:
        page = await client.request(
            "/users", {"search": email, "perPage": self.config.user_search_page_size}
        )
        for resource in page.resources:
            candidate = LegacyUser.from_resource(resource)
            # Nova search is fuzzy; only an exact address counts
            if candidate.matches_email(email):
                return candidate
        return None

    async def _fetch_signups(self, client: LegacyClientProtocol, legacy_user_id: int) -> List[LegacySignup]:
        signups: List[LegacySignup] = []
        page_no = 1
        while True:
            page = await client.request(
                "/event-applications",
                {
                    "viaResource": "users",
                    "viaResourceId": legacy_user_id,
                    "viaRelationship": "event_applications",
                    "perPage": self.config.signups_page_size,
                    "page": page_no,
                },
            )
            # An empty page ends pagination even when Nova still advertises a next page
            if not page.resources:
                break
            signups.extend(LegacySignup.from_resource(r) for r in page.resources)
            if not page.next_page_url:
                break
            if page_no >= self.config.max_signup_pages:
                logger.warning(
                    "Stopped paging applications for Nova user %s at page ceiling %d",
                    legacy_user_id,
                    self.config.max_signup_pages,
                )
                break
            page_no += 1
        return signups

    @staticmethod
    def _group_by_event(signups: Iterable[LegacySignup]) -> Dict[int, List[LegacySignup]]:
        groups: Dict[int, List[LegacySignup]] = {}
        for signup in signups:
            if signup.event_id is None:
                continue
            groups.setdefault(signup.event_id, []).append(signup)
        return groups

    # --- Per event ----------------------------------------------------------

    async def _fetch_event(self, client: LegacyClientProtocol, event_id: int) -> Optional[LegacyEvent]:
        try:
            page = await client.request(f"/events/{event_id}")
        except LegacyAuthError as exc:
            # Nova redirects deleted or restricted events to the login page
            logger.info("Skipping Nova event %s: auth rejected (%s)", event_id, exc)
            telemetry.record_event_skipped("auth_rejected")
            return None
        except Exception as exc:
            logger.info("Skipping Nova event %s: fetch failed (%s)", event_id, exc.__class__.__name__)
            telemetry.record_event_skipped("fetch_failed")
            return None
        if page.resource is None:
            logger.info("Skipping Nova event %s: empty or malformed resource", event_id)
            telemetry.record_event_skipped("malformed")
            return None
        event = LegacyEvent.from_resource(page.resource)
        if event.date is None:
            logger.info("Skipping Nova event %s: no date", event_id)
            telemetry.record_event_skipped("missing_date")
            return None
        return event

    async def _process_events(
        self,
        client: LegacyClientProtocol,
        user_id: str,
        groups: Dict[int, List[LegacySignup]],
        result: UserImportResult,
        state: _RunState,
    ) -> None:
        total = len(groups)
        for index, (event_id, event_signups) in enumerate(groups.items(), start=1):
            if should_report_event(index, total):
                self._emit(
                    state,
                    "progress",
                    "processing",
                    f"Processing event {index}/{total} for {result.email}",
                    currentUser=result.email,
                    eventsProcessed=index,
                    totalEvents=total,
                )
            event = await self._fetch_event(client, event_id)
            if event is None:
                continue
            now = self._clock()
            kept = [
                s for s in event_signups
                if should_import_signup(event.date, s.status_id, s.status_name, now=now)
            ]
            if not kept:
                telemetry.record_event_skipped("no_eligible_signups")
                continue
            result.shifts_found += 1
            result.signups_found += len(kept)
            if result.details is not None:
                result.details["signups"].extend(s.as_details() for s in kept)
            try:
                shifts_created, signups_created = await self._persist_event(event, kept, user_id, result, state)
            except Exception as exc:
                logger.warning("Error processing Nova event %s: %s", event_id, exc.__class__.__name__)
                result.event_errors.append(f"Error processing event {event_id}: {exc}")
                continue
            result.shifts_imported += shifts_created
            result.signups_imported += signups_created

    async def _persist_event(
        self,
        event: LegacyEvent,
        signups: List[LegacySignup],
        user_id: str,
        result: UserImportResult,
        state: _RunState,
    ) -> Tuple[int, int]:
        dry_run = state.options.dry_run
        shift_fields = self.transformer.transform_event(
            event, [SignupPosition(position_name=s.position_name) for s in signups]
        )

        type_name = shift_fields.shift_type_name
        shift_type = state.shift_types.get(type_name) or await self.store.find_shift_type_by_name(type_name)
        if shift_type is None:
            if dry_run:
                shift_type = {"id": f"{DRY_RUN_PREFIX}shift-type-{type_name}", "name": type_name}
            else:
                shift_type = await self.store.create_shift_type(type_name, f"Migrated from Nova - {type_name}")
                telemetry.record_row_created("shift_type")
        state.shift_types[type_name] = shift_type

        shifts_created = 0
        shift = state.shifts.get(event.id) or await self.store.find_shift_by_notes_contains(
            legacy_reference(event.id)
        )
        if shift is None:
            if dry_run:
                shift = {"id": f"{DRY_RUN_PREFIX}shift-{event.id}"}
                if result.details is not None:
                    result.details["shifts"].append(fields_as_dict(shift_fields))
            else:
                shift = await self.store.create_shift(str(shift_type["id"]), shift_fields)
                telemetry.record_row_created("shift")
            shifts_created = 1
        state.shifts[event.id] = shift

        if not state.options.include_signups:
            return shifts_created, 0

        # Legacy duplicates for one (user, shift) collapse into a single row but
        # each still counts as imported when that row was created in this run
        signups_created = 0
        shift_id = str(shift["id"])
        key = (user_id, shift_id)
        for signup in signups:
            if key in state.signups:
                if key in state.created_signups:
                    signups_created += 1
                continue
            state.signups.add(key)
            existing = None
            if not (_is_placeholder(user_id) or _is_placeholder(shift_id)):
                existing = await self.store.find_signup_by_user_and_shift(user_id, shift_id)
            if existing is not None:
                continue
            fields = self.transformer.transform_signup(signup, user_id, shift_id)
            if not dry_run:
                await self.store.create_signup(fields)
                telemetry.record_row_created("signup")
            state.created_signups.add(key)
            signups_created += 1
        return shifts_created, signups_created


__all__ = ["HistoryImportOrchestrator", "should_report_event", "ClientFactory"]
