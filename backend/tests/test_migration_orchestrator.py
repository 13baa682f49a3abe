"""
History import orchestrator against a fake Nova and the in-memory store.

Covers the batch and single-user flows: happy path, idempotent re-runs,
event- and user-scoped failures, duplicate applications, near-match emails,
pagination termination and dry runs.
"""
from __future__ import annotations

from typing import Any, Dict, List

import pytest

from backend.migration.config import MigrationConfig
from backend.migration.legacy_client import LegacyAuthError, LegacyRequestError
from backend.migration.models import ImportOptions, LegacyCredentials, UserOutcome
from backend.migration.orchestrator import HistoryImportOrchestrator, should_report_event
from backend.migration.repo_memory import InMemoryMigrationStore
from backend.migration import telemetry
from backend.tests.utils.fake_nova import (
    NOW,
    PAST_DATE,
    FakeNovaClient,
    factory_for,
    nova_event,
    nova_signup,
    nova_user,
)


pytestmark = pytest.mark.anyio("asyncio")

CREDENTIALS = LegacyCredentials(base_url="https://nova.example.org", email="admin@example.org", password="secret")


class RecordingSink:
    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def publish(self, session_id: str, event) -> bool:
        self.events.append({"sessionId": session_id, **dict(event)})
        return True


class CountingStore(InMemoryMigrationStore):
    """In-memory store that counts create calls."""

    def __init__(self) -> None:
        super().__init__()
        self.creates: List[str] = []

    async def create_user(self, fields):
        self.creates.append("user")
        return await super().create_user(fields)

    async def create_shift_type(self, name, description):
        self.creates.append("shift_type")
        return await super().create_shift_type(name, description)

    async def create_shift(self, shift_type_id, fields):
        self.creates.append("shift")
        return await super().create_shift(shift_type_id, fields)

    async def create_signup(self, fields):
        self.creates.append("signup")
        return await super().create_signup(fields)


def _orchestrator(store, client, *, progress=None, config=None) -> HistoryImportOrchestrator:
    return HistoryImportOrchestrator(
        store,
        progress=progress,
        config=config or MigrationConfig(),
        client_factory=factory_for(client),
        clock=lambda: NOW,
    )


def _jane_client(**overrides) -> FakeNovaClient:
    """Jane: three accepted applications across events 12 and 13."""
    params = dict(
        users=[nova_user(3, "jane@x.com")],
        signup_pages={
            3: [[
                nova_signup(40, 12),
                nova_signup(41, 12, position="Driver"),
                nova_signup(42, 13),
            ]]
        },
        events={12: nova_event(12), 13: nova_event(13, notes="Sort donations")},
    )
    params.update(overrides)
    return FakeNovaClient(**params)


# --- Batch ----------------------------------------------------------------------


async def test_happy_path_creates_shifts_and_signups():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com", name="Jane")
    client = _jane_client()

    result = await _orchestrator(store, client).run_batch(["Jane@x.com"], CREDENTIALS)

    assert result.success is True
    assert result.total_users == 1
    assert result.users_processed == 1
    assert result.users_with_history == 1
    assert result.total_shifts == 2
    assert result.total_signups == 3
    assert result.errors == []
    user = result.user_results[0]
    assert user.outcome is UserOutcome.IMPORTED
    assert (user.shifts_found, user.signups_found) == (2, 3)
    assert (user.shifts_imported, user.signups_imported) == (2, 3)
    assert len(store.shifts) == 2
    assert len(store.shifts_for_event("Nova ID: 12")) == 1
    assert len(store.shifts_for_event("Nova ID: 13")) == 1
    assert any(s["notes"] == "Sort donations • Nova ID: 13" for s in store.shifts.values())
    # Both applications for event 12 collapse into one (user, shift) row
    assert len(store.signups) == 2
    assert list(store.shift_types) == ["Kitchen"]
    assert client.closed is True
    assert telemetry.counter_value(telemetry.USERS_TOTAL, outcome="imported") == 1
    assert telemetry.counter_value(telemetry.ROWS_CREATED_TOTAL, entity="shift") == 2


async def test_batch_summary_renders_camel_case():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")
    result = await _orchestrator(store, _jane_client()).run_batch(["jane@x.com"], CREDENTIALS)

    body = result.to_dict()
    assert set(body) == {
        "success",
        "totalUsers",
        "usersProcessed",
        "usersWithHistory",
        "totalShifts",
        "totalSignups",
        "errors",
        "duration",
        "userResults",
    }
    assert body["userResults"][0]["novaUserId"] == 3
    assert body["userResults"][0]["outcome"] == "imported"


async def test_rerun_is_idempotent():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")
    orchestrator = _orchestrator(store, _jane_client())

    await orchestrator.run_batch(["jane@x.com"], CREDENTIALS)
    counts = (len(store.shift_types), len(store.shifts), len(store.signups))
    second = await orchestrator.run_batch(["jane@x.com"], CREDENTIALS)

    assert (len(store.shift_types), len(store.shifts), len(store.signups)) == counts
    assert second.total_shifts == 0
    assert second.total_signups == 0
    assert second.user_results[0].shifts_found == 2


async def test_failed_event_fetch_is_skipped_and_user_succeeds():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")
    client = _jane_client(
        events={12: LegacyRequestError("GET /events/12 returned 500", status_code=500), 13: nova_event(13)}
    )

    result = await _orchestrator(store, client).run_batch(["jane@x.com"], CREDENTIALS)

    user = result.user_results[0]
    assert user.success is True
    assert user.error is None
    assert (user.shifts_imported, user.signups_imported) == (1, 1)
    assert store.shifts_for_event("Nova ID: 12") == []
    assert telemetry.counter_value(telemetry.EVENTS_SKIPPED_TOTAL, reason="fetch_failed") == 1


async def test_events_without_date_or_resource_are_skipped():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")
    client = _jane_client(events={12: nova_event(12, date=None), 13: None})

    result = await _orchestrator(store, client).run_batch(["jane@x.com"], CREDENTIALS)

    user = result.user_results[0]
    assert user.outcome is UserOutcome.NO_HISTORY
    assert user.shifts_found == 0
    assert store.shifts == {}


async def test_persist_error_is_recorded_per_event():
    class FlakyStore(InMemoryMigrationStore):
        async def create_shift(self, shift_type_id, fields):
            if fields.legacy_event_id == 12:
                raise RuntimeError("insert failed")
            return await super().create_shift(shift_type_id, fields)

    store = FlakyStore()
    store.add_user("jane@x.com")

    result = await _orchestrator(store, _jane_client()).run_batch(["jane@x.com"], CREDENTIALS)

    user = result.user_results[0]
    assert user.success is True
    assert user.event_errors == ["Error processing event 12: insert failed"]
    assert (user.shifts_found, user.shifts_imported) == (2, 1)
    assert user.signups_imported == 1
    assert result.errors == []


async def test_duplicate_applications_persist_one_signup():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")
    client = _jane_client(signup_pages={3: [[nova_signup(40, 12), nova_signup(41, 12, status="Approved")]]})

    await _orchestrator(store, client).run_batch(["jane@x.com"], CREDENTIALS)

    assert len(store.shifts) == 1
    assert len(store.signups) == 1


async def test_near_match_email_is_rejected():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")
    client = _jane_client(users=[nova_user(4, "jane@x.co"), nova_user(3, "JANE@X.COM")])

    result = await _orchestrator(store, client).run_batch(["jane@x.com"], CREDENTIALS)
    assert result.user_results[0].legacy_user_id == 3

    only_near = _jane_client(users=[nova_user(4, "jane@x.co")])
    result = await _orchestrator(store, only_near).run_batch(["jane@x.com"], CREDENTIALS)
    user = result.user_results[0]
    assert user.outcome is UserOutcome.SKIPPED_NOT_FOUND_REMOTELY
    assert user.error == "User not found in Nova"
    assert only_near.paths("/event-applications") == []
    assert result.errors == ["jane@x.com: User not found in Nova"]


async def test_user_missing_locally_is_skipped_without_nova_calls():
    store = InMemoryMigrationStore()
    client = _jane_client()

    result = await _orchestrator(store, client).run_batch(["jane@x.com"], CREDENTIALS)

    assert result.success is True
    user = result.user_results[0]
    assert user.outcome is UserOutcome.SKIPPED_NOT_FOUND_LOCALLY
    assert user.error == "User not found in local database"
    assert client.calls == []
    assert store.users == {}


async def test_pagination_follows_next_page_url():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")
    client = _jane_client(
        signup_pages={3: [[nova_signup(40, 12)], [nova_signup(41, 13)], [nova_signup(42, 14)]]},
        events={12: nova_event(12), 13: nova_event(13), 14: nova_event(14)},
    )

    result = await _orchestrator(store, client).run_batch(["jane@x.com"], CREDENTIALS)

    pages = [params["page"] for _, params in client.paths("/event-applications")]
    assert pages == [1, 2, 3]
    assert result.total_shifts == 3


async def test_pagination_stops_on_empty_page():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")
    client = _jane_client(
        signup_pages={3: [[nova_signup(40, 12)], [nova_signup(41, 13)]]},
        always_next_page=True,
    )

    await _orchestrator(store, client).run_batch(["jane@x.com"], CREDENTIALS)

    assert len(client.paths("/event-applications")) == 3


async def test_pagination_stops_at_page_ceiling():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")
    client = _jane_client(
        signup_pages={3: [[nova_signup(40 + i, 12)] for i in range(5)]},
        always_next_page=True,
    )

    await _orchestrator(store, client, config=MigrationConfig(max_signup_pages=2)).run_batch(
        ["jane@x.com"], CREDENTIALS
    )

    assert len(client.paths("/event-applications")) == 2


async def test_past_pending_applications_are_not_imported():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")
    client = _jane_client(
        signup_pages={3: [[nova_signup(40, 12, status="Pending", status_id=1)]]},
        events={12: nova_event(12, date=PAST_DATE)},
    )

    result = await _orchestrator(store, client).run_batch(["jane@x.com"], CREDENTIALS)

    user = result.user_results[0]
    assert user.outcome is UserOutcome.NO_HISTORY
    assert (user.shifts_found, user.signups_found) == (0, 0)
    assert result.users_with_history == 0
    assert telemetry.counter_value(telemetry.EVENTS_SKIPPED_TOTAL, reason="no_eligible_signups") == 1


async def test_dry_run_reads_but_never_creates():
    store = CountingStore()
    store.add_user("jane@x.com")
    client = _jane_client()

    result = await _orchestrator(store, client).run_batch(
        ["jane@x.com"], CREDENTIALS, options=ImportOptions(dry_run=True)
    )

    assert store.creates == []
    assert store.shifts == {} and store.signups == {} and store.shift_types == {}
    assert result.total_shifts == 2
    assert result.total_signups == 3


async def test_include_signups_false_writes_shifts_only():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")

    result = await _orchestrator(store, _jane_client()).run_batch(
        ["jane@x.com"], CREDENTIALS, options=ImportOptions(include_signups=False)
    )

    assert len(store.shifts) == 2
    assert store.signups == {}
    assert result.total_signups == 0


async def test_connect_failure_aborts_batch():
    async def _refuse(credentials):
        raise LegacyAuthError("Nova login rejected: invalid credentials")

    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")
    orchestrator = HistoryImportOrchestrator(store, config=MigrationConfig(), client_factory=_refuse)

    result = await orchestrator.run_batch(["jane@x.com"], CREDENTIALS)

    assert result.success is False
    assert result.errors == ["Batch import failed: Nova login rejected: invalid credentials"]
    assert result.users_processed == 0


async def test_one_failing_user_does_not_stop_the_batch():
    class BrokenLookupStore(InMemoryMigrationStore):
        async def find_user_by_email(self, email):
            if email == "broken@x.com":
                raise RuntimeError("connection reset")
            return await super().find_user_by_email(email)

    store = BrokenLookupStore()
    store.add_user("jane@x.com")
    client = _jane_client()

    result = await _orchestrator(store, client).run_batch(["broken@x.com", "jane@x.com"], CREDENTIALS)

    assert result.success is True
    assert [u.outcome for u in result.user_results] == [UserOutcome.FAILED, UserOutcome.IMPORTED]
    assert result.errors == ["broken@x.com: connection reset"]
    assert result.total_shifts == 2


async def test_auth_rejected_event_is_skipped_and_later_events_import():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")
    client = _jane_client(
        events={12: LegacyAuthError("Nova redirected to login; session expired"), 13: nova_event(13)}
    )

    result = await _orchestrator(store, client).run_batch(["jane@x.com"], CREDENTIALS)

    user = result.user_results[0]
    assert user.outcome is UserOutcome.IMPORTED
    assert user.success is True
    assert user.error is None
    assert (user.shifts_imported, user.signups_imported) == (1, 1)
    assert client.paths("/events/13")
    assert store.shifts_for_event("Nova ID: 12") == []
    assert len(store.shifts_for_event("Nova ID: 13")) == 1
    assert telemetry.counter_value(telemetry.EVENTS_SKIPPED_TOTAL, reason="auth_rejected") == 1


def _shared_event_client() -> FakeNovaClient:
    """Jane and Mark both applied to Nova event 12."""
    return FakeNovaClient(
        users=[nova_user(3, "jane@x.com"), nova_user(5, "mark@x.com", name="Mark Roe")],
        signup_pages={3: [[nova_signup(40, 12)]], 5: [[nova_signup(50, 12)]]},
        events={12: nova_event(12)},
    )


async def test_users_sharing_an_event_share_one_shift():
    store = InMemoryMigrationStore()
    jane = store.add_user("jane@x.com")
    mark = store.add_user("mark@x.com")

    result = await _orchestrator(store, _shared_event_client()).run_batch(
        ["jane@x.com", "mark@x.com"], CREDENTIALS
    )

    first, second = result.user_results
    assert (first.shifts_imported, first.signups_imported) == (1, 1)
    assert (second.shifts_imported, second.signups_imported) == (0, 1)
    assert result.users_with_history == 2
    assert len(store.shifts) == 1
    shift_id = next(iter(store.shifts))
    assert set(store.signups) == {(jane["id"], shift_id), (mark["id"], shift_id)}


async def test_later_run_for_another_user_reuses_stored_shift():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")
    mark = store.add_user("mark@x.com")
    client = _shared_event_client()

    await _orchestrator(store, client).run_batch(["jane@x.com"], CREDENTIALS)
    result = await _orchestrator(store, client).run_batch(["mark@x.com"], CREDENTIALS)

    user = result.user_results[0]
    assert (user.shifts_found, user.shifts_imported, user.signups_imported) == (1, 0, 1)
    assert len(store.shifts) == 1
    shift_id = next(iter(store.shifts))
    assert (mark["id"], shift_id) in store.signups


async def test_dry_run_reuses_placeholder_shift_across_users():
    store = CountingStore()
    store.add_user("jane@x.com")
    store.add_user("mark@x.com")

    result = await _orchestrator(store, _shared_event_client()).run_batch(
        ["jane@x.com", "mark@x.com"], CREDENTIALS, options=ImportOptions(dry_run=True)
    )

    assert store.creates == []
    first, second = result.user_results
    assert (first.shifts_imported, second.shifts_imported) == (1, 0)
    assert (first.signups_imported, second.signups_imported) == (1, 1)
    assert [s["notes"] for s in first.details["shifts"]] == ["Nova ID: 12"]
    assert second.details["shifts"] == []
    assert result.total_shifts == 1


async def test_batch_deduplicates_and_normalizes_emails():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")

    result = await _orchestrator(store, _jane_client()).run_batch(
        [" Jane@X.com", "jane@x.com", ""], CREDENTIALS
    )

    assert result.total_users == 1
    assert [u.email for u in result.user_results] == ["jane@x.com"]


# --- Single user ------------------------------------------------------------------


async def test_single_user_is_created_from_nova():
    store = InMemoryMigrationStore()
    client = _jane_client(users=[nova_user(3, "jane@x.com", phone="555-1234")])

    result = await _orchestrator(store, client).import_user("jane@x.com", CREDENTIALS)

    assert result.success is True
    assert result.user_found is True
    assert result.user_created is True
    assert result.user_already_exists is False
    assert (result.shifts_imported, result.signups_imported) == (2, 3)
    created = store.users["jane@x.com"]
    assert created["is_migrated"] is True
    assert created["phone"] == "555-1234"
    assert "details" not in result.to_dict()


async def test_single_user_existing_locally_is_reused():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")

    result = await _orchestrator(store, _jane_client()).import_user("jane@x.com", CREDENTIALS)

    assert result.user_already_exists is True
    assert result.user_created is False
    assert len(store.users) == 1


async def test_single_user_dry_run_returns_details():
    store = CountingStore()

    result = await _orchestrator(store, _jane_client()).import_user(
        "jane@x.com", CREDENTIALS, options=ImportOptions(dry_run=True)
    )

    assert store.creates == []
    assert result.user_created is False
    body = result.to_dict()
    assert body["details"]["userData"]["id"] == 3
    assert len(body["details"]["shifts"]) == 2
    assert len(body["details"]["signups"]) == 3
    assert body["details"]["shifts"][0]["notes"] == "Nova ID: 12"


async def test_single_user_include_shifts_false_skips_history():
    store = InMemoryMigrationStore()
    client = _jane_client()

    result = await _orchestrator(store, client).import_user(
        "jane@x.com", CREDENTIALS, options=ImportOptions(include_shifts=False)
    )

    assert result.user_created is True
    assert result.outcome is UserOutcome.NO_HISTORY
    assert client.paths("/event-applications") == []


async def test_single_user_not_in_nova():
    store = InMemoryMigrationStore()
    result = await _orchestrator(store, _jane_client(users=[])).import_user("jane@x.com", CREDENTIALS)

    assert result.success is True
    assert result.user_found is False
    assert result.errors == ["User not found in Nova"]
    assert store.users == {}


async def test_single_user_connect_failure():
    async def _refuse(credentials):
        raise LegacyAuthError("Nova login rejected (422)")

    orchestrator = HistoryImportOrchestrator(
        InMemoryMigrationStore(), config=MigrationConfig(), client_factory=_refuse
    )
    result = await orchestrator.import_user("jane@x.com", CREDENTIALS)

    assert result.success is False
    assert result.errors == ["Nova scraping failed: Nova login rejected (422)"]


# --- Progress ---------------------------------------------------------------------


async def test_progress_events_bracket_the_run():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")
    sink = RecordingSink()

    await _orchestrator(store, _jane_client(), progress=sink).run_batch(
        ["jane@x.com"], CREDENTIALS, session_id="s1"
    )

    assert sink.events[0]["stage"] == "connecting"
    assert sink.events[-1]["type"] == "complete"
    assert all(e["sessionId"] == "s1" for e in sink.events)
    assert any(e.get("currentUser") == "jane@x.com" for e in sink.events)


async def test_no_session_id_publishes_nothing():
    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")
    sink = RecordingSink()

    await _orchestrator(store, _jane_client(), progress=sink).run_batch(["jane@x.com"], CREDENTIALS)

    assert sink.events == []


async def test_broken_progress_sink_does_not_affect_import():
    class BrokenSink:
        def publish(self, session_id, event):
            raise RuntimeError("sink down")

    store = InMemoryMigrationStore()
    store.add_user("jane@x.com")

    result = await _orchestrator(store, _jane_client(), progress=BrokenSink()).run_batch(
        ["jane@x.com"], CREDENTIALS, session_id="s1"
    )

    assert result.total_shifts == 2


@pytest.mark.parametrize(
    "index,total,expected",
    [(1, 3, True), (3, 5, True), (1, 12, False), (5, 12, True), (11, 12, False), (12, 12, True)],
)
def test_should_report_event(index, total, expected):
    assert should_report_event(index, total) is expected
