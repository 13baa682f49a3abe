"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors).
"""
import sys
from pathlib import Path
import pytest

# Ensure modules in backend/ and backend/tests are importable across tests
REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_DIR = REPO_ROOT / "backend"
TESTS_DIR = BACKEND_DIR / "tests"
for p in (str(REPO_ROOT), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)

from backend.migration import telemetry  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_env_toggles(monkeypatch: pytest.MonkeyPatch):
    """Start every test from dev defaults.

    Why:
        Shell leftovers (PORTAL_ENV=prod, private-host allowance, a database
        URL) change CSRF strictness, URL validation and the store the app
        builds, which would make the suite depend on whoever runs it. Live-DB
        tests read their DSN through `utils.db.require_db_or_skip()` instead.
    """
    for var in (
        "PORTAL_ENV",
        "PORTAL_TRUST_PROXY",
        "NOVA_API_PREFIX",
        "NOVA_LOGIN_PATH",
        "NOVA_SIGNUPS_PAGE_SIZE",
        "NOVA_USER_SEARCH_PAGE_SIZE",
        "NOVA_MAX_SIGNUP_PAGES",
        "NOVA_ALLOW_PRIVATE_HOSTS",
        "NOVA_BASE_URL",
        "NOVA_EMAIL",
        "NOVA_PASSWORD",
        "MIGRATION_DATABASE_URL",
        "DATABASE_URL",
    ):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(autouse=True)
def _reset_telemetry():
    """Counters are process-global; isolate them per test."""
    telemetry.reset_for_tests()
    yield
    telemetry.reset_for_tests()
