"""
Startup security checks for the volunteer portal backend.

Why: The history import holds Nova admin credentials in memory and writes
volunteer records. Production must not start with an unencrypted database
connection or with the SSRF guard for Nova base URLs switched off.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Checks (prod/stage only):
    - Migration config values must parse (page sizes, paths).
    - The effective database DSN (MIGRATION_DATABASE_URL, else DATABASE_URL)
      must be set and must not disable TLS.
    - NOVA_ALLOW_PRIVATE_HOSTS must not be enabled.
    """

    env = os.getenv("PORTAL_ENV", "dev")
    if not _is_prod_like(env):
        return  # dev/test remain permissive

    # 1) Invalid migration settings should fail at boot, not mid-import
    from backend.migration.config import load_migration_config

    try:
        migration_cfg = load_migration_config()
    except ValueError as exc:
        raise SystemExit(f"Refusing to start: {exc}")

    # 2) Postgres: required, and TLS must not be disabled explicitly
    dsn = (migration_cfg.database_url or "").strip()
    if not dsn:
        raise SystemExit(
            "Refusing to start: neither MIGRATION_DATABASE_URL nor DATABASE_URL is set in production."
        )
    if "sslmode=disable" in dsn:
        raise SystemExit(
            "Refusing to start: database URL contains sslmode=disable in production. Use sslmode=require or verify TLS."
        )

    # 3) Nova SSRF guard stays on
    if migration_cfg.allow_private_hosts:
        raise SystemExit(
            "Refusing to start: NOVA_ALLOW_PRIVATE_HOSTS must be false in production/staging."
        )
