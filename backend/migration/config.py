"""
Configuration for the Nova history import.

Intent:
    One place that reads the environment for Nova paths, page sizes and the
    pagination ceiling, so the web layer, the CLI and tests agree on defaults.
"""
from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Optional


@dataclass(frozen=True)
class MigrationConfig:
    api_prefix: str = "/nova-api"
    login_path: str = "/nova/login"
    signups_page_size: int = 50
    user_search_page_size: int = 100
    max_signup_pages: int = 500
    allow_private_hosts: bool = False
    database_url: Optional[str] = None


def _int_env(name: str, default: int, *, upper: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}")
    if value <= 0 or value > upper:
        raise ValueError(f"{name} out of range (1..{upper}), got: {value}")
    return value


def _path_env(name: str, default: str) -> str:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    if not raw.startswith("/"):
        raise ValueError(f"{name} must start with '/', got: {raw!r}")
    return raw.rstrip("/") or default


def _flag_env(name: str) -> bool:
    return (os.getenv(name, "false") or "").strip().lower() in ("1", "true", "yes")


def load_migration_config() -> MigrationConfig:
    """Parse and validate migration settings from environment variables.

    Behavior:
        - Page sizes accept 1..200, the page ceiling 1..10000.
        - `MIGRATION_DATABASE_URL` wins over `DATABASE_URL`; neither means the
          caller falls back to the in-memory store.
    """
    return MigrationConfig(
        api_prefix=_path_env("NOVA_API_PREFIX", "/nova-api"),
        login_path=_path_env("NOVA_LOGIN_PATH", "/nova/login"),
        signups_page_size=_int_env("NOVA_SIGNUPS_PAGE_SIZE", 50, upper=200),
        user_search_page_size=_int_env("NOVA_USER_SEARCH_PAGE_SIZE", 100, upper=200),
        max_signup_pages=_int_env("NOVA_MAX_SIGNUP_PAGES", 500, upper=10000),
        allow_private_hosts=_flag_env("NOVA_ALLOW_PRIVATE_HOSTS"),
        database_url=(os.getenv("MIGRATION_DATABASE_URL") or os.getenv("DATABASE_URL") or None),
    )


__all__ = ["MigrationConfig", "load_migration_config"]
