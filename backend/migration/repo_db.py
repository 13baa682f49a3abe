"""
Postgres-backed migration store (psycopg3).

Design:
- Each call opens a short-lived connection; blocking psycopg calls run in
  the default executor so the import loop stays async.
- Returns plain dicts (`dict_row`) with ids rendered as text.
- Creates use ON CONFLICT so a concurrent import of the same rows returns
  the existing row instead of failing.

Schema:
    `SCHEMA_SQL` documents the columns the import relies on; `ensure_schema`
    applies it for local setups (`--ensure-schema` in the CLI).
"""
from __future__ import annotations

import asyncio
import functools
from typing import Any, Callable, Dict, Optional

try:
    import psycopg
    from psycopg.rows import dict_row
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional in some dev envs
    psycopg = None  # type: ignore
    dict_row = None  # type: ignore
    HAVE_PSYCOPG = False

from .models import ShiftFields, SignupFields, UserFields
from .transformer import notes_contain_reference


SCHEMA_SQL = """
create extension if not exists pgcrypto;

create table if not exists users (
    id uuid primary key default gen_random_uuid(),
    email text not null unique,
    name text,
    first_name text,
    last_name text,
    phone text,
    date_of_birth timestamptz,
    emergency_contact_name text,
    emergency_contact_phone text,
    role text not null default 'VOLUNTEER',
    is_migrated boolean not null default false,
    created_at timestamptz not null default now()
);

create table if not exists shift_types (
    id uuid primary key default gen_random_uuid(),
    name text not null unique,
    description text
);

create table if not exists shifts (
    id uuid primary key default gen_random_uuid(),
    shift_type_id uuid not null references shift_types(id),
    start_at timestamptz not null,
    end_at timestamptz not null,
    location text,
    capacity integer not null default 1,
    notes text,
    created_at timestamptz not null default now()
);

create table if not exists signups (
    id uuid primary key default gen_random_uuid(),
    user_id uuid not null references users(id),
    shift_id uuid not null references shifts(id),
    status text not null,
    created_at timestamptz not null default now(),
    updated_at timestamptz not null default now(),
    canceled_at timestamptz,
    unique (user_id, shift_id)
);
"""

_USER_COLUMNS = "id::text as id, email, name, role, is_migrated"
_SHIFT_COLUMNS = "id::text as id, shift_type_id::text as shift_type_id, start_at, end_at, location, capacity, notes"
_SIGNUP_COLUMNS = "id::text as id, user_id::text as user_id, shift_id::text as shift_id, status"


def ensure_schema(dsn: str) -> None:
    if not HAVE_PSYCOPG:
        raise RuntimeError("psycopg3 is required for ensure_schema")
    with psycopg.connect(dsn) as conn:  # type: ignore[union-attr]
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        conn.commit()


class DBMigrationStore:
    def __init__(self, dsn: str) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBMigrationStore")
        if not dsn:
            raise RuntimeError("Database DSN unavailable for DBMigrationStore")
        self._dsn = dsn

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    def _fetch_one(self, sql: str, params: tuple) -> Optional[Dict[str, Any]]:
        with psycopg.connect(self._dsn, row_factory=dict_row) as conn:  # type: ignore[union-attr]
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            conn.commit()
        return dict(row) if row else None

    # --- Users --------------------------------------------------------------

    async def find_user_by_email(self, email: str) -> Optional[dict]:
        sql = f"select {_USER_COLUMNS} from users where lower(email) = %s limit 1"
        return await self._run(self._fetch_one, sql, ((email or "").strip().lower(),))

    async def create_user(self, fields: UserFields) -> dict:
        sql = f"""
            insert into users (email, name, first_name, last_name, phone, date_of_birth,
                               emergency_contact_name, emergency_contact_phone, is_migrated)
            values (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            on conflict (email) do update set email = excluded.email
            returning {_USER_COLUMNS}
        """
        params = (
            fields.email.strip().lower(),
            fields.name,
            fields.first_name,
            fields.last_name,
            fields.phone,
            fields.date_of_birth,
            fields.emergency_contact_name,
            fields.emergency_contact_phone,
            fields.is_migrated,
        )
        return await self._run(self._fetch_one, sql, params)

    # --- Shift types --------------------------------------------------------

    async def find_shift_type_by_name(self, name: str) -> Optional[dict]:
        sql = "select id::text as id, name, description from shift_types where name = %s"
        return await self._run(self._fetch_one, sql, (name,))

    async def create_shift_type(self, name: str, description: str) -> dict:
        sql = """
            insert into shift_types (name, description) values (%s, %s)
            on conflict (name) do update set name = excluded.name
            returning id::text as id, name, description
        """
        return await self._run(self._fetch_one, sql, (name, description))

    # --- Shifts -------------------------------------------------------------

    def _find_shift_sync(self, token: str) -> Optional[Dict[str, Any]]:
        sql = f"select {_SHIFT_COLUMNS} from shifts where strpos(notes, %s) > 0 order by created_at"
        with psycopg.connect(self._dsn, row_factory=dict_row) as conn:  # type: ignore[union-attr]
            with conn.cursor() as cur:
                cur.execute(sql, (token,))
                rows = cur.fetchall()
        # strpos matches "Nova ID: 12" inside "Nova ID: 123"; keep whole references only
        for row in rows:
            if notes_contain_reference(row.get("notes"), token):
                return dict(row)
        return None

    async def find_shift_by_notes_contains(self, token: str) -> Optional[dict]:
        return await self._run(self._find_shift_sync, token)

    async def create_shift(self, shift_type_id: str, fields: ShiftFields) -> dict:
        sql = f"""
            insert into shifts (shift_type_id, start_at, end_at, location, capacity, notes)
            values (%s::uuid, %s, %s, %s, %s, %s)
            returning {_SHIFT_COLUMNS}
        """
        params = (shift_type_id, fields.start, fields.end, fields.location, fields.capacity, fields.notes)
        return await self._run(self._fetch_one, sql, params)

    # --- Signups ------------------------------------------------------------

    async def find_signup_by_user_and_shift(self, user_id: str, shift_id: str) -> Optional[dict]:
        sql = f"select {_SIGNUP_COLUMNS} from signups where user_id = %s::uuid and shift_id = %s::uuid"
        return await self._run(self._fetch_one, sql, (user_id, shift_id))

    async def create_signup(self, fields: SignupFields) -> dict:
        sql = f"""
            insert into signups (user_id, shift_id, status, created_at, updated_at, canceled_at)
            values (%s::uuid, %s::uuid, %s, %s, %s, %s)
            on conflict (user_id, shift_id) do update set status = signups.status
            returning {_SIGNUP_COLUMNS}
        """
        params = (
            fields.user_id,
            fields.shift_id,
            fields.status.value,
            fields.created_at,
            fields.updated_at,
            fields.canceled_at,
        )
        return await self._run(self._fetch_one, sql, params)


__all__ = ["DBMigrationStore", "SCHEMA_SQL", "ensure_schema", "HAVE_PSYCOPG"]
