"""
In-memory migration store for development and tests.

Mirrors the uniqueness rules of the Postgres schema: users by lowercased
email, shift types by name, signups by (user_id, shift_id). Violations raise
`ValueError` the way a unique constraint would.
"""
from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .models import ShiftFields, SignupFields, UserFields
from .transformer import notes_contain_reference


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryMigrationStore:
    def __init__(self) -> None:
        self.users: Dict[str, Dict[str, Any]] = {}
        self.shift_types: Dict[str, Dict[str, Any]] = {}
        self.shifts: Dict[str, Dict[str, Any]] = {}
        self.signups: Dict[tuple[str, str], Dict[str, Any]] = {}

    # --- Users --------------------------------------------------------------

    def add_user(self, email: str, *, name: str = "", role: str = "VOLUNTEER") -> Dict[str, Any]:
        """Seed a local user (tests, CLI demos)."""
        key = email.strip().lower()
        row = {"id": str(uuid4()), "email": key, "name": name or key, "role": role, "is_migrated": False}
        self.users[key] = row
        return row

    async def find_user_by_email(self, email: str) -> Optional[dict]:
        return self.users.get((email or "").strip().lower())

    async def create_user(self, fields: UserFields) -> dict:
        key = fields.email.strip().lower()
        if key in self.users:
            raise ValueError("user_exists")
        row = {"id": str(uuid4()), "created_at": _now_iso(), **asdict(fields)}
        row["email"] = key
        self.users[key] = row
        return row

    # --- Shift types --------------------------------------------------------

    async def find_shift_type_by_name(self, name: str) -> Optional[dict]:
        return self.shift_types.get(name)

    async def create_shift_type(self, name: str, description: str) -> dict:
        if name in self.shift_types:
            raise ValueError("shift_type_exists")
        row = {"id": str(uuid4()), "name": name, "description": description}
        self.shift_types[name] = row
        return row

    # --- Shifts -------------------------------------------------------------

    async def find_shift_by_notes_contains(self, token: str) -> Optional[dict]:
        for shift in self.shifts.values():
            if notes_contain_reference(shift.get("notes"), token):
                return shift
        return None

    async def create_shift(self, shift_type_id: str, fields: ShiftFields) -> dict:
        row = {
            "id": str(uuid4()),
            "shift_type_id": shift_type_id,
            "start": fields.start,
            "end": fields.end,
            "location": fields.location,
            "capacity": fields.capacity,
            "notes": fields.notes,
        }
        self.shifts[row["id"]] = row
        return row

    # --- Signups ------------------------------------------------------------

    async def find_signup_by_user_and_shift(self, user_id: str, shift_id: str) -> Optional[dict]:
        return self.signups.get((user_id, shift_id))

    async def create_signup(self, fields: SignupFields) -> dict:
        key = (fields.user_id, fields.shift_id)
        if key in self.signups:
            raise ValueError("signup_exists")
        row = {"id": str(uuid4()), **asdict(fields)}
        row["status"] = fields.status.value
        self.signups[key] = row
        return row

    def shifts_for_event(self, token: str) -> List[dict]:
        return [s for s in self.shifts.values() if notes_contain_reference(s.get("notes"), token)]


__all__ = ["InMemoryMigrationStore"]
