"""
Ports for the history import: the local store, the Nova client and the
progress sink. Adapters live in `repo_db`, `repo_memory`, `legacy_client`
and `progress`; tests pass hand-written fakes.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol

from .models import ShiftFields, SignupFields, UserFields
from .resources import LegacyPage


class MigrationStore(Protocol):
    """Find-or-create surface over users, shift types, shifts and signups.

    Rows are plain dicts with at least an ``id`` key (string).
    """

    async def find_user_by_email(self, email: str) -> Optional[dict]:
        ...

    async def create_user(self, fields: UserFields) -> dict:
        ...

    async def find_shift_type_by_name(self, name: str) -> Optional[dict]:
        ...

    async def create_shift_type(self, name: str, description: str) -> dict:
        ...

    async def find_shift_by_notes_contains(self, token: str) -> Optional[dict]:
        """Return the shift whose notes carry `token` as a whole reference."""
        ...

    async def create_shift(self, shift_type_id: str, fields: ShiftFields) -> dict:
        ...

    async def find_signup_by_user_and_shift(self, user_id: str, shift_id: str) -> Optional[dict]:
        ...

    async def create_signup(self, fields: SignupFields) -> dict:
        ...


class LegacyClientProtocol(Protocol):
    async def request(self, path: str, params: Optional[Mapping[str, Any]] = None) -> LegacyPage:
        ...

    async def aclose(self) -> None:
        ...


class ProgressSink(Protocol):
    def publish(self, session_id: str, event: Mapping[str, Any]) -> bool:
        ...


class NullProgressSink:
    """Sink used when no session id was supplied."""

    def publish(self, session_id: str, event: Mapping[str, Any]) -> bool:
        return False


__all__ = ["MigrationStore", "LegacyClientProtocol", "ProgressSink", "NullProgressSink"]
