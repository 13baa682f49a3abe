"""
Map Nova resources onto local shift, signup and user fields.

Why:
    Nova events carry no shift type and often no end time; applications carry
    Nova status ids. This module turns both into the local vocabulary without
    touching the store, so the orchestrator can run it in dry runs as well.

Behavior:
    - Shift type: most frequent position name among the event's signups,
      ties go to the first name seen, "General Volunteering" without one.
    - Times: event date plus `start_time`; end from `end_time` or start + 3h.
    - Notes end with the back-reference token ``Nova ID: {eventId}`` that
      marks a shift as migrated from that event.
"""
from __future__ import annotations

import logging
import re
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

from .models import LocalSignupStatus, ShiftFields, SignupFields, SignupPosition, UserFields
from .ports import LegacyClientProtocol
from .resources import LegacyEvent, LegacySignup, LegacyUser
from .status_filter import StatusCategory, categorize_status


logger = logging.getLogger("volunteer_portal.migration")

DEFAULT_SHIFT_TYPE = "General Volunteering"
DEFAULT_SHIFT_DURATION = timedelta(hours=3)
NOTES_SEPARATOR = " • "

_STATUS_MAP = {
    StatusCategory.CONFIRMED: LocalSignupStatus.CONFIRMED,
    StatusCategory.PENDING: LocalSignupStatus.PENDING,
    StatusCategory.WAITLISTED: LocalSignupStatus.WAITLISTED,
    StatusCategory.CANCELED: LocalSignupStatus.CANCELED,
    StatusCategory.DECLINED: LocalSignupStatus.CANCELED,
    StatusCategory.NO_SHOW: LocalSignupStatus.NO_SHOW,
}


def legacy_reference(event_id: int) -> str:
    return f"Nova ID: {event_id}"


def build_shift_notes(legacy_note: Optional[str], event_id: int) -> str:
    parts = []
    if legacy_note and legacy_note.strip():
        parts.append(legacy_note.strip())
    parts.append(legacy_reference(event_id))
    return NOTES_SEPARATOR.join(parts)


def notes_contain_reference(notes: Optional[str], token: str) -> bool:
    """True when `token` appears in `notes` as a whole reference.

    ``Nova ID: 12`` must not match notes that reference ``Nova ID: 123``.
    """
    if not notes or not token:
        return False
    pattern = r"(?<!\w)" + re.escape(token) + r"(?!\d)"
    return re.search(pattern, notes) is not None


def _humanize_local_part(email: str) -> str:
    local = (email or "").split("@", 1)[0]
    words = [w for w in re.split(r"[._+\-]+", local) if w]
    return " ".join(w.capitalize() for w in words) or local or "Volunteer"


class HistoryTransformer:
    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # --- Events -------------------------------------------------------------

    def shift_type_name(self, signups: Sequence[SignupPosition]) -> str:
        names = [
            s.position_name.strip()
            for s in signups
            if isinstance(s.position_name, str) and s.position_name.strip()
        ]
        if not names:
            return DEFAULT_SHIFT_TYPE
        # Counter keeps first-seen order, so max() resolves ties to the earliest name
        counts = Counter(names)
        return max(counts, key=lambda name: counts[name])

    def transform_event(self, event: LegacyEvent, signups: Sequence[SignupPosition]) -> ShiftFields:
        if event.date is None:
            raise ValueError(f"event {event.id} has no date")
        tz = event.date.tzinfo or timezone.utc
        if event.start_time is not None:
            start = datetime.combine(event.date.date(), event.start_time, tzinfo=tz)
        else:
            start = event.date
        if event.end_time is not None:
            end = datetime.combine(start.date(), event.end_time, tzinfo=tz)
            if end <= start:
                end += timedelta(days=1)
        else:
            end = start + DEFAULT_SHIFT_DURATION
        capacity = event.capacity if event.capacity and event.capacity > 0 else max(1, len(signups))
        return ShiftFields(
            shift_type_name=self.shift_type_name(signups),
            start=start,
            end=end,
            location=event.location,
            capacity=capacity,
            notes=build_shift_notes(event.notes, event.id),
            legacy_event_id=event.id,
        )

    # --- Signups ------------------------------------------------------------

    def transform_signup(self, signup: LegacySignup, user_id: str, shift_id: str) -> SignupFields:
        category = categorize_status(signup.status_id, signup.status_name)
        status = _STATUS_MAP.get(category, LocalSignupStatus.PENDING)
        now = self._clock()
        created_at = signup.created_at or now
        updated_at = signup.updated_at or created_at
        return SignupFields(
            user_id=user_id,
            shift_id=shift_id,
            status=status,
            created_at=created_at,
            updated_at=updated_at,
            canceled_at=updated_at if status is LocalSignupStatus.CANCELED else None,
        )

    # --- Users --------------------------------------------------------------

    async def transform_user(
        self,
        user: LegacyUser,
        client: Optional[LegacyClientProtocol] = None,
        *,
        email: Optional[str] = None,
    ) -> UserFields:
        """Build local user fields, fetching the full Nova record when the
        search projection lacks name fields."""
        source = user
        if client is not None and not (user.name or user.first_name or user.last_name):
            try:
                page = await client.request(f"/users/{user.id}")
                if page.resource is not None:
                    source = LegacyUser.from_resource(page.resource)
            except Exception as exc:
                logger.warning("Nova user lookup failed for id=%s: %s", user.id, exc.__class__.__name__)
        resolved_email = (email or source.email or user.email or "").strip().lower()
        if not resolved_email:
            raise ValueError(f"legacy user {user.id} has no email")
        full_name = " ".join(p for p in (source.first_name, source.last_name) if p)
        name = source.name or full_name or _humanize_local_part(resolved_email)
        return UserFields(
            email=resolved_email,
            name=name,
            first_name=source.first_name,
            last_name=source.last_name,
            phone=source.phone or user.phone,
            date_of_birth=source.date_of_birth or user.date_of_birth,
            emergency_contact_name=source.emergency_contact_name,
            emergency_contact_phone=source.emergency_contact_phone,
        )


__all__ = [
    "DEFAULT_SHIFT_TYPE",
    "HistoryTransformer",
    "legacy_reference",
    "build_shift_notes",
    "notes_contain_reference",
]
