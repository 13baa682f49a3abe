"""
Decide which legacy event applications become local signups.

Why:
    Nova keeps every application a volunteer ever submitted, including
    declined, withdrawn and stale pending ones. Only signups that still mean
    something locally are imported. The same categorisation feeds the
    transformer's status mapping so filtering and mapping never disagree.

Behavior:
    - A recognised status name wins over the numeric id.
    - Unknown status or missing event date: excluded (fail closed).
    - Past events keep confirmed signups only; upcoming events (today
      included) also keep pending and waitlisted ones.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class StatusCategory(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    WAITLISTED = "waitlisted"
    CANCELED = "canceled"
    DECLINED = "declined"
    NO_SHOW = "no_show"


# Nova's seeded application_statuses table
STATUS_IDS: dict[int, StatusCategory] = {
    1: StatusCategory.PENDING,
    2: StatusCategory.CONFIRMED,
    3: StatusCategory.DECLINED,
    4: StatusCategory.CANCELED,
    5: StatusCategory.NO_SHOW,
    6: StatusCategory.WAITLISTED,
    7: StatusCategory.CONFIRMED,
}

STATUS_NAMES: dict[str, StatusCategory] = {
    "approved": StatusCategory.CONFIRMED,
    "accepted": StatusCategory.CONFIRMED,
    "confirmed": StatusCategory.CONFIRMED,
    "attended": StatusCategory.CONFIRMED,
    "completed": StatusCategory.CONFIRMED,
    "pending": StatusCategory.PENDING,
    "applied": StatusCategory.PENDING,
    "new": StatusCategory.PENDING,
    "awaiting approval": StatusCategory.PENDING,
    "waitlisted": StatusCategory.WAITLISTED,
    "waitlist": StatusCategory.WAITLISTED,
    "wait listed": StatusCategory.WAITLISTED,
    "canceled": StatusCategory.CANCELED,
    "cancelled": StatusCategory.CANCELED,
    "withdrawn": StatusCategory.CANCELED,
    "declined": StatusCategory.DECLINED,
    "rejected": StatusCategory.DECLINED,
    "denied": StatusCategory.DECLINED,
    "no show": StatusCategory.NO_SHOW,
    "no-show": StatusCategory.NO_SHOW,
    "noshow": StatusCategory.NO_SHOW,
}

PAST_EVENT_CATEGORIES = frozenset({StatusCategory.CONFIRMED})
UPCOMING_EVENT_CATEGORIES = frozenset(
    {StatusCategory.CONFIRMED, StatusCategory.PENDING, StatusCategory.WAITLISTED}
)

_WS_RE = re.compile(r"[\s_]+")


def _normalize_name(name: str) -> str:
    return _WS_RE.sub(" ", name.strip().lower())


def categorize_status(
    status_id: Optional[int] = None, status_name: Optional[str] = None
) -> Optional[StatusCategory]:
    """Resolve a Nova application status to a category, or None if unknown."""
    if isinstance(status_name, str) and status_name.strip():
        category = STATUS_NAMES.get(_normalize_name(status_name))
        if category is not None:
            return category
    if isinstance(status_id, int) and not isinstance(status_id, bool):
        return STATUS_IDS.get(status_id)
    return None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def should_import_signup(
    event_date: Optional[datetime],
    status_id: Optional[int] = None,
    status_name: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> bool:
    if not isinstance(event_date, datetime):
        return False
    category = categorize_status(status_id, status_name)
    if category is None:
        return False
    current = _as_utc(now) if isinstance(now, datetime) else datetime.now(timezone.utc)
    event_day = _as_utc(event_date).date()
    if event_day < current.date():
        return category in PAST_EVENT_CATEGORIES
    return category in UPCOMING_EVENT_CATEGORIES


__all__ = [
    "StatusCategory",
    "STATUS_IDS",
    "STATUS_NAMES",
    "categorize_status",
    "should_import_signup",
]
