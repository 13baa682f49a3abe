"""
Typed view over Laravel Nova resource envelopes.

Why:
    Nova returns every record as ``{"id": {"value": 7}, "fields": [...]}`` where
    each field is ``{"attribute", "value", "belongsToId"?}``. Scanning these
    arrays in every caller is error-prone, so the legacy client parses each
    envelope exactly once into a ``LegacyResource`` (attribute → FieldValue)
    and the migration code reads typed views (`LegacyUser`, `LegacySignup`,
    `LegacyEvent`) built on top of it.

Behavior:
    - Parsing never raises on odd payloads; a resource without a usable id is
      reported as ``None`` so callers can skip it.
    - Object-valued fields (Nova sometimes nests a display object) are kept as
      raw values but never surface through ``text()``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Mapping, Optional


@dataclass(frozen=True)
class FieldValue:
    value: Any
    belongs_to_id: Optional[int] = None


def _as_int(raw: Any) -> Optional[int]:
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        raw = raw.strip()
        if raw.isdigit():
            return int(raw)
    return None


def parse_datetime(raw: Any) -> Optional[datetime]:
    """Parse Nova date/datetime strings; naive values are taken as UTC."""
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, date):
        parsed = datetime.combine(raw, time.min)
    elif isinstance(raw, str) and raw.strip():
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            # Older Nova list views render day-first dates, e.g. "01/03/2024"
            try:
                parsed = datetime.strptime(text, "%d/%m/%Y")
            except ValueError:
                return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_time(raw: Any) -> Optional[time]:
    if isinstance(raw, time):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip().lower()
    for fmt in ("%H:%M:%S", "%H:%M", "%I:%M %p", "%I:%M%p", "%I%p"):
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    # Full datetimes in a time field: take the time portion
    parsed = parse_datetime(raw)
    return parsed.timetz().replace(tzinfo=None) if parsed else None


@dataclass(frozen=True)
class LegacyResource:
    id: int
    fields: Mapping[str, FieldValue] = field(default_factory=dict)

    def value(self, attribute: str) -> Any:
        fv = self.fields.get(attribute)
        return fv.value if fv else None

    def text(self, attribute: str) -> Optional[str]:
        """Scalar field value as trimmed text; objects/lists/empty yield None."""
        raw = self.value(attribute)
        if raw is None or isinstance(raw, (dict, list, bool)):
            return None
        text = str(raw).strip()
        return text or None

    def ref(self, attribute: str) -> Optional[int]:
        fv = self.fields.get(attribute)
        return fv.belongs_to_id if fv else None

    def number(self, attribute: str) -> Optional[int]:
        return _as_int(self.value(attribute))

    def datetime_value(self, attribute: str) -> Optional[datetime]:
        return parse_datetime(self.value(attribute))


def parse_resource(raw: Any) -> Optional[LegacyResource]:
    """Parse one Nova envelope; return None when the id is missing or malformed."""
    if not isinstance(raw, Mapping) or not raw:
        return None
    raw_id = raw.get("id")
    if isinstance(raw_id, Mapping):
        raw_id = raw_id.get("value")
    resource_id = _as_int(raw_id)
    if resource_id is None:
        return None
    fields: Dict[str, FieldValue] = {}
    for item in raw.get("fields") or []:
        if not isinstance(item, Mapping):
            continue
        attribute = item.get("attribute")
        if not isinstance(attribute, str) or not attribute:
            continue
        # First occurrence wins; Nova repeats attributes across panels
        if attribute in fields:
            continue
        fields[attribute] = FieldValue(
            value=item.get("value"),
            belongs_to_id=_as_int(item.get("belongsToId")),
        )
    return LegacyResource(id=resource_id, fields=fields)


@dataclass(frozen=True)
class LegacyPage:
    """One Nova API response: list resources, a single resource, or both empty."""

    resources: List[LegacyResource] = field(default_factory=list)
    resource: Optional[LegacyResource] = None
    next_page_url: Optional[str] = None
    malformed: int = 0


def parse_page(payload: Any) -> LegacyPage:
    if not isinstance(payload, Mapping):
        return LegacyPage()
    resources: List[LegacyResource] = []
    malformed = 0
    raw_resources = payload.get("resources")
    if isinstance(raw_resources, list):
        for raw in raw_resources:
            parsed = parse_resource(raw)
            if parsed is None:
                malformed += 1
                continue
            resources.append(parsed)
    resource = parse_resource(payload.get("resource"))
    next_url = payload.get("next_page_url")
    return LegacyPage(
        resources=resources,
        resource=resource,
        next_page_url=next_url if isinstance(next_url, str) and next_url else None,
        malformed=malformed,
    )


# --- Typed views -------------------------------------------------------------


@dataclass(frozen=True)
class LegacyUser:
    id: int
    email: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    name: Optional[str]
    phone: Optional[str]
    date_of_birth: Optional[datetime]
    emergency_contact_name: Optional[str]
    emergency_contact_phone: Optional[str]
    resource: LegacyResource

    @classmethod
    def from_resource(cls, res: LegacyResource) -> "LegacyUser":
        return cls(
            id=res.id,
            email=res.text("email"),
            first_name=res.text("first_name") or res.text("firstName"),
            last_name=res.text("last_name") or res.text("lastName"),
            name=res.text("name"),
            phone=res.text("phone") or res.text("mobile"),
            date_of_birth=res.datetime_value("date_of_birth") or res.datetime_value("dob"),
            emergency_contact_name=res.text("emergency_contact_name"),
            emergency_contact_phone=res.text("emergency_contact_phone"),
            resource=res,
        )

    def matches_email(self, email: str) -> bool:
        return bool(self.email) and self.email.lower() == (email or "").strip().lower()


@dataclass(frozen=True)
class LegacySignup:
    id: int
    event_id: Optional[int]
    event_name: Optional[str]
    position_id: Optional[int]
    position_name: Optional[str]
    status_id: Optional[int]
    status_name: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_resource(cls, res: LegacyResource) -> "LegacySignup":
        return cls(
            id=res.id,
            event_id=res.ref("event"),
            event_name=res.text("event"),
            position_id=res.ref("position"),
            position_name=res.text("position"),
            status_id=res.ref("applicationStatus"),
            status_name=res.text("applicationStatus"),
            created_at=res.datetime_value("created_at"),
            updated_at=res.datetime_value("updated_at"),
        )

    def as_details(self) -> dict:
        return {
            "id": self.id,
            "eventId": self.event_id,
            "eventName": self.event_name,
            "positionId": self.position_id,
            "positionName": self.position_name,
            "statusId": self.status_id,
            "statusName": self.status_name,
        }


@dataclass(frozen=True)
class LegacyEvent:
    id: int
    name: Optional[str]
    date: Optional[datetime]
    start_time: Optional[time]
    end_time: Optional[time]
    location: Optional[str]
    capacity: Optional[int]
    notes: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_resource(cls, res: LegacyResource) -> "LegacyEvent":
        return cls(
            id=res.id,
            name=res.text("name") or res.text("title"),
            date=res.datetime_value("date"),
            start_time=parse_time(res.value("start_time")),
            end_time=parse_time(res.value("end_time")),
            location=res.text("location"),
            capacity=res.number("capacity") or res.number("volunteers_needed"),
            notes=res.text("notes") or res.text("description"),
            created_at=res.datetime_value("created_at"),
            updated_at=res.datetime_value("updated_at"),
        )

    def as_details(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "date": self.date.isoformat() if self.date else None,
            "location": self.location,
        }


__all__ = [
    "FieldValue",
    "LegacyResource",
    "LegacyPage",
    "LegacyUser",
    "LegacySignup",
    "LegacyEvent",
    "parse_resource",
    "parse_page",
    "parse_datetime",
    "parse_time",
]
