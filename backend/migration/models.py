"""
Value objects shared by the transformer, the orchestrator and the adapters.

Field dataclasses (`UserFields`, `ShiftFields`, `SignupFields`) describe rows
the migration wants to write; result dataclasses carry what happened and
render the camelCase JSON the admin UI reads.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class UserOutcome(str, Enum):
    IMPORTED = "imported"
    NO_HISTORY = "no_history"
    SKIPPED_NOT_FOUND_LOCALLY = "skipped_not_found_locally"
    SKIPPED_NOT_FOUND_REMOTELY = "skipped_not_found_remotely"
    FAILED = "failed"


class LocalSignupStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    PENDING = "PENDING"
    WAITLISTED = "WAITLISTED"
    CANCELED = "CANCELED"
    NO_SHOW = "NO_SHOW"


@dataclass(frozen=True)
class SignupPosition:
    position_name: Optional[str] = None


@dataclass(frozen=True)
class UserFields:
    email: str
    name: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[datetime] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    is_migrated: bool = True


@dataclass(frozen=True)
class ShiftFields:
    shift_type_name: str
    start: datetime
    end: datetime
    location: Optional[str]
    capacity: int
    notes: str
    legacy_event_id: int


@dataclass(frozen=True)
class SignupFields:
    user_id: str
    shift_id: str
    status: LocalSignupStatus
    created_at: datetime
    updated_at: datetime
    canceled_at: Optional[datetime] = None


@dataclass(frozen=True)
class LegacyCredentials:
    base_url: str
    email: str
    password: str

    @classmethod
    def from_mapping(cls, raw: Any) -> Optional["LegacyCredentials"]:
        """Build credentials from `{baseUrl, email, password}`; None if incomplete."""
        if not isinstance(raw, dict):
            return None
        values = [raw.get(k) for k in ("baseUrl", "email", "password")]
        if not all(isinstance(v, str) and v.strip() for v in values):
            return None
        base_url, email, password = values
        return cls(base_url=base_url.strip(), email=email.strip(), password=password)

    def __repr__(self) -> str:
        return f"LegacyCredentials(base_url={self.base_url!r}, email=***, password=***)"


@dataclass(frozen=True)
class ImportOptions:
    dry_run: bool = False
    include_shifts: bool = True
    include_signups: bool = True


@dataclass
class UserImportResult:
    email: str
    outcome: UserOutcome = UserOutcome.NO_HISTORY
    user_found: bool = False
    user_created: bool = False
    user_already_exists: bool = False
    legacy_user_id: Optional[int] = None
    shifts_found: int = 0
    signups_found: int = 0
    shifts_imported: int = 0
    signups_imported: int = 0
    error: Optional[str] = None
    event_errors: List[str] = field(default_factory=list)
    details: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.outcome in (UserOutcome.IMPORTED, UserOutcome.NO_HISTORY)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "success": self.success,
            "outcome": self.outcome.value,
            "novaUserId": self.legacy_user_id,
            "shiftsFound": self.shifts_found,
            "signupsFound": self.signups_found,
            "shiftsImported": self.shifts_imported,
            "signupsImported": self.signups_imported,
            "error": self.error,
            "eventErrors": list(self.event_errors),
        }


@dataclass
class BatchImportResult:
    success: bool = True
    total_users: int = 0
    users_processed: int = 0
    users_with_history: int = 0
    total_shifts: int = 0
    total_signups: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0
    user_results: List[UserImportResult] = field(default_factory=list)

    def add(self, result: UserImportResult) -> None:
        self.user_results.append(result)
        self.users_processed += 1
        if result.outcome is UserOutcome.IMPORTED:
            self.users_with_history += 1
        self.total_shifts += result.shifts_imported
        self.total_signups += result.signups_imported
        if result.error:
            self.errors.append(f"{result.email}: {result.error}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "totalUsers": self.total_users,
            "usersProcessed": self.users_processed,
            "usersWithHistory": self.users_with_history,
            "totalShifts": self.total_shifts,
            "totalSignups": self.total_signups,
            "errors": list(self.errors),
            "duration": self.duration_ms,
            "userResults": [r.to_dict() for r in self.user_results],
        }


@dataclass
class ScrapeUserResult:
    """Single-user import summary; `details` is only filled on dry runs."""

    success: bool = True
    user_found: bool = False
    user_created: bool = False
    user_already_exists: bool = False
    shifts_found: int = 0
    shifts_imported: int = 0
    signups_found: int = 0
    signups_imported: int = 0
    errors: List[str] = field(default_factory=list)
    outcome: Optional[UserOutcome] = None
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": self.success,
            "userFound": self.user_found,
            "userCreated": self.user_created,
            "userAlreadyExists": self.user_already_exists,
            "shiftsFound": self.shifts_found,
            "shiftsImported": self.shifts_imported,
            "signupsFound": self.signups_found,
            "signupsImported": self.signups_imported,
            "errors": list(self.errors),
            "outcome": self.outcome.value if self.outcome else None,
        }
        if self.details is not None:
            out["details"] = self.details
        return out


def fields_as_dict(value: Any) -> Dict[str, Any]:
    """Dataclass to JSON-friendly dict: datetimes as ISO strings, enums as values."""
    raw = asdict(value)
    for key, item in list(raw.items()):
        if isinstance(item, datetime):
            raw[key] = item.isoformat()
        elif isinstance(item, Enum):
            raw[key] = item.value
    return raw


__all__ = [
    "UserOutcome",
    "LocalSignupStatus",
    "SignupPosition",
    "UserFields",
    "ShiftFields",
    "SignupFields",
    "LegacyCredentials",
    "ImportOptions",
    "UserImportResult",
    "BatchImportResult",
    "ScrapeUserResult",
    "fields_as_dict",
]
