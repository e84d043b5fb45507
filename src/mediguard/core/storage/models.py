"""Data models for the MediGuard persistence layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["patient", "caregiver", "admin"]

ROLES: tuple[str, ...] = ("patient", "caregiver", "admin")


@dataclass(frozen=True)
class Caller:
    """Explicit identity of whoever invokes a core operation.

    Supplied by the identity/session layer; the core never reads ambient
    identity state.
    """

    id: str
    role: str = "patient"

    @property
    def is_caregiver(self) -> bool:
        return self.role in ("caregiver", "admin")


@dataclass
class UserRecord:
    """Role directory entry for a user known to the identity layer."""

    user_id: str
    display_name: str = ""
    role: str = "patient"
    created_at: str = ""
    updated_at: str = ""


@dataclass
class PillRecord:
    """A registered medication and its reference feature vector.

    Immutable once created except for metadata.
    """

    pill_id: str
    display_name: str
    owner_id: str | None
    feature_vector: list[float]
    registration_confidence: float = 1.0
    feature_count: int = 0
    created_at: str = ""

    def summary(self) -> dict[str, Any]:
        """Catalog view without the feature vector."""
        return {
            "pill_id": self.pill_id,
            "display_name": self.display_name,
            "owner_id": self.owner_id,
            "feature_count": self.feature_count,
            "registration_confidence": self.registration_confidence,
            "created_at": self.created_at,
        }


@dataclass
class ScheduleRecord:
    """A time-of-day reminder for one patient and one expected medication."""

    schedule_id: str
    patient_id: str
    time_of_day: str  # HH:MM, 24h
    expected_pill_id: str | None = None
    expected_medication_name: str = ""
    days_of_week: frozenset[int] = field(default_factory=frozenset)  # 0=Sunday; empty = every day
    active: bool = True
    last_fired_minute: str | None = None  # local 'YYYY-MM-DDTHH:MM' of the last fire
    created_by: str | None = None
    created_at: str = ""

    def runs_on(self, weekday: int) -> bool:
        return not self.days_of_week or weekday in self.days_of_week

    def as_dict(self) -> dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "patient_id": self.patient_id,
            "expected_pill_id": self.expected_pill_id,
            "expected_medication_name": self.expected_medication_name,
            "time_of_day": self.time_of_day,
            "days_of_week": sorted(self.days_of_week),
            "active": self.active,
            "last_fired_minute": self.last_fired_minute,
            "created_by": self.created_by,
            "created_at": self.created_at,
        }


@dataclass
class NotificationTarget:
    """A push-capable device registered for a user.

    ``(user_id, device_token)`` is unique.
    """

    user_id: str
    device_token: str
    platform_hint: str = ""
    device_info: dict[str, Any] | None = None  # stored encrypted at rest
    id: str = ""
    created_at: str = ""
    updated_at: str = ""
