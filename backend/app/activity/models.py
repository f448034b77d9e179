"""
models.py — Domain records for monitored activities.

Defines:
    • ActivityStatus    — lifecycle states
    • Activity          — one monitored session ("dead man's switch")
    • CheckIn           — append-only location sample
    • UserProfile       — registered participant defaults
    • DeferredCheckTask — scheduler payload

═══════════════════════════════════════════════════════════════════════════
ACTIVITY LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

              start
                │
                ▼
         ┌────────────┐  deadline missed  ┌────────────┐
         │   ACTIVE   │ ────────────────▶ │  ALARMED   │
         │            │ ◀──────────────── │            │
         └─────┬──────┘     heartbeat     └─────┬──────┘
               │ end / new start                │ end
               ▼                                ▼
         ┌──────────────────────────────────────────┐
         │                 FINISHED                  │  (absorbing)
         └──────────────────────────────────────────┘

The deadline is always ``reference_time + interval + tolerance`` where the
reference is the start time or the latest heartbeat.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ActivityStatus(str, Enum):
    ACTIVE   = "active"
    SAFE     = "safe"      # declared, not reachable by any transition
    ALARMED  = "alarmed"
    FINISHED = "finished"


# Statuses from which a heartbeat is accepted
HEARTBEAT_STATUSES = frozenset({ActivityStatus.ACTIVE, ActivityStatus.ALARMED})


@dataclass
class Activity:
    """
    A monitored session.

    Attributes
    ----------
    phone_number : str
        Participant phone; also the rate-limit and "current activity" key.
    emergency_contact_phone : str
        Primary contact, always required.
    check_in_interval_minutes, tolerance_minutes : int
        Heartbeat cadence and grace period; both feed the deadline.
    warning_minutes : int
        Soft-warning lead time. Persisted only.
    next_check_in_deadline : datetime
        Absolute UTC instant after which the activity counts as lost.
    """
    phone_number: str
    activity_name: str
    emergency_contact_phone: str
    check_in_interval_minutes: int
    next_check_in_deadline: datetime
    id: Optional[str] = None
    user_name: Optional[str] = None
    language: str = "zh"
    emergency_contact_email: Optional[str] = None
    secondary_contact_phone: Optional[str] = None
    secondary_contact_email: Optional[str] = None
    description: Optional[str] = None
    emergency_instructions: Optional[str] = None
    tolerance_minutes: int = 0
    warning_minutes: int = 5
    is_warned: bool = False
    status: ActivityStatus = ActivityStatus.ACTIVE
    last_latitude: Optional[float] = None
    last_longitude: Optional[float] = None
    battery_level: Optional[int] = None
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def deadline_window(self) -> timedelta:
        return timedelta(minutes=self.check_in_interval_minutes + self.tolerance_minutes)

    def deadline_from(self, reference: datetime) -> datetime:
        """Deadline for a heartbeat (or start) observed at ``reference``."""
        return reference + self.deadline_window

    @property
    def display_name(self) -> str:
        return self.user_name or self.phone_number

    @property
    def has_location(self) -> bool:
        return self.last_latitude is not None and self.last_longitude is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "phone_number": self.phone_number,
            "user_name": self.user_name,
            "language": self.language,
            "activity_name": self.activity_name,
            "description": self.description,
            "emergency_instructions": self.emergency_instructions,
            "emergency_contact_phone": self.emergency_contact_phone,
            "emergency_contact_email": self.emergency_contact_email,
            "secondary_contact_phone": self.secondary_contact_phone,
            "secondary_contact_email": self.secondary_contact_email,
            "check_in_interval_minutes": self.check_in_interval_minutes,
            "tolerance_minutes": self.tolerance_minutes,
            "warning_minutes": self.warning_minutes,
            "is_warned": self.is_warned,
            "status": self.status.value,
            "next_check_in_deadline": self.next_check_in_deadline.isoformat(),
            "last_latitude": self.last_latitude,
            "last_longitude": self.last_longitude,
            "battery_level": self.battery_level,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class CheckIn:
    """A location sample reported with a heartbeat. Never mutated."""
    activity_id: str
    latitude: float
    longitude: float
    created_at: datetime = field(default_factory=utc_now)
    id: Optional[int] = None


@dataclass
class UserProfile:
    """Registered participant; supplies defaults when starting an activity."""
    phone_number: str
    id: Optional[str] = None
    default_contact_phone: Optional[str] = None
    default_contact_email: Optional[str] = None
    default_interval_minutes: int = 30
    default_warning_minutes: int = 5
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class DeferredCheckTask:
    """
    Payload of one delayed deadline check.

    ``deadline_snapshot`` is the deadline in effect at enqueue time. It is
    for logs only; the check always reloads the activity.
    """
    activity_id: str
    deadline_snapshot: datetime
    label: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activity_id": self.activity_id,
            "deadline_snapshot": self.deadline_snapshot.isoformat(),
            "label": self.label,
        }
