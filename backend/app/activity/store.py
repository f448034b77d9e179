"""
store.py — Activity storage contract and the in-memory implementation.

The state machine only needs single-row operations. Correctness under
concurrent heartbeats, ends and deadline checks rests on these:

    save()                     — full upsert, only for new activities
    save_if_status()           — heartbeat write, lands only while the
                                 stored status is still an expected one
    set_status()               — status-only write (finish)
    compare_and_set_status()   — optimistic transition guarded by the
                                 status and deadline the caller observed

Copies are returned from every read so callers never mutate stored state
without going through save().
"""

from __future__ import annotations

import abc
import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Collection, Dict, List, Optional

from backend.app.activity.models import (
    Activity,
    ActivityStatus,
    CheckIn,
    UserProfile,
    utc_now,
)

logger = logging.getLogger(__name__)

# Columns a heartbeat may change
HEARTBEAT_FIELDS = (
    "status",
    "next_check_in_deadline",
    "last_latitude",
    "last_longitude",
    "battery_level",
    "updated_at",
)


class ActivityStore(abc.ABC):
    """Persistence contract consumed by ActivityService."""

    @abc.abstractmethod
    async def get(self, activity_id: str) -> Optional[Activity]:
        ...

    @abc.abstractmethod
    async def get_active_by_phone(self, phone_number: str) -> Optional[Activity]:
        """Most recently created ``active`` activity for the phone."""

    @abc.abstractmethod
    async def get_latest_by_phone(self, phone_number: str) -> Optional[Activity]:
        """Most recently created activity for the phone, any status."""

    @abc.abstractmethod
    async def save(self, activity: Activity) -> Activity:
        """Upsert; assigns an id on first save and stamps ``updated_at``."""

    @abc.abstractmethod
    async def save_if_status(
        self, activity: Activity, expected: Collection[ActivityStatus],
    ) -> bool:
        """
        Write the HEARTBEAT_FIELDS of ``activity`` only if the stored status
        is in ``expected``. Stamps ``updated_at``. True on success.
        """

    @abc.abstractmethod
    async def set_status(self, activity_id: str, new_status: ActivityStatus) -> bool:
        """Change the status column only. False if the activity is absent."""

    @abc.abstractmethod
    async def list_active(self) -> List[Activity]:
        """Every ``active`` activity, earliest deadline first."""

    @abc.abstractmethod
    async def compare_and_set_status(
        self,
        activity_id: str,
        expected_status: ActivityStatus,
        expected_deadline: datetime,
        new_status: ActivityStatus,
    ) -> bool:
        """Transition only if status and deadline still match. True on success."""

    @abc.abstractmethod
    async def add_check_in(self, check_in: CheckIn) -> CheckIn:
        ...

    @abc.abstractmethod
    async def list_check_ins(self, activity_id: str) -> List[CheckIn]:
        ...

    @abc.abstractmethod
    async def get_user_by_phone(self, phone_number: str) -> Optional[UserProfile]:
        ...

    @abc.abstractmethod
    async def save_user(self, profile: UserProfile) -> UserProfile:
        ...

    async def ping(self) -> None:
        """Raise if the backing store is unreachable."""
        return None


class InMemoryActivityStore(ActivityStore):
    """
    Dict-backed store for development and tests.

    No method awaits between its read and its write, so each operation is
    atomic on the event loop.
    """

    def __init__(self) -> None:
        self._activities: Dict[str, Activity] = {}
        self._check_ins: Dict[str, List[CheckIn]] = {}
        self._users: Dict[str, UserProfile] = {}
        self._next_check_in_id = 1

    async def get(self, activity_id: str) -> Optional[Activity]:
        stored = self._activities.get(activity_id)
        return replace(stored) if stored else None

    async def get_active_by_phone(self, phone_number: str) -> Optional[Activity]:
        return self._latest(phone_number, ActivityStatus.ACTIVE)

    async def get_latest_by_phone(self, phone_number: str) -> Optional[Activity]:
        return self._latest(phone_number, None)

    def _latest(
        self, phone_number: str, status: Optional[ActivityStatus]
    ) -> Optional[Activity]:
        matches = [
            a for a in self._activities.values()
            if a.phone_number == phone_number and (status is None or a.status == status)
        ]
        if not matches:
            return None
        return replace(max(matches, key=lambda a: a.created_at))

    async def save(self, activity: Activity) -> Activity:
        if activity.id is None:
            activity.id = str(uuid.uuid4())
        activity.updated_at = utc_now()
        self._activities[activity.id] = replace(activity)
        return activity

    async def save_if_status(
        self, activity: Activity, expected: Collection[ActivityStatus],
    ) -> bool:
        stored = self._activities.get(activity.id)
        if stored is None or stored.status not in expected:
            return False
        activity.updated_at = utc_now()
        self._activities[activity.id] = replace(
            stored, **{name: getattr(activity, name) for name in HEARTBEAT_FIELDS}
        )
        return True

    async def set_status(self, activity_id: str, new_status: ActivityStatus) -> bool:
        stored = self._activities.get(activity_id)
        if stored is None:
            return False
        self._activities[activity_id] = replace(
            stored, status=new_status, updated_at=utc_now(),
        )
        return True

    async def list_active(self) -> List[Activity]:
        active = [
            replace(a) for a in self._activities.values()
            if a.status == ActivityStatus.ACTIVE
        ]
        return sorted(active, key=lambda a: a.next_check_in_deadline)

    async def compare_and_set_status(
        self,
        activity_id: str,
        expected_status: ActivityStatus,
        expected_deadline: datetime,
        new_status: ActivityStatus,
    ) -> bool:
        stored = self._activities.get(activity_id)
        if stored is None:
            return False
        if stored.status != expected_status or stored.next_check_in_deadline != expected_deadline:
            return False
        self._activities[activity_id] = replace(
            stored, status=new_status, updated_at=utc_now(),
        )
        return True

    async def add_check_in(self, check_in: CheckIn) -> CheckIn:
        saved = replace(check_in, id=self._next_check_in_id)
        self._next_check_in_id += 1
        self._check_ins.setdefault(check_in.activity_id, []).append(saved)
        return saved

    async def list_check_ins(self, activity_id: str) -> List[CheckIn]:
        return list(self._check_ins.get(activity_id, []))

    async def get_user_by_phone(self, phone_number: str) -> Optional[UserProfile]:
        stored = self._users.get(phone_number)
        return replace(stored) if stored else None

    async def save_user(self, profile: UserProfile) -> UserProfile:
        if profile.id is None:
            profile.id = str(uuid.uuid4())
        self._users[profile.phone_number] = replace(profile)
        return profile

    def clear(self) -> None:
        self._activities.clear()
        self._check_ins.clear()
        self._users.clear()
