"""
state_machine.py — Activity lifecycle operations.

ActivityService is the only component that mutates Activity records. The
HTTP layer calls start/report_safe/end/get_current; the deadline scheduler
calls check_deadline.

═══════════════════════════════════════════════════════════════════════════
DEADLINE CHECK
═══════════════════════════════════════════════════════════════════════════

    fired(activity_id)
        │
        ├─ reload ─── absent ──────────────────────▶ MISSING  (dropped)
        ├─ status != active ───────────────────────▶ INACTIVE (dropped)
        ├─ now <= next_check_in_deadline ──────────▶ NOT_DUE  (dropped)
        │
        ├─ CAS active→alarmed on observed deadline
        │       lost ──────────────────────────────▶ RACED    (dropped)
        │       won
        ▼
    dispatcher.dispatch(activity) ─────────────────▶ ALARMED

The CAS is what keeps a heartbeat committed between the reload and the
transition from being overwritten, and what keeps two checks firing for
the same deadline from dispatching twice.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from backend.app.activity.models import (
    HEARTBEAT_STATUSES,
    Activity,
    ActivityStatus,
    CheckIn,
    DeferredCheckTask,
    utc_now,
)
from backend.app.activity.scheduler import DeadlineScheduler
from backend.app.activity.store import ActivityStore
from backend.app.alerts.dispatcher import AlarmDispatcher
from backend.app.alerts.sender_pool import SenderFailoverPool
from backend.app.alerts.templates import build_alert_preview, resolve_language
from backend.app.core.config import settings
from backend.app.core.errors import (
    InvalidStateError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class CheckOutcome(str, Enum):
    MISSING  = "missing"
    INACTIVE = "inactive"
    NOT_DUE  = "not_due"
    RACED    = "raced"
    ALARMED  = "alarmed"


class ActivityService:
    """
    Start, heartbeat, end and deadline-check operations.

    Parameters
    ----------
    store : ActivityStore
    scheduler : DeadlineScheduler
        Anything with ``schedule(delay, task)``.
    dispatcher : AlarmDispatcher
    pool : SenderFailoverPool, optional
        Only used by test_connection.
    clock : callable
        Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        store: ActivityStore,
        scheduler: DeadlineScheduler,
        dispatcher: AlarmDispatcher,
        *,
        pool: Optional[SenderFailoverPool] = None,
        clock: Callable[[], datetime] = utc_now,
        rate_limit_seconds: Optional[int] = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self.pool = pool
        self.clock = clock
        self.rate_limit = timedelta(
            seconds=settings.RATE_LIMIT_SECONDS if rate_limit_seconds is None else rate_limit_seconds
        )

    # ══════════════════════════════════════════════════════════════════════
    # SCHEDULING
    # ══════════════════════════════════════════════════════════════════════

    def _schedule_check(self, activity: Activity, now: datetime) -> str:
        task = DeferredCheckTask(
            activity_id=activity.id,
            deadline_snapshot=activity.next_check_in_deadline,
            label=build_alert_preview(activity),
        )
        return self.scheduler.schedule(activity.next_check_in_deadline - now, task)

    async def handle_deferred_check(self, task: DeferredCheckTask) -> CheckOutcome:
        """Scheduler fire handler."""
        return await self.check_deadline(task.activity_id, task.deadline_snapshot)

    # ══════════════════════════════════════════════════════════════════════
    # OPERATIONS
    # ══════════════════════════════════════════════════════════════════════

    async def start_activity(
        self,
        phone_number: str,
        activity_name: str,
        contact_phone: Optional[str] = None,
        interval_minutes: Optional[int] = None,
        *,
        description: Optional[str] = None,
        contact_email: Optional[str] = None,
        secondary_contact_phone: Optional[str] = None,
        secondary_contact_email: Optional[str] = None,
        emergency_instructions: Optional[str] = None,
        tolerance_minutes: Optional[int] = None,
        warning_minutes: Optional[int] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        language: Optional[str] = None,
        user_name: Optional[str] = None,
    ) -> Activity:
        """
        Begin monitoring a new activity for ``phone_number``.

        Missing contact and timing values come from the participant's
        UserProfile when one is registered. Any earlier active activity for
        the same phone is finished first.

        Raises
        ------
        RateLimitError
            If the phone started an activity less than RATE_LIMIT_SECONDS ago.
        ValidationError
            If no contact phone or interval can be determined.
        """
        now = self.clock()

        latest = await self.store.get_latest_by_phone(phone_number)
        if latest is not None and now - latest.created_at < self.rate_limit:
            retry_after = self.rate_limit - (now - latest.created_at)
            logger.warning(
                "Rate limited start for %s", phone_number,
                extra={"activity_id": latest.id},
            )
            raise RateLimitError(
                "Too many activity starts, try again in a minute",
                retry_after=max(1, int(retry_after.total_seconds()) + 1),
            )

        profile = await self.store.get_user_by_phone(phone_number)
        if profile is not None:
            contact_phone = contact_phone or profile.default_contact_phone
            contact_email = contact_email or profile.default_contact_email
            if interval_minutes is None:
                interval_minutes = profile.default_interval_minutes
            if warning_minutes is None:
                warning_minutes = profile.default_warning_minutes

        if not contact_phone:
            raise ValidationError("An emergency contact phone is required", field="contact_phone")
        if interval_minutes is None or interval_minutes < 1:
            raise ValidationError("Check-in interval must be at least 1 minute", field="interval_minutes")
        if tolerance_minutes is None:
            tolerance_minutes = settings.DEFAULT_TOLERANCE_MINUTES
        if tolerance_minutes < 0:
            raise ValidationError("Tolerance cannot be negative", field="tolerance_minutes")

        previous = await self.store.get_active_by_phone(phone_number)
        if previous is not None:
            await self.store.set_status(previous.id, ActivityStatus.FINISHED)
            logger.info(
                "Finished previous activity %s for %s", previous.id, phone_number,
                extra={"activity_id": previous.id},
            )

        activity = Activity(
            phone_number=phone_number,
            activity_name=activity_name,
            emergency_contact_phone=contact_phone,
            check_in_interval_minutes=interval_minutes,
            next_check_in_deadline=now,
            user_name=user_name or settings.DEFAULT_USER_NAME,
            language=resolve_language(language),
            emergency_contact_email=contact_email or None,
            secondary_contact_phone=secondary_contact_phone or None,
            secondary_contact_email=secondary_contact_email or None,
            description=description or None,
            emergency_instructions=emergency_instructions or None,
            tolerance_minutes=tolerance_minutes,
            warning_minutes=settings.DEFAULT_WARNING_MINUTES if warning_minutes is None else warning_minutes,
            last_latitude=latitude,
            last_longitude=longitude,
            user_id=profile.id if profile is not None else None,
            created_at=now,
            updated_at=now,
        )
        activity.next_check_in_deadline = activity.deadline_from(now)

        activity = await self.store.save(activity)
        self._schedule_check(activity, now)

        logger.info(
            "Activity started: %s, deadline %s",
            activity.id, activity.next_check_in_deadline.isoformat(),
            extra={"activity_id": activity.id, "deadline": activity.next_check_in_deadline.isoformat()},
        )
        return activity

    async def report_safe(
        self,
        activity_id: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        battery_level: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Heartbeat: push the deadline out and recover from ``alarmed``.

        Returns
        -------
        dict
            ``{"status": "ok", "next_deadline": datetime}``
        """
        activity = await self.store.get(activity_id)
        if activity is None:
            raise NotFoundError("Activity", activity_id=activity_id)
        if activity.status not in HEARTBEAT_STATUSES:
            raise InvalidStateError(
                "Activity is not active", status=activity.status.value,
                activity_id=activity_id,
            )

        now = self.clock()
        activity.next_check_in_deadline = activity.deadline_from(now)

        if activity.status == ActivityStatus.ALARMED:
            activity.status = ActivityStatus.ACTIVE
            logger.info(
                "Activity %s recovered from alarmed state", activity_id,
                extra={"activity_id": activity_id},
            )

        if latitude is not None and longitude is not None:
            activity.last_latitude = latitude
            activity.last_longitude = longitude
        if battery_level is not None:
            activity.battery_level = battery_level

        # An end or a newer start may have landed since the read above
        if not await self.store.save_if_status(activity, HEARTBEAT_STATUSES):
            current = await self.store.get(activity_id)
            if current is None:
                raise NotFoundError("Activity", activity_id=activity_id)
            raise InvalidStateError(
                "Activity is not active", status=current.status.value,
                activity_id=activity_id,
            )

        if latitude is not None and longitude is not None:
            await self.store.add_check_in(CheckIn(
                activity_id=activity_id, latitude=latitude, longitude=longitude,
                created_at=now,
            ))
        self._schedule_check(activity, now)

        logger.info(
            "Safe reported: %s, loc %s,%s, battery %s, next deadline %s",
            activity_id, latitude, longitude, battery_level,
            activity.next_check_in_deadline.isoformat(),
            extra={"activity_id": activity_id, "deadline": activity.next_check_in_deadline.isoformat()},
        )
        return {"status": "ok", "next_deadline": activity.next_check_in_deadline}

    async def end_activity(self, activity_id: str) -> Optional[Activity]:
        """Finish the activity from any status. Returns None if absent."""
        if not await self.store.set_status(activity_id, ActivityStatus.FINISHED):
            return None
        logger.info("Activity finished: %s", activity_id, extra={"activity_id": activity_id})
        return await self.store.get(activity_id)

    async def get_current_activity(self, phone_number: str) -> Optional[Activity]:
        return await self.store.get_active_by_phone(phone_number)

    async def rearm_pending_checks(self) -> int:
        """
        Schedule a check at the stored deadline of every active activity.

        Called on startup, since a memory job store loses its queue with the
        process. Overdue deadlines are checked immediately.
        """
        now = self.clock()
        active = await self.store.list_active()
        for activity in active:
            self._schedule_check(activity, now)
        logger.info("Re-armed %d deadline checks", len(active))
        return len(active)

    async def check_deadline(
        self,
        activity_id: str,
        deadline_snapshot: Optional[datetime] = None,
    ) -> CheckOutcome:
        """
        Re-validate a deadline against fresh state and alarm if truly missed.

        ``deadline_snapshot`` is only logged.
        """
        extra = {
            "activity_id": activity_id,
            "deadline": deadline_snapshot.isoformat() if deadline_snapshot else None,
        }

        activity = await self.store.get(activity_id)
        if activity is None:
            logger.warning("Deadline check for missing activity %s", activity_id, extra=extra)
            return CheckOutcome.MISSING

        if activity.status != ActivityStatus.ACTIVE:
            logger.debug(
                "Deadline check for %s skipped, status %s",
                activity_id, activity.status.value, extra=extra,
            )
            return CheckOutcome.INACTIVE

        now = self.clock()
        observed_deadline = activity.next_check_in_deadline
        if now <= observed_deadline:
            logger.debug(
                "Deadline check for %s superseded, deadline now %s",
                activity_id, observed_deadline.isoformat(), extra=extra,
            )
            return CheckOutcome.NOT_DUE

        won = await self.store.compare_and_set_status(
            activity_id, ActivityStatus.ACTIVE, observed_deadline, ActivityStatus.ALARMED,
        )
        if not won:
            logger.info("Deadline check for %s lost a race, skipping", activity_id, extra=extra)
            return CheckOutcome.RACED

        activity.status = ActivityStatus.ALARMED
        logger.warning(
            "Activity %s missed its deadline %s, raising alarm",
            activity_id, observed_deadline.isoformat(), extra=extra,
        )
        await self.dispatcher.dispatch(activity)
        return CheckOutcome.ALARMED

    async def test_connection(
        self,
        email: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> Dict[str, str]:
        """
        Client connectivity check. Verifies sender login without sending mail.
        """
        results = {
            "network": "ok",
            "gps": "ok" if latitude is not None and longitude is not None else "missing",
            "email": "pending",
            "timestamp": self.clock().isoformat(),
        }

        if email:
            if self.pool is None:
                results["email"] = "failed"
            else:
                try:
                    ok = await self.pool.verify_config()
                except Exception:
                    logger.exception("Sender verification errored")
                    ok = False
                results["email"] = "ok" if ok else "failed"

        return results
