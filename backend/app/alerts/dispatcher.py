"""
dispatcher.py — Alarm fan-out to every emergency contact channel.

Called once per genuine timeout, after the activity has already been
moved to ``alarmed``. Nothing here can undo that transition.

═══════════════════════════════════════════════════════════════════════════
DISPATCH FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Render content  │  language = activity.language (zh default)
    │                     │  lost contact at = the missed deadline
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  2. Emergency log   │  ERROR-level banner with the essentials
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  3. SMS             │  primary contact phone
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  4. Email           │  primary contact email if valid
    │                     │  secondary contact email if valid, else skip
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  5. DispatchReport  │  per-attempt status, kept for inspection
    └─────────────────────┘

Every channel call is isolated: an exception or failed attempt is logged
and recorded, and the next channel still runs. dispatch() itself never
raises for a delivery problem.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from backend.app.activity.models import Activity
from backend.app.alerts.channels import NotificationChannel
from backend.app.alerts.channels.email_alert import is_valid_email
from backend.app.alerts.models import (
    AlertChannel,
    AlertContent,
    DeliveryAttempt,
    DeliveryStatus,
    DispatchReport,
)
from backend.app.alerts.templates import build_alert_content

logger = logging.getLogger(__name__)


# In-memory report store (latest dispatch per activity)
_dispatch_reports: Dict[str, DispatchReport] = {}


def get_dispatch_report(activity_id: str) -> Optional[DispatchReport]:
    """Latest dispatch report for an activity, if one was produced."""
    return _dispatch_reports.get(activity_id)


class AlarmDispatcher:
    """Render one alarm and deliver it through each configured channel."""

    def __init__(
        self,
        sms: NotificationChannel,
        email: NotificationChannel,
        *,
        offset_hours: Optional[float] = None,
    ) -> None:
        self._sms = sms
        self._email = email
        self._offset_hours = offset_hours

    def _plan(self, activity: Activity) -> Tuple[List[Tuple[NotificationChannel, str]], List[DeliveryAttempt]]:
        """Pair each channel with a recipient; invalid recipients become skips."""
        plan: List[Tuple[NotificationChannel, str]] = [
            (self._sms, activity.emergency_contact_phone),
        ]
        skipped: List[DeliveryAttempt] = []

        if is_valid_email(activity.emergency_contact_email):
            plan.append((self._email, activity.emergency_contact_email))

        secondary = activity.secondary_contact_email
        if secondary:
            if is_valid_email(secondary):
                plan.append((self._email, secondary))
            else:
                logger.warning(
                    "Skipping invalid secondary contact email %r", secondary,
                    extra={"activity_id": activity.id, "channel": "email"},
                )
                skipped.append(DeliveryAttempt(
                    channel=AlertChannel.EMAIL, recipient=secondary,
                ).finish(DeliveryStatus.SKIPPED, "Invalid email address"))

        return plan, skipped

    async def _deliver(
        self,
        channel: NotificationChannel,
        recipient: str,
        content: AlertContent,
        activity_id: Optional[str],
    ) -> DeliveryAttempt:
        try:
            attempt = await channel.deliver(recipient, content)
        except Exception as exc:
            logger.exception(
                "Failed to send %s alert to %s", channel.channel.value, recipient,
                extra={"activity_id": activity_id, "channel": channel.channel.value},
            )
            return DeliveryAttempt(
                channel=channel.channel, recipient=recipient,
            ).finish(DeliveryStatus.FAILED, f"{type(exc).__name__}: {exc}")

        if attempt.status == DeliveryStatus.FAILED:
            logger.error(
                "Failed to send %s alert to %s: %s",
                channel.channel.value, recipient, attempt.error_message,
                extra={"activity_id": activity_id, "channel": channel.channel.value},
            )
        return attempt

    async def dispatch(self, activity: Activity) -> DispatchReport:
        """
        Deliver the alarm for ``activity``.

        Returns
        -------
        DispatchReport
            Always returned, even if every channel failed.
        """
        lost_contact_at = activity.next_check_in_deadline
        content = build_alert_content(
            activity, lost_contact_at, offset_hours=self._offset_hours,
        )
        report = DispatchReport(
            activity_id=activity.id or "",
            lost_contact_at=lost_contact_at,
            language=content.language,
        )

        logger.error(
            "\n🚨 [EMERGENCY ALERT] Contact lost\n"
            "  activity:  %s (%s)\n"
            "  user:      %s / %s\n"
            "  contact:   %s\n"
            "  location:  %s\n"
            "  deadline:  %s",
            activity.activity_name, activity.id,
            activity.display_name, activity.phone_number,
            activity.emergency_contact_phone,
            content.map_link,
            lost_contact_at.isoformat(),
            extra={"activity_id": activity.id, "deadline": lost_contact_at.isoformat()},
        )

        plan, skipped = self._plan(activity)
        for channel, recipient in plan:
            report.attempts.append(
                await self._deliver(channel, recipient, content, activity.id)
            )
        report.attempts.extend(skipped)

        report.completed_at = datetime.now(timezone.utc)
        if activity.id:
            _dispatch_reports[activity.id] = report

        logger.info(
            "Alarm dispatch for %s complete: %d delivered, %d failed, %d skipped",
            activity.id, len(report.delivered), len(report.failed),
            sum(1 for a in report.attempts if a.status == DeliveryStatus.SKIPPED),
            extra={"activity_id": activity.id},
        )
        return report
