"""
email_alert.py — Email alert delivery channel.

Delivery mechanism:
    • HTML + plain-text alternative, rendered by the template builder
    • Sent through SenderFailoverPool, which owns account rotation,
      retries and per-account bookkeeping

Email carries the full alert: map button, coordinates, description and
emergency instructions. SMS only carries the short template parameters.
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.app.alerts.models import (
    AlertChannel,
    AlertContent,
    DeliveryAttempt,
    DeliveryStatus,
)
from backend.app.alerts.sender_pool import SenderFailoverPool
from backend.app.core.errors import NoSenderAvailableError

logger = logging.getLogger(__name__)


def is_valid_email(address: Optional[str]) -> bool:
    """Minimal syntactic check used to decide whether to send at all."""
    return bool(address) and "@" in address


class EmailChannel:

    channel = AlertChannel.EMAIL

    def __init__(self, pool: SenderFailoverPool) -> None:
        self._pool = pool

    async def deliver(self, recipient: str, content: AlertContent) -> DeliveryAttempt:
        attempt = DeliveryAttempt(
            channel=AlertChannel.EMAIL,
            recipient=recipient,
            status=DeliveryStatus.SENDING,
        )

        if not is_valid_email(recipient):
            return attempt.finish(DeliveryStatus.SKIPPED, "Invalid email address")

        try:
            outcome = await self._pool.send(
                recipient, content.subject, content.html, content.text,
            )
        except NoSenderAvailableError as exc:
            logger.error(
                "[EMAIL] No sender available for %s", recipient,
                extra={"channel": "email", "recipient": recipient},
            )
            return attempt.finish(DeliveryStatus.FAILED, exc.message)

        attempt.provider_response = {
            "credential_id": outcome.credential_id,
            "tried": outcome.tried,
        }
        if outcome.delivered:
            return attempt.finish(DeliveryStatus.DELIVERED)
        return attempt.finish(DeliveryStatus.FAILED, outcome.error or "All senders failed")
