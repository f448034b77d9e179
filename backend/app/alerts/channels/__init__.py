"""
channels — Per-channel delivery backends.

Each channel exposes:
    deliver(recipient, content) → DeliveryAttempt

Channels never raise for a failed send; they report it on the attempt.
The dispatcher still guards every call, so a channel that does raise
cannot block the others.
"""

from __future__ import annotations

from typing import Protocol

from backend.app.alerts.models import AlertChannel, AlertContent, DeliveryAttempt


class NotificationChannel(Protocol):
    """Capability shared by SMS and email delivery."""

    channel: AlertChannel

    async def deliver(self, recipient: str, content: AlertContent) -> DeliveryAttempt:
        ...
