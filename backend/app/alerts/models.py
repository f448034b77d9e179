"""
models.py — Shared data structures for alarm delivery.

Defines:
    • AlertChannel      — delivery channel enum
    • DeliveryStatus    — per-attempt outcome
    • AlertContent      — one localized alert, pre-rendered per channel
    • DeliveryAttempt   — single channel send record
    • DispatchReport    — everything one alarm dispatch did
    • SenderCredential  — an outbound SMTP account in the failover pool
    • SendOutcome       — result of one pool send

═══════════════════════════════════════════════════════════════════════════
CHANNEL FAN-OUT
═══════════════════════════════════════════════════════════════════════════

    Recipient                     Channel    Condition
    ────────────────────────      ───────    ─────────────────────────────
    emergency_contact_phone       SMS        always
    emergency_contact_email       EMAIL      present and contains "@"
    secondary_contact_email       EMAIL      present; skipped if invalid

Each row is delivered independently; a failed row never stops the next.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AlertChannel(str, Enum):
    """Available alarm channels."""
    SMS   = "sms"
    EMAIL = "email"


class DeliveryStatus(str, Enum):
    PENDING   = "pending"
    SENDING   = "sending"
    DELIVERED = "delivered"
    FAILED    = "failed"
    SKIPPED   = "skipped"    # recipient missing or invalid


@dataclass(frozen=True)
class AlertContent:
    """
    A rendered alarm.

    ``sms_params`` feeds the SMS template; ``subject``/``html``/``text`` feed
    email. ``lost_contact_at`` is the missed deadline, not the send time.
    """
    language: str
    subject: str
    html: str
    text: str
    map_link: str
    map_label: str
    lost_contact_at: datetime
    sms_params: Dict[str, str] = field(default_factory=dict)


@dataclass
class DeliveryAttempt:
    """Record of one delivery to one recipient via one channel."""
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    channel: AlertChannel = AlertChannel.SMS
    recipient: str = ""
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempted_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None

    def finish(self, status: DeliveryStatus, error: Optional[str] = None) -> "DeliveryAttempt":
        self.status = status
        self.error_message = error
        self.completed_at = _now()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "channel": self.channel.value,
            "recipient": self.recipient,
            "status": self.status.value,
            "attempted_at": self.attempted_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "error_message": self.error_message,
        }


@dataclass
class DispatchReport:
    """Outcome of a single alarm dispatch across every channel."""
    activity_id: str
    lost_contact_at: datetime
    language: str = "zh"
    attempts: List[DeliveryAttempt] = field(default_factory=list)
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    @property
    def delivered(self) -> List[DeliveryAttempt]:
        return [a for a in self.attempts if a.status == DeliveryStatus.DELIVERED]

    @property
    def failed(self) -> List[DeliveryAttempt]:
        return [a for a in self.attempts if a.status == DeliveryStatus.FAILED]

    @property
    def any_delivered(self) -> bool:
        return bool(self.delivered)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activity_id": self.activity_id,
            "lost_contact_at": self.lost_contact_at.isoformat(),
            "language": self.language,
            "delivered": len(self.delivered),
            "failed": len(self.failed),
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "attempts": [a.to_dict() for a in self.attempts],
        }


@dataclass
class SenderCredential:
    """
    One outbound SMTP account.

    Counters are only changed through the pool's bookkeeping. Accounts are
    never removed automatically; ``is_active`` disables them.
    """
    host: str
    port: int
    user: str
    password: str
    secure: bool = True
    is_active: bool = True
    success_count: int = 0
    fail_count: int = 0
    id: Optional[int] = None
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        # password is write-only
        return {
            "id": self.id,
            "host": self.host,
            "port": self.port,
            "secure": self.secure,
            "user": self.user,
            "is_active": self.is_active,
            "success_count": self.success_count,
            "fail_count": self.fail_count,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class SendOutcome:
    """Result of one failover-pool send."""
    delivered: bool
    credential_id: Optional[int] = None
    tried: List[int] = field(default_factory=list)
    error: Optional[str] = None
