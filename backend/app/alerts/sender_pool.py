"""
sender_pool.py — Round-robin SMTP delivery with failover.

═══════════════════════════════════════════════════════════════════════════
SELECTION & FAILOVER
═══════════════════════════════════════════════════════════════════════════

    active = [A, B, C]            (ordered by id, is_active only)
    counter → 0, 1, 2, 3, …       (shared by every send, one step per send)

    send #k starts at active[k % 3] and walks forward:

        k=4 → B ✗ fail_count+1 → C ✗ fail_count+1 → A ✓ success_count+1

Each credential is tried at most once per send, so a total outage ends
after len(active) attempts. A timeout is an ordinary failure.

Legacy fallback: when the pool has no credentials at all and the stored
EMAIL_* settings describe an account, that account is added to the pool
once and used from then on. A pool whose members are all disabled does
not fall back; it fails with NoSenderAvailableError.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr
from typing import List, Optional, Protocol

from backend.app.alerts.credentials import SenderRepository, SettingsProvider
from backend.app.alerts.models import SenderCredential, SendOutcome
from backend.app.core.config import settings
from backend.app.core.errors import NoSenderAvailableError, StoreUnavailableError

logger = logging.getLogger(__name__)

_DEFAULT_SMTP_PORT = 465


class MailTransport(Protocol):
    async def send(
        self,
        credential: SenderCredential,
        to: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
    ) -> None:
        """Deliver one message or raise."""

    async def verify(self, credential: SenderCredential) -> None:
        """Connect and authenticate without sending, or raise."""


class SmtpTransport:
    """
    Blocking smtplib client run in a worker thread.

    ``timeout_seconds`` bounds connect, TLS handshake and every command.
    """

    def __init__(
        self,
        *,
        timeout_seconds: Optional[float] = None,
        from_name: Optional[str] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds or settings.SMTP_TIMEOUT_SECONDS
        self.from_name = from_name if from_name is not None else settings.EMAIL_FROM_NAME

    def _open(self, credential: SenderCredential) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if credential.secure:
            server: smtplib.SMTP = smtplib.SMTP_SSL(
                credential.host, credential.port,
                timeout=self.timeout_seconds, context=context,
            )
        else:
            server = smtplib.SMTP(
                credential.host, credential.port, timeout=self.timeout_seconds,
            )
        try:
            server.ehlo()
            if not credential.secure and server.has_extn("starttls"):
                server.starttls(context=context)
                server.ehlo()
            server.login(credential.user, credential.password)
        except Exception:
            server.close()
            raise
        return server

    def _build_message(
        self,
        credential: SenderCredential,
        to: str,
        subject: str,
        html: str,
        text: Optional[str],
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((self.from_name, credential.user))
        msg["To"] = to
        msg.set_content(text or subject)
        msg.add_alternative(html, subtype="html")
        return msg

    def _send_sync(self, credential, to, subject, html, text) -> None:
        message = self._build_message(credential, to, subject, html, text)
        with self._open(credential) as server:
            server.send_message(message)

    def _verify_sync(self, credential: SenderCredential) -> None:
        with self._open(credential):
            pass

    async def send(
        self,
        credential: SenderCredential,
        to: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
    ) -> None:
        await asyncio.to_thread(self._send_sync, credential, to, subject, html, text)

    async def verify(self, credential: SenderCredential) -> None:
        await asyncio.to_thread(self._verify_sync, credential)


class SenderFailoverPool:
    """Deliver one message through the next healthy sender account."""

    def __init__(
        self,
        repository: SenderRepository,
        settings_provider: SettingsProvider,
        transport: Optional[MailTransport] = None,
    ) -> None:
        self._repository = repository
        self._settings = settings_provider
        self._transport = transport or SmtpTransport()
        # next() on itertools.count is atomic under the GIL
        self._counter = itertools.count()
        self._fallback_lock = asyncio.Lock()

    @property
    def repository(self) -> SenderRepository:
        return self._repository

    async def active_credentials(self) -> List[SenderCredential]:
        """Active pool members, synthesizing the legacy account if the pool is empty."""
        active = await self._repository.list_active()
        if active:
            return active

        async with self._fallback_lock:
            if await self._repository.count() == 0:
                fallback = await self._synthesize_fallback()
                if fallback is not None:
                    return [fallback]
            else:
                # another caller may have just added the fallback
                active = await self._repository.list_active()
                if active:
                    return active

        raise NoSenderAvailableError()

    async def _synthesize_fallback(self) -> Optional[SenderCredential]:
        host = await self._settings.get_setting("EMAIL_HOST")
        user = await self._settings.get_setting("EMAIL_USER")
        password = await self._settings.get_setting("EMAIL_PASS")
        if not (host and user and password):
            return None

        raw_port = await self._settings.get_setting("EMAIL_PORT")
        try:
            port = int(raw_port) if raw_port else _DEFAULT_SMTP_PORT
        except ValueError:
            logger.warning("Invalid EMAIL_PORT %r, using %d", raw_port, _DEFAULT_SMTP_PORT)
            port = _DEFAULT_SMTP_PORT
        secure = (await self._settings.get_setting("EMAIL_SECURE")).strip().lower() != "false"

        credential = await self._repository.add(SenderCredential(
            host=host, port=port, secure=secure, user=user, password=password,
        ))
        logger.info(
            "Sender pool empty; added legacy account %s (%s:%d)",
            user, host, port,
            extra={"credential_id": credential.id},
        )
        return credential

    async def _record(self, credential: SenderCredential, success: bool) -> None:
        """Bump the account counters. Bookkeeping never changes a send result."""
        try:
            await self._repository.record_outcome(credential.id, success)
        except StoreUnavailableError:
            logger.exception(
                "Could not record %s for sender %s",
                "success" if success else "failure", credential.user,
                extra={"credential_id": credential.id},
            )

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
    ) -> SendOutcome:
        """
        Send one message, rotating through active accounts on failure.

        Raises
        ------
        NoSenderAvailableError
            If no active account exists and none can be synthesized.
        """
        active = await self.active_credentials()
        start = next(self._counter)
        size = len(active)
        outcome = SendOutcome(delivered=False)

        for offset in range(size):
            credential = active[(start + offset) % size]
            outcome.tried.append(credential.id)
            try:
                await self._transport.send(credential, to, subject, html, text)
            except Exception as exc:
                await self._record(credential, False)
                outcome.error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "Sender %s failed for %s (%d/%d): %s",
                    credential.user, to, offset + 1, size, outcome.error,
                    extra={"credential_id": credential.id, "recipient": to},
                )
                continue

            await self._record(credential, True)
            outcome.delivered = True
            outcome.credential_id = credential.id
            outcome.error = None
            logger.info(
                "Email sent to %s via %s", to, credential.user,
                extra={"credential_id": credential.id, "recipient": to},
            )
            return outcome

        logger.error("All %d sender(s) failed for %s", size, to, extra={"recipient": to})
        return outcome

    async def verify_config(self) -> bool:
        """True if the next account in rotation can authenticate."""
        try:
            active = await self.active_credentials()
        except NoSenderAvailableError:
            return False
        credential = active[next(self._counter) % len(active)]
        try:
            await self._transport.verify(credential)
        except Exception as exc:
            logger.warning(
                "Sender %s failed verification: %s", credential.user, exc,
                extra={"credential_id": credential.id},
            )
            return False
        return True
