"""
sms_gateway.py — SMS delivery channel via gateway integration.

Delivery mechanism:
    • Templated SMS: the gateway holds the approved template text; we send
      a template key plus string parameters
    • Providers: ``simulation`` (log only, development) and ``http``
      (JSON POST to SMS_GATEWAY_URL)

═══════════════════════════════════════════════════════════════════════════
ALERT TEMPLATE
═══════════════════════════════════════════════════════════════════════════

    Key:     SMS_ALERT_001
    Params:  activityId, name, location (map link or unknown marker),
             desc (description, truncated by the template builder)

    HTTP body:
        {"to": "+8613800000000", "template": "SMS_ALERT_001",
         "params": {...}, "sign_name": "..."}

A 2xx response counts as delivered. Timeouts and other HTTP errors are
recorded on the attempt as failures.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

import httpx

from backend.app.alerts.models import (
    AlertChannel,
    AlertContent,
    DeliveryAttempt,
    DeliveryStatus,
)
from backend.app.core.config import settings

logger = logging.getLogger(__name__)

ALERT_TEMPLATE_KEY = "SMS_ALERT_001"


class SmsChannel:
    """Templated SMS sender."""

    channel = AlertChannel.SMS

    def __init__(
        self,
        *,
        provider: Optional[str] = None,
        gateway_url: Optional[str] = None,
        api_key: Optional[str] = None,
        sign_name: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.provider = provider or settings.SMS_PROVIDER
        self.gateway_url = gateway_url or settings.SMS_GATEWAY_URL
        self.api_key = api_key if api_key is not None else settings.SMS_API_KEY
        self.sign_name = sign_name if sign_name is not None else settings.SMS_SIGN_NAME
        self.timeout_seconds = timeout_seconds or settings.SMS_TIMEOUT_SECONDS
        self._client = client

    async def deliver(self, recipient: str, content: AlertContent) -> DeliveryAttempt:
        return await self.send(recipient, ALERT_TEMPLATE_KEY, dict(content.sms_params))

    async def send(
        self,
        to_phone: str,
        template_key: str,
        params: Dict[str, str],
    ) -> DeliveryAttempt:
        """
        Send one templated SMS.

        Parameters
        ----------
        to_phone : str
            Destination number.
        template_key : str
            Gateway template identifier.
        params : dict
            Template variables; all values are strings.

        Returns
        -------
        DeliveryAttempt
        """
        attempt = DeliveryAttempt(
            channel=AlertChannel.SMS,
            recipient=to_phone,
            status=DeliveryStatus.SENDING,
        )

        if not to_phone:
            return attempt.finish(DeliveryStatus.SKIPPED, "No phone number on file")

        if self.provider == "simulation":
            logger.warning(
                "[SMS] (simulated) %s → %s: %s",
                template_key, to_phone, params,
                extra={"channel": "sms", "recipient": to_phone},
            )
            attempt.provider_response = {"mode": "simulated", "template": template_key}
            return attempt.finish(DeliveryStatus.DELIVERED)

        if self.provider != "http":
            return attempt.finish(
                DeliveryStatus.FAILED, f"Unknown SMS provider: {self.provider}",
            )
        if not self.gateway_url:
            return attempt.finish(DeliveryStatus.FAILED, "SMS_GATEWAY_URL is not configured")

        body = {
            "to": to_phone,
            "template": template_key,
            "params": params,
            "sign_name": self.sign_name,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            if self._client is not None:
                response = await self._client.post(
                    self.gateway_url, json=body, headers=headers,
                    timeout=self.timeout_seconds,
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(self.gateway_url, json=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(
                "[SMS] Gateway send to %s failed: %s", to_phone, exc,
                extra={"channel": "sms", "recipient": to_phone},
            )
            return attempt.finish(DeliveryStatus.FAILED, str(exc) or type(exc).__name__)

        attempt.provider_response = {"mode": "http", "status_code": response.status_code}
        logger.info("[SMS] Sent %s to %s", template_key, to_phone)
        return attempt.finish(DeliveryStatus.DELIVERED)
