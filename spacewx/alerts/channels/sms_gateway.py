"""
sms_gateway.py — SMS delivery channel via gateway integration.

Delivery mechanism:
    • Primary: Africa's Talking bulk SMS HTTP API
    • Delivery confirmation arrives later as a delivery-report webhook,
      keyed by the gateway message id returned here

═══════════════════════════════════════════════════════════════════════════
SMS GATEWAY ARCHITECTURE
═══════════════════════════════════════════════════════════════════════════

    Engine  →  HTTP POST  →  Africa's Talking  →  Carrier  →  Handset
                    │
                    └── POST /api/v1/alerts/delivery-report (receipt)

    Africa's Talking:
        POST https://api.africastalking.com/version1/messaging
        headers: apiKey, Accept: application/json
        form:    username, to, message, from

        → {"SMSMessageData": {"Recipients": [
              {"number": "+2547...", "status": "Success",
               "statusCode": 101, "messageId": "ATXid_..."}]}}

    statusCode 100–102 means the gateway accepted the message.
    Default provider is "simulation" for development.

Phone numbers must be E.164-ish: "+" followed by 10–15 digits.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from spacewx.core.config import Settings, settings as default_settings
from spacewx.core.errors import DeliveryError

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r"^\+\d{10,15}$")

# Africa's Talking per-recipient status codes meaning "accepted"
_ACCEPTED_STATUS_CODES = {100, 101, 102}


@dataclass
class SendReceipt:
    """Gateway acknowledgement of an accepted message."""
    provider: str
    message_id: Optional[str] = None
    response: Dict[str, Any] = field(default_factory=dict)


def validate_phone(phone_number: str) -> None:
    if not PHONE_PATTERN.match(phone_number or ""):
        raise DeliveryError("sms", phone_number, "invalid phone number format")


class SmsGateway:
    """
    Provider-agnostic SMS sender.

    Usage:
        gateway = SmsGateway.from_settings()
        receipt = await gateway.send("+254712345678", "Warning: ...")
    """

    def __init__(
        self,
        *,
        provider: str = "simulation",
        api_url: str = default_settings.AFRICASTALKING_API_URL,
        username: Optional[str] = None,
        api_key: Optional[str] = None,
        sender_id: Optional[str] = None,
        timeout_seconds: float = default_settings.SMS_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.provider = provider
        self.api_url = api_url
        self.username = username
        self.api_key = api_key
        self.sender_id = sender_id
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @classmethod
    def from_settings(cls, cfg: Settings = default_settings) -> "SmsGateway":
        return cls(
            provider=cfg.SMS_PROVIDER,
            api_url=cfg.AFRICASTALKING_API_URL,
            username=cfg.AFRICASTALKING_USERNAME,
            api_key=cfg.AFRICASTALKING_API_KEY,
            sender_id=cfg.AFRICASTALKING_SENDER_ID,
            timeout_seconds=cfg.SMS_TIMEOUT_SECONDS,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def send(self, phone_number: str, message: str) -> SendReceipt:
        """
        Send one SMS.

        Raises
        ------
        DeliveryError
            Invalid number, missing configuration, transport failure or a
            gateway rejection.
        """
        validate_phone(phone_number)

        if self.provider == "simulation":
            logger.info(
                "[SMS] → %s: %d chars → '%s'",
                phone_number, len(message),
                message[:80] + ("..." if len(message) > 80 else ""),
                extra={"recipient": phone_number, "channel": "sms"},
            )
            return SendReceipt(
                provider="simulation",
                message_id=f"SIM-{uuid.uuid4().hex[:12]}",
                response={"mode": "simulated", "message_length": len(message)},
            )

        if self.provider == "africastalking":
            return await self._send_africastalking(phone_number, message)

        raise DeliveryError("sms", phone_number, f"unknown SMS provider: {self.provider}")

    async def _send_africastalking(self, phone_number: str, message: str) -> SendReceipt:
        if not (self.username and self.api_key and self.sender_id):
            raise DeliveryError(
                "sms", phone_number,
                "AFRICASTALKING_USERNAME, AFRICASTALKING_API_KEY and "
                "AFRICASTALKING_SENDER_ID must be configured",
            )

        client = await self._get_client()
        try:
            response = await client.post(
                self.api_url,
                headers={"apiKey": self.api_key, "Accept": "application/json"},
                data={
                    "username": self.username,
                    "to": phone_number,
                    "message": message,
                    "from": self.sender_id,
                },
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            raise DeliveryError(
                "sms", phone_number, f"gateway HTTP {exc.response.status_code}",
            )
        except httpx.HTTPError as exc:
            raise DeliveryError("sms", phone_number, str(exc) or type(exc).__name__)
        except ValueError as exc:
            raise DeliveryError("sms", phone_number, f"invalid gateway response: {exc}")

        recipients = (body.get("SMSMessageData") or {}).get("Recipients") or []
        if not recipients:
            reason = (body.get("SMSMessageData") or {}).get("Message", "no recipients accepted")
            raise DeliveryError("sms", phone_number, reason)

        outcome = recipients[0]
        if outcome.get("statusCode") not in _ACCEPTED_STATUS_CODES:
            raise DeliveryError(
                "sms", phone_number,
                f"gateway rejected message: {outcome.get('status', 'unknown')}",
            )

        logger.info(
            "[SMS/AfricasTalking] Accepted for %s (id=%s)",
            phone_number, outcome.get("messageId"),
            extra={"recipient": phone_number, "channel": "sms"},
        )
        return SendReceipt(
            provider="africastalking",
            message_id=outcome.get("messageId"),
            response=outcome,
        )
