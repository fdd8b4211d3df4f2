"""
email_alert.py — Email alert delivery channel.

Delivery mechanism:
    • SMTP with STARTTLS (Gmail-style submission on port 587)
    • Plain-text body, same text as the SMS
    • Only used for Critical events, and only for subscribers with an email

smtplib is blocking, so the send runs in a worker thread to keep the
poll cycle's event loop free.

═══════════════════════════════════════════════════════════════════════════
EMAIL TEMPLATE
═══════════════════════════════════════════════════════════════════════════

    Subject: Critical Alert: GEOMAGNETIC
    Body:    Critical: Critical Alert: Severe geomagnetic storm with Kp 7.33.
             Impacts: widespread outages. Issued at 2024-05-10T17:00:00.
             Farmers: Prepare for power issues.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import uuid
from email.message import EmailMessage
from typing import Optional

from spacewx.alerts.channels.sms_gateway import SendReceipt
from spacewx.core.config import Settings, settings as default_settings
from spacewx.core.errors import DeliveryError

logger = logging.getLogger(__name__)


def build_subject(event_type: str) -> str:
    return f"Critical Alert: {event_type.upper()}"


class EmailGateway:
    """
    Provider-agnostic email sender ("simulation" or "smtp").

    Usage:
        gateway = EmailGateway.from_settings()
        await gateway.send("ops@example.com", "Critical Alert: CME", body)
    """

    def __init__(
        self,
        *,
        provider: str = "simulation",
        smtp_host: str = default_settings.SMTP_HOST,
        smtp_port: int = default_settings.SMTP_PORT,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        from_address: str = default_settings.EMAIL_FROM,
        timeout_seconds: float = default_settings.EMAIL_TIMEOUT_SECONDS,
    ):
        self.provider = provider
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_address = from_address
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, cfg: Settings = default_settings) -> "EmailGateway":
        return cls(
            provider=cfg.EMAIL_PROVIDER,
            smtp_host=cfg.SMTP_HOST,
            smtp_port=cfg.SMTP_PORT,
            smtp_user=cfg.SMTP_USER,
            smtp_password=cfg.SMTP_PASSWORD,
            from_address=cfg.SMTP_USER or cfg.EMAIL_FROM,
            timeout_seconds=cfg.EMAIL_TIMEOUT_SECONDS,
        )

    def _build_message(self, to: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = to
        msg.set_content(body)
        return msg

    def _send_smtp(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds) as server:
            server.starttls()
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.send_message(msg)

    async def send(self, to: str, subject: str, body: str) -> SendReceipt:
        """
        Send one email.

        Raises
        ------
        DeliveryError
            On SMTP / socket failure or an unknown provider.
        """
        if not to:
            raise DeliveryError("email", to, "no email address on file")

        if self.provider == "simulation":
            logger.info(
                "[EMAIL] → %s: Subject='%s'", to, subject,
                extra={"recipient": to, "channel": "email"},
            )
            return SendReceipt(
                provider="simulation",
                message_id=f"SIM-{uuid.uuid4().hex[:12]}",
                response={"mode": "simulated", "subject": subject},
            )

        if self.provider == "smtp":
            msg = self._build_message(to, subject, body)
            try:
                await asyncio.to_thread(self._send_smtp, msg)
            except (smtplib.SMTPException, OSError) as exc:
                raise DeliveryError("email", to, str(exc) or type(exc).__name__)
            logger.info(
                "[EMAIL/SMTP] Sent to %s", to,
                extra={"recipient": to, "channel": "email"},
            )
            return SendReceipt(provider="smtp", message_id=msg.get("Message-ID"))

        raise DeliveryError("email", to, f"unknown email provider: {self.provider}")
