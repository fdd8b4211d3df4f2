"""
dispatcher.py — Multi-channel alert fan-out for one event.

For every relevant (subscriber, event) pair:

    • SMS     — always, "<Level>: <message> <role impact>"
    • Email   — additionally, when the level is Critical and the
                subscriber has an email on file

═══════════════════════════════════════════════════════════════════════════
DISPATCH FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌──────────────────────┐
    │  1. Plan sends       │  one SMS per pair, + email for Critical
    └─────────┬────────────┘
              │
              ▼
    ┌──────────────────────┐
    │  2. Fan out          │  asyncio.gather over every send
    │     (bounded or not) │  DISPATCH_CONCURRENCY caps in-flight sends
    └─────────┬────────────┘
              │  each send → DeliveryAttempt (never raises)
              ▼
    ┌──────────────────────┐
    │  3. Record alert     │  exactly one Alert row per event
    │                      │  conditional on dedup_key (type + bucket)
    │                      │  auroral: strongest level sent, or none
    └─────────┬────────────┘
              │
              ▼
    ┌──────────────────────┐
    │  4. Record outcomes  │  one AlertDelivery per successful send
    │                      │  SENT (sms) / EMAIL_SENT (email)
    └──────────────────────┘

═══════════════════════════════════════════════════════════════════════════
FAILURE ISOLATION
═══════════════════════════════════════════════════════════════════════════

    • A failed send is logged with event id, recipient and channel and
      captured as a failed DeliveryAttempt; it never blocks other sends.
    • Failed sends write no delivery row and never roll back the alert.
    • If a concurrent cycle already recorded the alert for this bucket,
      the ledger raises DuplicateAlertError; deliveries attach to the
      winning alert instead.
    • StoreUnavailableError from the ledgers propagates to the engine,
      which aborts the rest of the cycle.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Tuple

from spacewx.alerts.channels.email_alert import EmailGateway, build_subject
from spacewx.alerts.channels.sms_gateway import SendReceipt, SmsGateway
from spacewx.alerts.classifier import targeted_message
from spacewx.alerts.models import (
    Alert,
    AlertDelivery,
    AlertLevel,
    DeliveryAttempt,
    DeliveryChannel,
    EventDispatchResult,
    EventType,
    SUCCESS_STATUS_BY_CHANNEL,
    SpaceWeatherEvent,
    Subscriber,
    dedup_key_for,
)
from spacewx.core.config import settings
from spacewx.core.errors import DeliveryError, DuplicateAlertError
from spacewx.storage.base import AlertLedger, DeliveryLedger

logger = logging.getLogger(__name__)


def wants_email(event: SpaceWeatherEvent, subscriber: Subscriber) -> bool:
    return event.level is AlertLevel.CRITICAL and bool(subscriber.email)


def recorded_event(
    event: SpaceWeatherEvent,
    targets: List[Tuple[Subscriber, SpaceWeatherEvent]],
) -> Optional[SpaceWeatherEvent]:
    """
    The event the alert row describes.

    Auroral candidates are re-levelled per subscriber latitude, so the row
    carries the strongest level actually sent, with that level's message.
    None when no subscriber could see the aurora: nothing to record.
    """
    if event.type is not EventType.AURORAL:
        return event
    if not targets:
        return None
    return max((sent for _, sent in targets), key=lambda e: e.level)


class AlertDispatcher:
    """
    Sends one event to its targeted subscribers and records the outcome.

    Usage:
        dispatcher = AlertDispatcher(sms, email, alert_ledger, delivery_ledger)
        result = await dispatcher.dispatch(event, targets)
        print(result.alert_id, len(result.failures))
    """

    def __init__(
        self,
        sms_gateway: SmsGateway,
        email_gateway: EmailGateway,
        alert_ledger: AlertLedger,
        delivery_ledger: DeliveryLedger,
        *,
        window_seconds: float = settings.DUPLICATE_WINDOW_SECONDS,
        concurrency: int = settings.DISPATCH_CONCURRENCY,
    ):
        self.sms_gateway = sms_gateway
        self.email_gateway = email_gateway
        self.alert_ledger = alert_ledger
        self.delivery_ledger = delivery_ledger
        self.window_seconds = window_seconds
        self.concurrency = concurrency

    # ── Single send ──

    async def _attempt(
        self,
        event_id: str,
        channel: DeliveryChannel,
        recipient: str,
        send: Callable[[], Awaitable[SendReceipt]],
        semaphore: Optional[asyncio.Semaphore],
    ) -> DeliveryAttempt:
        """Run one send; any failure becomes a failed attempt."""
        context = {
            "event_id": event_id,
            "recipient": recipient,
            "channel": channel.value,
        }
        try:
            if semaphore is None:
                receipt = await send()
            else:
                async with semaphore:
                    receipt = await send()
        except DeliveryError as exc:
            logger.warning("Delivery failed: %s", exc.message, extra=context)
            return DeliveryAttempt(
                channel=channel, recipient=recipient,
                succeeded=False, error_message=exc.message,
            )
        except Exception as exc:
            logger.exception(
                "Unexpected %s error for %s", channel.value, recipient, extra=context,
            )
            return DeliveryAttempt(
                channel=channel, recipient=recipient,
                succeeded=False, error_message=str(exc) or type(exc).__name__,
            )

        return DeliveryAttempt(
            channel=channel, recipient=recipient,
            succeeded=True, provider_message_id=receipt.message_id,
        )

    # ── Fan-out ──

    async def send_all(
        self,
        targets: List[Tuple[Subscriber, SpaceWeatherEvent]],
    ) -> List[Tuple[Subscriber, DeliveryAttempt]]:
        """Attempt every planned send concurrently and wait for all of them."""
        semaphore = asyncio.Semaphore(self.concurrency) if self.concurrency > 0 else None
        owners: List[Subscriber] = []
        jobs = []

        for subscriber, event in targets:
            text = targeted_message(event, subscriber.role)

            owners.append(subscriber)
            jobs.append(self._attempt(
                event.id, DeliveryChannel.SMS, subscriber.phone_number,
                lambda p=subscriber.phone_number, t=text: self.sms_gateway.send(p, t),
                semaphore,
            ))

            if wants_email(event, subscriber):
                subject = build_subject(event.type.value)
                owners.append(subscriber)
                jobs.append(self._attempt(
                    event.id, DeliveryChannel.EMAIL, subscriber.email,
                    lambda e=subscriber.email, s=subject, t=text:
                        self.email_gateway.send(e, s, t),
                    semaphore,
                ))

        attempts = await asyncio.gather(*jobs)
        return list(zip(owners, attempts))

    # ── Ledger writes ──

    async def record_alert(
        self,
        event: SpaceWeatherEvent,
        sent_at: Optional[datetime] = None,
    ) -> Optional[int]:
        """Create the event's alert row; returns the id deliveries attach to."""
        sent_at = sent_at or datetime.now(timezone.utc)
        alert = Alert(
            message=event.message,
            level=event.level.label,
            type=event.type.value,
            sent_at=sent_at,
            dedup_key=dedup_key_for(event.type, sent_at, self.window_seconds),
        )
        try:
            stored = await self.alert_ledger.create(alert)
        except DuplicateAlertError as exc:
            logger.warning(
                "Alert for %s already recorded by a concurrent cycle (id=%s)",
                exc.dedup_key, exc.existing_id,
                extra={"event_id": event.id, "alert_id": exc.existing_id},
            )
            return exc.existing_id
        return stored.id

    async def record_deliveries(
        self,
        alert_id: int,
        outcomes: List[Tuple[Subscriber, DeliveryAttempt]],
    ) -> List[AlertDelivery]:
        recorded = []
        for subscriber, attempt in outcomes:
            if not attempt.succeeded:
                continue
            delivery = AlertDelivery(
                alert_id=alert_id,
                phone_number=subscriber.phone_number,
                status=SUCCESS_STATUS_BY_CHANNEL[attempt.channel].value,
                channel=attempt.channel.value,
                provider_message_id=attempt.provider_message_id,
                received_at=attempt.attempted_at,
            )
            recorded.append(await self.delivery_ledger.create(delivery))
        return recorded

    # ── Entry point ──

    async def dispatch(
        self,
        event: SpaceWeatherEvent,
        targets: List[Tuple[Subscriber, SpaceWeatherEvent]],
    ) -> EventDispatchResult:
        """
        Send, then persist exactly one alert and one delivery per success.

        Raises
        ------
        StoreUnavailableError
            If the alert or delivery ledger cannot be written.
        """
        outcomes = await self.send_all(targets)
        result = EventDispatchResult(
            event=event,
            recipients_targeted=len(targets),
            attempts=[attempt for _, attempt in outcomes],
        )

        content = recorded_event(event, targets)
        if content is None:
            logger.info(
                "Auroral activity at Kp %s not visible to any subscriber; nothing recorded",
                event.metric_value,
                extra={"event_id": event.id, "event_type": event.type.value},
            )
            return result

        result.alert_id = await self.record_alert(content)
        if result.alert_id is None:
            logger.error(
                "No alert id for %s; delivery rows not recorded", event.id,
                extra={"event_id": event.id},
            )
            return result

        await self.record_deliveries(result.alert_id, outcomes)

        logger.info(
            "Alert sent for event %s (Level: %s, Type: %s): %d sent, %d failed",
            event.id, content.level.label, event.type.value,
            len(result.attempts) - len(result.failures), len(result.failures),
            extra={"event_id": event.id, "event_type": event.type.value,
                   "alert_level": content.level.label, "alert_id": result.alert_id},
        )
        return result

    async def broadcast(
        self,
        message: str,
        subscribers: List[Subscriber],
    ) -> Tuple[Alert, List[DeliveryAttempt]]:
        """
        Operator-initiated SMS to every given subscriber.

        Bypasses classification, targeting and the cooldown; still records
        one alert row (no dedup key) and a delivery row per success.
        """
        text = f"Space Weather Alert: {message}"
        semaphore = asyncio.Semaphore(self.concurrency) if self.concurrency > 0 else None
        attempts = await asyncio.gather(*(
            self._attempt(
                "manual", DeliveryChannel.SMS, s.phone_number,
                lambda p=s.phone_number: self.sms_gateway.send(p, text),
                semaphore,
            )
            for s in subscribers
        ))

        alert = await self.alert_ledger.create(
            Alert(message=message, level="", type="manual")
        )
        await self.record_deliveries(alert.id, list(zip(subscribers, attempts)))

        logger.info(
            "Manual alert %s sent to %d subscriber(s), %d failed",
            alert.id, len(subscribers), sum(1 for a in attempts if not a.succeeded),
            extra={"alert_id": alert.id},
        )
        return alert, list(attempts)
