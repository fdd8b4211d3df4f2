"""
memory.py — In-process store backends.

Used by the test-suite and for running the engine without a database.
The alert ledger's check-and-insert runs under an asyncio.Lock so the
conditional create is atomic within one event loop.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from spacewx.alerts.models import Alert, AlertDelivery, EventType, Subscriber
from spacewx.core.errors import DuplicateAlertError
from spacewx.storage.base import AlertLedger, DeliveryLedger, SubscriberStore


class InMemorySubscriberStore(SubscriberStore):

    def __init__(self, subscribers: Optional[List[Subscriber]] = None):
        self._by_phone: Dict[str, Subscriber] = {}
        self._next_id = 1
        for s in subscribers or []:
            self._insert(s)

    def _insert(self, subscriber: Subscriber) -> Subscriber:
        if subscriber.id is None:
            subscriber = replace(subscriber, id=self._next_id)
        self._next_id = max(self._next_id, subscriber.id) + 1
        self._by_phone[subscriber.phone_number] = subscriber
        return subscriber

    async def find_subscribed(self) -> List[Subscriber]:
        return [s for s in self._by_phone.values() if s.subscribed]

    async def find_by_phone(self, phone_number: str) -> Optional[Subscriber]:
        return self._by_phone.get(phone_number)

    async def upsert(self, subscriber: Subscriber) -> Subscriber:
        existing = self._by_phone.get(subscriber.phone_number)
        if existing is not None:
            subscriber = replace(subscriber, id=existing.id)
        return self._insert(subscriber)

    async def set_subscribed(
        self, phone_number: str, subscribed: bool,
    ) -> Optional[Subscriber]:
        existing = self._by_phone.get(phone_number)
        if existing is None:
            return None
        existing.subscribed = subscribed
        return existing


class InMemoryAlertLedger(AlertLedger):

    def __init__(self):
        self.alerts: List[Alert] = []
        self._lock = asyncio.Lock()

    async def find_recent_by_type(
        self, event_type: EventType, since: datetime,
    ) -> Optional[Alert]:
        now = datetime.now(timezone.utc)
        for alert in reversed(self.alerts):
            if alert.type == event_type.value and since < alert.sent_at <= now:
                return alert
        return None

    async def create(self, alert: Alert) -> Alert:
        async with self._lock:
            if alert.dedup_key is not None:
                for existing in self.alerts:
                    if existing.dedup_key == alert.dedup_key:
                        raise DuplicateAlertError(alert.dedup_key, existing.id)
            stored = replace(alert, id=len(self.alerts) + 1)
            self.alerts.append(stored)
            return stored

    async def get(self, alert_id: int) -> Optional[Alert]:
        for alert in self.alerts:
            if alert.id == alert_id:
                return alert
        return None


class InMemoryDeliveryLedger(DeliveryLedger):

    def __init__(self):
        self.deliveries: List[AlertDelivery] = []

    async def create(self, delivery: AlertDelivery) -> AlertDelivery:
        stored = replace(delivery, id=len(self.deliveries) + 1)
        self.deliveries.append(stored)
        return stored

    async def find_by_phone(self, phone_number: str) -> List[AlertDelivery]:
        return [d for d in self.deliveries if d.phone_number == phone_number]

    async def apply_report(
        self, report_id: str, status: str, phone_number: str,
    ) -> Optional[AlertDelivery]:
        for delivery in self.deliveries:
            if delivery.provider_message_id == report_id:
                delivery.status = status
                delivery.received_at = datetime.now(timezone.utc)
                return delivery
        return None
