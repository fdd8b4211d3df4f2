"""
base.py — Store contracts consumed by the alert engine.

The engine only ever talks to these three interfaces; concrete backends
live in ``memory`` (tests / local runs) and ``sql`` (SQLAlchemy).

    SubscriberStore   find_subscribed, find_by_phone, upsert, set_subscribed
    AlertLedger       find_recent_by_type, create (conditional), get
    DeliveryLedger    create, find_by_phone, apply_report

AlertLedger.create is conditional: an alert carrying a ``dedup_key`` that
is already recorded raises DuplicateAlertError with the winner's id. This
is what serialises concurrent poll cycles per event type.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from spacewx.alerts.models import Alert, AlertDelivery, EventType, Subscriber


class SubscriberStore(ABC):

    @abstractmethod
    async def find_subscribed(self) -> List[Subscriber]:
        """All subscribers with subscribed=True."""

    @abstractmethod
    async def find_by_phone(self, phone_number: str) -> Optional[Subscriber]:
        ...

    @abstractmethod
    async def upsert(self, subscriber: Subscriber) -> Subscriber:
        """Create or replace the record keyed by phone number."""

    @abstractmethod
    async def set_subscribed(
        self, phone_number: str, subscribed: bool,
    ) -> Optional[Subscriber]:
        """Flip the subscribed flag; None if the phone number is unknown."""


class AlertLedger(ABC):

    @abstractmethod
    async def find_recent_by_type(
        self, event_type: EventType, since: datetime,
    ) -> Optional[Alert]:
        """Any alert of this type with since < sent_at <= now."""

    @abstractmethod
    async def create(self, alert: Alert) -> Alert:
        """
        Persist an alert and return it with its id.

        Raises DuplicateAlertError if ``alert.dedup_key`` is already taken.
        """

    @abstractmethod
    async def get(self, alert_id: int) -> Optional[Alert]:
        ...


class DeliveryLedger(ABC):

    @abstractmethod
    async def create(self, delivery: AlertDelivery) -> AlertDelivery:
        ...

    @abstractmethod
    async def find_by_phone(self, phone_number: str) -> List[AlertDelivery]:
        ...

    @abstractmethod
    async def apply_report(
        self, report_id: str, status: str, phone_number: str,
    ) -> Optional[AlertDelivery]:
        """
        Apply a gateway delivery report to the delivery it refers to.

        Returns the updated row, or None when no delivery carries that
        gateway message id.
        """
