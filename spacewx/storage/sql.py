"""
sql.py — SQLAlchemy-backed stores.

Tables:
    subscribers        one row per phone number
    alerts             append-only ledger, UNIQUE(dedup_key)
    alert_deliveries   per-channel outcomes, FK → alerts.id

The UNIQUE constraint on ``alerts.dedup_key`` (event type + cooldown
bucket) turns the ledger write into a conditional create: when two poll
cycles race, the database admits one row and the loser gets
DuplicateAlertError carrying the winner's id.

Every SQLAlchemy failure other than that unique violation surfaces as
StoreUnavailableError, which aborts the current poll cycle.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    select,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from spacewx.alerts.models import Alert, AlertDelivery, EventType, Role, Subscriber
from spacewx.core.database import Base
from spacewx.core.errors import DuplicateAlertError, StoreUnavailableError
from spacewx.storage.base import AlertLedger, DeliveryLedger, SubscriberStore

logger = logging.getLogger(__name__)


def _utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ═══════════════════════════════════════════════════════════════════════════
# ORM Models
# ═══════════════════════════════════════════════════════════════════════════

class SubscriberRow(Base):
    __tablename__ = "subscribers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    phone_number: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    location: Mapped[str] = mapped_column(String(255), default="")
    role: Mapped[str] = mapped_column(String(20), default=Role.GENERAL.value)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    subscribed: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    preferences: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    def to_domain(self) -> Subscriber:
        return Subscriber(
            id=self.id,
            phone_number=self.phone_number,
            location=self.location or "",
            role=Role.parse(self.role),
            email=self.email,
            subscribed=bool(self.subscribed),
            preferences=dict(self.preferences or {}),
        )


class AlertRow(Base):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message: Mapped[str] = mapped_column(Text)
    level: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    type: Mapped[Optional[str]] = mapped_column(String(30), nullable=True, index=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("subscribers.id"), nullable=True,
    )
    dedup_key: Mapped[Optional[str]] = mapped_column(
        String(64), unique=True, nullable=True,
    )

    def to_domain(self) -> Alert:
        return Alert(
            id=self.id,
            message=self.message,
            level=self.level or "",
            type=self.type or "",
            sent_at=_utc(self.sent_at),
            user_id=self.user_id,
            dedup_key=self.dedup_key,
        )


class AlertDeliveryRow(Base):
    __tablename__ = "alert_deliveries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_id: Mapped[int] = mapped_column(ForeignKey("alerts.id"), index=True)
    phone_number: Mapped[str] = mapped_column(String(20), index=True)
    status: Mapped[str] = mapped_column(String(30))
    channel: Mapped[str] = mapped_column(String(10))
    provider_message_id: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True, index=True,
    )
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    def to_domain(self) -> AlertDelivery:
        return AlertDelivery(
            id=self.id,
            alert_id=self.alert_id,
            phone_number=self.phone_number,
            status=self.status,
            channel=self.channel,
            provider_message_id=self.provider_message_id,
            received_at=_utc(self.received_at),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Stores
# ═══════════════════════════════════════════════════════════════════════════

class _SqlStore:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory


class SqlSubscriberStore(_SqlStore, SubscriberStore):

    async def find_subscribed(self) -> List[Subscriber]:
        try:
            async with self._session_factory() as session:
                rows = await session.scalars(
                    select(SubscriberRow).where(SubscriberRow.subscribed.is_(True))
                )
                return [r.to_domain() for r in rows]
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("find_subscribed", str(exc))

    async def find_by_phone(self, phone_number: str) -> Optional[Subscriber]:
        try:
            async with self._session_factory() as session:
                row = await session.scalar(
                    select(SubscriberRow).where(SubscriberRow.phone_number == phone_number)
                )
                return row.to_domain() if row else None
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("find_by_phone", str(exc))

    async def upsert(self, subscriber: Subscriber) -> Subscriber:
        try:
            async with self._session_factory() as session:
                row = await session.scalar(
                    select(SubscriberRow)
                    .where(SubscriberRow.phone_number == subscriber.phone_number)
                )
                if row is None:
                    row = SubscriberRow(phone_number=subscriber.phone_number)
                    session.add(row)
                row.location = subscriber.location
                row.role = subscriber.role.value
                row.email = subscriber.email
                row.subscribed = subscriber.subscribed
                row.preferences = dict(subscriber.preferences)
                await session.commit()
                await session.refresh(row)
                return row.to_domain()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("upsert_subscriber", str(exc))

    async def set_subscribed(
        self, phone_number: str, subscribed: bool,
    ) -> Optional[Subscriber]:
        try:
            async with self._session_factory() as session:
                row = await session.scalar(
                    select(SubscriberRow).where(SubscriberRow.phone_number == phone_number)
                )
                if row is None:
                    return None
                row.subscribed = subscribed
                await session.commit()
                return row.to_domain()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("set_subscribed", str(exc))


class SqlAlertLedger(_SqlStore, AlertLedger):

    async def find_recent_by_type(
        self, event_type: EventType, since: datetime,
    ) -> Optional[Alert]:
        now = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as session:
                row = await session.scalar(
                    select(AlertRow)
                    .where(
                        AlertRow.type == event_type.value,
                        AlertRow.sent_at > since,
                        AlertRow.sent_at <= now,
                    )
                    .order_by(AlertRow.sent_at.desc())
                    .limit(1)
                )
                return row.to_domain() if row else None
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("find_recent_by_type", str(exc))

    async def _find_by_dedup_key(self, dedup_key: str) -> Optional[int]:
        try:
            async with self._session_factory() as session:
                return await session.scalar(
                    select(AlertRow.id).where(AlertRow.dedup_key == dedup_key)
                )
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("find_alert_by_dedup_key", str(exc))

    async def create(self, alert: Alert) -> Alert:
        row = AlertRow(
            message=alert.message,
            level=alert.level,
            type=alert.type,
            sent_at=alert.sent_at,
            user_id=alert.user_id,
            dedup_key=alert.dedup_key,
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
                await session.refresh(row)
                return row.to_domain()
        except IntegrityError as exc:
            # Only a row already holding this dedup_key means a lost race
            existing_id = None
            if alert.dedup_key is not None:
                existing_id = await self._find_by_dedup_key(alert.dedup_key)
            if existing_id is None:
                raise StoreUnavailableError("create_alert", str(exc))
            raise DuplicateAlertError(alert.dedup_key, existing_id)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("create_alert", str(exc))

    async def get(self, alert_id: int) -> Optional[Alert]:
        try:
            async with self._session_factory() as session:
                row = await session.get(AlertRow, alert_id)
                return row.to_domain() if row else None
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("get_alert", str(exc))


class SqlDeliveryLedger(_SqlStore, DeliveryLedger):

    async def create(self, delivery: AlertDelivery) -> AlertDelivery:
        row = AlertDeliveryRow(
            alert_id=delivery.alert_id,
            phone_number=delivery.phone_number,
            status=delivery.status,
            channel=delivery.channel,
            provider_message_id=delivery.provider_message_id,
            received_at=delivery.received_at,
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
                await session.refresh(row)
                return row.to_domain()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("create_delivery", str(exc))

    async def find_by_phone(self, phone_number: str) -> List[AlertDelivery]:
        try:
            async with self._session_factory() as session:
                rows = await session.scalars(
                    select(AlertDeliveryRow)
                    .where(AlertDeliveryRow.phone_number == phone_number)
                    .order_by(AlertDeliveryRow.id)
                )
                return [r.to_domain() for r in rows]
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("find_deliveries", str(exc))

    async def apply_report(
        self, report_id: str, status: str, phone_number: str,
    ) -> Optional[AlertDelivery]:
        try:
            async with self._session_factory() as session:
                row = await session.scalar(
                    select(AlertDeliveryRow)
                    .where(AlertDeliveryRow.provider_message_id == report_id)
                )
                if row is None:
                    return None
                row.status = status
                row.received_at = datetime.now(timezone.utc)
                await session.commit()
                return row.to_domain()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("apply_delivery_report", str(exc))
