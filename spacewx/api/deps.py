"""
Service wiring shared by the app lifespan and the route handlers.

    build_services()     — from settings (SQL or in-memory stores)
    assemble_services()  — from explicit stores / collaborators (tests)
    get_services()       — FastAPI dependency reading app.state.services
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from spacewx.alerts.channels.email_alert import EmailGateway
from spacewx.alerts.channels.sms_gateway import SmsGateway
from spacewx.alerts.dispatcher import AlertDispatcher
from spacewx.alerts.duplicate_filter import DuplicateFilter
from spacewx.alerts.engine import AlertEngine
from spacewx.alerts.scheduler import AlertScheduler
from spacewx.alerts.targeting import RecipientTargeter
from spacewx.core.config import Settings, settings as default_settings
from spacewx.core.database import get_engine, get_session_factory, init_db
from spacewx.ingestion.feed_client import SpaceWeatherFeedClient, default_feeds
from spacewx.ingestion.geocoding import NominatimGeocoder
from spacewx.storage.base import AlertLedger, DeliveryLedger, SubscriberStore
from spacewx.storage.memory import (
    InMemoryAlertLedger,
    InMemoryDeliveryLedger,
    InMemorySubscriberStore,
)
from spacewx.storage.sql import SqlAlertLedger, SqlDeliveryLedger, SqlSubscriberStore

logger = logging.getLogger(__name__)


@dataclass
class AlertServices:
    subscribers: SubscriberStore
    alert_ledger: AlertLedger
    delivery_ledger: DeliveryLedger
    feed_client: SpaceWeatherFeedClient
    geocoder: NominatimGeocoder
    sms_gateway: SmsGateway
    email_gateway: EmailGateway
    dispatcher: AlertDispatcher
    engine: AlertEngine
    scheduler: AlertScheduler
    db_engine: Optional[AsyncEngine] = None

    async def close(self) -> None:
        """Stop polling and release HTTP clients."""
        await self.scheduler.stop()
        await self.feed_client.close()
        await self.geocoder.close()
        await self.sms_gateway.close()


def assemble_services(
    subscribers: SubscriberStore,
    alert_ledger: AlertLedger,
    delivery_ledger: DeliveryLedger,
    *,
    cfg: Settings = default_settings,
    feed_client: Optional[SpaceWeatherFeedClient] = None,
    geocoder: Optional[NominatimGeocoder] = None,
    sms_gateway: Optional[SmsGateway] = None,
    email_gateway: Optional[EmailGateway] = None,
    db_engine: Optional[AsyncEngine] = None,
) -> AlertServices:
    feed_client = feed_client or SpaceWeatherFeedClient(
        default_feeds(cfg), timeout_seconds=cfg.FEED_TIMEOUT_SECONDS,
    )
    geocoder = geocoder or NominatimGeocoder(
        base_url=cfg.GEOCODER_URL,
        user_agent=cfg.GEOCODER_USER_AGENT,
        timeout_seconds=cfg.GEOCODER_TIMEOUT_SECONDS,
    )
    sms_gateway = sms_gateway or SmsGateway.from_settings(cfg)
    email_gateway = email_gateway or EmailGateway.from_settings(cfg)

    dispatcher = AlertDispatcher(
        sms_gateway, email_gateway, alert_ledger, delivery_ledger,
        window_seconds=cfg.DUPLICATE_WINDOW_SECONDS,
        concurrency=cfg.DISPATCH_CONCURRENCY,
    )
    engine = AlertEngine(
        feed_client,
        subscribers,
        DuplicateFilter(alert_ledger, cfg.DUPLICATE_WINDOW_SECONDS),
        RecipientTargeter(geocoder),
        dispatcher,
    )

    return AlertServices(
        subscribers=subscribers,
        alert_ledger=alert_ledger,
        delivery_ledger=delivery_ledger,
        feed_client=feed_client,
        geocoder=geocoder,
        sms_gateway=sms_gateway,
        email_gateway=email_gateway,
        dispatcher=dispatcher,
        engine=engine,
        scheduler=AlertScheduler(engine, cfg.POLL_INTERVAL_SECONDS),
        db_engine=db_engine,
    )


async def build_services(cfg: Settings = default_settings) -> AlertServices:
    """Wire the full service graph from settings."""
    if cfg.STORAGE_BACKEND == "memory":
        logger.warning("Using in-memory stores — data is lost on restart")
        return assemble_services(
            InMemorySubscriberStore(),
            InMemoryAlertLedger(),
            InMemoryDeliveryLedger(),
            cfg=cfg,
        )

    engine = get_engine()
    await init_db(engine)
    session_factory = get_session_factory()
    return assemble_services(
        SqlSubscriberStore(session_factory),
        SqlAlertLedger(session_factory),
        SqlDeliveryLedger(session_factory),
        cfg=cfg,
        db_engine=engine,
    )


def get_services(request: Request) -> AlertServices:
    return request.app.state.services
