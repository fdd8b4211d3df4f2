"""
targeting.py — Decide which subscribers receive an event.

An event is relevant to a subscriber iff all of:

    1. subscriber.subscribed is True
    2. the preference flag for the event type is on
       (an unset flag falls back to DEFAULT_PREFERENCES, not to False)
    3. subscriber.role ∈ event.relevant_to_roles

Auroral events add a fourth gate: the subscriber's location is geocoded
at targeting time and the candidate is re-levelled for that latitude
(classifier.localize_auroral). An unresolved or failed lookup denies the
auroral alert for that subscriber for this cycle only.

    Kp ≥ 7, |lat| > 50°        → Critical
    Kp ≥ 5, |lat| > 50°        → Warning
    Kp ≥ 7, 30° < |lat| ≤ 50°  → Warning
    otherwise                  → not relevant
"""

from __future__ import annotations

import logging
from typing import List, Optional, Protocol, Tuple

from spacewx.alerts.classifier import localize_auroral
from spacewx.alerts.models import (
    DEFAULT_PREFERENCES,
    EventType,
    SpaceWeatherEvent,
    Subscriber,
)
from spacewx.core.errors import GeocodingError

logger = logging.getLogger(__name__)


class LatitudeResolver(Protocol):
    async def resolve_latitude(self, location: str) -> Optional[float]:
        ...


def preference_enabled(subscriber: Subscriber, event_type: EventType) -> bool:
    flag = subscriber.preferences.get(event_type.value)
    if flag is None:
        return DEFAULT_PREFERENCES[event_type]
    return bool(flag)


def is_eligible(subscriber: Subscriber, event: SpaceWeatherEvent) -> bool:
    """Subscription, preference and role checks (no latitude)."""
    return (
        subscriber.subscribed
        and preference_enabled(subscriber, event.type)
        and subscriber.role in event.relevant_to_roles
    )


class RecipientTargeter:
    """
    Usage:
        targeter = RecipientTargeter(NominatimGeocoder())
        pairs = await targeter.select_recipients(event, subscribers)
        for subscriber, localized_event in pairs:
            ...
    """

    def __init__(self, geocoder: LatitudeResolver):
        self.geocoder = geocoder

    async def _localize(
        self,
        event: SpaceWeatherEvent,
        subscriber: Subscriber,
    ) -> Optional[SpaceWeatherEvent]:
        try:
            latitude = await self.geocoder.resolve_latitude(subscriber.location)
        except GeocodingError as exc:
            logger.warning(
                "%s — auroral alert denied for %s this cycle",
                exc.message, subscriber.phone_number,
                extra={"event_id": event.id, "recipient": subscriber.phone_number},
            )
            return None

        if latitude is None:
            logger.info(
                "Location %r unresolved — auroral alert denied for %s",
                subscriber.location, subscriber.phone_number,
                extra={"event_id": event.id, "recipient": subscriber.phone_number},
            )
            return None

        return localize_auroral(event, latitude)

    async def target(
        self,
        event: SpaceWeatherEvent,
        subscriber: Subscriber,
    ) -> Optional[SpaceWeatherEvent]:
        """
        Return the event as this subscriber should receive it, or None.

        For every type except auroral this is the event itself; auroral
        events come back re-levelled for the subscriber's latitude.
        """
        if not is_eligible(subscriber, event):
            return None
        if event.type is EventType.AURORAL:
            return await self._localize(event, subscriber)
        return event

    async def select_recipients(
        self,
        event: SpaceWeatherEvent,
        subscribers: List[Subscriber],
    ) -> List[Tuple[Subscriber, SpaceWeatherEvent]]:
        targets = []
        for subscriber in subscribers:
            targeted = await self.target(event, subscriber)
            if targeted is not None:
                targets.append((subscriber, targeted))

        logger.info(
            "Event %s (%s) relevant to %d/%d subscribers",
            event.id, event.type.value, len(targets), len(subscribers),
            extra={"event_id": event.id, "event_type": event.type.value},
        )
        return targets
