"""
duplicate_filter.py — Type-level cooldown against the alert ledger.

Before an event is dispatched, the ledger is asked for any alert of the
same type sent inside the trailing cooldown window:

    now - window  <  sent_at  <=  now        (default window: 5 minutes)

A hit suppresses the whole event: no targeting, no sends, no new alert.
The check is keyed on the event TYPE, not the event id, so repeat
observations with different upstream timestamps are also held back.

This read is advisory. The authoritative guard against two overlapping
cycles is the ledger's conditional create (see storage.base.AlertLedger).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from spacewx.alerts.models import Alert, SpaceWeatherEvent
from spacewx.core.config import settings
from spacewx.storage.base import AlertLedger

logger = logging.getLogger(__name__)


class DuplicateFilter:

    def __init__(
        self,
        ledger: AlertLedger,
        window_seconds: float = settings.DUPLICATE_WINDOW_SECONDS,
    ):
        self.ledger = ledger
        self.window_seconds = window_seconds

    async def find_blocking_alert(
        self,
        event: SpaceWeatherEvent,
        now: Optional[datetime] = None,
    ) -> Optional[Alert]:
        """The most recent same-type alert inside the window, if any."""
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(seconds=self.window_seconds)
        return await self.ledger.find_recent_by_type(event.type, since)

    async def is_suppressed(
        self,
        event: SpaceWeatherEvent,
        now: Optional[datetime] = None,
    ) -> bool:
        blocking = await self.find_blocking_alert(event, now)
        if blocking is None:
            return False

        logger.info(
            "Skipped duplicate alert for %s (%s already alerted at %s, within %ds)",
            event.id, event.type.value, blocking.sent_at.isoformat(),
            int(self.window_seconds),
            extra={"event_id": event.id, "event_type": event.type.value,
                   "alert_id": blocking.id},
        )
        return True
