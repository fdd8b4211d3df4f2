"""
engine.py — One poll cycle, end to end.

    Feed Client → Classifier → (per event) Duplicate Filter
                → (per subscriber) Targeter → Dispatcher → ledgers

Events are processed one at a time, in classification order. Only the
first (newest) event of each type goes through the duplicate check and
dispatch; later readings of that type are counted in
``CycleReport.repeats_collapsed``. Sends for a single event fan out
concurrently inside the dispatcher.

Error containment:

    Error                     Scope           Effect
    ──────────────────        ─────────       ─────────────────────────────
    FeedUnavailableError      per feed        feed contributes nothing
    MalformedObservationError per entry       entry skipped, counted
    GeocodingError            per recipient   auroral denied this cycle
    DeliveryError             per send        failed attempt, logged
    StoreUnavailableError     per cycle       rest of cycle aborted
    anything else             per cycle       logged, cycle aborted

run_poll_cycle() never raises; the outcome is a CycleReport.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import List, Set

from spacewx.alerts.classifier import classify_feeds
from spacewx.alerts.dispatcher import AlertDispatcher
from spacewx.alerts.duplicate_filter import DuplicateFilter
from spacewx.alerts.models import (
    CycleReport,
    EventDispatchResult,
    EventType,
    SpaceWeatherEvent,
    Subscriber,
)
from spacewx.alerts.targeting import RecipientTargeter
from spacewx.core.errors import StoreUnavailableError
from spacewx.core.logging_config import log_scope
from spacewx.ingestion.feed_client import SpaceWeatherFeedClient
from spacewx.storage.base import SubscriberStore

logger = logging.getLogger(__name__)


class AlertEngine:
    """
    Wires the pipeline stages together.

    Usage:
        engine = AlertEngine(feed_client, subscribers, duplicate_filter,
                             targeter, dispatcher)
        report = await engine.run_poll_cycle()
        print(report.to_dict())
    """

    def __init__(
        self,
        feed_client: SpaceWeatherFeedClient,
        subscribers: SubscriberStore,
        duplicate_filter: DuplicateFilter,
        targeter: RecipientTargeter,
        dispatcher: AlertDispatcher,
    ):
        self.feed_client = feed_client
        self.subscribers = subscribers
        self.duplicate_filter = duplicate_filter
        self.targeter = targeter
        self.dispatcher = dispatcher

    async def process_event(
        self,
        event: SpaceWeatherEvent,
        subscribers: List[Subscriber],
    ) -> EventDispatchResult:
        if await self.duplicate_filter.is_suppressed(event):
            return EventDispatchResult(event=event, suppressed=True)

        targets = await self.targeter.select_recipients(event, subscribers)
        return await self.dispatcher.dispatch(event, targets)

    async def _run(self, report: CycleReport) -> None:
        results = await self.feed_client.fetch_all()
        for name, result in results.items():
            report.observations += len(result.observations)
            report.malformed_entries += result.malformed
            if result.error:
                report.feed_errors[name] = result.error

        events = classify_feeds(results)
        if not events:
            logger.info("No significant space weather events found")
            return

        subscribers = await self.subscribers.find_subscribed()
        decided: Set[EventType] = set()
        for event in events:
            # The newest reading of a type decides it for the whole cycle
            if event.type in decided:
                key = event.type.value
                report.repeats_collapsed[key] = report.repeats_collapsed.get(key, 0) + 1
                continue
            decided.add(event.type)
            report.events.append(await self.process_event(event, subscribers))

        if report.repeats_collapsed:
            logger.info("Collapsed repeat readings: %s", report.repeats_collapsed)

    async def run_poll_cycle(self) -> CycleReport:
        """Run one full cycle. Never raises."""
        report = CycleReport()
        with log_scope(cycle_id=report.cycle_id):
            started = time.perf_counter()

            try:
                await self._run(report)
            except StoreUnavailableError as exc:
                report.aborted = True
                report.error = exc.message
                logger.error("Poll cycle aborted: %s", exc.message)
            except Exception as exc:
                report.aborted = True
                report.error = str(exc) or type(exc).__name__
                logger.exception("Error in poll cycle")
            finally:
                report.completed_at = datetime.now(timezone.utc)

            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.info(
                "Poll cycle %s: %d events, %d suppressed, %d alerts, %d sends%s",
                report.cycle_id, report.events_detected, report.events_suppressed,
                report.alerts_created, report.dispatch_attempts,
                " (aborted)" if report.aborted else "",
                extra={"duration_ms": duration_ms},
            )
        return report
