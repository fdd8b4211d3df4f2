"""
scheduler.py — Fixed-rate driver for the alert engine.

═══════════════════════════════════════════════════════════════════════════
STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

            start()
               │  (first cycle runs immediately)
               ▼
    ┌──────────────┐   tick    ┌──────────────┐
    │     IDLE     │ ────────► │   POLLING    │
    │              │ ◄──────── │              │
    └──────────────┘  cycle    └──────────────┘
                      done /       │
                      error        │ tick while POLLING
                                   ▼
                            skipped, logged

Ticks are armed on a fixed rate (t0, t0 + interval, t0 + 2·interval, ...),
not "interval after the previous cycle ended". A cycle that outlives the
period causes the overlapping tick to be skipped with a warning; the
ledger's conditional create still covers cycles started elsewhere (a
second process, or a manual poll through the API).

A cycle that raises is logged and the schedule carries on.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional, Set

from spacewx.alerts.engine import AlertEngine
from spacewx.alerts.models import CycleReport
from spacewx.core.config import settings

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"


class AlertScheduler:
    """
    Usage:
        scheduler = AlertScheduler(engine)
        await scheduler.start()           # 30-minute period by default
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        engine: AlertEngine,
        interval_seconds: float = settings.POLL_INTERVAL_SECONDS,
    ):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.state = SchedulerState.IDLE
        self.last_report: Optional[CycleReport] = None
        self.cycles_run = 0
        self.cycles_skipped = 0
        self._running = False
        self._scheduler_task: Optional[asyncio.Task] = None
        self._cycle_tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> Optional[CycleReport]:
        """Run one cycle unless one is already in progress."""
        if self.state is SchedulerState.POLLING:
            self.cycles_skipped += 1
            logger.warning(
                "Previous poll cycle still running, skipping this tick "
                "(%d skipped so far)", self.cycles_skipped,
            )
            return None

        self.state = SchedulerState.POLLING
        try:
            report = await self.engine.run_poll_cycle()
            self.last_report = report
            return report
        except Exception:
            logger.exception("Error in alert scheduler")
            return None
        finally:
            self.cycles_run += 1
            self.state = SchedulerState.IDLE

    async def start(self, interval_seconds: Optional[float] = None) -> None:
        """Start polling: one cycle now, then every interval."""
        if self._running:
            return
        if interval_seconds is not None:
            self.interval_seconds = interval_seconds
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self._running = True
        self._scheduler_task = asyncio.create_task(self._run_scheduler())
        logger.info(
            "Alert scheduler started (every %.0fs)", self.interval_seconds,
        )

    async def stop(self) -> None:
        """Stop arming ticks and wait for any in-flight cycle to finish."""
        self._running = False
        if self._scheduler_task:
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
            self._scheduler_task = None
        if self._cycle_tasks:
            await asyncio.gather(*self._cycle_tasks, return_exceptions=True)
        logger.info("Alert scheduler stopped")

    async def _run_scheduler(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()

        while self._running:
            try:
                task = asyncio.create_task(self.run_once())
                self._cycle_tasks.add(task)
                task.add_done_callback(self._cycle_tasks.discard)

                next_tick += self.interval_seconds
                await asyncio.sleep(max(0.0, next_tick - loop.time()))
            except asyncio.CancelledError:
                break
