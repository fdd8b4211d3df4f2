"""
feed_client.py — Upstream space-weather feed ingestion.

Fetches the five monitored time-series feeds and parses every entry into a
typed ``Observation(value, timestamp)``.

═══════════════════════════════════════════════════════════════════════════
FEEDS
═══════════════════════════════════════════════════════════════════════════

    Feed           Source                          Value field       Time field
    ───────────    ────────────────────────────    ──────────────    ──────────
    geomagnetic    SWPC planetary_k_index_1m       kp_index          time_tag
    radio_flux     SWPC observed-solar-cycle       f10.7             time-tag
    xray           SWPC GOES xrays-6-hour          flux              time_tag
                   (only energy == "0.1-0.8nm")
    cme            NASA DONKI CMEAnalysis          speed             time21_5
    proton         SWPC GOES integral-protons      flux              time_tag
                   (only energy == ">=10 MeV")

Field names differ per feed, so each feed carries its own FeedDefinition
with candidate keys tried in order.

═══════════════════════════════════════════════════════════════════════════
ERROR HANDLING
═══════════════════════════════════════════════════════════════════════════

    Level 1 — Whole feed (network error, timeout, HTTP 4xx/5xx, payload
              that is not a JSON list)
        → FeedUnavailableError, logged, feed yields nothing this cycle

    Level 2 — Single entry (missing value, non-numeric, NaN)
        → MalformedObservationError, entry skipped and counted

    A failing feed never blocks the others: fetch_all() gathers the five
    feeds concurrently and isolates each one.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from spacewx.alerts.models import Observation
from spacewx.core.config import Settings, settings as default_settings
from spacewx.core.errors import FeedUnavailableError, MalformedObservationError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Feed Definitions
# ═══════════════════════════════════════════════════════════════════════════

GEOMAGNETIC_FEED = "geomagnetic"
RADIO_FLUX_FEED = "radio_flux"
XRAY_FEED = "xray"
CME_FEED = "cme"
PROTON_FEED = "proton"

XRAY_LONG_BAND = "0.1-0.8nm"
PROTON_10MEV_BAND = ">=10 MeV"


@dataclass(frozen=True)
class FeedDefinition:
    """How to fetch one feed and where its fields live."""
    name: str
    url: str
    value_keys: Tuple[str, ...]
    time_keys: Tuple[str, ...]
    band_key: Optional[str] = None
    band_value: Optional[str] = None
    params: Tuple[Tuple[str, str], ...] = ()


def default_feeds(cfg: Settings = default_settings) -> List[FeedDefinition]:
    """The five monitored feeds, URLs taken from settings."""
    return [
        FeedDefinition(
            name=GEOMAGNETIC_FEED,
            url=cfg.KP_INDEX_URL,
            value_keys=("kp_index", "estimated_kp"),
            time_keys=("time_tag",),
        ),
        FeedDefinition(
            name=RADIO_FLUX_FEED,
            url=cfg.RADIO_FLUX_URL,
            value_keys=("f10.7", "radio_flux"),
            time_keys=("time-tag", "time_tag"),
        ),
        FeedDefinition(
            name=XRAY_FEED,
            url=cfg.XRAY_FLUX_URL,
            value_keys=("flux",),
            time_keys=("time_tag",),
            band_key="energy",
            band_value=XRAY_LONG_BAND,
        ),
        FeedDefinition(
            name=CME_FEED,
            url=cfg.CME_ANALYSIS_URL,
            value_keys=("speed",),
            time_keys=("time21_5", "submissionTime"),
            params=(("api_key", cfg.NASA_API_KEY),),
        ),
        FeedDefinition(
            name=PROTON_FEED,
            url=cfg.PROTON_FLUX_URL,
            value_keys=("flux", "proton_flux"),
            time_keys=("time_tag",),
            band_key="energy",
            band_value=PROTON_10MEV_BAND,
        ),
    ]


# ═══════════════════════════════════════════════════════════════════════════
# Result Type
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class FeedResult:
    """Outcome of fetching and parsing one feed."""
    feed: str
    observations: List[Observation] = field(default_factory=list)
    malformed: int = 0
    error: Optional[str] = None
    fetch_duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.error is None


# ═══════════════════════════════════════════════════════════════════════════
# Parsing
# ═══════════════════════════════════════════════════════════════════════════

def _first_present(entry: Dict[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = entry.get(key)
        if value is not None and value != "":
            return value
    return None


def parse_entry(definition: FeedDefinition, entry: Any) -> Optional[Observation]:
    """
    Parse one feed entry.

    Returns None for entries outside the feed's band filter (not an error).
    Raises MalformedObservationError if the value or timestamp is unusable.
    """
    if not isinstance(entry, dict):
        raise MalformedObservationError(definition.name, "entry is not an object")

    if definition.band_key is not None:
        if entry.get(definition.band_key) != definition.band_value:
            return None

    raw_value = _first_present(entry, definition.value_keys)
    timestamp = _first_present(entry, definition.time_keys)

    if raw_value is None:
        raise MalformedObservationError(definition.name, "missing value")
    if timestamp is None:
        raise MalformedObservationError(definition.name, "missing timestamp")

    try:
        value = float(raw_value)
    except (TypeError, ValueError):
        raise MalformedObservationError(
            definition.name, f"non-numeric value {raw_value!r}"
        )
    if math.isnan(value) or math.isinf(value):
        raise MalformedObservationError(definition.name, f"non-finite value {raw_value!r}")

    return Observation(value=value, timestamp=str(timestamp), feed=definition.name)


def parse_feed(definition: FeedDefinition, payload: Any) -> FeedResult:
    """
    Parse a decoded JSON payload into observations.

    Raises FeedUnavailableError when the payload is not a list at all.
    """
    if not isinstance(payload, list):
        raise FeedUnavailableError(
            definition.name, f"expected a JSON list, got {type(payload).__name__}"
        )

    result = FeedResult(feed=definition.name)
    for entry in payload:
        try:
            obs = parse_entry(definition, entry)
        except MalformedObservationError as exc:
            result.malformed += 1
            logger.debug("%s", exc.message, extra={"feed": definition.name})
            continue
        if obs is not None:
            result.observations.append(obs)

    if result.malformed:
        logger.warning(
            "Feed %s: skipped %d malformed entries",
            definition.name, result.malformed,
            extra={"feed": definition.name},
        )
    return result


# ═══════════════════════════════════════════════════════════════════════════
# HTTP Client
# ═══════════════════════════════════════════════════════════════════════════

class SpaceWeatherFeedClient:
    """
    Fetches the monitored feeds over HTTP.

    Usage:
        client = SpaceWeatherFeedClient()
        results = await client.fetch_all()
        for name, result in results.items():
            print(name, len(result.observations))
        await client.close()
    """

    def __init__(
        self,
        feeds: Optional[List[FeedDefinition]] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = default_settings.FEED_TIMEOUT_SECONDS,
    ):
        self.feeds = feeds if feeds is not None else default_feeds()
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout_seconds,
                headers={"Accept": "application/json"},
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def fetch(self, definition: FeedDefinition) -> FeedResult:
        """
        Fetch and parse one feed.

        Raises
        ------
        FeedUnavailableError
            On network failure, timeout, HTTP error or undecodable payload.
        """
        client = await self._get_client()
        started = time.perf_counter()

        try:
            response = await client.get(definition.url, params=dict(definition.params))
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as exc:
            raise FeedUnavailableError(definition.name, f"timeout: {exc}")
        except httpx.HTTPStatusError as exc:
            raise FeedUnavailableError(
                definition.name,
                f"HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            )
        except httpx.HTTPError as exc:
            raise FeedUnavailableError(definition.name, str(exc) or type(exc).__name__)
        except ValueError as exc:
            raise FeedUnavailableError(definition.name, f"invalid JSON: {exc}")

        result = parse_feed(definition, payload)
        result.fetch_duration_ms = int((time.perf_counter() - started) * 1000)

        logger.info(
            "Fetched feed %s: %d observations (%d ms)",
            definition.name, len(result.observations), result.fetch_duration_ms,
            extra={"feed": definition.name, "duration_ms": result.fetch_duration_ms},
        )
        return result

    async def _fetch_isolated(self, definition: FeedDefinition) -> FeedResult:
        try:
            return await self.fetch(definition)
        except FeedUnavailableError as exc:
            logger.warning(
                "%s — skipping this cycle", exc.message,
                extra={"feed": definition.name},
            )
            return FeedResult(feed=definition.name, error=exc.message)

    async def fetch_all(self) -> Dict[str, FeedResult]:
        """Fetch every feed concurrently; one failing feed never affects another."""
        results = await asyncio.gather(
            *(self._fetch_isolated(d) for d in self.feeds)
        )
        return {r.feed: r for r in results}
