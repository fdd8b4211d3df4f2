"""
classifier.py — Turn feed observations into SpaceWeatherEvents.

═══════════════════════════════════════════════════════════════════════════
THRESHOLD TABLE
═══════════════════════════════════════════════════════════════════════════

    Type            Metric                Watch        Warning              Critical
    ─────────────   ───────────────────   ──────────   ──────────────────   ──────────
    geomagnetic     Kp index              4 ≤ Kp < 5   5 ≤ Kp < 7           Kp ≥ 7
    solarflare      F10.7 radio flux      —            150 < f ≤ 200        f > 200
    radioblackout   X-ray 0.1–0.8 nm      —            1e-5 < f ≤ 1e-4      f > 1e-4
    cme             speed (km/s)          —            500 < s ≤ 1000       s > 1000
    radiation       ≥10 MeV proton flux   —            10 < f ≤ 100         f > 100

Kp tiers are inclusive on their lower bound; every other metric is
exclusive on its lower bound. Sub-threshold observations never produce an
event.

═══════════════════════════════════════════════════════════════════════════
AURORAL DERIVATION
═══════════════════════════════════════════════════════════════════════════

Auroral events are derived from the Kp series and gated by the
subscriber's latitude:

    |lat|             Kp ≥ 5      Kp ≥ 7
    ─────────────     ───────     ────────
    > 50°             Warning     Critical
    30° < · ≤ 50°     —           Warning
    ≤ 30°             —           —

A Kp ≥ 5 reading yields an auroral *candidate* (id ``auroral-<time_tag>``)
at the best level any latitude could see. ``localize_auroral`` then
re-levels it for one subscriber, or drops it when the band gate fails.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional

from spacewx.alerts.models import (
    AlertLevel,
    EventType,
    Observation,
    RELEVANT_ROLES,
    Role,
    SpaceWeatherEvent,
)
from spacewx.ingestion.feed_client import (
    CME_FEED,
    FeedResult,
    GEOMAGNETIC_FEED,
    PROTON_FEED,
    RADIO_FLUX_FEED,
    XRAY_FEED,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Level Functions
# ═══════════════════════════════════════════════════════════════════════════

KP_WATCH = 4.0
KP_WARNING = 5.0
KP_CRITICAL = 7.0

# (warning_above, critical_above), both exclusive
FLUX_THRESHOLDS: Dict[EventType, tuple] = {
    EventType.SOLARFLARE:    (150.0, 200.0),
    EventType.RADIOBLACKOUT: (1e-5, 1e-4),
    EventType.CME:           (500.0, 1000.0),
    EventType.RADIATION:     (10.0, 100.0),
}

AURORAL_HIGH_LATITUDE = 50.0
AURORAL_MID_LATITUDE = 30.0


def geomagnetic_level(kp: float) -> Optional[AlertLevel]:
    if kp >= KP_CRITICAL:
        return AlertLevel.CRITICAL
    if kp >= KP_WARNING:
        return AlertLevel.WARNING
    if kp >= KP_WATCH:
        return AlertLevel.WATCH
    return None


def _two_tier_level(event_type: EventType, value: float) -> Optional[AlertLevel]:
    warning_above, critical_above = FLUX_THRESHOLDS[event_type]
    if value > critical_above:
        return AlertLevel.CRITICAL
    if value > warning_above:
        return AlertLevel.WARNING
    return None


def solarflare_level(radio_flux: float) -> Optional[AlertLevel]:
    return _two_tier_level(EventType.SOLARFLARE, radio_flux)


def radioblackout_level(xray_flux: float) -> Optional[AlertLevel]:
    return _two_tier_level(EventType.RADIOBLACKOUT, xray_flux)


def cme_level(speed_kms: float) -> Optional[AlertLevel]:
    return _two_tier_level(EventType.CME, speed_kms)


def radiation_level(proton_flux: float) -> Optional[AlertLevel]:
    return _two_tier_level(EventType.RADIATION, proton_flux)


def auroral_level(kp: float, latitude: float) -> Optional[AlertLevel]:
    """Auroral visibility level for a Kp value at a given latitude."""
    abs_lat = abs(latitude)
    if abs_lat > AURORAL_HIGH_LATITUDE:
        if kp >= KP_CRITICAL:
            return AlertLevel.CRITICAL
        if kp >= KP_WARNING:
            return AlertLevel.WARNING
        return None
    if abs_lat > AURORAL_MID_LATITUDE and kp >= KP_CRITICAL:
        return AlertLevel.WARNING
    return None


# ═══════════════════════════════════════════════════════════════════════════
# Messages
# ═══════════════════════════════════════════════════════════════════════════

def _by_level(level: AlertLevel, watch: str, warning: str, critical: str) -> str:
    return {AlertLevel.WATCH: watch, AlertLevel.WARNING: warning,
            AlertLevel.CRITICAL: critical}[level]


def _geomagnetic_message(level: AlertLevel, kp: float, issued_at: str) -> str:
    strength = _by_level(level, "Possible", "Moderate to Strong", "Severe")
    impact = _by_level(level, "minor disruptions", "grid fluctuations", "widespread outages")
    return (
        f"{level.label} Alert: {strength} geomagnetic storm with Kp {kp:g}. "
        f"Impacts: {impact}. Issued at {issued_at}."
    )


def _solarflare_message(level: AlertLevel, flux: float, issued_at: str) -> str:
    impact = "severe radio blackouts" if level is AlertLevel.CRITICAL else "moderate disruptions"
    return (
        f"{level.label} Alert: Significant solar flare detected with radio flux {flux:g}. "
        f"Impacts: {impact}. Issued at {issued_at}."
    )


def _radioblackout_message(level: AlertLevel, flux: float, issued_at: str) -> str:
    impact = (
        "wide-area HF radio blackout on the sunlit side"
        if level is AlertLevel.CRITICAL else "degraded HF radio communication"
    )
    return (
        f"{level.label} Alert: Radio blackout risk with X-ray flux {flux:.2e} W/m2. "
        f"Impacts: {impact}. Issued at {issued_at}."
    )


def _cme_message(level: AlertLevel, speed: float, issued_at: str) -> str:
    impact = (
        "strong geomagnetic storm likely on arrival"
        if level is AlertLevel.CRITICAL else "possible geomagnetic disturbance on arrival"
    )
    return (
        f"{level.label} Alert: Coronal mass ejection travelling at {speed:g} km/s. "
        f"Impacts: {impact}. Issued at {issued_at}."
    )


def _radiation_message(level: AlertLevel, flux: float, issued_at: str) -> str:
    impact = "severe radiation hazards" if level is AlertLevel.CRITICAL else "moderate risks"
    return (
        f"{level.label} Alert: Radiation storm detected with proton flux {flux:g}. "
        f"Impacts: {impact}. Issued at {issued_at}."
    )


def _auroral_message(level: AlertLevel, kp: float, issued_at: str) -> str:
    visibility = (
        "Aurora likely overhead" if level is AlertLevel.CRITICAL
        else "Aurora possible on the horizon"
    )
    return (
        f"{level.label} Alert: {visibility} with Kp {kp:g}. "
        f"Impacts: possible power and GPS irregularities. Issued at {issued_at}."
    )


# Appended to the message text only; targeting.py decides who receives it
ROLE_IMPACT: Dict[Role, str] = {
    Role.PILOT:   "Pilots: Check flight plans.",
    Role.TELECOM: "Telecom: Monitor lines.",
    Role.FARMER:  "Farmers: Prepare for power issues.",
    Role.GENERAL: "Stay alert for power and GPS disruptions.",
}


def targeted_message(event: SpaceWeatherEvent, role: Role) -> str:
    """SMS/email text: level prefix, event message, role impact clause."""
    return f"{event.level.label}: {event.message} {ROLE_IMPACT[role]}"


# ═══════════════════════════════════════════════════════════════════════════
# Classification
# ═══════════════════════════════════════════════════════════════════════════

_LEVEL_FUNCS: Dict[EventType, Callable[[float], Optional[AlertLevel]]] = {
    EventType.GEOMAGNETIC:   geomagnetic_level,
    EventType.SOLARFLARE:    solarflare_level,
    EventType.RADIOBLACKOUT: radioblackout_level,
    EventType.CME:           cme_level,
    EventType.RADIATION:     radiation_level,
}

_MESSAGE_FUNCS: Dict[EventType, Callable[[AlertLevel, float, str], str]] = {
    EventType.GEOMAGNETIC:   _geomagnetic_message,
    EventType.SOLARFLARE:    _solarflare_message,
    EventType.RADIOBLACKOUT: _radioblackout_message,
    EventType.CME:           _cme_message,
    EventType.RADIATION:     _radiation_message,
    EventType.AURORAL:       _auroral_message,
}

FEED_EVENT_TYPES: Dict[str, EventType] = {
    GEOMAGNETIC_FEED: EventType.GEOMAGNETIC,
    RADIO_FLUX_FEED:  EventType.SOLARFLARE,
    XRAY_FEED:        EventType.RADIOBLACKOUT,
    CME_FEED:         EventType.CME,
    PROTON_FEED:      EventType.RADIATION,
}


def _build_event(
    event_type: EventType,
    level: AlertLevel,
    obs: Observation,
    event_id: str,
) -> SpaceWeatherEvent:
    return SpaceWeatherEvent(
        id=event_id,
        type=event_type,
        level=level,
        message=_MESSAGE_FUNCS[event_type](level, obs.value, obs.timestamp),
        issued_at=obs.timestamp,
        relevant_to_roles=RELEVANT_ROLES[event_type],
        metric_value=obs.value,
    )


def classify_observation(
    event_type: EventType,
    obs: Observation,
) -> Optional[SpaceWeatherEvent]:
    """Classify one observation; None when it stays below every threshold."""
    level = _LEVEL_FUNCS[event_type](obs.value)
    if level is None:
        return None
    return _build_event(event_type, level, obs, obs.timestamp)


def auroral_candidate(obs: Observation) -> Optional[SpaceWeatherEvent]:
    """Auroral candidate from a Kp observation, at its highest reachable level."""
    level = auroral_level(obs.value, AURORAL_HIGH_LATITUDE + 1.0)
    if level is None:
        return None
    return _build_event(EventType.AURORAL, level, obs, f"auroral-{obs.timestamp}")


def localize_auroral(
    event: SpaceWeatherEvent,
    latitude: float,
) -> Optional[SpaceWeatherEvent]:
    """Re-level an auroral candidate for one latitude; None if not visible there."""
    level = auroral_level(event.metric_value, latitude)
    if level is None:
        return None
    if level == event.level:
        return event
    return replace(
        event,
        level=level,
        message=_auroral_message(level, event.metric_value, event.issued_at),
    )


def classify_observations(
    event_type: EventType,
    observations: Iterable[Observation],
) -> List[SpaceWeatherEvent]:
    """Classify a feed series, newest entry first (feeds list oldest first)."""
    events = []
    for obs in reversed(list(observations)):
        event = classify_observation(event_type, obs)
        if event is not None:
            events.append(event)
    return events


def classify_feeds(results: Dict[str, FeedResult]) -> List[SpaceWeatherEvent]:
    """
    Classify every successfully fetched feed.

    Failed feeds contribute nothing. Auroral candidates are derived from
    the geomagnetic series and follow the geomagnetic events.
    """
    events: List[SpaceWeatherEvent] = []

    for feed_name, event_type in FEED_EVENT_TYPES.items():
        result = results.get(feed_name)
        if result is None or not result.success:
            continue
        events.extend(classify_observations(event_type, result.observations))

        if event_type is EventType.GEOMAGNETIC:
            for obs in reversed(result.observations):
                candidate = auroral_candidate(obs)
                if candidate is not None:
                    events.append(candidate)

    counts: Dict[str, int] = {}
    for e in events:
        counts[e.type.value] = counts.get(e.type.value, 0) + 1
    logger.info("Classified %d events: %s", len(events), counts or "none")
    return events
