"""
test_classifier.py — Threshold tables, auroral derivation and messages.

Covers:
    • Per-type level functions at every tier boundary
    • Auroral latitude gating (both clauses checked independently)
    • Event construction (id, roles, message contents)
    • Feed-level classification order and failed-feed handling

Run with:
    pytest tests/test_classifier.py -v
"""

from __future__ import annotations

import pytest

from spacewx.alerts.classifier import (
    ROLE_IMPACT,
    auroral_candidate,
    auroral_level,
    classify_feeds,
    classify_observation,
    classify_observations,
    cme_level,
    geomagnetic_level,
    localize_auroral,
    radiation_level,
    radioblackout_level,
    solarflare_level,
    targeted_message,
)
from spacewx.alerts.models import AlertLevel, EventType, Observation, Role
from spacewx.ingestion.feed_client import FeedResult, GEOMAGNETIC_FEED, XRAY_FEED

from fakes import feed_results

TS = "2024-05-10T17:00:00"


def _kp(value: float, ts: str = TS) -> Observation:
    return Observation(value=value, timestamp=ts, feed=GEOMAGNETIC_FEED)


# ═══════════════════════════════════════════════════════════════════════════
# Level Functions
# ═══════════════════════════════════════════════════════════════════════════

class TestGeomagneticLevel:
    """Kp tiers are inclusive on their lower bound."""

    @pytest.mark.parametrize("kp, expected", [
        (3.9, None),
        (4.0, AlertLevel.WATCH),
        (4.99, AlertLevel.WATCH),
        (5.0, AlertLevel.WARNING),
        (6.99, AlertLevel.WARNING),
        (7.0, AlertLevel.CRITICAL),
        (9.0, AlertLevel.CRITICAL),
    ])
    def test_boundaries(self, kp, expected):
        assert geomagnetic_level(kp) == expected


class TestTwoTierLevels:
    """Flux / speed tiers are exclusive on their lower bound."""

    def test_solarflare(self):
        assert solarflare_level(150.0) is None
        assert solarflare_level(150.1) == AlertLevel.WARNING
        assert solarflare_level(200.0) == AlertLevel.WARNING
        assert solarflare_level(200.1) == AlertLevel.CRITICAL

    def test_radioblackout(self):
        assert radioblackout_level(1e-5) is None
        assert radioblackout_level(2e-5) == AlertLevel.WARNING
        assert radioblackout_level(1e-4) == AlertLevel.WARNING
        assert radioblackout_level(1.5e-4) == AlertLevel.CRITICAL

    def test_cme(self):
        assert cme_level(500) is None
        assert cme_level(501) == AlertLevel.WARNING
        assert cme_level(1000) == AlertLevel.WARNING
        assert cme_level(1001) == AlertLevel.CRITICAL

    def test_radiation(self):
        assert radiation_level(10) is None
        assert radiation_level(10.5) == AlertLevel.WARNING
        assert radiation_level(100) == AlertLevel.WARNING
        assert radiation_level(101) == AlertLevel.CRITICAL

    def test_no_watch_tier_outside_geomagnetic(self):
        for fn in (solarflare_level, radioblackout_level, cme_level, radiation_level):
            for value in (0.0, 1e-6, 5.0, 149.0):
                assert fn(value) != AlertLevel.WATCH


class TestAuroralLevel:

    def test_kp6_at_60_degrees_is_warning(self):
        assert auroral_level(6.0, 60.0) == AlertLevel.WARNING

    def test_kp5_at_55_degrees_is_warning(self):
        assert auroral_level(5.0, 55.0) == AlertLevel.WARNING

    def test_kp6_at_40_degrees_no_event(self):
        assert auroral_level(6.0, 40.0) is None

    def test_kp7_at_40_degrees_is_warning(self):
        assert auroral_level(7.0, 40.0) == AlertLevel.WARNING

    def test_kp7_at_60_degrees_is_critical(self):
        assert auroral_level(7.0, 60.0) == AlertLevel.CRITICAL

    def test_band_edges(self):
        assert auroral_level(5.0, 50.0) is None       # 50° is mid band
        assert auroral_level(7.0, 50.0) == AlertLevel.WARNING
        assert auroral_level(7.0, 30.0) is None       # 30° excluded
        assert auroral_level(9.0, 10.0) is None

    def test_southern_hemisphere_uses_absolute_latitude(self):
        assert auroral_level(7.0, -60.0) == AlertLevel.CRITICAL
        assert auroral_level(7.0, -40.0) == AlertLevel.WARNING

    def test_below_kp5_never_auroral(self):
        assert auroral_level(4.9, 80.0) is None


# ═══════════════════════════════════════════════════════════════════════════
# Event Construction
# ═══════════════════════════════════════════════════════════════════════════

class TestClassifyObservation:

    def test_sub_threshold_produces_no_event(self):
        assert classify_observation(EventType.GEOMAGNETIC, _kp(3.9)) is None

    def test_event_fields(self):
        event = classify_observation(EventType.GEOMAGNETIC, _kp(7.33))
        assert event.id == TS
        assert event.type is EventType.GEOMAGNETIC
        assert event.level is AlertLevel.CRITICAL
        assert event.issued_at == TS
        assert event.metric_value == 7.33
        assert event.relevant_to_roles == frozenset(Role)

    def test_message_carries_value_and_timestamp(self):
        event = classify_observation(EventType.GEOMAGNETIC, _kp(5.67))
        assert "5.67" in event.message
        assert TS in event.message
        assert event.message.startswith("Warning Alert:")

    def test_radioblackout_roles_exclude_farmer(self):
        obs = Observation(value=2e-4, timestamp=TS, feed=XRAY_FEED)
        event = classify_observation(EventType.RADIOBLACKOUT, obs)
        assert Role.FARMER not in event.relevant_to_roles
        assert {Role.PILOT, Role.TELECOM, Role.GENERAL} <= event.relevant_to_roles
        assert "2.00e-04" in event.message

    def test_to_dict(self):
        d = classify_observation(EventType.CME, Observation(1200, TS)).to_dict()
        assert d["type"] == "cme"
        assert d["level"] == "Critical"
        assert d["relevant_to_roles"] == ["farmer", "general", "pilot", "telecom"]


class TestAuroralCandidate:

    def test_candidate_from_kp5(self):
        event = auroral_candidate(_kp(5.0))
        assert event.id == f"auroral-{TS}"
        assert event.type is EventType.AURORAL
        assert event.level is AlertLevel.WARNING
        assert event.relevant_to_roles == frozenset({Role.FARMER, Role.GENERAL})

    def test_no_candidate_below_kp5(self):
        assert auroral_candidate(_kp(4.5)) is None

    def test_localize_keeps_level_at_high_latitude(self):
        candidate = auroral_candidate(_kp(7.0))
        assert localize_auroral(candidate, 60.0) is candidate

    def test_localize_downgrades_mid_latitude(self):
        candidate = auroral_candidate(_kp(7.0))
        local = localize_auroral(candidate, 40.0)
        assert local.level is AlertLevel.WARNING
        assert local.id == candidate.id
        assert local.message.startswith("Warning Alert:")

    def test_localize_drops_low_latitude(self):
        assert localize_auroral(auroral_candidate(_kp(9.0)), -1.28) is None


class TestTargetedMessage:

    def test_level_prefix_and_role_clause(self):
        event = classify_observation(EventType.GEOMAGNETIC, _kp(7.0))
        text = targeted_message(event, Role.PILOT)
        assert text.startswith("Critical: ")
        assert text.endswith(ROLE_IMPACT[Role.PILOT])
        assert event.message in text

    def test_every_role_has_clause(self):
        assert set(ROLE_IMPACT) == set(Role)


# ═══════════════════════════════════════════════════════════════════════════
# Series / Feed Classification
# ═══════════════════════════════════════════════════════════════════════════

class TestClassifyFeeds:

    def test_newest_entry_first(self):
        events = classify_observations(
            EventType.GEOMAGNETIC,
            [_kp(4.0, "t1"), _kp(3.0, "t2"), _kp(5.0, "t3")],
        )
        assert [e.id for e in events] == ["t3", "t1"]

    def test_auroral_candidates_follow_geomagnetic(self):
        events = classify_feeds(feed_results(geomagnetic=[(5.3, "t1")]))
        assert [(e.type, e.id) for e in events] == [
            (EventType.GEOMAGNETIC, "t1"),
            (EventType.AURORAL, "auroral-t1"),
        ]

    def test_failed_feed_contributes_nothing(self):
        results = feed_results(cme=[(1500, "c1")])
        results["proton"] = FeedResult(feed="proton", error="timeout")
        events = classify_feeds(results)
        assert [e.type for e in events] == [EventType.CME]

    def test_all_types_from_all_feeds(self):
        results = feed_results(
            geomagnetic=[(7.0, "g")],
            radio_flux=[(210.0, "r")],
            xray=[(2e-4, "x")],
            cme=[(800.0, "c")],
            proton=[(50.0, "p")],
        )
        types = {e.type for e in classify_feeds(results)}
        assert types == set(EventType)

    def test_quiet_feeds_yield_no_events(self):
        results = feed_results(geomagnetic=[(2.0, "g")], cme=[(300.0, "c")])
        assert classify_feeds(results) == []
