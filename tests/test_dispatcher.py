"""
test_dispatcher.py — Channel selection, failure isolation and ledger writes.

Covers:
    • Critical + email → SMS and email; everything else → SMS only
    • A failed send never blocks the others and writes no delivery row
    • Exactly one alert per dispatched event, even with zero recipients
    • Concurrent-writer collision attaches deliveries to the winner
    • Bounded fan-out
    • Operator broadcast

Run with:
    pytest tests/test_dispatcher.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from spacewx.alerts.classifier import (
    auroral_candidate,
    classify_observation,
    localize_auroral,
)
from spacewx.alerts.dispatcher import AlertDispatcher, recorded_event, wants_email
from spacewx.alerts.models import (
    DeliveryChannel,
    EventType,
    Observation,
    Role,
)
from spacewx.core.errors import DeliveryError, StoreUnavailableError
from spacewx.storage.memory import InMemoryAlertLedger, InMemoryDeliveryLedger

from fakes import FakeEmailGateway, FakeSmsGateway, make_subscriber

TS = "2024-05-10T17:00:00"
CRITICAL_KP = classify_observation(EventType.GEOMAGNETIC, Observation(7.3, TS))
WARNING_KP = classify_observation(EventType.GEOMAGNETIC, Observation(5.5, TS))


def _dispatcher(sms=None, email=None, **kwargs):
    return AlertDispatcher(
        sms or FakeSmsGateway(),
        email or FakeEmailGateway(),
        InMemoryAlertLedger(),
        InMemoryDeliveryLedger(),
        **kwargs,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Channel Rule
# ═══════════════════════════════════════════════════════════════════════════

class TestChannelSelection:

    def test_wants_email(self):
        with_email = make_subscriber(email="ops@example.com")
        assert wants_email(CRITICAL_KP, with_email)
        assert not wants_email(WARNING_KP, with_email)
        assert not wants_email(CRITICAL_KP, make_subscriber())

    def test_recorded_event_is_strongest_auroral_level_sent(self):
        candidate = auroral_candidate(Observation(7.2, TS))
        north = localize_auroral(candidate, 60.0)
        south = localize_auroral(candidate, 45.0)
        targets = [(make_subscriber("+254700000001"), south),
                   (make_subscriber("+254700000002"), north)]

        assert recorded_event(candidate, targets) is north
        assert recorded_event(candidate, targets[:1]) is south
        assert recorded_event(candidate, []) is None
        assert recorded_event(WARNING_KP, []) is WARNING_KP

    @pytest.mark.asyncio
    async def test_critical_with_email_sends_both(self):
        d = _dispatcher()
        s = make_subscriber(role=Role.PILOT, email="pilot@example.com")
        result = await d.dispatch(CRITICAL_KP, [(s, CRITICAL_KP)])

        assert len(d.sms_gateway.sent) == 1
        assert len(d.email_gateway.sent) == 1
        to, subject, body = d.email_gateway.sent[0]
        assert to == "pilot@example.com"
        assert subject == "Critical Alert: GEOMAGNETIC"
        assert body == d.sms_gateway.sent[0][1]
        assert body.startswith("Critical: ")
        assert body.endswith("Pilots: Check flight plans.")
        assert len(result.attempts) == 2

    @pytest.mark.asyncio
    async def test_warning_with_email_sends_sms_only(self):
        d = _dispatcher()
        s = make_subscriber(email="ops@example.com")
        await d.dispatch(WARNING_KP, [(s, WARNING_KP)])
        assert len(d.sms_gateway.sent) == 1
        assert d.email_gateway.sent == []

    @pytest.mark.asyncio
    async def test_critical_without_email_sends_sms_only(self):
        d = _dispatcher()
        await d.dispatch(CRITICAL_KP, [(make_subscriber(), CRITICAL_KP)])
        assert len(d.sms_gateway.sent) == 1
        assert d.email_gateway.sent == []


# ═══════════════════════════════════════════════════════════════════════════
# Failure Isolation & Ledger Writes
# ═══════════════════════════════════════════════════════════════════════════

class TestDispatchRecording:

    @pytest.mark.asyncio
    async def test_one_alert_and_delivery_per_success(self):
        d = _dispatcher(sms=FakeSmsGateway(fail_for=["+254700000002"]))
        subs = [make_subscriber(f"+25470000000{i}") for i in (1, 2, 3)]
        result = await d.dispatch(WARNING_KP, [(s, WARNING_KP) for s in subs])

        assert len(d.alert_ledger.alerts) == 1
        alert = d.alert_ledger.alerts[0]
        assert alert.id == result.alert_id
        assert alert.type == "geomagnetic"
        assert alert.level == "Warning"
        assert alert.message == WARNING_KP.message
        assert alert.user_id is None
        assert alert.dedup_key.startswith("geomagnetic:")

        phones = sorted(dv.phone_number for dv in d.delivery_ledger.deliveries)
        assert phones == ["+254700000001", "+254700000003"]
        assert all(dv.status == "SENT" for dv in d.delivery_ledger.deliveries)
        assert all(dv.alert_id == alert.id for dv in d.delivery_ledger.deliveries)
        assert len(result.failures) == 1
        assert result.failures[0].recipient == "+254700000002"

    @pytest.mark.asyncio
    async def test_email_failure_keeps_sms_delivery(self):
        d = _dispatcher(email=FakeEmailGateway(fail_for=["ops@example.com"]))
        s = make_subscriber(email="ops@example.com")
        result = await d.dispatch(CRITICAL_KP, [(s, CRITICAL_KP)])

        statuses = [dv.status for dv in d.delivery_ledger.deliveries]
        assert statuses == ["SENT"]
        assert result.failures[0].channel is DeliveryChannel.EMAIL

    @pytest.mark.asyncio
    async def test_email_delivery_status(self):
        d = _dispatcher()
        s = make_subscriber(email="ops@example.com")
        await d.dispatch(CRITICAL_KP, [(s, CRITICAL_KP)])
        by_channel = {dv.channel: dv for dv in d.delivery_ledger.deliveries}
        assert by_channel["sms"].status == "SENT"
        assert by_channel["sms"].provider_message_id == "MSG-1"
        assert by_channel["email"].status == "EMAIL_SENT"
        assert by_channel["email"].phone_number == s.phone_number

    @pytest.mark.asyncio
    async def test_unexpected_exception_isolated(self):
        class ExplodingSms(FakeSmsGateway):
            async def send(self, phone_number, message):
                if phone_number.endswith("1"):
                    raise RuntimeError("socket closed")
                return await super().send(phone_number, message)

        d = _dispatcher(sms=ExplodingSms())
        subs = [make_subscriber("+254700000001"), make_subscriber("+254700000002")]
        result = await d.dispatch(WARNING_KP, [(s, WARNING_KP) for s in subs])
        assert len(result.failures) == 1
        assert result.failures[0].error_message == "socket closed"
        assert len(d.delivery_ledger.deliveries) == 1

    @pytest.mark.asyncio
    async def test_zero_targets_still_records_alert(self):
        d = _dispatcher()
        result = await d.dispatch(WARNING_KP, [])
        assert result.alert_id == 1
        assert len(d.alert_ledger.alerts) == 1
        assert d.delivery_ledger.deliveries == []

    @pytest.mark.asyncio
    async def test_all_sends_fail_alert_still_recorded(self):
        d = _dispatcher(sms=FakeSmsGateway(fail_for=["+254712345678"]))
        result = await d.dispatch(WARNING_KP, [(make_subscriber(), WARNING_KP)])
        assert result.alert_id is not None
        assert d.delivery_ledger.deliveries == []

    @pytest.mark.asyncio
    async def test_same_bucket_collision_returns_winner_id(self):
        d = _dispatcher(window_seconds=300)
        at = datetime(2024, 5, 10, 17, 0, 10, tzinfo=timezone.utc)
        first = await d.record_alert(WARNING_KP, sent_at=at)
        second = await d.record_alert(CRITICAL_KP, sent_at=at + timedelta(seconds=30))

        assert second == first
        assert len(d.alert_ledger.alerts) == 1

    @pytest.mark.asyncio
    async def test_next_bucket_records_new_alert(self):
        d = _dispatcher(window_seconds=300)
        at = datetime(2024, 5, 10, 17, 0, 10, tzinfo=timezone.utc)
        first = await d.record_alert(WARNING_KP, sent_at=at)
        later = await d.record_alert(WARNING_KP, sent_at=at + timedelta(minutes=6))
        assert later != first

    @pytest.mark.asyncio
    async def test_concurrent_dispatches_share_one_alert(self):
        d = _dispatcher()
        first, second = await asyncio.gather(
            d.dispatch(WARNING_KP, [(make_subscriber("+254700000001"), WARNING_KP)]),
            d.dispatch(WARNING_KP, [(make_subscriber("+254700000002"), WARNING_KP)]),
        )

        assert len(d.alert_ledger.alerts) == 1
        assert second.alert_id == first.alert_id
        assert {dv.alert_id for dv in d.delivery_ledger.deliveries} == {first.alert_id}


class TestBoundedFanOut:

    @pytest.mark.asyncio
    async def test_concurrency_cap(self):
        class SlowSms(FakeSmsGateway):
            def __init__(self):
                super().__init__()
                self.in_flight = 0
                self.peak = 0

            async def send(self, phone_number, message):
                self.in_flight += 1
                self.peak = max(self.peak, self.in_flight)
                await asyncio.sleep(0.01)
                self.in_flight -= 1
                return await super().send(phone_number, message)

        sms = SlowSms()
        d = _dispatcher(sms=sms, concurrency=2)
        subs = [make_subscriber(f"+2547000000{i:02d}") for i in range(6)]
        await d.dispatch(WARNING_KP, [(s, WARNING_KP) for s in subs])

        assert sms.peak <= 2
        assert len(sms.sent) == 6

    @pytest.mark.asyncio
    async def test_unbounded_when_zero(self):
        d = _dispatcher(concurrency=0)
        subs = [make_subscriber(f"+2547000000{i:02d}") for i in range(4)]
        outcomes = await d.send_all([(s, WARNING_KP) for s in subs])
        assert all(a.succeeded for _, a in outcomes)


# ═══════════════════════════════════════════════════════════════════════════
# Broadcast
# ═══════════════════════════════════════════════════════════════════════════

class TestBroadcast:

    @pytest.mark.asyncio
    async def test_broadcast_to_all(self):
        d = _dispatcher(sms=FakeSmsGateway(fail_for=["+254700000002"]))
        subs = [make_subscriber("+254700000001"), make_subscriber("+254700000002")]
        alert, attempts = await d.broadcast("Solar max drill at noon", subs)

        assert alert.type == "manual"
        assert alert.level == ""
        assert alert.dedup_key is None
        assert d.sms_gateway.sent == [
            ("+254700000001", "Space Weather Alert: Solar max drill at noon"),
        ]
        assert [a.succeeded for a in attempts] == [True, False]
        assert len(d.delivery_ledger.deliveries) == 1

    @pytest.mark.asyncio
    async def test_broadcast_with_no_subscribers_records_alert(self):
        d = _dispatcher()
        alert, attempts = await d.broadcast("test", [])
        assert alert.id == 1
        assert attempts == []

    @pytest.mark.asyncio
    async def test_broadcasts_never_collide(self):
        d = _dispatcher()
        await d.broadcast("one", [])
        await d.broadcast("two", [])
        assert [a.message for a in d.alert_ledger.alerts] == ["one", "two"]


class TestDeliveryErrorShape:

    def test_delivery_error_fields(self):
        exc = DeliveryError("sms", "+254700000001", "boom")
        assert exc.channel == "sms"
        assert exc.status_code == 502
        assert "boom" in exc.message


class TestStoreFailures:

    @pytest.mark.asyncio
    async def test_alert_write_failure_propagates_after_sends(self):
        ledger = MagicMock()
        ledger.create = AsyncMock(side_effect=StoreUnavailableError("create_alert", "down"))
        sms = FakeSmsGateway()
        d = AlertDispatcher(sms, FakeEmailGateway(), ledger, InMemoryDeliveryLedger())

        with pytest.raises(StoreUnavailableError):
            await d.dispatch(WARNING_KP, [(make_subscriber(), WARNING_KP)])

        ledger.create.assert_awaited_once()
        assert len(sms.sent) == 1
        assert d.delivery_ledger.deliveries == []
