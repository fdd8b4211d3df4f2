"""
test_api.py — HTTP surface via FastAPI's TestClient.

The app is built with in-memory stores and fake channels, and the
scheduler is left stopped so polling only happens through /poll.

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from spacewx.alerts.scheduler import SchedulerState
from spacewx.api.deps import assemble_services
from spacewx.ingestion.feed_client import FeedResult, XRAY_FEED
from spacewx.main import create_app
from spacewx.storage.memory import (
    InMemoryAlertLedger,
    InMemoryDeliveryLedger,
    InMemorySubscriberStore,
)

from fakes import (
    ALL_FEEDS,
    FakeEmailGateway,
    FakeFeedClient,
    FakeGeocoder,
    FakeSmsGateway,
    empty_results,
    feed_results,
)

PHONE = "+254712345678"


@pytest.fixture
def services():
    return assemble_services(
        InMemorySubscriberStore(),
        InMemoryAlertLedger(),
        InMemoryDeliveryLedger(),
        feed_client=FakeFeedClient(),
        geocoder=FakeGeocoder({"Nairobi": -1.28}),
        sms_gateway=FakeSmsGateway(),
        email_gateway=FakeEmailGateway(),
    )


@pytest.fixture
def client(services):
    with TestClient(create_app(services, start_scheduler=False)) as c:
        yield c


def _subscribe(client, phone=PHONE, **extra):
    body = {"phoneNumber": phone, "location": "Nairobi", **extra}
    return client.post("/api/v1/users/subscribe", json=body)


# ═══════════════════════════════════════════════════════════════════════════
# Subscribers
# ═══════════════════════════════════════════════════════════════════════════

class TestSubscriberRoutes:

    def test_subscribe_creates_general_subscriber(self, client):
        resp = _subscribe(client)
        assert resp.status_code == 201
        data = resp.json()
        assert data["message"] == "User subscribed successfully"
        assert data["user"]["phone_number"] == PHONE
        assert data["user"]["role"] == "general"
        assert data["user"]["subscribed"] is True

    def test_resubscribe_merges_fields(self, client):
        _subscribe(client, role="pilot", email="pilot@example.com",
                   preferences={"solarflare": True})
        resp = _subscribe(client, preferences={"cme": True})
        user = resp.json()["user"]
        assert user["role"] == "pilot"
        assert user["email"] == "pilot@example.com"
        assert user["preferences"] == {"solarflare": True, "cme": True}

    @pytest.mark.parametrize("body", [
        {"phoneNumber": "0712345678", "location": "Nairobi"},
        {"phoneNumber": PHONE, "location": "   "},
        {"phoneNumber": PHONE, "location": "Nairobi", "role": "astronaut"},
        {"phoneNumber": PHONE, "location": "Nairobi", "preferences": {"meteor": True}},
    ])
    def test_subscribe_validation(self, client, body):
        assert client.post("/api/v1/users/subscribe", json=body).status_code == 422

    def test_status_reports_effective_preferences(self, client):
        _subscribe(client, preferences={"auroral": True})
        resp = client.get(f"/api/v1/users/{PHONE}/status")
        assert resp.status_code == 200
        prefs = resp.json()["effective_preferences"]
        assert prefs["geomagnetic"] is True
        assert prefs["auroral"] is True
        assert prefs["cme"] is False

    def test_unsubscribe(self, client):
        _subscribe(client)
        resp = client.post("/api/v1/users/unsubscribe", json={"phoneNumber": PHONE})
        assert resp.status_code == 200
        assert resp.json()["user"]["subscribed"] is False
        assert client.get(f"/api/v1/users/{PHONE}/status").json()["subscribed"] is False

    def test_unknown_subscriber_is_404(self, client):
        resp = client.post("/api/v1/users/unsubscribe", json={"phoneNumber": "+10000000000"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"
        assert client.get("/api/v1/users/+10000000000/status").status_code == 404


# ═══════════════════════════════════════════════════════════════════════════
# Alerts
# ═══════════════════════════════════════════════════════════════════════════

class TestManualAlert:

    def test_send_to_subscribers(self, client, services):
        _subscribe(client)
        _subscribe(client, phone="+254700000002")
        resp = client.post("/api/v1/alerts/send", json={"message": "Drill at noon"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["message"] == "Alerts sent to 2 user(s)"
        assert data["sent"] == 2
        assert data["alert"]["type"] == "manual"
        assert len(services.sms_gateway.sent) == 2

    def test_send_without_subscribers(self, client):
        resp = client.post("/api/v1/alerts/send", json={"message": "Drill"})
        assert resp.json()["message"] == "No subscribed users found, alert recorded"
        assert resp.json()["alert"]["id"] == 1

    def test_empty_message_rejected(self, client):
        assert client.post("/api/v1/alerts/send", json={"message": ""}).status_code == 422


class TestHistory:

    def test_history_newest_first(self, client):
        _subscribe(client)
        client.post("/api/v1/alerts/send", json={"message": "first"})
        client.post("/api/v1/alerts/send", json={"message": "second"})

        history = client.get(f"/api/v1/alerts/history/{PHONE}").json()
        assert [a["message"] for a in history] == ["second", "first"]

    def test_history_capped_at_ten(self, client):
        _subscribe(client)
        for i in range(12):
            client.post("/api/v1/alerts/send", json={"message": f"m{i}"})
        assert len(client.get(f"/api/v1/alerts/history/{PHONE}").json()) == 10

    def test_history_unknown_phone_is_empty(self, client):
        assert client.get("/api/v1/alerts/history/+10000000000").json() == []


class TestDeliveryReport:

    def test_report_updates_by_message_id(self, client, services):
        _subscribe(client)
        client.post("/api/v1/alerts/send", json={"message": "x"})

        resp = client.post("/api/v1/alerts/delivery-report", json={
            "id": "MSG-1", "status": "Success", "phoneNumber": PHONE,
        })
        assert resp.status_code == 200
        assert resp.json()["delivery"]["status"] == "Success"
        assert services.delivery_ledger.deliveries[0].status == "Success"

    def test_numeric_id_appends_to_alert(self, client, services):
        client.post("/api/v1/alerts/send", json={"message": "x"})
        resp = client.post("/api/v1/alerts/delivery-report", json={
            "id": "1", "status": "Delivered", "phoneNumber": PHONE,
        })
        assert resp.status_code == 200
        assert resp.json()["delivery"]["alert_id"] == 1
        assert len(services.delivery_ledger.deliveries) == 1

    def test_numeric_id_for_missing_alert_is_404(self, client):
        resp = client.post("/api/v1/alerts/delivery-report", json={
            "id": "77", "status": "Delivered", "phoneNumber": PHONE,
        })
        assert resp.status_code == 404

    def test_unknown_message_id_is_404(self, client):
        resp = client.post("/api/v1/alerts/delivery-report", json={
            "id": "ATXid_nope", "status": "Failed", "phoneNumber": PHONE,
        })
        assert resp.status_code == 404

    def test_missing_fields_is_400(self, client):
        resp = client.post("/api/v1/alerts/delivery-report", json={"id": "1"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


class TestPoll:

    def test_poll_runs_cycle(self, client, services):
        services.feed_client.results = feed_results(geomagnetic=[(7.33, "2024-05-10T17:00:00")])
        _subscribe(client)

        resp = client.post("/api/v1/alerts/poll")
        assert resp.status_code == 200
        report = resp.json()
        assert report["events_detected"] == 2
        assert report["aborted"] is False
        assert len(services.sms_gateway.sent) == 1

        history = client.get(f"/api/v1/alerts/history/{PHONE}").json()
        assert history[0]["type"] == "geomagnetic"
        assert history[0]["level"] == "Critical"

    def test_poll_while_running_is_409(self, client, services):
        services.scheduler.state = SchedulerState.POLLING
        resp = client.post("/api/v1/alerts/poll")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "POLL_IN_PROGRESS"
        assert resp.headers["Retry-After"] == "10"
        assert services.scheduler.cycles_skipped == 0


# ═══════════════════════════════════════════════════════════════════════════
# Health & Root
# ═══════════════════════════════════════════════════════════════════════════

class TestHealth:

    def test_root(self, client):
        data = client.get("/").json()
        assert "auroral" in data["event_types"]

    def test_liveness(self, client):
        resp = client.get("/health/live")
        assert resp.json() == {"status": "alive"}
        assert "X-Request-ID" in resp.headers

    def test_health_degraded_without_database(self, client):
        data = client.get("/health").json()
        assert data["status"] == "degraded"
        names = {c["name"]: c for c in data["components"]}
        assert names["database"]["status"] == "degraded"
        assert names["scheduler"]["details"]["running"] is False
        assert len(names["feeds"]["details"]) == 5

    def test_readiness_serves_when_degraded(self, client):
        assert client.get("/health/ready").status_code == 200

    def test_failed_feed_degrades_feeds_component(self, client, services):
        results = empty_results()
        results[XRAY_FEED] = FeedResult(feed=XRAY_FEED, error="timeout")
        services.feed_client.results = results
        client.post("/api/v1/alerts/poll")

        data = client.get("/health").json()
        feeds = {c["name"]: c for c in data["components"]}["feeds"]
        assert feeds["status"] == "degraded"
        assert XRAY_FEED in feeds["message"]
        assert data["last_poll"]["aborted"] is False

    def test_every_feed_failing_fails_readiness(self, client, services):
        services.feed_client.results = {
            name: FeedResult(feed=name, error="HTTP 503") for name in ALL_FEEDS
        }
        client.post("/api/v1/alerts/poll")

        resp = client.get("/health/ready")
        assert resp.status_code == 503
        assert resp.json()["status"] == "unhealthy"
