"""Tests for operator and enrollment endpoints.

WHAT: /recovery/* (admin token, status, stats, manual run, release) and
      POST /subscribers
WHY: Releasing a failed subscriber is the only way a recovery SMS is ever
     attempted twice, so it must be guarded and state-checked

REFERENCES:
  - winback/routers/recovery.py
  - winback/routers/subscribers.py
"""

import uuid
from datetime import timedelta

import pytest

from winback.deps import get_discount_client, get_transport
from winback.models import RecoveryStateEnum
from winback.routers import recovery as recovery_router


class TestAdminToken:

    def test_missing_token(self, client):
        assert client.get("/recovery/status").status_code == 401

    def test_wrong_token(self, client):
        assert client.get("/recovery/status", headers={"X-Admin-Token": "nope"}).status_code == 401

    def test_disabled_without_configured_token(self, client, test_settings, admin_headers):
        test_settings.ADMIN_API_TOKEN = None
        assert client.get("/recovery/status", headers=admin_headers).status_code == 503


class TestRecoveryEndpoints:

    def test_status(self, client, admin_headers, make_subscriber):
        make_subscriber()
        make_subscriber(recovery_state=RecoveryStateEnum.failed, recovery_sent=True)

        response = client.get("/recovery/status", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["pending"] == 1
        assert body["failed"] == 1
        assert body["claimed"] == 0
        assert body["quiet_hours"]["timezone"] == "America/New_York"
        assert body["quiet_hours"]["window"] == "09:00-21:00"

    def test_stats(self, client, admin_headers, make_subscriber):
        make_subscriber()

        response = client.get("/recovery/stats", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["total_subscribers"] == 1
        assert response.json()["first_sms"]["delivered"] == 1

    def test_manual_run_enqueues(self, client, admin_headers, monkeypatch):
        async def fake_enqueue():
            return {"job_id": "recovery-cycle-manual", "status": "enqueued"}

        monkeypatch.setattr(recovery_router, "enqueue_recovery_cycle", fake_enqueue)

        response = client.post("/recovery/run", headers=admin_headers)

        assert response.status_code == 202
        assert response.json()["status"] == "enqueued"

    def test_release_failed(self, client, admin_headers, make_subscriber, clock):
        sub = make_subscriber(
            recovery_state=RecoveryStateEnum.failed,
            recovery_sent=True,
            recovery_scheduled_for=clock.now() - timedelta(hours=1),
            recovery_code="JP2-FAIL1",
        )

        response = client.post(f"/recovery/subscribers/{sub.id}/release", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["recovery_state"] == "scheduled"
        assert response.json()["recovery_code"] is None

    def test_release_requires_failed_state(self, client, admin_headers, make_subscriber):
        sub = make_subscriber()

        response = client.post(f"/recovery/subscribers/{sub.id}/release", headers=admin_headers)

        assert response.status_code == 409

    def test_release_unknown_subscriber(self, client, admin_headers):
        response = client.post(f"/recovery/subscribers/{uuid.uuid4()}/release", headers=admin_headers)
        assert response.status_code == 404


class TestEnrollmentEndpoint:

    @pytest.fixture
    def wired_client(self, app, client, transport, discount_client):
        app.dependency_overrides[get_transport] = lambda: transport
        app.dependency_overrides[get_discount_client] = lambda: discount_client
        return client

    def test_providers_not_configured(self, client):
        response = client.post("/subscribers", json={"phone": "2015550123"})
        assert response.status_code == 503

    def test_enroll_then_repeat(self, wired_client, transport):
        first = wired_client.post("/subscribers", json={"phone": "(201) 555-0123", "email": "a@b.com"})
        repeat = wired_client.post("/subscribers", json={"phone": "2015550123"})

        assert first.status_code == 201
        assert first.json()["sms_sent"] is True
        assert first.json()["subscriber"]["phone"] == "+12015550123"
        assert repeat.status_code == 200
        assert repeat.json()["already_subscribed"] is True
        assert len(transport.sent) == 1

    def test_invalid_phone(self, wired_client):
        response = wired_client.post("/subscribers", json={"phone": "12345"})
        assert response.status_code == 400

    def test_discount_failure(self, wired_client, discount_client):
        discount_client.fail_with = "Shopify 500"
        response = wired_client.post("/subscribers", json={"phone": "2015550188"})
        assert response.status_code == 502


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
