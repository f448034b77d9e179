"""
test_api.py — HTTP surface on an in-memory service container.

Covers:
    • Activity routes (start, current, heartbeat, end, connectivity check)
    • Startup re-arms deadline checks for stored active activities
    • Error rendering (404, 409, 422, 429 + Retry-After)
    • Admin routes behind HTTP Basic (settings masking, sender management)
    • Health probes

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from backend.app.activity.models import Activity, ActivityStatus
from backend.app.activity.scheduler import DeadlineScheduler
from backend.app.core.config import settings
from backend.app.main import create_app
from backend.app.services import build_container


ADMIN = (settings.ADMIN_USER, settings.ADMIN_PASS)


class NullTransport:
    async def send(self, credential, to, subject, html, text=None) -> None:
        return None

    async def verify(self, credential) -> None:
        return None


@pytest.fixture
def container():
    return build_container(
        "memory",
        transport=NullTransport(),
        scheduler=DeadlineScheduler(jobstore="memory"),
    )


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as test_client:
        yield test_client


def _start_body(**overrides):
    body = {
        "phone_number": "13800000000",
        "activity_name": "Solo hike",
        "interval_minutes": 10,
        "tolerance_minutes": 5,
        "contact_phone": "13900000000",
        "contact_email": "family@example.com",
        "language": "en",
    }
    body.update(overrides)
    return body


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Activity routes
# ═══════════════════════════════════════════════════════════════════════════

class TestStartActivity:

    def test_created(self, client):
        resp = client.post("/api/v1/activity", json=_start_body())
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "active"
        assert data["check_in_interval_minutes"] == 10
        assert data["tolerance_minutes"] == 5
        assert data["emergency_contact_email"] == "family@example.com"
        assert data["language"] == "en"

    def test_camel_case_body(self, client):
        resp = client.post("/api/v1/activity", json={
            "phoneNumber": "13800000000",
            "activityName": "Walk",
            "intervalMinutes": 30,
            "contactPhone": "13900000000",
            "lastLatitude": 30.25,
            "lastLongitude": 120.15,
        })
        assert resp.status_code == 201
        data = resp.json()
        assert data["phone_number"] == "13800000000"
        assert data["last_latitude"] == 30.25

    def test_schedules_deadline_check(self, client, container):
        client.post("/api/v1/activity", json=_start_body())
        assert container.scheduler.pending_count() == 1

    def test_rate_limited(self, client):
        assert client.post("/api/v1/activity", json=_start_body()).status_code == 201
        resp = client.post("/api/v1/activity", json=_start_body())
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
        assert int(resp.headers["Retry-After"]) >= 1

    def test_invalid_interval(self, client):
        resp = client.post("/api/v1/activity", json=_start_body(interval_minutes=0))
        assert resp.status_code == 422

    def test_missing_contact(self, client):
        body = _start_body()
        del body["contact_phone"]
        resp = client.post("/api/v1/activity", json=body)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


class TestStartupRearm:

    def test_active_activities_rescheduled(self, container):
        now = datetime.now(timezone.utc)

        async def seed():
            for phone, status in (("13800000000", ActivityStatus.ACTIVE),
                                  ("13700000000", ActivityStatus.ACTIVE),
                                  ("13600000000", ActivityStatus.FINISHED)):
                await container.store.save(Activity(
                    phone_number=phone,
                    activity_name="Night run",
                    emergency_contact_phone="13900000000",
                    check_in_interval_minutes=10,
                    next_check_in_deadline=now + timedelta(minutes=10),
                    status=status,
                ))

        asyncio.run(seed())
        assert container.scheduler.pending_count() == 0
        with TestClient(create_app(container)):
            assert container.scheduler.pending_count() == 2


class TestCurrentActivity:

    def test_current(self, client):
        created = client.post("/api/v1/activity", json=_start_body()).json()
        resp = client.get("/api/v1/activity/current", params={"phone_number": "13800000000"})
        assert resp.status_code == 200
        assert resp.json()["id"] == created["id"]

    def test_none(self, client):
        resp = client.get("/api/v1/activity/current", params={"phone_number": "13000000000"})
        assert resp.status_code == 200
        assert resp.json() is None


class TestReportSafe:

    def test_heartbeat(self, client):
        created = client.post("/api/v1/activity", json=_start_body()).json()
        resp = client.post(
            f"/api/v1/activity/{created['id']}/safe",
            json={"lat": 30.25, "lng": 120.15, "batteryLevel": 77},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert _parse(data["next_deadline"]) >= _parse(created["next_check_in_deadline"])

        current = client.get(
            "/api/v1/activity/current", params={"phone_number": "13800000000"},
        ).json()
        assert current["battery_level"] == 77
        assert current["last_longitude"] == 120.15

    def test_heartbeat_without_body(self, client):
        created = client.post("/api/v1/activity", json=_start_body()).json()
        resp = client.post(f"/api/v1/activity/{created['id']}/safe")
        assert resp.status_code == 200

    def test_battery_out_of_range(self, client):
        created = client.post("/api/v1/activity", json=_start_body()).json()
        resp = client.post(f"/api/v1/activity/{created['id']}/safe", json={"batteryLevel": 101})
        assert resp.status_code == 422

    def test_unknown(self, client):
        resp = client.post("/api/v1/activity/does-not-exist/safe", json={})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"

    def test_finished(self, client):
        created = client.post("/api/v1/activity", json=_start_body()).json()
        client.post(f"/api/v1/activity/{created['id']}/end")
        resp = client.post(f"/api/v1/activity/{created['id']}/safe", json={})
        assert resp.status_code == 409
        assert resp.json()["error"]["details"]["status"] == "finished"


class TestEndActivity:

    def test_end(self, client):
        created = client.post("/api/v1/activity", json=_start_body()).json()
        resp = client.post(f"/api/v1/activity/{created['id']}/end")
        assert resp.status_code == 200
        assert resp.json()["status"] == "finished"

    def test_end_unknown_is_noop(self, client):
        resp = client.post("/api/v1/activity/does-not-exist/end")
        assert resp.status_code == 200
        assert resp.json() is None


class TestConnectionCheck:

    def test_gps_only(self, client):
        resp = client.post("/api/v1/test-connection", json={"lat": 1.0, "lng": 2.0})
        assert resp.status_code == 200
        data = resp.json()
        assert data["network"] == "ok"
        assert data["gps"] == "ok"
        assert data["email"] == "pending"

    def test_email_with_sender(self, client):
        client.post("/api/v1/admin/senders", auth=ADMIN, json={
            "user": "alerts@qq.com", "pass": "code", "host": "smtp.qq.com", "port": 465,
        })
        resp = client.post("/api/v1/test-connection", json={"email": "me@example.com"})
        assert resp.json()["email"] == "ok"
        assert resp.json()["gps"] == "missing"


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Admin routes
# ═══════════════════════════════════════════════════════════════════════════

class TestAdminAuth:

    def test_requires_credentials(self, client):
        resp = client.get("/api/v1/admin/settings")
        assert resp.status_code == 401
        assert "Basic" in resp.headers["WWW-Authenticate"]

    def test_wrong_password(self, client):
        resp = client.get("/api/v1/admin/settings", auth=(settings.ADMIN_USER, "wrong"))
        assert resp.status_code == 401


class TestAdminSettings:

    def test_secrets_masked(self, client):
        client.post("/api/v1/admin/settings", auth=ADMIN, json={"EMAIL_PASS": "s3cret"})
        data = client.get("/api/v1/admin/settings", auth=ADMIN).json()
        assert data["settings"]["EMAIL_PASS"] == "******"
        assert "s3cret" not in str(data)

    def test_mask_value_not_stored(self, client, container):
        client.post("/api/v1/admin/settings", auth=ADMIN, json={"EMAIL_PASS": "s3cret"})
        client.post("/api/v1/admin/settings", auth=ADMIN, json={
            "EMAIL_PASS": "******", "EMAIL_USER": "ops@qq.com",
        })
        values = container.settings_provider._values
        assert values["EMAIL_PASS"] == "s3cret"
        assert values["EMAIL_USER"] == "ops@qq.com"


class TestAdminSenders:

    def test_add_list_toggle_delete(self, client):
        resp = client.post("/api/v1/admin/senders", auth=ADMIN, json={
            "user": "alerts@qq.com", "pass": "code", "host": "smtp.qq.com", "port": 465,
        })
        assert resp.status_code == 201
        sender = resp.json()
        assert "password" not in sender
        assert sender["is_active"] is True

        listed = client.get("/api/v1/admin/senders", auth=ADMIN).json()
        assert [s["user"] for s in listed] == ["alerts@qq.com"]

        resp = client.patch(
            f"/api/v1/admin/senders/{sender['id']}/toggle", auth=ADMIN, json={"isActive": False},
        )
        assert resp.status_code == 200
        listed = client.get("/api/v1/admin/senders", auth=ADMIN).json()
        assert listed[0]["is_active"] is False

        assert client.delete(f"/api/v1/admin/senders/{sender['id']}", auth=ADMIN).status_code == 200
        assert client.get("/api/v1/admin/senders", auth=ADMIN).json() == []

    def test_missing_sender(self, client):
        resp = client.delete("/api/v1/admin/senders/999", auth=ADMIN)
        assert resp.status_code == 404
        resp = client.patch("/api/v1/admin/senders/999/toggle", auth=ADMIN, json={"isActive": True})
        assert resp.status_code == 404


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Health
# ═══════════════════════════════════════════════════════════════════════════

class TestHealth:

    def test_live(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}

    def test_components(self, client):
        data = client.get("/health").json()
        names = [c["name"] for c in data["components"]]
        assert names == ["storage", "scheduler", "sender_pool", "sms"]
        scheduler = next(c for c in data["components"] if c["name"] == "scheduler")
        assert scheduler["status"] == "healthy"

    def test_ready(self, client):
        resp = client.get("/health/ready")
        assert resp.status_code == 200
        assert resp.json()["status"] in ("healthy", "degraded")

    def test_request_id_header(self, client):
        resp = client.get("/health/live", headers={"X-Request-ID": "abc123"})
        assert resp.headers["X-Request-ID"] == "abc123"
        assert "X-Process-Time" in resp.headers
