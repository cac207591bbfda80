from __future__ import annotations

from datetime import date

import pytest

from app import create_app
from servicenow import RecordStoreError


class AppGateway:
    def __init__(self, fake):
        self.fake = fake
        self.elderly = {"a1": {"sys_id": "a1", "name": "Alice"}}

    def __getattr__(self, name):
        return getattr(self.fake, name)

    def list_log_entries(self):
        if self.fake.fail_reads:
            raise RecordStoreError("instance unreachable")
        return list(self.fake.logs)

    def get_elderly_by_sys_id(self, sys_id):
        return self.elderly.get(sys_id)


@pytest.fixture
def app_gateway(gateway):
    return AppGateway(gateway)


@pytest.fixture
def client(app_gateway, clock):
    app = create_app(
        config={"SESSION_WINDOWS": None, "LOG_LEVEL": "WARNING"},
        gateway=app_gateway,
        clock=clock,
        start_scheduler=False,
    )
    app.testing = True
    return app.test_client()


def test_elderly_listing_is_normalized(client, gateway):
    gateway.persons = [
        {"sys_id": "a1", "u_serial_number": "SN-1", "name": "Alice", "u_elderly_username": "alice",
         "u_caregiver_name": "Grace", "u_paused": "true"},
    ]
    data = client.get("/api/caregiver/elderly").get_json()
    assert data["success"] is True
    assert data["elderly"] == [
        {"sys_id": "a1", "sn": "SN-1", "name": "Alice", "elderly_username": "alice",
         "condition": "NA", "caregiver": "Grace", "paused": True}
    ]


def test_checkin_listing_is_normalized(client, gateway):
    gateway.logs = [{"sys_created_on": "2024-01-01 09:15:00", "name": "Bob", "status": "Checked In"}]
    data = client.get("/api/caregiver/checkins").get_json()
    assert data["checkins"] == [{"timestamp": "2024-01-01 09:15:00", "elderly_name": "Bob", "status": "Checked In"}]


def test_store_failures_answer_500(client, gateway):
    gateway.fail_reads = True
    assert client.get("/api/caregiver/elderly").status_code == 500
    response = client.get("/api/caregiver/checkins")
    assert response.status_code == 500
    assert response.get_json() == {"success": False}


def test_checkin_requires_known_elderly_cookie(client, gateway):
    assert client.post("/checkin").status_code == 401
    client.set_cookie("elderlyId", "unknown")
    assert client.post("/checkin").status_code == 401
    assert gateway.written == []


def test_checkin_appends_checked_in_entry(client, gateway):
    client.set_cookie("elderlyId", "a1")
    response = client.post("/checkin")
    assert response.get_json() == {"success": True}
    assert gateway.written == [
        {"u_elderly": "a1", "name": "Alice", "status": "Checked In", "u_timestamp": "2024-01-01 12:15:00"}
    ]


def test_manual_run_and_status(client, gateway):
    gateway.persons = [{"name": "Alice", "sys_id": "a1"}]
    run = client.post("/api/monitor/run").get_json()
    assert run["success"] is True
    assert run["summary"]["outcomes"] == {"escalated": 1}

    status = client.get("/api/monitor/status").get_json()
    assert [w["name"] for w in status["windows"]] == ["morning", "night"]
    assert status["retry_failed_escalations"] is False
    assert status["tracking"]["processed"]["morning"] == ["Alice"]
    assert status["last_pass"]["time"] == "12:15"


def test_manual_run_reports_fetch_failure(client, gateway):
    gateway.fail_reads = True
    run = client.post("/api/monitor/run").get_json()
    assert run["success"] is False
    assert run["summary"]["error"]


def test_checkin_listing_follows_store_fields(client, gateway):
    gateway.logs = [
        {"sys_created_on": "2024-01-01 01:15:00", "u_elderly": "a1", "status": "Checked In",
         "u_timestamp": "2024-01-01 09:15:00"},
    ]
    data = client.get("/api/caregiver/checkins").get_json()
    assert data["checkins"] == [{"timestamp": "2024-01-01 01:15:00", "elderly_name": "a1", "status": "Checked In"}]
