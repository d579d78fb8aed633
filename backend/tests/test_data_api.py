"""API tests for the tenant data sync routes."""
from __future__ import annotations

import os
import sys
from pathlib import Path

from fastapi.testclient import TestClient


TMP = Path(__file__).resolve().parent / ".tmp_data_api"
TMP.mkdir(parents=True, exist_ok=True)
for stale in TMP.glob("snapshots.db*"):
    stale.unlink()
os.environ["SNAPSHOT_DB_PATH"] = str(TMP / "snapshots.db")
os.environ["AUTH_ENABLED"] = "false"
os.environ["FLEET_DATA_URL"] = ""
os.environ["CRM_DATA_URL"] = ""
os.environ["DEFAULT_ORG_ID"] = ""
os.environ["DEFAULT_USER_ID"] = ""

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from datasync.core.config import get_settings  # noqa: E402
from datasync.main import app  # noqa: E402

get_settings.cache_clear()

client = TestClient(app)


def _headers(org: str, user: str = "1", role: str = "dispatcher") -> dict:
    return {
        "X-Org-ID": org,
        "X-User-ID": user,
        "X-Actor-Role": role,
        "X-User-First-Name": "Farai",
        "X-User-Last-Name": "Chari",
    }


def test_health_and_root():
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/").json()["endpoints"]["data"] == "/data"


def test_booking_lifecycle_records_history_and_audit():
    headers = _headers("api-bookings")
    created = client.post(
        "/data/bookings",
        headers=headers,
        json={"booking_number": "BKN-API-1", "status": "scheduled", "pickup_location": "Bulawayo"},
    )
    assert created.status_code == 200
    booking = created.json()
    assert booking["id"] == 1
    assert booking["status_history"][0]["actor"]["name"] == "Farai Chari"

    updated = client.put(f"/data/bookings/{booking['id']}", headers=headers, json={"status": "in_transit"})
    assert updated.status_code == 200
    body = updated.json()
    assert body["applied"] is True
    assert [entry["to"] for entry in body["item"]["status_history"]] == ["scheduled", "in_transit"]
    assert body["item"]["started_at"]

    audit = client.get("/data/audit", headers=headers).json()["entries"]
    assert [entry["meta"]["to"] for entry in audit] == ["in_transit", "scheduled"]

    history = client.get(f"/data/bookings/{booking['id']}/history", headers=headers).json()
    assert [(entry["from"], entry["to"]) for entry in history] == [(None, "scheduled"), ("scheduled", "in_transit")]
    assert client.get("/data/bookings/77/history", headers=headers).status_code == 404

    snapshot = client.get("/data/snapshot", headers=headers).json()
    assert snapshot["bookings"][0]["booking_number"] == "BKN-API-1"
    assert snapshot["savedAt"]


def test_update_of_missing_entity_is_not_applied():
    response = client.put("/data/invoices/404", headers=_headers("api-missing"), json={"status": "paid"})
    assert response.status_code == 200
    assert response.json() == {"applied": False, "item": None}


def test_unknown_collection_and_unsupported_operation():
    headers = _headers("api-errors")
    assert client.get("/data/trucks", headers=headers).status_code == 404
    assert client.post("/data/trucks", headers=headers, json={}).status_code == 404
    assert client.delete("/data/bookings/1", headers=headers).status_code == 405


def test_invalid_payload_is_rejected():
    headers = _headers("api-invalid")
    response = client.post("/data/vehicles", headers=headers, json={"make": "Volvo"})
    assert response.status_code == 422

    response = client.post("/data/leads", headers={**headers, "X-Actor-Role": "pilot"}, json={})
    assert response.status_code == 400


def test_delete_and_default_drivers():
    headers = _headers("api-fleet")
    vehicle = client.post("/data/vehicles", headers=headers, json={"registration_number": "AFB-4410"}).json()

    assert client.delete(f"/data/vehicles/{vehicle['id']}", headers=headers).json() == {"applied": True}
    assert client.delete(f"/data/vehicles/{vehicle['id']}", headers=headers).json() == {"applied": False}
    assert client.get("/data/vehicles", headers=headers).json()["items"] == []

    drivers = client.get("/data/drivers", headers=headers).json()["items"]
    assert len(drivers) == 4


def test_tenants_do_not_share_data():
    client.post("/data/leads", headers=_headers("api-tenant-a"), json={"first_name": "Rudo"})

    other_org = client.get("/data/leads", headers=_headers("api-tenant-b")).json()["items"]
    other_user = client.get("/data/leads", headers=_headers("api-tenant-a", user="2")).json()["items"]
    same_user = client.get("/data/leads", headers=_headers("api-tenant-a")).json()["items"]

    assert other_org == []
    assert other_user == []
    assert [lead["first_name"] for lead in same_user] == ["Rudo"]


def test_audit_endpoints():
    headers = _headers("api-audit", role="finance")
    logged = client.post(
        "/data/audit",
        headers=headers,
        json={"action": "invoice.export", "entity": {"type": "invoice", "id": 3}, "meta": {"format": "pdf"}},
    )
    assert logged.status_code == 200
    assert logged.json()["actor"] == {"id": "1", "role": "finance", "name": "Farai Chari"}

    assert client.post("/data/audit", headers=headers, json={"entity": {"type": "invoice"}}).status_code == 422

    assert client.delete("/data/audit", headers=headers).json() == {"cleared": True}
    assert client.get("/data/audit", headers=headers).json()["entries"] == []


def test_bootstrap_without_remote_urls_and_logout():
    headers = _headers("api-session")
    client.post("/data/customers", headers=headers, json={"company_name": "Mazowe Citrus"})

    status = client.post("/data/bootstrap", headers=headers)
    assert status.status_code == 200
    assert status.json()["fleet_loaded"] is False
    assert status.json()["fleet_error"] is None
    assert client.get("/data/bootstrap", headers=headers).json()["finished_at"]

    assert client.post("/data/session/logout", headers=headers).json() == {"closed": True}
    assert client.post("/data/session/logout", headers=headers).json() == {"closed": False}

    # Persisted snapshot is restored for the next session of the same tenant.
    customers = client.get("/data/customers", headers=headers).json()["items"]
    assert [row["company_name"] for row in customers] == ["Mazowe Citrus"]


def test_bearer_token_sessions(monkeypatch):
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("SESSION_TOKENS", "tok-ops:api-auth:5:ops_manager,broken-entry")
    get_settings.cache_clear()
    try:
        assert client.get("/data/leads").status_code == 401
        assert client.get("/data/leads", headers={"Authorization": "Bearer nope"}).status_code == 403
        mismatch = client.get("/data/leads", headers={"Authorization": "Bearer tok-ops", "X-Org-ID": "other"})
        assert mismatch.status_code == 403

        logged = client.post(
            "/data/audit",
            headers={"Authorization": "Bearer tok-ops"},
            json={"action": "session.check", "entity": {"type": "session", "id": None}},
        )
        assert logged.status_code == 200
        assert logged.json()["actor"]["id"] == "5"
        assert logged.json()["actor"]["role"] == "ops_manager"
    finally:
        monkeypatch.undo()
        get_settings.cache_clear()
