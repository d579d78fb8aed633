"""Tests for tenant snapshot persistence and tenant isolation."""
from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from datasync.core.config import Settings  # noqa: E402
from datasync.core.tenancy import SessionIdentity, channel_name, storage_key  # noqa: E402
from datasync.services.data_store import DataStore  # noqa: E402
from datasync.services.snapshot_store import SQLiteSnapshotStore  # noqa: E402


SETTINGS = Settings(seed_default_drivers=False)
TENANT_A = SessionIdentity(org_id="org-a", user_id="11", role="admin")
TENANT_B = SessionIdentity(org_id="org-b", user_id="22", role="admin")


def test_key_formats():
    assert storage_key("hf_global_data_v1", TENANT_A) == "hf_global_data_v1:org-a:11"
    assert storage_key("base", SessionIdentity(user_id="5")) == "base:no-org:5"
    assert storage_key("base", SessionIdentity(org_id="org-a")) is None
    assert storage_key("base", None) is None
    assert channel_name("hf-data-sync", "org-a") == "hf-data-sync:org-a"
    assert channel_name("hf-data-sync", None) == "hf-data-sync:no-org"


def test_load_missing_and_malformed_returns_none(tmp_path):
    snapshots = SQLiteSnapshotStore(tmp_path / "state.db")
    assert snapshots.load("nothing:here") is None
    assert snapshots.load(None) is None

    snapshots._conn.execute(
        "INSERT INTO snapshots (storage_key, saved_at, data_json) VALUES (?, ?, ?)",
        ("broken", "2026-01-01T00:00:00+00:00", "{not json"),
    )
    snapshots._conn.execute(
        "INSERT INTO snapshots (storage_key, saved_at, data_json) VALUES (?, ?, ?)",
        ("listy", "2026-01-01T00:00:00+00:00", "[1, 2]"),
    )
    snapshots._conn.commit()
    assert snapshots.load("broken") is None
    assert snapshots.load("listy") is None


def test_save_and_load_snapshot(tmp_path):
    snapshots = SQLiteSnapshotStore(tmp_path / "state.db")
    state = {"bookings": [{"id": 1}], "savedAt": "2026-02-01T08:00:00+00:00"}
    assert snapshots.save("k1", state) is True
    assert snapshots.load("k1") == state
    assert snapshots.keys() == ["k1"]
    snapshots.delete("k1")
    assert snapshots.load("k1") is None


def test_save_failures_are_swallowed(tmp_path):
    snapshots = SQLiteSnapshotStore(tmp_path / "state.db")
    assert snapshots.save("k1", {"bad": object()}) is False
    snapshots.close()
    assert snapshots.save("k1", {"ok": True}) is False
    assert snapshots.load("k1") is None


def test_store_keeps_working_when_persistence_fails(tmp_path):
    snapshots = SQLiteSnapshotStore(tmp_path / "state.db")
    store = DataStore(snapshots, settings=SETTINGS).activate(TENANT_A)
    snapshots.close()

    created = store.add_booking({"booking_number": "BKN-77", "status": "draft"})

    assert store.bookings[0]["id"] == created["id"]


def test_corrupt_snapshot_falls_back_to_defaults(tmp_path):
    snapshots = SQLiteSnapshotStore(tmp_path / "state.db")
    key = storage_key(SETTINGS.storage_key_base, TENANT_A)
    snapshots.save(key, {"bookings": "oops", "leads": [{"id": 3, "first_name": "Kept"}, "junk"]})

    store = DataStore(snapshots, settings=SETTINGS).activate(TENANT_A)

    assert store.bookings == []
    assert store.collection("leads") == [{"id": 3, "first_name": "Kept"}]


def test_switching_tenant_never_leaks_collections(tmp_path):
    snapshots = SQLiteSnapshotStore(tmp_path / "state.db")
    store = DataStore(snapshots, settings=SETTINGS).activate(TENANT_A)
    store.add_booking({"booking_number": "A-1", "status": "scheduled"})
    store.add_customer({"company_name": "Tenant A Foods"})

    store.activate(TENANT_B)
    assert store.storage_key == "hf_global_data_v1:org-b:22"
    assert store.bookings == []
    assert store.collection("customers") == []
    assert store.audit_log == []
    store.add_lead({"first_name": "Only B"})

    store.activate(TENANT_A)
    assert [row["booking_number"] for row in store.bookings] == ["A-1"]
    assert store.collection("leads") == []


def test_signed_out_store_is_memory_only(tmp_path):
    snapshots = SQLiteSnapshotStore(tmp_path / "state.db")
    store = DataStore(snapshots, settings=SETTINGS).activate(SessionIdentity(org_id="org-a"))
    store.add_lead({"first_name": "Ghost"})

    assert store.storage_key is None
    assert snapshots.keys() == []

    store.teardown()
    assert store.collection("leads") == []
