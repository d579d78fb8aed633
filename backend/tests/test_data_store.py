"""Unit tests for data store mutators, status history and audit trail."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from datasync.core.config import Settings  # noqa: E402
from datasync.core.tenancy import SessionIdentity  # noqa: E402
from datasync.models.entities import BookingCreate, BookingStatus  # noqa: E402
from datasync.services.data_store import DataStore, next_id  # noqa: E402
from datasync.services.snapshot_store import SQLiteSnapshotStore  # noqa: E402


OPS_USER = SessionIdentity(
    org_id="org-1",
    user_id="7",
    role="ops_manager",
    first_name="Ruth",
    last_name="Banda",
    email="ruth@example.com",
)


def _store(tmp_path: Path | None = None, **overrides) -> DataStore:
    settings = Settings(seed_default_drivers=False, **overrides)
    snapshots = SQLiteSnapshotStore(tmp_path / "snapshots.db") if tmp_path else None
    return DataStore(snapshots, settings=settings).activate(OPS_USER)


def _booking(**fields):
    payload = {
        "booking_number": "BKN-001",
        "customer_id": 3,
        "pickup_location": "Harare",
        "delivery_location": "Mutare",
        "cargo_description": "Cold chain pallets",
        "status": "scheduled",
    }
    payload.update(fields)
    return payload


def test_example_scenario_scheduled_to_dispatched():
    store = _store()
    created = store.add_booking(_booking())
    assert created["id"] == 1

    updated = store.update_booking({**created, "status": "dispatched"})

    history = updated["status_history"]
    assert [(entry["from"], entry["to"]) for entry in history] == [
        (None, "scheduled"),
        ("scheduled", "dispatched"),
    ]
    assert updated["started_at"]
    transitions = [
        event
        for event in store.audit_log
        if event["action"] == "booking.status.change"
        and event["meta"].get("from") == "scheduled"
        and event["meta"].get("to") == "dispatched"
    ]
    assert len(transitions) == 1
    assert transitions[0]["entity"] == {"type": "booking", "id": 1, "ref": "BKN-001"}
    assert transitions[0]["actor"]["id"] == "7"


def test_add_booking_seeds_history_and_audit():
    store = _store()
    created = store.add_booking(BookingCreate(booking_number="BKN-009", status=BookingStatus.PENDING))

    assert created["created_at"] == created["updated_at"]
    assert len(created["status_history"]) == 1
    assert created["status_history"][0]["from"] is None
    assert created["status_history"][0]["to"] == "pending"
    assert created["status_history"][0]["actor"]["name"] == "Ruth Banda"

    audit = store.audit_log
    assert len(audit) == 1
    assert audit[0]["action"] == "booking.status.change"
    assert audit[0]["meta"]["booking_number"] == "BKN-009"


def test_status_history_only_grows_on_real_changes():
    store = _store()
    booking = store.add_booking(_booking(status="draft"))
    sequence = ["draft", "pending", "pending", "confirmed", "confirmed", "cancelled", "pending"]
    expected = 1
    previous = "draft"
    snapshots = []
    for status in sequence:
        booking = store.update_booking({**booking, "status": status})
        if status != previous:
            expected += 1
        previous = status
        assert len(booking["status_history"]) == expected
        snapshots.append([dict(entry) for entry in booking["status_history"]])

    final = booking["status_history"]
    for earlier in snapshots:
        assert final[: len(earlier)] == earlier


def test_caller_cannot_rewrite_status_history():
    store = _store()
    booking = store.add_booking(_booking())
    forged = {**booking, "status_history": [], "notes": "updated"}

    updated = store.update_booking(forged)

    assert updated["notes"] == "updated"
    assert len(updated["status_history"]) == 1


def test_delivered_sets_timestamp_and_later_transitions_keep_it():
    store = _store()
    booking = store.add_booking(_booking(status="in_transit"))
    delivered = store.update_booking({**booking, "status": "delivered"})
    assert delivered["delivered_at"]
    stamp = delivered["delivered_at"]

    closed = store.update_booking({**delivered, "status": "closed", "delivered_at": None})
    assert closed["delivered_at"] == stamp
    assert closed.get("cancelled_at") is None


def test_confirmed_and_cancelled_timestamps():
    store = _store()
    booking = store.add_booking(_booking(status="pending"))
    confirmed = store.update_booking({**booking, "status": BookingStatus.CONFIRMED})
    assert confirmed["confirmed_at"]
    cancelled = store.update_booking({**confirmed, "status": "cancelled"})
    assert cancelled["cancelled_at"]
    assert cancelled["confirmed_at"] == confirmed["confirmed_at"]


def test_unchanged_status_is_plain_merge():
    store = _store()
    booking = store.add_booking(_booking())
    audit_before = len(store.audit_log)

    updated = store.update_booking({**booking, "cargo_description": "Dry goods"})

    assert updated["cargo_description"] == "Dry goods"
    assert len(updated["status_history"]) == 1
    assert len(store.audit_log) == audit_before
    assert updated.get("started_at") is None


def test_update_missing_entity_is_noop():
    store = _store()
    store.add_booking(_booking())
    before = store.bookings

    assert store.update_booking({"id": 99, "status": "delivered"}) is None
    assert store.update_invoice({"id": 4, "status": "paid"}) is None
    assert store.bookings == before


def test_paid_invoice_normalization():
    store = _store()
    invoice = store.add_invoice(
        {"invoice_number": "INV-1", "customer_id": 1, "total_amount": 1200.0, "amount_paid": 0, "balance_due": 1200.0}
    )

    paid = store.update_invoice({**invoice, "status": "paid"})

    assert paid["amount_paid"] == 1200.0
    assert paid["balance_due"] == 0
    assert paid["paid_at"]


def test_paid_invoice_keeps_positive_amount_paid():
    store = _store()
    invoice = store.add_invoice(
        {"invoice_number": "INV-2", "total_amount": 500.0, "amount_paid": 450.0, "balance_due": 50.0}
    )

    paid = store.update_invoice({**invoice, "status": "paid", "paid_at": "2026-01-05T10:00:00+00:00"})

    assert paid["amount_paid"] == 450.0
    assert paid["balance_due"] == 0
    assert paid["paid_at"] == "2026-01-05T10:00:00+00:00"


def test_non_paid_invoice_update_is_untouched():
    store = _store()
    invoice = store.add_invoice({"invoice_number": "INV-3", "total_amount": 80.0, "balance_due": 80.0})

    sent = store.update_invoice({**invoice, "status": "sent", "amount_paid": 0})

    assert sent["amount_paid"] == 0
    assert sent["balance_due"] == 80.0
    assert sent.get("paid_at") is None


def test_vehicle_crossing_service_threshold_schedules_one_maintenance():
    store = _store()
    vehicle = store.add_vehicle(
        {"registration_number": "ACX-1234", "current_km": 9000, "next_service_due_km": 10000}
    )

    crossed = store.update_vehicle({**vehicle, "current_km": 10050})
    again = store.update_vehicle({**crossed, "current_km": 10400})

    assert again["current_km"] == 10400
    maintenance = store.maintenance
    assert len(maintenance) == 1
    record = maintenance[0]
    assert record["vehicle_id"] == vehicle["id"]
    assert record["status"] == "scheduled"
    assert record["maintenance_type"] == "routine"
    assert record["km_at_service"] == 10050
    assert record["service_date"] == record["created_at"].split("T")[0]
    assert record["created_by"] == 7


def test_open_maintenance_blocks_new_schedule_until_completed():
    store = _store()
    vehicle = store.add_vehicle({"registration_number": "ADF-77", "current_km": 100, "next_service_due_km": 200})
    store.add_maintenance({"vehicle_id": vehicle["id"], "status": "in_progress"})

    store.update_vehicle({**vehicle, "current_km": 250})
    assert len(store.maintenance) == 1

    # Reset the threshold, close the open job and cross again.
    vehicle = store.update_vehicle({**vehicle, "current_km": 250, "next_service_due_km": 400})
    open_job = store.maintenance[0]
    store.update_maintenance({**open_job, "status": "completed"})
    store.update_vehicle({**vehicle, "current_km": 410})

    statuses = sorted(item["status"] for item in store.maintenance)
    assert statuses == ["completed", "scheduled"]


def test_ids_follow_max_plus_one_and_head_insertion():
    store = _store()
    first = store.add_lead({"first_name": "Ana", "company_name": "Freshco"})
    second = store.add_lead({"first_name": "Ben", "company_name": "AgriPlus"})
    assert (first["id"], second["id"]) == (1, 2)
    assert [row["id"] for row in store.collection("leads")] == [2, 1]

    assert store.delete_lead(1) is True
    third = store.add_lead({"first_name": "Cleo"})
    assert third["id"] == 3
    assert store.delete_lead(42) is False

    assert next_id([]) == 1
    assert next_id([{"id": "fuel-9"}, {"id": 4}]) == 5


def test_add_ignores_caller_supplied_ids_and_timestamps():
    store = _store()
    row = store.add_expense({"id": 500, "created_at": "1999-01-01", "amount": 12.5, "description": "Tolls"})
    assert row["id"] == 1
    assert row["created_at"] != "1999-01-01"


def test_add_customer_fills_defaults():
    store = _store()
    customer = store.add_customer({"company_name": "Lakeside Dairy", "total_spent": 150})
    assert customer["user_id"] == 0
    assert customer["loyalty_points"] == 0
    assert customer["total_spent"] == 150
    assert customer["is_verified"] is True
    assert customer["preferred_currency"] == "USD"


def test_delete_only_removes_matching_user():
    store = _store()
    store.add_user({"email": "a@example.com"})
    store.add_user({"email": "b@example.com"})
    assert store.delete_user(1) is True
    assert [user["email"] for user in store.collection("users")] == ["b@example.com"]


def test_log_audit_event_defaults_actor_to_session_user():
    store = _store()
    event = store.log_audit_event(
        {"action": "leads.import", "entity": {"type": "lead", "id": None}, "meta": {"rows": 12}}
    )
    assert event["actor"] == {"id": "7", "role": "ops_manager", "name": "Ruth Banda"}
    assert event["at"]

    explicit = store.log_audit_event(
        {"action": "assistant.tool", "actor": {"id": "bot", "role": "assistant"}, "entity": {"type": "vehicle", "id": 2}}
    )
    assert explicit["actor"]["id"] == "bot"
    assert store.audit_log[0]["id"] == explicit["id"]


def test_log_audit_event_rejects_malformed_entry():
    store = _store()
    with pytest.raises(ValueError):
        store.log_audit_event({"entity": {"type": "lead"}})


def test_audit_log_is_bounded_newest_first():
    store = _store()
    for index in range(510):
        store.add_audit("test.event", {"type": "test", "id": index})

    audit = store.audit_log
    assert len(audit) == 500
    assert audit[0]["entity"]["id"] == 509
    assert audit[-1]["entity"]["id"] == 10


def test_clear_audit_log():
    store = _store()
    store.add_booking(_booking())
    store.clear_audit_log()
    assert store.audit_log == []


def test_mutations_are_persisted_for_the_tenant(tmp_path):
    store = _store(tmp_path)
    store.add_booking(_booking())

    reloaded = DataStore(
        SQLiteSnapshotStore(tmp_path / "snapshots.db"),
        settings=Settings(seed_default_drivers=False),
    ).activate(OPS_USER)

    assert [row["booking_number"] for row in reloaded.bookings] == ["BKN-001"]
    assert len(reloaded.audit_log) == 1


def test_default_driver_roster_for_fresh_tenant():
    store = DataStore(settings=Settings(seed_default_drivers=True)).activate(OPS_USER)
    drivers = store.collection("drivers")
    assert len(drivers) == 4
    assert store.add_driver({"name": "Kuda Dube"})["id"] == 5


def test_unknown_collection_read_raises_key_error():
    store = _store()
    with pytest.raises(KeyError):
        store.collection("trucks")
