"""Tenant-scoped in-memory data store with persistence and cross-instance sync."""
from __future__ import annotations

import copy
import math
import uuid
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError
from pydantic_core import to_jsonable_python

from datasync.core.config import Settings, get_settings
from datasync.core.logging import logger
from datasync.core.tenancy import ANONYMOUS, SessionIdentity, channel_name, storage_key
from datasync.models.entities import (
    OPEN_MAINTENANCE_STATUSES,
    AuditEventCreate,
    BookingCreate,
    ChangeEvent,
    CustomerCreate,
    DeliveryProofCreate,
    DriverCreate,
    ExpenseCreate,
    InvoiceCreate,
    InvoiceStatus,
    LeadActivityCreate,
    LeadCreate,
    MaintenanceCreate,
    MaintenanceStatus,
    MaintenanceType,
    OpportunityActivityCreate,
    OpportunityCreate,
    UserCreate,
    VehicleCreate,
)
from datasync.services.audit_trail import (
    BOOKING_DERIVED_FIELDS,
    BOOKING_STATUS_CHANGE,
    apply_status_transition,
    booking_entity,
    make_audit_event,
    make_status_change,
    prepend_bounded,
    status_value,
    utc_now_iso,
)
from datasync.services.broadcast import BroadcastChannel, ChannelFactory, NullChannel, Subscription, open_channel
from datasync.services.change_events import (
    ALL_COLLECTIONS,
    AUDIT_APPEND,
    AUDIT_CLEAR,
    AUDIT_COLLECTION,
    COLLECTION_OPERATIONS,
    apply_change,
    event_type,
)
from datasync.services.snapshot_store import SQLiteSnapshotStore


Row = Dict[str, Any]
PendingEvent = Tuple[str, Any]

_STAMP_FIELDS = ("id", "created_at", "updated_at")


def next_id(rows: List[Row]) -> int:
    """Sequential id: one past the largest integer id in the collection."""
    ids = [row.get("id") for row in rows]
    numeric = [value for value in ids if isinstance(value, int) and not isinstance(value, bool)]
    return max(numeric, default=0) + 1


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def _km(value: Any) -> float:
    number = _finite_number(value)
    return number if number is not None else 0.0


def _as_row(value: Any, model: Optional[Type[BaseModel]] = None) -> Row:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if not isinstance(value, dict):
        raise ValueError(f"Expected a mapping or model, got {type(value).__name__}")
    if model is not None:
        fields = {key: item for key, item in value.items() if key not in _STAMP_FIELDS}
        return model.model_validate(fields).model_dump(mode="json", by_alias=True)
    return to_jsonable_python(dict(value))


def default_drivers() -> List[Row]:
    created = "2024-01-01T00:00:00+00:00"
    roster = [
        ("Tendai Moyo", "DL-40211", "Harare"),
        ("Blessing Ncube", "DL-40877", "Bulawayo"),
        ("Farai Chikowore", "DL-41320", "Mutare"),
        ("Rudo Mhlanga", "DL-41902", "Gweru"),
    ]
    return [
        {
            "id": index,
            "name": name,
            "license_number": license_number,
            "phone": "",
            "status": "available",
            "home_region": region,
            "created_at": created,
            "updated_at": created,
        }
        for index, (name, license_number, region) in enumerate(roster, start=1)
    ]


def default_collections(seed_drivers: bool = True) -> Dict[str, List[Row]]:
    collections: Dict[str, List[Row]] = {name: [] for name in ALL_COLLECTIONS}
    if seed_drivers:
        collections["drivers"] = default_drivers()
    return collections


class DataStore:
    """Entity collections for one signed-in session.

    Lifecycle: ``activate(identity)`` resets to defaults, restores the
    tenant's persisted snapshot and joins the tenant channel; ``teardown()``
    leaves the channel and drops back to anonymous in-memory defaults.
    Mutations are serialized per instance; across instances the last write
    observed wins.
    """

    def __init__(
        self,
        snapshots: Optional[SQLiteSnapshotStore] = None,
        channel_factory: Optional[ChannelFactory] = None,
        *,
        settings: Optional[Settings] = None,
        instance_id: Optional[str] = None,
    ) -> None:
        settings = settings or get_settings()
        self._snapshots = snapshots
        self._channel_factory = channel_factory
        self._storage_key_base = settings.storage_key_base
        self._channel_prefix = settings.channel_prefix
        self._audit_cap = max(1, int(settings.audit_log_cap))
        self._seed_drivers = bool(settings.seed_default_drivers)
        self.instance_id = instance_id or uuid.uuid4().hex
        self._lock = RLock()
        self._identity: SessionIdentity = ANONYMOUS
        self._storage_key: Optional[str] = None
        self._channel: BroadcastChannel = NullChannel()
        self._subscription: Optional[Subscription] = None
        self._collections: Dict[str, List[Row]] = default_collections(self._seed_drivers)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def identity(self) -> SessionIdentity:
        return self._identity

    @property
    def storage_key(self) -> Optional[str]:
        return self._storage_key

    @property
    def channel_name(self) -> str:
        return self._channel.name

    @property
    def audit_cap(self) -> int:
        return self._audit_cap

    def activate(self, identity: SessionIdentity) -> "DataStore":
        """Bind the store to ``identity``, replacing any previous tenant state."""
        self.teardown()
        with self._lock:
            self._identity = identity
            self._storage_key = storage_key(self._storage_key_base, identity)
            self._collections = self._restore(self._storage_key)
            name = channel_name(self._channel_prefix, identity.org_id)
            if identity.authenticated:
                self._channel = open_channel(self._channel_factory, name)
                self._subscription = self._channel.subscribe(self.handle_event)
            else:
                # Signed-out stores neither publish nor receive.
                self._channel = NullChannel(name)
        logger.info(
            "Data store activated",
            instance_id=self.instance_id,
            storage_key=self._storage_key,
            channel=self._channel.name,
        )
        return self

    def teardown(self) -> None:
        with self._lock:
            if self._subscription is not None:
                self._subscription.close()
            had_identity = self._identity is not ANONYMOUS
            self._subscription = None
            self._channel = NullChannel()
            self._identity = ANONYMOUS
            self._storage_key = None
            self._collections = default_collections(self._seed_drivers)
        if had_identity:
            logger.info("Data store torn down", instance_id=self.instance_id)

    def _restore(self, key: Optional[str]) -> Dict[str, List[Row]]:
        collections = default_collections(self._seed_drivers)
        persisted = self._snapshots.load(key) if (self._snapshots is not None and key) else None
        if not persisted:
            return collections
        for name in ALL_COLLECTIONS:
            rows = persisted.get(name)
            if isinstance(rows, list):
                collections[name] = [dict(row) for row in rows if isinstance(row, dict)]
        collections[AUDIT_COLLECTION] = collections[AUDIT_COLLECTION][: self._audit_cap]
        return collections

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def collection(self, name: str) -> List[Row]:
        if name not in ALL_COLLECTIONS:
            raise KeyError(name)
        with self._lock:
            return copy.deepcopy(self._collections[name])

    def get(self, name: str, entity_id: Any) -> Optional[Row]:
        with self._lock:
            for row in self._collections.get(name, []):
                if row.get("id") == entity_id:
                    return copy.deepcopy(row)
        return None

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            data: Dict[str, Any] = copy.deepcopy(self._collections)
        data["savedAt"] = utc_now_iso()
        return data

    @property
    def bookings(self) -> List[Row]:
        return self.collection("bookings")

    @property
    def invoices(self) -> List[Row]:
        return self.collection("invoices")

    @property
    def vehicles(self) -> List[Row]:
        return self.collection("vehicles")

    @property
    def maintenance(self) -> List[Row]:
        return self.collection("maintenance")

    @property
    def audit_log(self) -> List[Row]:
        return self.collection(AUDIT_COLLECTION)

    # ------------------------------------------------------------------
    # Sync plumbing
    # ------------------------------------------------------------------

    def _persist_locked(self) -> None:
        if self._snapshots is None or not self._storage_key:
            return
        self._snapshots.save(self._storage_key, self.snapshot())

    def _flush(self, pending: List[PendingEvent]) -> None:
        channel = self._channel
        for type_, payload in pending:
            try:
                channel.publish({"source": self.instance_id, "type": type_, "payload": payload})
            except Exception as exc:
                logger.warning("Broadcast publish failed", event_type=type_, error=str(exc))

    def handle_event(self, event: Any) -> bool:
        """Apply a change published by another instance on the tenant channel."""
        try:
            message = ChangeEvent.model_validate(event)
        except ValidationError:
            logger.warning("Dropping malformed change event", channel=self._channel.name)
            return False
        if not message.type or message.source == self.instance_id:
            return False
        with self._lock:
            changed = apply_change(
                self._collections,
                message.type,
                copy.deepcopy(message.payload),
                audit_cap=self._audit_cap,
            )
            if changed:
                self._persist_locked()
        return changed

    # ------------------------------------------------------------------
    # Generic mutation primitives
    # ------------------------------------------------------------------

    def _insert_locked(self, collection: str, fields: Row, pending: List[PendingEvent]) -> Row:
        rows = self._collections[collection]
        now = utc_now_iso()
        row = {**fields, "id": next_id(rows), "created_at": now, "updated_at": now}
        self._collections[collection] = [row, *rows]
        pending.append((event_type(collection, "add"), copy.deepcopy(row)))
        return row

    def _add(self, collection: str, value: Any, model: Type[BaseModel]) -> Row:
        fields = _as_row(value, model)
        pending: List[PendingEvent] = []
        with self._lock:
            row = self._insert_locked(collection, fields, pending)
            self._persist_locked()
        self._flush(pending)
        return copy.deepcopy(row)

    def _update(
        self,
        collection: str,
        value: Any,
        derive: Optional[Callable[[Row, Row, Row, str, List[PendingEvent]], None]] = None,
        protected: Tuple[str, ...] = (),
    ) -> Optional[Row]:
        incoming = _as_row(value)
        target = incoming.get("id")
        pending: List[PendingEvent] = []
        with self._lock:
            rows = self._collections[collection]
            index = next((i for i, row in enumerate(rows) if row.get("id") == target), None)
            if target is None or index is None:
                return None
            existing = rows[index]
            now = utc_now_iso()
            changes = {key: item for key, item in incoming.items() if key not in protected and key != "created_at"}
            merged = {**existing, **changes, "updated_at": now}
            if derive is not None:
                derive(existing, merged, incoming, now, pending)
            updated = list(self._collections[collection])
            updated[index] = merged
            self._collections[collection] = updated
            pending.insert(0, (event_type(collection, "update"), copy.deepcopy(merged)))
            self._persist_locked()
        self._flush(pending)
        return copy.deepcopy(merged)

    def _delete(self, collection: str, entity_id: Any) -> bool:
        pending: List[PendingEvent] = []
        with self._lock:
            rows = self._collections[collection]
            remaining = [row for row in rows if row.get("id") != entity_id]
            if len(remaining) == len(rows):
                return False
            self._collections[collection] = remaining
            pending.append((event_type(collection, "delete"), {"id": entity_id}))
            self._persist_locked()
        self._flush(pending)
        return True

    def _append_audit_locked(self, entry: Row, pending: List[PendingEvent]) -> Row:
        self._collections[AUDIT_COLLECTION] = prepend_bounded(
            self._collections[AUDIT_COLLECTION], entry, self._audit_cap
        )
        pending.append((AUDIT_APPEND, copy.deepcopy(entry)))
        return entry

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def add_audit(self, action: str, entity: Row, *, actor: Optional[Row] = None, meta: Optional[Row] = None) -> Row:
        """Low-level append used by mutators; always stamps ``at`` with now."""
        pending: List[PendingEvent] = []
        with self._lock:
            entry = self._append_audit_locked(
                make_audit_event(action, entity, actor=actor, meta=meta), pending
            )
            self._persist_locked()
        self._flush(pending)
        return copy.deepcopy(entry)

    def log_audit_event(self, entry: Any) -> Row:
        """Record a UI-level action; the session user is the actor unless one is given."""
        if isinstance(entry, dict):
            entry = AuditEventCreate.model_validate(entry)
        if not isinstance(entry, AuditEventCreate):
            raise ValueError("audit entry must be a mapping or AuditEventCreate")
        data = entry.model_dump(mode="json")
        actor = data.get("actor") or self._identity.actor()
        return self.add_audit(data["action"], data["entity"], actor=actor, meta=data.get("meta"))

    def clear_audit_log(self) -> None:
        pending: List[PendingEvent] = []
        with self._lock:
            self._collections[AUDIT_COLLECTION] = []
            pending.append((AUDIT_CLEAR, {}))
            self._persist_locked()
        self._flush(pending)

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    def add_booking(self, booking: Any) -> Row:
        fields = _as_row(booking, BookingCreate)
        for key in ("status_history", *BOOKING_DERIVED_FIELDS):
            fields.pop(key, None)
        actor = self._identity.actor()
        pending: List[PendingEvent] = []
        with self._lock:
            row = self._insert_locked("bookings", fields, pending)
            status = status_value(row.get("status"))
            row["status_history"] = [
                make_status_change(None, status, at=row["created_at"], actor=actor)
            ]
            pending[-1] = (pending[-1][0], copy.deepcopy(row))
            self._append_audit_locked(
                make_audit_event(
                    BOOKING_STATUS_CHANGE,
                    booking_entity(row),
                    actor=actor,
                    meta={"from": None, "to": status, "booking_number": row.get("booking_number")},
                    at=row["created_at"],
                ),
                pending,
            )
            self._persist_locked()
        self._flush(pending)
        return copy.deepcopy(row)

    def update_booking(self, booking: Any) -> Optional[Row]:
        actor = self._identity.actor()

        def derive(existing: Row, merged: Row, incoming: Row, now: str, pending: List[PendingEvent]) -> None:
            audit = apply_status_transition(existing, merged, at=now, actor=actor)
            if audit is not None:
                self._append_audit_locked(audit, pending)

        return self._update(
            "bookings",
            booking,
            derive,
            protected=("status_history", *BOOKING_DERIVED_FIELDS),
        )

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def add_invoice(self, invoice: Any) -> Row:
        return self._add("invoices", invoice, InvoiceCreate)

    def update_invoice(self, invoice: Any) -> Optional[Row]:
        def derive(existing: Row, merged: Row, incoming: Row, now: str, pending: List[PendingEvent]) -> None:
            if incoming.get("status") != InvoiceStatus.PAID.value:
                return
            if not merged.get("paid_at"):
                merged["paid_at"] = now
            paid = _finite_number(merged.get("amount_paid"))
            if paid is None or paid <= 0:
                merged["amount_paid"] = merged.get("total_amount")
            balance = _finite_number(merged.get("balance_due"))
            if balance is None or balance != 0:
                merged["balance_due"] = 0

        return self._update("invoices", invoice, derive)

    # ------------------------------------------------------------------
    # Fleet
    # ------------------------------------------------------------------

    def add_vehicle(self, vehicle: Any) -> Row:
        return self._add("vehicles", vehicle, VehicleCreate)

    def update_vehicle(self, vehicle: Any) -> Optional[Row]:
        created_by = self._numeric_user_id()

        def derive(existing: Row, merged: Row, incoming: Row, now: str, pending: List[PendingEvent]) -> None:
            was_below = _km(existing.get("current_km")) < _km(existing.get("next_service_due_km"))
            now_due = _km(merged.get("current_km")) >= _km(merged.get("next_service_due_km"))
            if not (was_below and now_due):
                return
            vehicle_id = merged.get("id")
            has_open = any(
                item.get("vehicle_id") == vehicle_id and item.get("status") in OPEN_MAINTENANCE_STATUSES
                for item in self._collections["maintenance"]
            )
            if has_open:
                return
            scheduled = self._insert_locked(
                "maintenance",
                {
                    "vehicle_id": vehicle_id,
                    "maintenance_type": MaintenanceType.ROUTINE.value,
                    "description": "Scheduled service (auto)",
                    "cost": 0,
                    "km_at_service": merged.get("current_km"),
                    "service_date": now.split("T")[0],
                    "status": MaintenanceStatus.SCHEDULED.value,
                    "created_by": created_by,
                },
                pending,
            )
            logger.info(
                "Auto-scheduled vehicle service",
                vehicle_id=vehicle_id,
                maintenance_id=scheduled["id"],
                current_km=merged.get("current_km"),
            )

        return self._update("vehicles", vehicle, derive)

    def delete_vehicle(self, vehicle_id: Any) -> bool:
        return self._delete("vehicles", vehicle_id)

    def add_maintenance(self, item: Any) -> Row:
        return self._add("maintenance", item, MaintenanceCreate)

    def update_maintenance(self, item: Any) -> Optional[Row]:
        return self._update("maintenance", item)

    def add_expense(self, expense: Any) -> Row:
        return self._add("expenses", expense, ExpenseCreate)

    def update_expense(self, expense: Any) -> Optional[Row]:
        return self._update("expenses", expense)

    def add_driver(self, driver: Any) -> Row:
        return self._add("drivers", driver, DriverCreate)

    def update_driver(self, driver: Any) -> Optional[Row]:
        return self._update("drivers", driver)

    def add_delivery_proof(self, proof: Any) -> Row:
        return self._add("delivery_proofs", proof, DeliveryProofCreate)

    # ------------------------------------------------------------------
    # CRM
    # ------------------------------------------------------------------

    def add_lead(self, lead: Any) -> Row:
        return self._add("leads", lead, LeadCreate)

    def update_lead(self, lead: Any) -> Optional[Row]:
        return self._update("leads", lead)

    def delete_lead(self, lead_id: Any) -> bool:
        return self._delete("leads", lead_id)

    def add_opportunity(self, opportunity: Any) -> Row:
        return self._add("opportunities", opportunity, OpportunityCreate)

    def update_opportunity(self, opportunity: Any) -> Optional[Row]:
        return self._update("opportunities", opportunity)

    def add_lead_activity(self, activity: Any) -> Row:
        return self._add("lead_activities", activity, LeadActivityCreate)

    def add_opportunity_activity(self, activity: Any) -> Row:
        return self._add("opportunity_activities", activity, OpportunityActivityCreate)

    def add_customer(self, customer: Any) -> Row:
        fields = _as_row(customer, CustomerCreate)
        fields["user_id"] = 0
        for key, default in (
            ("loyalty_points", 0),
            ("total_spent", 0),
            ("total_bookings", 0),
            ("is_verified", True),
        ):
            if fields.get(key) is None:
                fields[key] = default
        fields["preferred_currency"] = fields.get("preferred_currency") or "USD"
        pending: List[PendingEvent] = []
        with self._lock:
            row = self._insert_locked("customers", fields, pending)
            self._persist_locked()
        self._flush(pending)
        return copy.deepcopy(row)

    def update_customer(self, customer: Any) -> Optional[Row]:
        return self._update("customers", customer)

    def delete_customer(self, customer_id: Any) -> bool:
        return self._delete("customers", customer_id)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def add_user(self, user: Any) -> Row:
        return self._add("users", user, UserCreate)

    def delete_user(self, user_id: Any) -> bool:
        return self._delete("users", user_id)

    # ------------------------------------------------------------------
    # Remote seeding
    # ------------------------------------------------------------------

    def replace_collection(
        self,
        collection: str,
        items: List[Row],
        *,
        expected_identity: Optional[SessionIdentity] = None,
        keep: Optional[Callable[[Row], bool]] = None,
    ) -> bool:
        """Swap a collection wholesale with remote rows.

        Rows for which ``keep`` returns True survive after the new rows. Does
        nothing when the store is no longer bound to ``expected_identity``.
        """
        if "replace" not in COLLECTION_OPERATIONS.get(collection, frozenset()):
            raise KeyError(collection)
        pending: List[PendingEvent] = []
        with self._lock:
            if expected_identity is not None and self._identity != expected_identity:
                return False
            kept = [row for row in self._collections[collection] if keep is not None and keep(row)]
            replacement = [dict(item) for item in items] + kept
            self._collections[collection] = replacement
            pending.append((event_type(collection, "replace"), {"items": copy.deepcopy(replacement)}))
            self._persist_locked()
        self._flush(pending)
        return True

    def _numeric_user_id(self) -> int:
        try:
            return int(self._identity.user_id or 0)
        except (TypeError, ValueError):
            return 0
