"""API routes exposing the session data store to the web client."""
from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Body, Depends, HTTPException, Request

from datasync.core.auth import get_session_identity
from datasync.core.logging import logger
from datasync.core.tenancy import SessionIdentity
from datasync.models.entities import AuditEvent, AuditEventCreate, StatusChange
from datasync.services.change_events import ALL_COLLECTIONS, AUDIT_COLLECTION
from datasync.services.data_store import DataStore
from datasync.services.remote_bootstrap import BootstrapState
from datasync.services.session_registry import SessionEntry, StoreRegistry

router = APIRouter(prefix="/data", tags=["data"])


ADDERS = {
    "bookings": "add_booking",
    "invoices": "add_invoice",
    "vehicles": "add_vehicle",
    "maintenance": "add_maintenance",
    "expenses": "add_expense",
    "drivers": "add_driver",
    "delivery_proofs": "add_delivery_proof",
    "leads": "add_lead",
    "opportunities": "add_opportunity",
    "lead_activities": "add_lead_activity",
    "opportunity_activities": "add_opportunity_activity",
    "customers": "add_customer",
    "users": "add_user",
}

UPDATERS = {
    "bookings": "update_booking",
    "invoices": "update_invoice",
    "vehicles": "update_vehicle",
    "maintenance": "update_maintenance",
    "expenses": "update_expense",
    "drivers": "update_driver",
    "leads": "update_lead",
    "opportunities": "update_opportunity",
    "customers": "update_customer",
}

DELETERS = {
    "leads": "delete_lead",
    "vehicles": "delete_vehicle",
    "customers": "delete_customer",
    "users": "delete_user",
}


def get_registry(request: Request) -> StoreRegistry:
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        # App served without its lifespan (plain TestClient, embedded mounts).
        registry = StoreRegistry()
        request.app.state.registry = registry
    return registry


async def get_session_entry(
    identity: SessionIdentity = Depends(get_session_identity),
    registry: StoreRegistry = Depends(get_registry),
) -> SessionEntry:
    entry = registry.entry(identity)
    registry.start_bootstrap(entry)
    return entry


def get_store(entry: SessionEntry = Depends(get_session_entry)) -> DataStore:
    return entry.store


def _parse_entity_id(raw: str) -> Any:
    text = raw.strip()
    if text.lstrip("-").isdigit():
        return int(text)
    return text


def _mutator(store: DataStore, table: Dict[str, str], collection: str):
    name = table.get(collection)
    if name is None:
        if collection in ALL_COLLECTIONS:
            raise HTTPException(status_code=405, detail=f"Operation not supported for '{collection}'")
        raise HTTPException(status_code=404, detail=f"Unknown collection '{collection}'")
    return getattr(store, name)


@router.get("/snapshot")
def get_snapshot(store: DataStore = Depends(get_store)):
    return store.snapshot()


@router.get("/audit")
def list_audit(limit: int = 100, store: DataStore = Depends(get_store)):
    limit = max(1, min(int(limit), store.audit_cap))
    return {"entries": store.collection(AUDIT_COLLECTION)[:limit]}


@router.post("/audit", response_model=AuditEvent)
def log_audit(entry: AuditEventCreate, store: DataStore = Depends(get_store)):
    return store.log_audit_event(entry)


@router.delete("/audit")
def clear_audit(store: DataStore = Depends(get_store)):
    store.clear_audit_log()
    return {"cleared": True}


@router.get("/bookings/{booking_id}/history", response_model=List[StatusChange])
def booking_history(booking_id: str, store: DataStore = Depends(get_store)):
    booking = store.get("bookings", _parse_entity_id(booking_id))
    if booking is None:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking.get("status_history") or []


@router.post("/bootstrap", response_model=BootstrapState)
async def run_bootstrap(entry: SessionEntry = Depends(get_session_entry)):
    return await entry.loader.run(entry.store)


@router.get("/bootstrap", response_model=BootstrapState)
def bootstrap_status(entry: SessionEntry = Depends(get_session_entry)):
    return entry.loader.state


@router.post("/session/logout")
def logout(
    identity: SessionIdentity = Depends(get_session_identity),
    registry: StoreRegistry = Depends(get_registry),
):
    closed = registry.close(identity)
    return {"closed": closed}


@router.get("/{collection}")
def list_collection(collection: str, store: DataStore = Depends(get_store)):
    if collection not in ALL_COLLECTIONS:
        raise HTTPException(status_code=404, detail=f"Unknown collection '{collection}'")
    return {"collection": collection, "items": store.collection(collection)}


@router.post("/{collection}")
def add_item(
    collection: str,
    payload: Dict[str, Any] = Body(...),
    store: DataStore = Depends(get_store),
):
    add = _mutator(store, ADDERS, collection)
    try:
        return add(payload)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.put("/{collection}/{entity_id}")
def update_item(
    collection: str,
    entity_id: str,
    payload: Dict[str, Any] = Body(...),
    store: DataStore = Depends(get_store),
):
    update = _mutator(store, UPDATERS, collection)
    record = {**payload, "id": _parse_entity_id(entity_id)}
    try:
        updated = update(record)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if updated is None:
        logger.info("Update ignored for missing entity", collection=collection, entity_id=entity_id)
        return {"applied": False, "item": None}
    return {"applied": True, "item": updated}


@router.delete("/{collection}/{entity_id}")
def delete_item(collection: str, entity_id: str, store: DataStore = Depends(get_store)):
    delete = _mutator(store, DELETERS, collection)
    return {"applied": delete(_parse_entity_id(entity_id))}
