"""Status history and audit record construction."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from datasync.models.entities import BookingStatus


BOOKING_STATUS_CHANGE = "booking.status.change"

# Booking status -> derived timestamp field stamped on entry to that status.
DERIVED_TIMESTAMP_FIELDS: Dict[str, str] = {
    BookingStatus.CONFIRMED.value: "confirmed_at",
    BookingStatus.DISPATCHED.value: "started_at",
    BookingStatus.IN_TRANSIT.value: "started_at",
    BookingStatus.DELIVERED.value: "delivered_at",
    BookingStatus.CANCELLED.value: "cancelled_at",
}

BOOKING_DERIVED_FIELDS = ("confirmed_at", "started_at", "delivered_at", "cancelled_at")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_event_id() -> str:
    return uuid.uuid4().hex


def status_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, BookingStatus):
        return value.value
    return str(value)


def make_status_change(
    previous: Optional[str],
    current: str,
    *,
    at: str,
    actor: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "id": new_event_id(),
        "at": at,
        "from": previous,
        "to": current,
        "actor": dict(actor) if actor else None,
    }


def make_audit_event(
    action: str,
    entity: Dict[str, Any],
    *,
    actor: Optional[Dict[str, Any]] = None,
    meta: Optional[Dict[str, Any]] = None,
    at: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": new_event_id(),
        "at": at or utc_now_iso(),
        "actor": dict(actor) if actor else None,
        "action": action,
        "entity": dict(entity),
        "meta": dict(meta or {}),
    }


def booking_entity(booking: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "booking", "id": booking.get("id"), "ref": booking.get("booking_number")}


def prepend_bounded(rows: List[Dict[str, Any]], entry: Dict[str, Any], cap: int) -> List[Dict[str, Any]]:
    """Newest-first append; entries past ``cap`` are dropped."""
    return [entry, *rows][: max(0, int(cap))]


def apply_status_transition(
    existing: Dict[str, Any],
    merged: Dict[str, Any],
    *,
    at: str,
    actor: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """Record a booking status transition on ``merged`` in place.

    Returns the audit event for the transition, or None when the status did
    not change. History entries already present are never modified.
    """
    previous = status_value(existing.get("status"))
    current = status_value(merged.get("status"))
    history = list(existing.get("status_history") or [])
    merged["status_history"] = history
    if current is None or previous == current:
        return None

    history.append(make_status_change(previous, current, at=at, actor=actor))
    field = DERIVED_TIMESTAMP_FIELDS.get(current)
    if field:
        merged[field] = at
    return make_audit_event(
        BOOKING_STATUS_CHANGE,
        booking_entity(existing),
        actor=actor,
        meta={"from": previous, "to": current},
        at=at,
    )
