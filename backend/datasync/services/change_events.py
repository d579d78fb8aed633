"""Idempotent merge rules for collection change events."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from datasync.services.audit_trail import prepend_bounded


AUDIT_APPEND = "audit:append"
AUDIT_CLEAR = "audit:clear"

# Recognized operations per collection. Anything else on the wire is ignored.
COLLECTION_OPERATIONS: Dict[str, frozenset] = {
    "vehicles": frozenset({"add", "update", "delete", "replace"}),
    "bookings": frozenset({"add", "update"}),
    "leads": frozenset({"add", "update", "delete", "replace"}),
    "opportunities": frozenset({"add", "update"}),
    "invoices": frozenset({"add", "update"}),
    "expenses": frozenset({"add", "update", "replace"}),
    "drivers": frozenset({"add", "update"}),
    "users": frozenset({"add", "delete"}),
    "customers": frozenset({"add", "update", "delete", "replace"}),
    "maintenance": frozenset({"add", "update"}),
    "lead_activities": frozenset({"add"}),
    "opportunity_activities": frozenset({"add"}),
    "delivery_proofs": frozenset({"add"}),
}

ENTITY_COLLECTIONS = tuple(COLLECTION_OPERATIONS)
AUDIT_COLLECTION = "audit_log"
ALL_COLLECTIONS = ENTITY_COLLECTIONS + (AUDIT_COLLECTION,)


def event_type(collection: str, operation: str) -> str:
    return f"{collection}:{operation}"


def parse_event_type(value: Any) -> Optional[Tuple[str, str]]:
    """Split ``<collection>:<op>``; None unless the pair is recognized."""
    if not isinstance(value, str) or ":" not in value:
        return None
    collection, operation = value.split(":", 1)
    if value in (AUDIT_APPEND, AUDIT_CLEAR):
        return collection, operation
    if operation not in COLLECTION_OPERATIONS.get(collection, frozenset()):
        return None
    return collection, operation


def merge_add(rows: List[Dict[str, Any]], payload: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], bool]:
    if any(row.get("id") == payload.get("id") for row in rows):
        return rows, False
    return [dict(payload), *rows], True


def merge_update(rows: List[Dict[str, Any]], payload: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], bool]:
    target = payload.get("id")
    changed = False
    merged: List[Dict[str, Any]] = []
    for row in rows:
        if row.get("id") == target:
            row = {**row, **payload}
            changed = True
        merged.append(row)
    return (merged, True) if changed else (rows, False)


def merge_delete(rows: List[Dict[str, Any]], payload: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], bool]:
    target = payload.get("id")
    remaining = [row for row in rows if row.get("id") != target]
    if len(remaining) == len(rows):
        return rows, False
    return remaining, True


def merge_replace(rows: List[Dict[str, Any]], payload: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], bool]:
    items = payload.get("items")
    if not isinstance(items, list):
        return rows, False
    replacement = [dict(item) for item in items if isinstance(item, dict)]
    return replacement, replacement != rows


_MERGERS = {
    "add": merge_add,
    "update": merge_update,
    "delete": merge_delete,
    "replace": merge_replace,
}


def apply_change(
    collections: Dict[str, List[Dict[str, Any]]],
    type_: Any,
    payload: Any,
    *,
    audit_cap: int,
) -> bool:
    """Apply one change event to ``collections`` in place.

    Returns True when state changed. Unknown types and malformed payloads are
    ignored, and re-applying the same add/update/delete leaves the state as
    the first application left it.
    """
    parsed = parse_event_type(type_)
    if parsed is None:
        return False
    collection, operation = parsed

    if type_ == AUDIT_CLEAR:
        if not collections.get(AUDIT_COLLECTION):
            return False
        collections[AUDIT_COLLECTION] = []
        return True

    if not isinstance(payload, dict):
        return False

    if type_ == AUDIT_APPEND:
        rows = collections.get(AUDIT_COLLECTION, [])
        if any(row.get("id") == payload.get("id") for row in rows):
            return False
        collections[AUDIT_COLLECTION] = prepend_bounded(rows, dict(payload), audit_cap)
        return True

    if operation != "replace" and payload.get("id") is None:
        return False
    rows = collections.get(collection, [])
    updated, changed = _MERGERS[operation](rows, payload)
    if changed:
        collections[collection] = updated
    return changed
