"""Mapping of remote fleet/CRM rows into local collection rows.

Source rows come straight from the reporting tables behind the bootstrap
endpoints and any column may be missing or null. Each mapper documents the
default it substitutes per field.
"""
from __future__ import annotations

import json
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from datasync.models.entities import (
    Currency,
    ExpenseCategory,
    LeadSource,
    LeadStatus,
    VehicleStatus,
    VehicleType,
)


FLEET_SOURCE = "fleet-data"
CRM_SOURCE = "crm-data"

_TRUTHY = {"1", "true", "yes", "y", "t"}


def _text(value: Any, default: str = "") -> str:
    if value is None:
        return default
    text = " ".join(str(value).split())
    return text or default


def _number(value: Any, default: float = 0.0) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(str(value).replace(",", "").strip())
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _int_id(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return _text(value).lower() in _TRUTHY


def _year(value: Any) -> Optional[int]:
    text = _text(value)
    if len(text) >= 4 and text[:4].isdigit():
        return int(text[:4])
    return None


def _timestamp(value: Any, fallback: str) -> str:
    text = _text(value)
    return text or fallback


def _split_name(value: Any) -> tuple:
    parts = _text(value).split(" ", 1)
    first = parts[0] if parts else ""
    last = parts[1] if len(parts) > 1 else ""
    return first, last


def _row_digest(row: Dict[str, Any]) -> str:
    return uuid.uuid5(uuid.NAMESPACE_URL, json.dumps(row, sort_keys=True, default=str)).hex[:12]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def map_vehicle_row(row: Dict[str, Any], *, now: Optional[str] = None) -> Dict[str, Any]:
    """Fleet vehicle row -> Vehicle.

    Defaults: registration ``""`` (prefers ``reg_number_clean``), make/model
    ``""``, year from ``purchase_date`` or None, type ``refrigerated`` only
    when ``refrigeration`` is truthy else ``dry``, capacity/odometer/service
    threshold ``0``, status ``active``.
    """
    stamp = now or _now_iso()
    return {
        "id": _int_id(row.get("id")),
        "registration_number": _text(row.get("reg_number_clean")) or _text(row.get("reg_number")),
        "make": _text(row.get("make")),
        "model": _text(row.get("model")),
        "year": _year(row.get("purchase_date")),
        "vehicle_type": (
            VehicleType.REFRIGERATED.value if _flag(row.get("refrigeration")) else VehicleType.DRY.value
        ),
        "capacity_tonnes": _number(row.get("capacity_tonnes")),
        "status": VehicleStatus.ACTIVE.value,
        "current_km": _number(row.get("current_km")),
        "next_service_due_km": _number(row.get("next_service_due_km")),
        "last_service_date": _text(row.get("last_service_date")) or None,
        "gps_device_id": _text(row.get("gps_device_id")),
        "purchase_cost_usd": _number(row.get("purchase_cost_usd")),
        "maintenance_requirements": _text(row.get("maintenance_requirements")),
        "source": FLEET_SOURCE,
        "created_at": _timestamp(row.get("created_at"), stamp),
        "updated_at": _timestamp(row.get("updated_at"), stamp),
    }


def map_fuel_row(row: Dict[str, Any], *, now: Optional[str] = None) -> Dict[str, Any]:
    """Fleet fuel purchase row -> Expense (category ``fuel``).

    Ids are namespaced as ``fuel-<remote id>`` (or a digest of the row when
    it has no id) so they never collide with locally numbered expenses.
    Defaults: amount ``0``, vendor ``""``, description ``"Fuel purchase"``
    (with litres when known), currency USD.
    """
    stamp = now or _now_iso()
    remote_id = _text(row.get("id")) or _text(row.get("kobo_uuid"))
    litres = _number(row.get("litres"))
    description = _text(row.get("comments")) or (
        f"Fuel purchase ({litres:g} L)" if litres else "Fuel purchase"
    )
    return {
        "id": f"fuel-{remote_id or _row_digest(row)}",
        "expense_number": _text(row.get("kobo_uuid")),
        "expense_category": ExpenseCategory.FUEL.value,
        "vendor_name": _text(row.get("supplier")),
        "description": description,
        "amount": _number(row.get("amount_usd")),
        "litres": litres,
        "currency": Currency.USD.value,
        "expense_date": _text(row.get("record_date")) or _text(row.get("created_at")) or stamp.split("T")[0],
        "receipt_url": _text(row.get("receipt_url")) or None,
        "source": FLEET_SOURCE,
        "created_at": _timestamp(row.get("created_at"), stamp),
        "updated_at": _timestamp(row.get("updated_at"), stamp),
    }


def map_lead_row(row: Dict[str, Any], *, now: Optional[str] = None) -> Dict[str, Any]:
    """CRM lead row -> Lead.

    ``customer`` becomes the company, ``customer_contact`` is split into
    first/last name. Status is ``contacted`` once an action was completed,
    otherwise ``new``; source is ``referral`` when a referrer is recorded,
    otherwise ``other``. Score ``0``, empty tags.
    """
    stamp = now or _now_iso()
    first, last = _split_name(row.get("customer_contact"))
    referred_by = _text(row.get("referred_suggested_by"))
    contacted = _flag(row.get("action_completed")) or bool(_text(row.get("action_date")))
    return {
        "id": _int_id(row.get("id")),
        "company_name": _text(row.get("customer")),
        "first_name": first,
        "last_name": last,
        "email": _text(row.get("email")),
        "phone": _text(row.get("phone")),
        "position": _text(row.get("position")),
        "lead_source": LeadSource.REFERRAL.value if referred_by else LeadSource.OTHER.value,
        "lead_status": LeadStatus.CONTACTED.value if contacted else LeadStatus.NEW.value,
        "lead_score": 0,
        "last_contact_date": _text(row.get("action_date")) or None,
        "next_follow_up_date": _text(row.get("follow_up_date")) or None,
        "notes": _text(row.get("follow_up_action")) or None,
        "tags": [],
        "custom_fields": {
            "account_owner": _text(row.get("heartfledge_contact")),
            "referred_by": referred_by,
        },
        "source": CRM_SOURCE,
        "created_at": _timestamp(row.get("created_at"), stamp),
        "updated_at": _timestamp(row.get("updated_at"), stamp),
    }


def map_customer_row(row: Dict[str, Any], *, now: Optional[str] = None) -> Dict[str, Any]:
    """CRM customer row -> Customer with the same defaults ``add_customer`` applies."""
    stamp = now or _now_iso()
    return {
        "id": _int_id(row.get("id")),
        "company_name": _text(row.get("customer")),
        "contact_name": _text(row.get("customer_contact")),
        "position": _text(row.get("position")),
        "email": _text(row.get("email")),
        "phone": _text(row.get("phone")),
        "address": _text(row.get("address")),
        "user_id": 0,
        "loyalty_points": 0,
        "total_spent": 0,
        "total_bookings": 0,
        "is_verified": True,
        "preferred_currency": Currency.USD.value,
        "account_owner": _text(row.get("heartfledge_contact")),
        "next_follow_up_date": _text(row.get("follow_up_date")) or None,
        "source": CRM_SOURCE,
        "created_at": _timestamp(row.get("created_at"), stamp),
        "updated_at": _timestamp(row.get("updated_at"), stamp),
    }


def fill_missing_ids(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Give rows without a usable remote id the next free integer id."""
    used = {row["id"] for row in rows if row.get("id") is not None}
    numeric = [value for value in used if isinstance(value, int)]
    cursor = max(numeric, default=0)
    for row in rows:
        if row.get("id") is None:
            cursor += 1
            while cursor in used:
                cursor += 1
            row["id"] = cursor
            used.add(cursor)
    return rows


def map_rows(rows: Any, mapper, *, now: Optional[str] = None) -> List[Dict[str, Any]]:
    if not isinstance(rows, list):
        return []
    stamp = now or _now_iso()
    mapped = fill_missing_ids([mapper(row, now=stamp) for row in rows if isinstance(row, dict)])
    # Duplicate remote ids would break per-collection id uniqueness; first row wins.
    seen = set()
    unique: List[Dict[str, Any]] = []
    for row in mapped:
        if row["id"] in seen:
            continue
        seen.add(row["id"])
        unique.append(row)
    return unique
