"""Domain models for fleet, CRM and finance collections held by the data store."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class BookingStatus(str, Enum):
    """Lifecycle status for a booking. Any status may move to any other."""

    DRAFT = "draft"
    PENDING = "pending"
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    DISPATCHED = "dispatched"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class MaintenanceStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MaintenanceType(str, Enum):
    ROUTINE = "routine"
    REPAIR = "repair"
    INSPECTION = "inspection"
    EMERGENCY = "emergency"


class VehicleType(str, Enum):
    REFRIGERATED = "refrigerated"
    DRY = "dry"
    FLATBED = "flatbed"


class VehicleStatus(str, Enum):
    ACTIVE = "active"
    MAINTENANCE = "maintenance"
    RETIRED = "retired"
    OUT_OF_SERVICE = "out_of_service"


class OpportunityStage(str, Enum):
    PROSPECTING = "prospecting"
    QUALIFICATION = "qualification"
    PROPOSAL = "proposal"
    NEGOTIATION = "negotiation"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"


class LeadStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    PROPOSAL_SENT = "proposal_sent"
    NEGOTIATION = "negotiation"
    WON = "won"
    LOST = "lost"


class LeadSource(str, Enum):
    WEBSITE = "website"
    REFERRAL = "referral"
    COLD_OUTREACH = "cold_outreach"
    EVENT = "event"
    SOCIAL_MEDIA = "social_media"
    PARTNER = "partner"
    OTHER = "other"


class ExpenseCategory(str, Enum):
    FUEL = "fuel"
    MAINTENANCE = "maintenance"
    INSURANCE = "insurance"
    LICENSE = "license"
    TOLLS = "tolls"
    PARKING = "parking"
    OTHER = "other"


class Currency(str, Enum):
    USD = "USD"
    ZWL = "ZWL"
    ZIG = "ZIG"


OPEN_MAINTENANCE_STATUSES = frozenset(
    {MaintenanceStatus.SCHEDULED.value, MaintenanceStatus.IN_PROGRESS.value}
)

EntityId = Union[int, str]


class _Record(BaseModel):
    """Base for create payloads; unknown fields are carried through untouched."""

    model_config = ConfigDict(extra="allow", use_enum_values=True)


class BookingCreate(_Record):
    """Payload to create a booking."""

    booking_number: str
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    pickup_location: Optional[str] = None
    pickup_date: Optional[str] = None
    delivery_location: Optional[str] = None
    delivery_date: Optional[str] = None
    cargo_description: Optional[str] = None
    status: BookingStatus = BookingStatus.DRAFT


class InvoiceCreate(_Record):
    invoice_number: str
    customer_id: Optional[int] = None
    booking_id: Optional[int] = None
    issue_date: Optional[str] = None
    due_date: Optional[str] = None
    subtotal: float = 0.0
    tax_amount: float = 0.0
    discount_amount: float = 0.0
    total_amount: float = 0.0
    amount_paid: float = 0.0
    balance_due: float = 0.0
    currency: Currency = Currency.USD
    status: InvoiceStatus = InvoiceStatus.DRAFT
    payment_terms: int = 30
    reminder_enabled: bool = False
    next_reminder_at: Optional[str] = None
    reminder_count: int = 0


class LeadCreate(_Record):
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    company_name: str = ""
    position: str = ""
    lead_source: LeadSource = LeadSource.OTHER
    lead_status: LeadStatus = LeadStatus.NEW
    lead_score: int = 0
    notes: Optional[str] = None
    next_follow_up_date: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)


class OpportunityCreate(_Record):
    opportunity_name: str
    lead_id: Optional[int] = None
    customer_id: Optional[int] = None
    stage: OpportunityStage = OpportunityStage.PROSPECTING
    expected_value: float = 0.0
    currency: Currency = Currency.USD
    probability: float = Field(default=0.0, ge=0, le=100)
    expected_close_date: Optional[str] = None


class ExpenseCreate(_Record):
    expense_number: str = ""
    expense_category: ExpenseCategory = ExpenseCategory.OTHER
    vehicle_id: Optional[int] = None
    booking_id: Optional[int] = None
    vendor_name: str = ""
    description: str = ""
    amount: float = 0.0
    currency: Currency = Currency.USD
    expense_date: Optional[str] = None


class VehicleCreate(_Record):
    registration_number: str
    make: str = ""
    model: str = ""
    year: Optional[int] = None
    vehicle_type: VehicleType = VehicleType.DRY
    capacity_tonnes: float = 0.0
    status: VehicleStatus = VehicleStatus.ACTIVE
    current_km: float = Field(default=0.0, ge=0)
    next_service_due_km: float = Field(default=0.0, ge=0)
    last_service_date: Optional[str] = None
    gps_device_id: str = ""


class MaintenanceCreate(_Record):
    vehicle_id: int
    maintenance_type: MaintenanceType = MaintenanceType.ROUTINE
    description: str = ""
    cost: float = 0.0
    service_date: Optional[str] = None
    status: MaintenanceStatus = MaintenanceStatus.SCHEDULED
    km_at_service: Optional[float] = None


class CustomerCreate(_Record):
    company_name: str = ""
    contact_name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""


class DriverCreate(_Record):
    name: str
    license_number: str = ""
    phone: str = ""
    status: str = "available"
    home_region: str = ""


class UserCreate(_Record):
    first_name: str = ""
    last_name: str = ""
    email: str
    role: str = "viewer"


class LeadActivityCreate(_Record):
    lead_id: int
    activity_type: str = "note"
    subject: str = ""
    description: str = ""
    performed_by: Optional[EntityId] = None


class OpportunityActivityCreate(_Record):
    opportunity_id: int
    activity_type: str = "note"
    description: str = ""
    performed_by: Optional[EntityId] = None


class DeliveryProofCreate(_Record):
    booking_id: int
    recipient_name: str = ""
    signature_url: Optional[str] = None
    photo_urls: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class AuditActor(BaseModel):
    id: Optional[EntityId] = None
    role: Optional[str] = None
    name: Optional[str] = None


class AuditEntity(BaseModel):
    type: str
    id: Optional[EntityId] = None
    ref: Optional[str] = None


class AuditEventCreate(BaseModel):
    """Audit entry as supplied by callers; `id` and `at` are stamped by the store."""

    actor: Optional[AuditActor] = None
    action: str
    entity: AuditEntity
    meta: Dict[str, Any] = Field(default_factory=dict)


class AuditEvent(AuditEventCreate):
    id: str
    at: str


class StatusChange(BaseModel):
    """One append-only entry in a booking's status history."""

    id: str
    at: str
    from_: Optional[str] = Field(default=None, alias="from")
    to: str
    actor: Optional[AuditActor] = None

    model_config = ConfigDict(populate_by_name=True)


class ChangeEvent(BaseModel):
    """Wire shape of a collection change published on a tenant channel."""

    source: str
    type: str
    payload: Any = None
