from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from decimal import Decimal
from typing import Dict, Literal, Optional, List

from attendance import Target
from selection import ComboSelection, ManyCombos, NoCombo, OneCombo, Selection


# ── Catalog ───────────────────────────────────────────────────────────────────

class WorkshopCreate(BaseModel):
    name: str
    price: Optional[Decimal] = None
    capacity: Optional[int] = None
    is_active: bool = True

    @field_validator("name")
    @classmethod
    def must_not_be_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Field cannot be empty")
        return v.strip()

    @field_validator("price")
    @classmethod
    def price_must_not_be_negative(cls, v):
        if v is not None and v < 0:
            raise ValueError("Price cannot be negative")
        return v

    @field_validator("capacity")
    @classmethod
    def capacity_must_not_be_negative(cls, v):
        if v is not None and v < 0:
            raise ValueError("Capacity cannot be negative")
        return v


class EventCreate(WorkshopCreate):
    category: Literal["tech", "non_tech", "food"] = "tech"


class ComboItemIn(BaseModel):
    target_type: Literal["event", "workshop"]
    target_id: str


class ComboCreate(BaseModel):
    name: str
    price: Decimal
    capacity: Optional[int] = None
    is_active: bool = True
    items: List[ComboItemIn]
    excluded_event_ids: List[str] = []

    @field_validator("name")
    @classmethod
    def must_not_be_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Field cannot be empty")
        return v.strip()

    @field_validator("price")
    @classmethod
    def price_must_not_be_negative(cls, v):
        if v < 0:
            raise ValueError("Price cannot be negative")
        return v

    @field_validator("capacity")
    @classmethod
    def capacity_must_not_be_negative(cls, v):
        if v is not None and v < 0:
            raise ValueError("Capacity cannot be negative")
        return v

    @field_validator("items")
    @classmethod
    def must_have_items(cls, v):
        if not v:
            raise ValueError("A combo needs at least one item")
        return v


class ActiveUpdate(BaseModel):
    is_active: bool


class EventResponse(BaseModel):
    id: str
    name: str
    category: str
    price: Decimal
    capacity: Optional[int] = None
    is_active: bool


class WorkshopResponse(BaseModel):
    id: str
    name: str
    price: Decimal
    capacity: Optional[int] = None
    is_active: bool


class ComboItemResponse(BaseModel):
    target_type: str
    target_id: str


class ComboResponse(BaseModel):
    id: str
    name: str
    price: Decimal
    capacity: Optional[int] = None
    is_active: bool
    items: List[ComboItemResponse]
    excluded_event_ids: List[str]


class CatalogResponse(BaseModel):
    events: List[EventResponse]
    workshops: List[WorkshopResponse]
    combos: List[ComboResponse]


# ── Selections ───────────────────────────────────────────────────────────────

class SelectionIn(BaseModel):
    """Wire form of a selection; ``selected_combos`` is a list in both flows."""
    selected_tech_events: List[str] = []
    selected_non_tech_events: List[str] = []
    selected_workshops: List[str] = []
    selected_combos: List[str] = []

    def to_public(self) -> Selection:
        if len(self.selected_combos) == 1:
            combos: ComboSelection = OneCombo(combo_id=self.selected_combos[0])
        elif not self.selected_combos:
            combos = NoCombo()
        else:
            combos = ManyCombos(combo_ids=tuple(self.selected_combos))
        return self._build(combos)

    def to_coordinator(self) -> Selection:
        return self._build(ManyCombos(combo_ids=tuple(self.selected_combos)))

    def _build(self, combos: ComboSelection) -> Selection:
        return Selection(
            tech_event_ids=tuple(self.selected_tech_events),
            non_tech_event_ids=tuple(self.selected_non_tech_events),
            workshop_ids=tuple(self.selected_workshops),
            combos=combos,
        )


class BillableLineResponse(BaseModel):
    target_type: str
    target_id: str
    name: str
    price: Decimal


class QuoteResponse(BaseModel):
    lines: List[BillableLineResponse]
    combos: List[ComboResponse]
    total: Decimal
    conflicts: List[str]
    disabled_events: Dict[str, str]
    payment_uri: str


# ── Registrations ────────────────────────────────────────────────────────────

class ParticipantIn(BaseModel):
    name: str
    email: str
    phone: str
    enrollment_number: Optional[str] = None
    college: Optional[str] = None

    @field_validator("name", "phone")
    @classmethod
    def must_not_be_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Field cannot be empty")
        return v.strip()

    @field_validator("email")
    @classmethod
    def email_must_be_valid(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v or "." not in v.split("@")[-1]:
            raise ValueError("Invalid email address")
        return v


class RegistrationCreate(BaseModel):
    participant: ParticipantIn
    selection: SelectionIn
    transaction_id: str
    amount_paid: Decimal

    @field_validator("transaction_id")
    @classmethod
    def must_not_be_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Field cannot be empty")
        return v.strip()


class RegistrationReplace(BaseModel):
    selection: SelectionIn
    transaction_id: Optional[str] = None
    amount_paid: Decimal = Decimal("0")


class RegistrationResponse(BaseModel):
    id: str
    user_id: str
    target_type: str
    target_id: str
    transaction_id: Optional[str] = None
    amount_paid: Decimal
    payment_status: str
    parent_registration_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    phone: str
    enrollment_number: Optional[str] = None
    college: Optional[str] = None

    model_config = {"from_attributes": True}


class RegistrationResult(BaseModel):
    user: UserResponse
    total: Decimal
    registrations: List[RegistrationResponse]


class UserRegistrationEntry(RegistrationResponse):
    target_name: str
    attended: bool


class UserRegistrationsResponse(BaseModel):
    user: UserResponse
    registrations: List[UserRegistrationEntry]


# ── Payment review ───────────────────────────────────────────────────────────

class StatusUpdate(BaseModel):
    payment_status: Literal["pending", "approved", "declined"]


class CascadeFailureResponse(BaseModel):
    target_type: str
    error: str


class StatusUpdateResponse(BaseModel):
    registration_id: str
    old_status: str
    new_status: str
    cascaded: int
    cascade_failures: List[CascadeFailureResponse]


class BulkApproveRequest(BaseModel):
    registration_ids: List[str] = Field(min_length=1)


class BulkApproveResponse(BaseModel):
    approved: int


# ── Attendance ───────────────────────────────────────────────────────────────

class ScanRequest(BaseModel):
    payload: str
    target_type: Literal["event", "workshop", "combo"]
    target_id: str
    scanner_id: str

    def target(self, name: str = "") -> Target:
        return Target(type=self.target_type, id=self.target_id, name=name)


class ScanResponse(BaseModel):
    success: bool
    status: str
    message: str
    reason: Optional[str] = None
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    scan_time: Optional[datetime] = None


class AttendanceResponse(BaseModel):
    id: int
    user_id: str
    target_type: str
    target_id: str
    scanned_by: Optional[str] = None
    scan_time: datetime

    model_config = {"from_attributes": True}


class ParticipantEntry(RegistrationResponse):
    user_name: str
    user_email: str


class AuditLogResponse(BaseModel):
    id: int
    timestamp: datetime
    role: str
    action: str
    detail: str

    model_config = {"from_attributes": True}
