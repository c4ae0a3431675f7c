from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, Generic, Iterable, List, Optional, TypeVar, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    constr,
    field_validator,
    model_validator,
)

from dispatchdesk.core.errors import ValidationError

IdentifierText = constr(strip_whitespace=True, min_length=1, max_length=64)
ShortText = constr(strip_whitespace=True, max_length=255)
LongText = constr(strip_whitespace=True, max_length=8192)

T = TypeVar("T")


class AppointmentType(str, Enum):
    CALL_TO_SCHEDULE = "call_to_schedule"
    TIME_RANGE = "time_range"
    HALF_MORNING = "half_morning"
    HALF_AFTERNOON = "half_afternoon"
    FULL_DAY = "full_day"
    BACKLOG = "backlog"


APPOINTMENT_TYPE_LABELS = {
    AppointmentType.CALL_TO_SCHEDULE.value: "Call to schedule",
    AppointmentType.TIME_RANGE.value: "Time range",
    AppointmentType.HALF_MORNING.value: "Half day (morning)",
    AppointmentType.HALF_AFTERNOON.value: "Half day (afternoon)",
    AppointmentType.FULL_DAY.value: "Full day",
    AppointmentType.BACKLOG.value: "Backlog",
}


# Tri-state values for partial updates.


class Unset:
    _instance: "Unset | None" = None

    def __new__(cls) -> "Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = Unset()


@dataclass(frozen=True)
class SetNull:
    pass


SET_NULL = SetNull()


@dataclass(frozen=True)
class SetValue(Generic[T]):
    value: T


FieldUpdate = Union[Unset, SetNull, SetValue[T]]


def field_update(model: BaseModel, name: str) -> FieldUpdate:
    """Translate key presence on ``model`` into an explicit tri-state value."""

    if name not in model.model_fields_set:
        return UNSET
    value = getattr(model, name)
    if value is None:
        return SET_NULL
    return SetValue(value)


# Employee references accept a bare id or an ``{id, is_key}`` object.


class EmployeeRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: IdentifierText
    is_key: bool = False


EmployeeRefInput = Union[IdentifierText, EmployeeRef]


def normalize_employee_refs(refs: Iterable[Any] | None) -> list[EmployeeRef]:
    """Return one canonical reference per employee, first occurrence wins."""

    normalized: list[EmployeeRef] = []
    seen: set[str] = set()
    for ref in refs or []:
        if isinstance(ref, EmployeeRef):
            candidate = ref
        elif isinstance(ref, str):
            candidate = EmployeeRef(id=ref) if ref.strip() else None
        elif isinstance(ref, dict) and isinstance(ref.get("id"), str) and ref["id"].strip():
            candidate = EmployeeRef(id=ref["id"], is_key=bool(ref.get("is_key", False)))
        else:
            candidate = None
        if candidate is None:
            raise ValidationError(f"Invalid employee reference: {ref!r}")
        if candidate.id in seen:
            continue
        seen.add(candidate.id)
        normalized.append(candidate)
    return normalized


class CompanyInput(BaseModel):
    tax_id: Optional[ShortText] = None
    name_th: Optional[ShortText] = None
    name_en: Optional[ShortText] = None
    address_detail: Optional[LongText] = None


class SiteInput(BaseModel):
    id: Optional[IdentifierText] = None
    name: Optional[ShortText] = None
    company_id: Optional[ShortText] = None
    address_detail: Optional[LongText] = None
    province_code: Optional[int] = None
    district_code: Optional[int] = None
    subdistrict_code: Optional[int] = None
    postal_code: Optional[constr(strip_whitespace=True, max_length=16)] = None
    map_url: Optional[LongText] = None


class ContactInput(BaseModel):
    id: Optional[IdentifierText] = None
    person_name: Optional[ShortText] = None
    nickname: Optional[ShortText] = None
    phone: Optional[List[ShortText]] = None
    email: Optional[List[ShortText]] = None
    line_id: Optional[ShortText] = None
    note: Optional[LongText] = None


class AppointmentInput(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    appointment_date: Optional[date] = None
    appointment_time_start: Optional[time] = None
    appointment_time_end: Optional[time] = None
    appointment_type: Optional[AppointmentType] = None

    @model_validator(mode="after")
    def _check_window(self) -> "AppointmentInput":
        start, end = self.appointment_time_start, self.appointment_time_end
        if start is not None and end is not None and end < start:
            raise ValueError("appointment_time_end must not be earlier than appointment_time_start")
        return self


class TicketCoreCreate(BaseModel):
    work_type_id: IdentifierText
    assigner_id: IdentifierText
    status_id: IdentifierText
    details: Optional[LongText] = None
    additional: Optional[LongText] = None


class TicketCoreUpdate(BaseModel):
    work_type_id: Optional[IdentifierText] = None
    assigner_id: Optional[IdentifierText] = None
    status_id: Optional[IdentifierText] = None
    details: Optional[LongText] = None
    additional: Optional[LongText] = None

    @model_validator(mode="after")
    def _reject_null_references(self) -> "TicketCoreUpdate":
        for name in ("work_type_id", "assigner_id", "status_id"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be cleared")
        return self


class _EmployeeListMixin(BaseModel):
    @field_validator("employee_ids", mode="after", check_fields=False)
    @classmethod
    def _normalize_employee_ids(cls, value: Optional[List[Any]]) -> Optional[List[EmployeeRef]]:
        if value is None:
            return None
        return normalize_employee_refs(value)


class TicketCreateInput(_EmployeeListMixin):
    ticket: TicketCoreCreate
    company: Optional[CompanyInput] = None
    site: Optional[SiteInput] = None
    contact: Optional[ContactInput] = None
    appointment: Optional[AppointmentInput] = None
    employee_ids: Optional[List[EmployeeRefInput]] = None
    merchandise_ids: Optional[List[IdentifierText]] = None
    work_giver_id: Optional[IdentifierText] = None
    summarize: bool = False


@dataclass(frozen=True)
class TicketChanges:
    """Update input with every section expressed as an explicit tri-state."""

    ticket: FieldUpdate[Dict[str, Any]] = UNSET
    company: FieldUpdate[CompanyInput] = UNSET
    site: FieldUpdate[SiteInput] = UNSET
    contact: FieldUpdate[ContactInput] = UNSET
    appointment: FieldUpdate[Dict[str, Any]] = UNSET
    employee_ids: FieldUpdate[List[EmployeeRef]] = UNSET
    merchandise_ids: FieldUpdate[List[str]] = UNSET
    work_giver_id: FieldUpdate[str] = UNSET


class TicketUpdateInput(_EmployeeListMixin):
    ticket: Optional[TicketCoreUpdate] = None
    company: Optional[CompanyInput] = None
    site: Optional[SiteInput] = None
    contact: Optional[ContactInput] = None
    appointment: Optional[AppointmentInput] = None
    employee_ids: Optional[List[EmployeeRefInput]] = None
    merchandise_ids: Optional[List[IdentifierText]] = None
    work_giver_id: Optional[IdentifierText] = None

    def to_changes(self) -> TicketChanges:
        ticket = field_update(self, "ticket")
        if isinstance(ticket, SetValue):
            ticket = SetValue(ticket.value.model_dump(exclude_unset=True))
        appointment = field_update(self, "appointment")
        if isinstance(appointment, SetValue):
            appointment = SetValue(appointment.value.model_dump(exclude_unset=True))
        return TicketChanges(
            ticket=ticket,
            company=field_update(self, "company"),
            site=field_update(self, "site"),
            contact=field_update(self, "contact"),
            appointment=appointment,
            employee_ids=field_update(self, "employee_ids"),
            merchandise_ids=field_update(self, "merchandise_ids"),
            work_giver_id=field_update(self, "work_giver_id"),
        )


class ConfirmTechniciansRequest(BaseModel):
    employee_ids: List[Union[IdentifierText, EmployeeRef]] = Field(default_factory=list)
    notes: Optional[LongText] = None


class AppointmentApprovalRequest(AppointmentInput):
    """Approval toggle, optionally adjusting the appointment in the same step."""

    is_approved: bool = True


class WatcherCreate(BaseModel):
    employee_id: IdentifierText


class ConflictCheckRequest(BaseModel):
    employee_ids: List[IdentifierText] = Field(default_factory=list)
    appointment_date: Optional[date] = None
    time_start: Optional[time] = None
    time_end: Optional[time] = None
    exclude_ticket_id: Optional[IdentifierText] = None


class ConflictCheckResponse(BaseModel):
    conflicted_employee_ids: List[str]


class NotificationMarkRead(BaseModel):
    notification_ids: Optional[List[IdentifierText]] = None


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    recipient_id: str
    type: str
    title: str
    message: str
    ticket_id: Optional[str] = None
    comment_id: Optional[str] = None
    audit_id: Optional[str] = None
    actor_id: Optional[str] = None
    is_read: bool
    read_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="metadata_")
    created_at: datetime


class NotificationPage(BaseModel):
    items: List[NotificationRead]
    total: int
    unread_count: int
    page: int
    limit: int


class AuditEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    action: str
    changed_by: str
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    changed_fields: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="metadata_")
    created_at: datetime


class WatcherRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    employee_id: str
    added_by: Optional[str] = None
    source: str
    added_at: datetime
