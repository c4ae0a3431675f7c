from __future__ import annotations

from datetime import date, datetime, time, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.ext.mutable import MutableDict, MutableList
from sqlalchemy.orm import declarative_base

from sqlalchemy.types import JSON

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class Employee(Base):
    __tablename__ = "employees"

    id: str = Column(String(36), primary_key=True, default=new_id)
    code: str | None = Column(String(32), nullable=True, unique=True)
    name: str = Column(String(255), nullable=False)
    nickname: str | None = Column(String(128), nullable=True)
    role_level: int = Column(Integer, nullable=False, default=0, server_default=text("0"))
    is_active: bool = Column(Boolean, nullable=False, default=True, server_default=text("1"))
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AppointmentApprover(Base):
    __tablename__ = "appointment_approvers"

    employee_id: str = Column(
        String(36),
        ForeignKey("employees.id", ondelete="CASCADE"),
        primary_key=True,
    )


class WorkType(Base):
    __tablename__ = "work_types"

    id: str = Column(String(36), primary_key=True, default=new_id)
    code: str = Column(String(64), nullable=False, unique=True)
    name: str = Column(String(255), nullable=False)


class TicketStatus(Base):
    __tablename__ = "ticket_statuses"

    id: str = Column(String(36), primary_key=True, default=new_id)
    code: str = Column(String(64), nullable=False, unique=True)
    name: str = Column(String(255), nullable=False)


class Company(Base):
    __tablename__ = "companies"

    tax_id: str = Column(String(32), primary_key=True)
    name_th: str | None = Column(String(255), nullable=True)
    name_en: str | None = Column(String(255), nullable=True)
    address_detail: str | None = Column(Text, nullable=True)
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class Site(Base):
    __tablename__ = "sites"

    id: str = Column(String(36), primary_key=True, default=new_id)
    name: str | None = Column(String(255), nullable=True)
    company_id: str | None = Column(
        String(32),
        ForeignKey("companies.tax_id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    address_detail: str | None = Column(Text, nullable=True)
    province_code: int | None = Column(Integer, nullable=True)
    district_code: int | None = Column(Integer, nullable=True)
    subdistrict_code: int | None = Column(Integer, nullable=True)
    postal_code: str | None = Column(String(16), nullable=True)
    map_url: str | None = Column(Text, nullable=True)
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class Contact(Base):
    __tablename__ = "contacts"

    id: str = Column(String(36), primary_key=True, default=new_id)
    site_id: str | None = Column(
        String(36),
        ForeignKey("sites.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    person_name: str | None = Column(String(255), nullable=True)
    nickname: str | None = Column(String(128), nullable=True)
    phone: list[str] | None = Column(MutableList.as_mutable(JSON), nullable=True)
    email: list[str] | None = Column(MutableList.as_mutable(JSON), nullable=True)
    line_id: str | None = Column(String(128), nullable=True)
    note: str | None = Column(Text, nullable=True)
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class District(Base):
    __tablename__ = "ref_districts"

    id: int = Column(Integer, primary_key=True, autoincrement=False)
    name_th: str = Column(String(255), nullable=False)
    name_en: str | None = Column(String(255), nullable=True)
    province_id: int = Column(Integer, nullable=False, index=True)


class SubDistrict(Base):
    __tablename__ = "ref_sub_districts"

    id: int = Column(Integer, primary_key=True, autoincrement=False)
    name_th: str = Column(String(255), nullable=False)
    name_en: str | None = Column(String(255), nullable=True)
    district_id: int = Column(Integer, nullable=False, index=True)
    zip_code: int | None = Column(Integer, nullable=True)


class EquipmentModel(Base):
    __tablename__ = "equipment_models"

    id: str = Column(String(36), primary_key=True, default=new_id)
    model: str = Column(String(128), nullable=False)
    name: str | None = Column(String(255), nullable=True)
    brand: str | None = Column(String(128), nullable=True)
    capacity: str | None = Column(String(64), nullable=True)


class Merchandise(Base):
    __tablename__ = "merchandise"

    id: str = Column(String(36), primary_key=True, default=new_id)
    serial_no: str | None = Column(String(128), nullable=True)
    model_id: str | None = Column(
        String(36),
        ForeignKey("equipment_models.id", ondelete="SET NULL"),
        nullable=True,
    )
    site_id: str | None = Column(
        String(36),
        ForeignKey("sites.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )


class WorkGiver(Base):
    __tablename__ = "work_givers"

    id: str = Column(String(36), primary_key=True, default=new_id)
    code: str = Column(String(64), nullable=False, unique=True)
    name: str = Column(String(255), nullable=False)
    is_active: bool = Column(Boolean, nullable=False, default=True, server_default=text("1"))


class Appointment(Base):
    __tablename__ = "appointments"

    id: str = Column(String(36), primary_key=True, default=new_id)
    ticket_id: str | None = Column(String(36), nullable=True, index=True)
    appointment_date: date | None = Column(Date, nullable=True, index=True)
    appointment_time_start: time | None = Column(Time, nullable=True)
    appointment_time_end: time | None = Column(Time, nullable=True)
    appointment_type: str | None = Column(String(32), nullable=True)
    is_approved: bool = Column(Boolean, nullable=False, default=False, server_default=text("0"))
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class Ticket(Base):
    __tablename__ = "tickets"

    id: str = Column(String(36), primary_key=True, default=new_id)
    details: str | None = Column(Text, nullable=True)
    additional: str | None = Column(Text, nullable=True)
    summary: str | None = Column(Text, nullable=True)
    work_type_id: str = Column(String(36), ForeignKey("work_types.id"), nullable=False)
    assigner_id: str = Column(String(36), ForeignKey("employees.id"), nullable=False)
    status_id: str = Column(String(36), ForeignKey("ticket_statuses.id"), nullable=False)
    created_by: str | None = Column(String(36), ForeignKey("employees.id"), nullable=True)
    site_id: str | None = Column(
        String(36),
        ForeignKey("sites.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    contact_id: str | None = Column(
        String(36),
        ForeignKey("contacts.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    appointment_id: str | None = Column(
        String(36),
        ForeignKey("appointments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class TicketEmployee(Base):
    __tablename__ = "ticket_employees"
    __table_args__ = (
        UniqueConstraint("ticket_id", "employee_id", "date", name="uq_ticket_employee_date"),
    )

    id: str = Column(String(36), primary_key=True, default=new_id)
    ticket_id: str = Column(
        String(36),
        ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: str = Column(
        String(36),
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    date: date = Column(Date, nullable=False)
    is_key: bool = Column(Boolean, nullable=False, default=False, server_default=text("0"))
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class TicketEmployeeConfirmation(Base):
    __tablename__ = "ticket_employee_confirmations"
    __table_args__ = (
        UniqueConstraint(
            "ticket_id", "employee_id", "date", name="uq_ticket_confirmation_date"
        ),
    )

    id: str = Column(String(36), primary_key=True, default=new_id)
    ticket_id: str = Column(
        String(36),
        ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: str = Column(
        String(36),
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    confirmed_by: str = Column(String(36), nullable=False)
    date: date = Column(Date, nullable=False)
    is_key: bool = Column(Boolean, nullable=False, default=False, server_default=text("0"))
    notes: str | None = Column(Text, nullable=True)
    confirmed_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class TicketMerchandise(Base):
    __tablename__ = "ticket_merchandise"

    ticket_id: str = Column(
        String(36),
        ForeignKey("tickets.id", ondelete="CASCADE"),
        primary_key=True,
    )
    merchandise_id: str = Column(
        String(36),
        ForeignKey("merchandise.id", ondelete="CASCADE"),
        primary_key=True,
    )


class TicketWorkGiver(Base):
    __tablename__ = "ticket_work_givers"

    ticket_id: str = Column(
        String(36),
        ForeignKey("tickets.id", ondelete="CASCADE"),
        primary_key=True,
    )
    work_giver_id: str = Column(
        String(36),
        ForeignKey("work_givers.id", ondelete="CASCADE"),
        nullable=False,
    )


class TicketAudit(Base):
    __tablename__ = "ticket_audit"

    id: str = Column(String(36), primary_key=True, default=new_id)
    # No foreign key: entries must outlive the ticket they describe.
    ticket_id: str = Column(String(36), nullable=False, index=True)
    action: str = Column(String(32), nullable=False, index=True)
    changed_by: str = Column(String(36), nullable=False)
    old_values: dict | None = Column(MutableDict.as_mutable(JSON), nullable=True)
    new_values: dict | None = Column(MutableDict.as_mutable(JSON), nullable=True)
    changed_fields: list[str] | None = Column(MutableList.as_mutable(JSON), nullable=True)
    metadata_: dict | None = Column("metadata", MutableDict.as_mutable(JSON), nullable=True)
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )


class TicketWatcher(Base):
    __tablename__ = "ticket_watchers"
    __table_args__ = (
        UniqueConstraint("ticket_id", "employee_id", name="uq_ticket_watcher"),
    )

    id: str = Column(String(36), primary_key=True, default=new_id)
    ticket_id: str = Column(
        String(36),
        ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: str = Column(
        String(36),
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    added_by: str | None = Column(String(36), nullable=True)
    source: str = Column(String(32), nullable=False, default="manual")
    added_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class TicketComment(Base):
    __tablename__ = "ticket_comments"

    id: str = Column(String(36), primary_key=True, default=new_id)
    ticket_id: str = Column(
        String(36),
        ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    author_id: str = Column(String(36), ForeignKey("employees.id"), nullable=False)
    content: str = Column(Text, nullable=False)
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id: str = Column(String(36), primary_key=True, default=new_id)
    recipient_id: str = Column(String(36), nullable=False, index=True)
    type: str = Column(String(32), nullable=False)
    title: str = Column(String(255), nullable=False)
    message: str = Column(Text, nullable=False)
    ticket_id: str | None = Column(String(36), nullable=True, index=True)
    comment_id: str | None = Column(String(36), nullable=True)
    audit_id: str | None = Column(String(36), nullable=True, index=True)
    actor_id: str | None = Column(String(36), nullable=True)
    is_read: bool = Column(Boolean, nullable=False, default=False, server_default=text("0"))
    read_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    metadata_: dict | None = Column("metadata", MutableDict.as_mutable(JSON), nullable=True)
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
