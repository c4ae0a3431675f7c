"""Confirm technicians against an approved appointment and render the daily LINE summaries."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Iterable, Literal

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatchdesk.core.errors import DatabaseError, NotFoundError, ValidationError, is_unique_violation
from dispatchdesk.core.events import EventBus, TechniciansConfirmed, event_bus
from dispatchdesk.models import (
    Appointment,
    Company,
    Contact,
    Employee,
    Site,
    Ticket,
    TicketEmployeeConfirmation,
    TicketWorkGiver,
    WorkGiver,
    WorkType,
    new_id,
)
from dispatchdesk.schemas import normalize_employee_refs
from dispatchdesk.services.audit import AuditAction, record_ticket_audit
from dispatchdesk.services.location_resolver import LocationQuery, LocationResolver, ResolvedLocation

logger = logging.getLogger(__name__)

SummaryFormat = Literal["full", "compact"]

THAI_APPOINTMENT_TYPE_LABELS = {
    "half_morning": "ครึ่งเช้า",
    "half_afternoon": "ครึ่งบ่าย",
    "full_day": "เต็มวัน",
    "time_range": "ระบุเวลา",
    "call_to_schedule": "โทรนัด",
    "backlog": "Backlog",
}
# Indexed by date.weekday(), Monday first.
THAI_DAY_NAMES = ("จันทร์", "อังคาร", "พุธ", "พฤหัสบดี", "ศุกร์", "เสาร์", "อาทิตย์")
THAI_MONTH_NAMES = (
    "มกราคม",
    "กุมภาพันธ์",
    "มีนาคม",
    "เมษายน",
    "พฤษภาคม",
    "มิถุนายน",
    "กรกฎาคม",
    "สิงหาคม",
    "กันยายน",
    "ตุลาคม",
    "พฤศจิกายน",
    "ธันวาคม",
)
BUDDHIST_ERA_OFFSET = 543
CONTACT_PREFIX = "คุณ"
UNKNOWN_SITE = "ไม่ระบุสถานที่"
UNKNOWN_COMPANY = "ไม่ระบุบริษัท"


async def confirm_technicians(
    session: AsyncSession,
    ticket_id: str,
    employee_refs: Iterable[Any],
    actor_id: str,
    *,
    notes: str | None = None,
    bus: EventBus = event_bus,
) -> dict[str, Any]:
    """Replace the confirmed technicians for the appointment date.

    The appointment must exist, carry a date and be approved. Confirmations
    for that exact date are deleted before the new set is inserted, so
    repeating the call with a different set replaces rather than appends.
    """

    refs = normalize_employee_refs(employee_refs)
    if not refs:
        raise ValidationError("At least one technician is required")

    ticket = await session.get(Ticket, ticket_id)
    if ticket is None:
        raise NotFoundError("Ticket not found")
    if not ticket.appointment_id:
        raise ValidationError("Ticket has no appointment to confirm technicians for")
    appointment = await session.get(Appointment, ticket.appointment_id, populate_existing=True)
    if appointment is None:
        raise NotFoundError("Appointment not found")
    if not appointment.is_approved:
        raise ValidationError("The appointment must be approved before confirming technicians")
    if appointment.appointment_date is None:
        raise ValidationError("The appointment has no date")

    appointment_date: date = appointment.appointment_date
    known = set(
        (
            await session.execute(
                select(Employee.id).where(Employee.id.in_([ref.id for ref in refs]))
            )
        ).scalars().all()
    )
    missing = [ref.id for ref in refs if ref.id not in known]
    if missing:
        raise ValidationError(f"Unknown employees: {', '.join(missing)}")

    try:
        await session.execute(
            delete(TicketEmployeeConfirmation)
            .where(TicketEmployeeConfirmation.ticket_id == ticket_id)
            .where(TicketEmployeeConfirmation.date == appointment_date)
        )
        session.add_all(
            [
                TicketEmployeeConfirmation(
                    id=new_id(),
                    ticket_id=ticket_id,
                    employee_id=ref.id,
                    confirmed_by=actor_id,
                    date=appointment_date,
                    is_key=ref.is_key,
                    notes=notes,
                )
                for ref in refs
            ]
        )
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        if is_unique_violation(exc):
            raise ValidationError("Technician is already confirmed on this date") from exc
        raise DatabaseError(f"Failed to confirm technicians: {exc}") from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DatabaseError(f"Failed to confirm technicians: {exc}") from exc

    employee_ids = [ref.id for ref in refs]
    names = {
        employee.id: employee.name
        for employee in (
            await session.execute(select(Employee).where(Employee.id.in_(employee_ids)))
        ).scalars().all()
    }
    audit_id = await record_ticket_audit(
        session,
        ticket_id=ticket_id,
        action=AuditAction.TECHNICIAN_CONFIRMED,
        changed_by=actor_id,
        new_values={
            "confirmed_employees": [ref.model_dump() for ref in refs],
            "employee_names": [names.get(employee_id) for employee_id in employee_ids],
            "date": appointment_date,
        },
        metadata={"employee_count": len(refs), "notes": notes},
    )
    await bus.publish(
        TechniciansConfirmed(
            ticket_id=ticket_id,
            actor_id=actor_id,
            employee_ids=employee_ids,
            appointment_date=appointment_date,
            audit_id=audit_id,
        )
    )
    logger.info(
        "Confirmed %d technicians for ticket %s on %s", len(refs), ticket_id, appointment_date
    )
    return {
        "ticket_id": ticket_id,
        "date": appointment_date,
        "confirmations": await get_confirmed_technicians(session, ticket_id, appointment_date),
    }


async def get_confirmed_technicians(
    session: AsyncSession,
    ticket_id: str,
    on_date: date | None = None,
) -> list[dict[str, Any]]:
    statement = (
        select(TicketEmployeeConfirmation, Employee)
        .outerjoin(Employee, Employee.id == TicketEmployeeConfirmation.employee_id)
        .where(TicketEmployeeConfirmation.ticket_id == ticket_id)
    )
    if on_date is not None:
        statement = statement.where(TicketEmployeeConfirmation.date == on_date)
    statement = statement.order_by(
        TicketEmployeeConfirmation.date,
        TicketEmployeeConfirmation.is_key.desc(),
        TicketEmployeeConfirmation.confirmed_at,
    )
    try:
        rows = (await session.execute(statement)).all()
    except SQLAlchemyError as exc:
        raise DatabaseError(f"Failed to load confirmed technicians: {exc}") from exc
    return [
        {
            "id": confirmation.id,
            "employee_id": confirmation.employee_id,
            "employee_name": employee.name if employee else None,
            "employee_nickname": employee.nickname if employee else None,
            "is_key": confirmation.is_key,
            "date": confirmation.date,
            "confirmed_by": confirmation.confirmed_by,
            "confirmed_at": confirmation.confirmed_at,
            "notes": confirmation.notes,
        }
        for confirmation, employee in rows
    ]


def format_thai_time(value: time | None) -> str:
    if value is None:
        return ""
    return f"{value.hour:02d}.{value.minute:02d} น."


def format_appointment_type(appointment_type: str | None) -> str:
    if not appointment_type:
        return ""
    return THAI_APPOINTMENT_TYPE_LABELS.get(appointment_type, appointment_type)


def format_thai_date(on_date: date) -> str:
    """Render ``on_date`` as e.g. ``วัน จันทร์ ที่ 2 พฤศจิกายน 2569`` (Buddhist era)."""

    day_name = THAI_DAY_NAMES[on_date.weekday()]
    month_name = THAI_MONTH_NAMES[on_date.month - 1]
    return f"วัน {day_name} ที่ {on_date.day} {month_name} {on_date.year + BUDDHIST_ERA_OFFSET}"


def parse_summary_date(value: date | str) -> date:
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except (TypeError, ValueError) as exc:
        raise ValidationError("Invalid date format, expected YYYY-MM-DD") from exc


@dataclass
class LineTicket:
    """Everything one LINE summary entry needs, loaded in a single query."""

    ticket_id: str
    details: str | None
    work_type_name: str | None
    work_giver_name: str | None
    company_name: str | None
    site: Site | None
    contact: Contact | None
    appointment: Appointment | None


async def _load_line_tickets(session: AsyncSession, ticket_ids: list[str]) -> dict[str, LineTicket]:
    if not ticket_ids:
        return {}
    statement = (
        select(Ticket, WorkType.name, Site, Company, Contact, Appointment, WorkGiver.name)
        .outerjoin(WorkType, WorkType.id == Ticket.work_type_id)
        .outerjoin(Site, Site.id == Ticket.site_id)
        .outerjoin(Company, Company.tax_id == Site.company_id)
        .outerjoin(Contact, Contact.id == Ticket.contact_id)
        .outerjoin(Appointment, Appointment.id == Ticket.appointment_id)
        .outerjoin(TicketWorkGiver, TicketWorkGiver.ticket_id == Ticket.id)
        .outerjoin(WorkGiver, WorkGiver.id == TicketWorkGiver.work_giver_id)
        .where(Ticket.id.in_(ticket_ids))
    )
    try:
        rows = (await session.execute(statement)).all()
    except SQLAlchemyError as exc:
        raise DatabaseError(f"Failed to load tickets for summary: {exc}") from exc

    loaded: dict[str, LineTicket] = {}
    for ticket, work_type_name, site, company, contact, appointment, work_giver_name in rows:
        loaded[ticket.id] = LineTicket(
            ticket_id=ticket.id,
            details=ticket.details,
            work_type_name=work_type_name,
            work_giver_name=work_giver_name,
            company_name=(company.name_th or company.name_en) if company else None,
            site=site,
            contact=contact,
            appointment=appointment,
        )
    return loaded


async def _resolve_sites(
    resolver: LocationResolver, tickets: Iterable[LineTicket]
) -> dict[str, ResolvedLocation]:
    items = list(tickets)
    queries = [
        LocationQuery(
            province_code=item.site.province_code if item.site else None,
            district_code=item.site.district_code if item.site else None,
            subdistrict_code=item.site.subdistrict_code if item.site else None,
            address_detail=item.site.address_detail if item.site else None,
        )
        for item in items
    ]
    resolved = await resolver.batch_resolve(queries)
    return {item.ticket_id: location for item, location in zip(items, resolved)}


def _contact_display(contact: Contact | None) -> str:
    if contact is None or not contact.person_name:
        return ""
    name = contact.person_name
    display = name if name.startswith(CONTACT_PREFIX) else f"{CONTACT_PREFIX}{name}"
    phones = contact.phone or []
    if phones and phones[0]:
        display += f" {phones[0]}"
    return display


def render_line_summary(
    item: LineTicket,
    location: ResolvedLocation,
    *,
    format: SummaryFormat = "full",
    default_work_giver: str = "PDE",
) -> str:
    """Build the three-line LINE message for one ticket.

    The header joins work giver, company, contact and appointment time with
    `` - ``. The second line carries the work type and details, and the third
    the site name and full address. ``compact`` folds the details onto one line.
    """

    appointment = item.appointment
    type_label = format_appointment_type(appointment.appointment_type if appointment else None)
    time_label = format_thai_time(appointment.appointment_time_start if appointment else None)
    time_display = " ".join(part for part in (type_label, time_label) if part)

    header = [f"-{item.work_giver_name or default_work_giver}"]
    header.extend(
        part for part in (item.company_name, _contact_display(item.contact), time_display) if part
    )
    lines = [" - ".join(header)]

    work_line: list[str] = []
    if item.work_type_name:
        work_line.append(f"งาน: {item.work_type_name}")
    if item.details:
        details = item.details.strip().replace("\r\n", "\n")
        if format == "compact":
            details = re.sub(r"\s+", " ", re.sub(r"\n+", ", ", details))
        work_line.append(details)
    if work_line:
        lines.append(" | ".join(work_line))

    address = " ".join(
        part
        for part in (
            item.site.address_detail if item.site else None,
            location.subdistrict_name,
            location.district_name,
            location.province_name,
        )
        if part
    )
    location_parts = [part for part in (item.site.name if item.site else None, address) if part]
    if location_parts:
        lines.append(f"สถานที่: {', '.join(location_parts)}")
    return "\n".join(lines)


async def generate_line_summary(
    session: AsyncSession,
    ticket_id: str,
    *,
    location_resolver: LocationResolver,
    format: SummaryFormat = "full",
    default_work_giver: str = "PDE",
) -> str:
    tickets = await _load_line_tickets(session, [ticket_id])
    item = tickets.get(ticket_id)
    if item is None:
        raise NotFoundError("Ticket not found")
    locations = await _resolve_sites(location_resolver, [item])
    return render_line_summary(
        item, locations[ticket_id], format=format, default_work_giver=default_work_giver
    )


def _time_range(appointment: Appointment | None) -> str:
    if appointment is None or appointment.appointment_time_start is None:
        return ""
    start = appointment.appointment_time_start.isoformat()
    if appointment.appointment_time_end is None:
        return start
    return f"{start}-{appointment.appointment_time_end.isoformat()}"


async def get_summaries_grouped_by_technicians(
    session: AsyncSession,
    on_date: date | str,
    *,
    location_resolver: LocationResolver,
    format: SummaryFormat = "full",
    default_work_giver: str = "PDE",
) -> dict[str, Any]:
    """Group the day's approved tickets into teams of confirmed technicians.

    Tickets sharing the same set of confirmed technicians form one team, in
    ticket creation order. Inside a team tickets are ordered by appointment
    time with untimed tickets last. Only confirmations dated ``on_date`` count.
    """

    on_date = parse_summary_date(on_date)
    date_display = format_thai_date(on_date)
    result: dict[str, Any] = {
        "date": on_date,
        "date_display": date_display,
        "team_count": 0,
        "groups": [],
    }

    try:
        ticket_ids = list(
            (
                await session.execute(
                    select(Ticket.id)
                    .join(Appointment, Appointment.id == Ticket.appointment_id)
                    .where(Appointment.appointment_date == on_date)
                    .where(Appointment.is_approved.is_(True))
                    .order_by(Ticket.created_at, Ticket.id)
                )
            ).scalars().all()
        )
        if not ticket_ids:
            result["full_summary"] = f"{date_display} (ไม่มีงานคะ)"
            return result
        confirmation_rows = (
            await session.execute(
                select(TicketEmployeeConfirmation, Employee)
                .outerjoin(Employee, Employee.id == TicketEmployeeConfirmation.employee_id)
                .where(TicketEmployeeConfirmation.ticket_id.in_(ticket_ids))
                .where(TicketEmployeeConfirmation.date == on_date)
                .order_by(
                    TicketEmployeeConfirmation.is_key.desc(),
                    TicketEmployeeConfirmation.confirmed_at,
                )
            )
        ).all()
    except SQLAlchemyError as exc:
        raise DatabaseError(f"Failed to load tickets for {on_date}: {exc}") from exc

    confirmed: dict[str, list[tuple[TicketEmployeeConfirmation, Employee | None]]] = {}
    for confirmation, employee in confirmation_rows:
        confirmed.setdefault(confirmation.ticket_id, []).append((confirmation, employee))
    if not confirmed:
        result["full_summary"] = f"{date_display} (ยังไม่มีการยืนยันช่างคะ)"
        return result

    teams: dict[tuple[str, ...], dict[str, Any]] = {}
    for ticket_id in ticket_ids:
        rows = confirmed.get(ticket_id)
        if not rows:
            continue
        key = tuple(sorted(confirmation.employee_id for confirmation, _ in rows))
        if key not in teams:
            technicians = sorted(
                (
                    {"id": employee.id, "name": employee.name, "code": employee.code}
                    for _, employee in rows
                    if employee is not None
                ),
                key=lambda technician: technician["code"] or "",
            )
            teams[key] = {
                "technician_ids": [confirmation.employee_id for confirmation, _ in rows],
                "technicians": technicians,
                "technician_display": " + ".join(
                    f"{CONTACT_PREFIX}{technician['name']}" for technician in technicians
                ),
                "ticket_ids": [],
            }
        teams[key]["ticket_ids"].append(ticket_id)

    team_ticket_ids = [ticket_id for team in teams.values() for ticket_id in team["ticket_ids"]]
    line_tickets = await _load_line_tickets(session, team_ticket_ids)
    locations = await _resolve_sites(location_resolver, line_tickets.values())

    groups: list[dict[str, Any]] = []
    for team_number, team in enumerate(teams.values(), start=1):
        entries = []
        for ticket_id in team.pop("ticket_ids"):
            item = line_tickets[ticket_id]
            entries.append(
                {
                    "ticket_id": ticket_id,
                    "summary": render_line_summary(
                        item,
                        locations[ticket_id],
                        format=format,
                        default_work_giver=default_work_giver,
                    ),
                    "appointment_time": _time_range(item.appointment),
                    "appointment_type": format_appointment_type(
                        item.appointment.appointment_type if item.appointment else None
                    ),
                    "site_name": (item.site.name if item.site else None) or UNKNOWN_SITE,
                    "company_name": item.company_name or UNKNOWN_COMPANY,
                }
            )
        entries.sort(key=lambda entry: (not entry["appointment_time"], entry["appointment_time"]))
        groups.append({"team_number": team_number, **team, "tickets": entries})

    lines = [f"{date_display} (ออกงานทั้งหมด {len(groups)} ทีมคะ)", ""]
    for group in groups:
        lines.append(f"{group['team_number']}. {group['technician_display']}")
        lines.extend(entry["summary"] for entry in group["tickets"])
        lines.append("")

    result["team_count"] = len(groups)
    result["groups"] = groups
    result["full_summary"] = "\n".join(lines).strip()
    logger.info("Built %d team summaries for %s", len(groups), on_date)
    return result
