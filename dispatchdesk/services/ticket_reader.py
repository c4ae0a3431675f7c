"""Read model for tickets: the fully joined representation and summary context."""

from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatchdesk.core.errors import DatabaseError, NotFoundError
from dispatchdesk.models import (
    Appointment,
    Company,
    Contact,
    Employee,
    EquipmentModel,
    Merchandise,
    Site,
    Ticket,
    TicketEmployee,
    TicketEmployeeConfirmation,
    TicketMerchandise,
    TicketStatus,
    TicketWorkGiver,
    WorkGiver,
    WorkType,
)
from dispatchdesk.schemas import EmployeeRef
from dispatchdesk.services.location_resolver import LocationResolver
from dispatchdesk.services.ticket_summary import MerchandiseContext, SummaryContext

EMPLOYEE_FIELDS = ("id", "code", "name", "nickname", "role_level", "is_active")
SITE_FIELDS = (
    "id",
    "name",
    "company_id",
    "address_detail",
    "province_code",
    "district_code",
    "subdistrict_code",
    "postal_code",
    "map_url",
)
CONTACT_FIELDS = ("id", "site_id", "person_name", "nickname", "phone", "email", "line_id", "note")
APPOINTMENT_FIELDS = (
    "id",
    "ticket_id",
    "appointment_date",
    "appointment_time_start",
    "appointment_time_end",
    "appointment_type",
    "is_approved",
)
COMPANY_FIELDS = ("tax_id", "name_th", "name_en", "address_detail")


def row_dict(row: Any | None, fields: Iterable[str]) -> dict[str, Any] | None:
    if row is None:
        return None
    return {name: getattr(row, name) for name in fields}


def appointment_dict(appointment: Appointment | None) -> dict[str, Any] | None:
    return row_dict(appointment, APPOINTMENT_FIELDS)


async def _employees_by_id(session: AsyncSession, employee_ids: Iterable[str]) -> dict[str, Employee]:
    ids = list(dict.fromkeys(employee_ids))
    if not ids:
        return {}
    result = await session.execute(select(Employee).where(Employee.id.in_(ids)))
    return {employee.id: employee for employee in result.scalars().all()}


async def _site_view(
    session: AsyncSession,
    site: Site | None,
    resolver: LocationResolver | None,
) -> dict[str, Any] | None:
    if site is None:
        return None
    view = row_dict(site, SITE_FIELDS)
    company = await session.get(Company, site.company_id) if site.company_id else None
    view["company"] = row_dict(company, COMPANY_FIELDS)
    if resolver is not None:
        location = await resolver.resolve(
            site.province_code,
            site.district_code,
            site.subdistrict_code,
            site.address_detail,
        )
        view["location"] = location.as_dict()
    return view


async def _merchandise_view(session: AsyncSession, merchandise_ids: list[str]) -> list[dict[str, Any]]:
    if not merchandise_ids:
        return []
    rows = (
        await session.execute(
            select(Merchandise, EquipmentModel)
            .outerjoin(EquipmentModel, EquipmentModel.id == Merchandise.model_id)
            .where(Merchandise.id.in_(merchandise_ids))
        )
    ).all()
    by_id = {
        merchandise.id: {
            "id": merchandise.id,
            "serial_no": merchandise.serial_no,
            "site_id": merchandise.site_id,
            "model": row_dict(model, ("id", "model", "name", "brand", "capacity")),
        }
        for merchandise, model in rows
    }
    return [by_id[merchandise_id] for merchandise_id in merchandise_ids if merchandise_id in by_id]


async def load_employee_ids(session: AsyncSession, ticket_id: str) -> list[str]:
    result = await session.execute(
        select(TicketEmployee.employee_id)
        .where(TicketEmployee.ticket_id == ticket_id)
        .order_by(TicketEmployee.created_at, TicketEmployee.id)
    )
    return list(dict.fromkeys(result.scalars().all()))


async def load_merchandise_ids(session: AsyncSession, ticket_id: str) -> list[str]:
    result = await session.execute(
        select(TicketMerchandise.merchandise_id).where(TicketMerchandise.ticket_id == ticket_id)
    )
    return sorted(result.scalars().all())


async def load_work_giver_id(session: AsyncSession, ticket_id: str) -> str | None:
    result = await session.execute(
        select(TicketWorkGiver.work_giver_id).where(TicketWorkGiver.ticket_id == ticket_id)
    )
    return result.scalar_one_or_none()


async def load_ticket_view(
    session: AsyncSession,
    ticket_id: str,
    resolver: LocationResolver | None = None,
) -> dict[str, Any]:
    """Return the ticket with every owned and referenced entity resolved."""

    try:
        ticket = await session.get(Ticket, ticket_id, populate_existing=True)
        if ticket is None:
            raise NotFoundError("Ticket not found")

        assignments = (
            await session.execute(
                select(TicketEmployee)
                .where(TicketEmployee.ticket_id == ticket_id)
                .order_by(TicketEmployee.date, TicketEmployee.created_at, TicketEmployee.id)
            )
        ).scalars().all()
        confirmations = (
            await session.execute(
                select(TicketEmployeeConfirmation)
                .where(TicketEmployeeConfirmation.ticket_id == ticket_id)
                .order_by(
                    TicketEmployeeConfirmation.date,
                    TicketEmployeeConfirmation.is_key.desc(),
                    TicketEmployeeConfirmation.confirmed_at,
                )
            )
        ).scalars().all()
        employees = await _employees_by_id(
            session,
            [ticket.assigner_id, ticket.created_by or ""]
            + [row.employee_id for row in assignments]
            + [row.employee_id for row in confirmations],
        )

        site = await session.get(Site, ticket.site_id) if ticket.site_id else None
        contact = await session.get(Contact, ticket.contact_id) if ticket.contact_id else None
        appointment = (
            await session.get(Appointment, ticket.appointment_id, populate_existing=True)
            if ticket.appointment_id
            else None
        )
        work_type = await session.get(WorkType, ticket.work_type_id)
        status = await session.get(TicketStatus, ticket.status_id)
        work_giver_id = await load_work_giver_id(session, ticket_id)
        work_giver = await session.get(WorkGiver, work_giver_id) if work_giver_id else None
        merchandise = await _merchandise_view(session, await load_merchandise_ids(session, ticket_id))
        site_view = await _site_view(session, site, resolver)
    except SQLAlchemyError as exc:
        raise DatabaseError(f"Failed to load ticket: {exc}") from exc

    def employee_view(employee_id: str | None) -> dict[str, Any] | None:
        return row_dict(employees.get(employee_id or ""), EMPLOYEE_FIELDS)

    return {
        "id": ticket.id,
        "details": ticket.details,
        "additional": ticket.additional,
        "summary": ticket.summary,
        "work_type_id": ticket.work_type_id,
        "status_id": ticket.status_id,
        "assigner_id": ticket.assigner_id,
        "created_by": ticket.created_by,
        "site_id": ticket.site_id,
        "contact_id": ticket.contact_id,
        "appointment_id": ticket.appointment_id,
        "created_at": ticket.created_at,
        "updated_at": ticket.updated_at,
        "work_type": row_dict(work_type, ("id", "code", "name")),
        "status": row_dict(status, ("id", "code", "name")),
        "assigner": employee_view(ticket.assigner_id),
        "creator": employee_view(ticket.created_by),
        "site": site_view,
        "contact": row_dict(contact, CONTACT_FIELDS),
        "appointment": appointment_dict(appointment),
        "employees": [
            {
                **(employee_view(row.employee_id) or {"id": row.employee_id}),
                "is_key": row.is_key,
                "date": row.date,
            }
            for row in assignments
        ],
        "confirmed_technicians": [
            {
                **(employee_view(row.employee_id) or {"id": row.employee_id}),
                "is_key": row.is_key,
                "date": row.date,
                "confirmed_by": row.confirmed_by,
                "confirmed_at": row.confirmed_at,
                "notes": row.notes,
            }
            for row in confirmations
        ],
        "merchandise": merchandise,
        "work_giver": row_dict(work_giver, ("id", "code", "name")),
    }


async def gather_summary_context(
    session: AsyncSession,
    resolver: LocationResolver | None,
    *,
    ticket: dict[str, Any],
    company: Company | None,
    site: Site | None,
    contact: Contact | None,
    appointment: dict[str, Any] | None,
    employee_refs: list[EmployeeRef],
    merchandise_ids: list[str],
    work_giver_id: str | None,
    default_work_giver: str | None = None,
) -> SummaryContext:
    """Collect display names for everything a ticket summary mentions."""

    work_type = await session.get(WorkType, ticket.get("work_type_id")) if ticket.get("work_type_id") else None
    status = await session.get(TicketStatus, ticket.get("status_id")) if ticket.get("status_id") else None
    employees = await _employees_by_id(
        session, [ticket.get("assigner_id") or ""] + [ref.id for ref in employee_refs]
    )

    def display_name(employee_id: str | None) -> str | None:
        employee = employees.get(employee_id or "")
        if employee is None:
            return None
        if employee.nickname:
            return f"{employee.name} ({employee.nickname})"
        return employee.name

    site_context: dict[str, Any] | None = None
    if site is not None:
        site_context = row_dict(site, SITE_FIELDS)
        if resolver is not None:
            location = await resolver.resolve(
                site.province_code, site.district_code, site.subdistrict_code, site.address_detail
            )
            site_context.update(
                province_name=location.province_name,
                district_name=location.district_name,
                subdistrict_name=location.subdistrict_name,
            )

    key_ref = next((ref for ref in employee_refs if ref.is_key), None)
    work_giver = await session.get(WorkGiver, work_giver_id) if work_giver_id else None

    return SummaryContext(
        work_type=work_type.name if work_type else None,
        work_type_code=work_type.code if work_type else None,
        status=status.name if status else None,
        status_code=status.code if status else None,
        details=ticket.get("details"),
        additional=ticket.get("additional"),
        company_name=(company.name_th or company.name_en) if company else None,
        company_tax_id=company.tax_id if company else None,
        site=site_context,
        contact=row_dict(contact, CONTACT_FIELDS),
        appointment=appointment,
        employees=[name for name in (display_name(ref.id) for ref in employee_refs) if name],
        key_employee=display_name(key_ref.id) if key_ref else None,
        merchandise=[
            MerchandiseContext(
                serial_no=item["serial_no"],
                model_name=(item["model"] or {}).get("model"),
                brand=(item["model"] or {}).get("brand"),
                capacity=(item["model"] or {}).get("capacity"),
            )
            for item in await _merchandise_view(session, merchandise_ids)
        ],
        work_giver=work_giver.name if work_giver else default_work_giver,
        assigner_name=display_name(ticket.get("assigner_id")),
    )
