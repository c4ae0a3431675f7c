"""Ticket aggregate orchestration.

Creating or editing a ticket touches the company, site, contact, appointment,
technician assignment, equipment and work-giver tables. Each of those writes is
committed as its own step: a failing step stops the operation and surfaces an
error, while the steps already committed stay in place. The audit trail is the
record to reconstruct such partial outcomes from.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, AsyncIterator, Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatchdesk.core.config import Settings, get_settings
from dispatchdesk.core.errors import (
    DatabaseError,
    NotFoundError,
    ServiceError,
    ValidationError,
    is_unique_violation,
)
from dispatchdesk.core.events import EventBus, TicketCreated, TicketUnapproved, TicketUpdated, event_bus
from dispatchdesk.models import (
    Appointment,
    Company,
    Contact,
    Employee,
    Merchandise,
    Site,
    Ticket,
    TicketEmployee,
    TicketMerchandise,
    TicketStatus,
    TicketWorkGiver,
    WorkGiver,
    WorkType,
    new_id,
)
from dispatchdesk.schemas import (
    CompanyInput,
    ContactInput,
    EmployeeRef,
    SetNull,
    SetValue,
    SiteInput,
    TicketChanges,
    TicketCreateInput,
    TicketUpdateInput,
)
from dispatchdesk.services.appointments import is_approver
from dispatchdesk.services.audit import AuditAction, diff_values, record_ticket_audit, same_members
from dispatchdesk.services.location_resolver import LocationResolver
from dispatchdesk.services.ticket_reader import (
    appointment_dict,
    gather_summary_context,
    load_employee_ids,
    load_merchandise_ids,
    load_ticket_view,
    load_work_giver_id,
)
from dispatchdesk.services.ticket_summary import summarize_ticket_context

logger = logging.getLogger(__name__)

TICKET_CORE_FIELDS = (
    "work_type_id",
    "assigner_id",
    "status_id",
    "details",
    "additional",
    "site_id",
    "contact_id",
    "appointment_id",
)
_REFERENCE_CHECKS = (
    ("work_type_id", WorkType, "work type"),
    ("status_id", TicketStatus, "status"),
    ("assigner_id", Employee, "assigner"),
)
_SITE_COLUMNS = (
    "name",
    "address_detail",
    "province_code",
    "district_code",
    "subdistrict_code",
    "postal_code",
    "map_url",
)
_CONTACT_COLUMNS = ("person_name", "nickname", "phone", "email", "line_id", "note")


def is_appointment_field(path: str) -> bool:
    return path == "appointment_id" or path.startswith("appointment.")


class TicketOrchestrator:
    """Create, update and delete tickets together with the entities they own."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        location_resolver: LocationResolver | None = None,
        bus: EventBus = event_bus,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._resolver = location_resolver
        self._bus = bus
        self._settings = settings or get_settings()

    @asynccontextmanager
    async def _step(self, description: str, *, unique_message: str | None = None) -> AsyncIterator[None]:
        """Run one store step and commit it on its own."""

        try:
            yield
            await self._session.commit()
        except ServiceError:
            await self._session.rollback()
            raise
        except IntegrityError as exc:
            await self._session.rollback()
            logger.warning("Ticket step '%s' failed: %s", description, exc)
            if unique_message and is_unique_violation(exc):
                raise ValidationError(unique_message) from exc
            raise DatabaseError(f"Failed to {description}: {exc.orig or exc}") from exc
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.warning("Ticket step '%s' failed: %s", description, exc)
            raise DatabaseError(f"Failed to {description}: {exc}") from exc
        logger.debug("Ticket step '%s' committed", description)

    async def get(self, ticket_id: str) -> dict[str, Any]:
        return await load_ticket_view(self._session, ticket_id, self._resolver)

    # Entity resolution

    async def _check_references(self, values: dict[str, Any]) -> None:
        for key, model, label in _REFERENCE_CHECKS:
            if key in values and await self._session.get(model, values[key]) is None:
                raise ValidationError(f"{key}: unknown {label} '{values[key]}'")

    async def _resolve_company(self, payload: CompanyInput | None) -> tuple[Company | None, bool]:
        if payload is None:
            return None, False
        if not payload.tax_id:
            raise ValidationError("company.tax_id is required")
        existing = await self._session.get(Company, payload.tax_id)
        if existing is not None:
            return existing, False
        company = Company(
            tax_id=payload.tax_id,
            name_th=payload.name_th,
            name_en=payload.name_en,
            address_detail=payload.address_detail,
        )
        async with self._step("create company"):
            self._session.add(company)
        return company, True

    async def _resolve_site(
        self,
        payload: SiteInput | None,
        company: Company | None,
    ) -> tuple[Site | None, bool]:
        if payload is None:
            return None, False
        if payload.id:
            site = await self._session.get(Site, payload.id)
            if site is None:
                raise NotFoundError(f"Site {payload.id} not found")
            return site, False
        company_id = payload.company_id or (company.tax_id if company else None)
        if company_id and await self._session.get(Company, company_id) is None:
            raise ValidationError(f"site.company_id: unknown company '{company_id}'")
        site = Site(
            id=new_id(),
            company_id=company_id,
            **{name: getattr(payload, name) for name in _SITE_COLUMNS},
        )
        async with self._step("create site"):
            self._session.add(site)
        return site, True

    async def _resolve_contact(
        self,
        payload: ContactInput | None,
        site_id: str | None,
    ) -> tuple[Contact | None, bool]:
        if payload is None:
            return None, False
        if payload.id:
            contact = await self._session.get(Contact, payload.id)
            if contact is None:
                raise NotFoundError(f"Contact {payload.id} not found")
            return contact, False
        contact = Contact(
            id=new_id(),
            site_id=site_id,
            **{name: getattr(payload, name) for name in _CONTACT_COLUMNS},
        )
        async with self._step("create contact"):
            self._session.add(contact)
        return contact, True

    # Owned associations

    async def _replace_assignments(
        self,
        ticket_id: str,
        refs: list[EmployeeRef],
        on_date: date,
        *,
        clear_existing: bool,
    ) -> None:
        if refs:
            known = set(
                (
                    await self._session.execute(
                        select(Employee.id).where(Employee.id.in_([ref.id for ref in refs]))
                    )
                ).scalars().all()
            )
            missing = [ref.id for ref in refs if ref.id not in known]
            if missing:
                raise ValidationError(f"employee_ids: unknown employees {', '.join(missing)}")
        if clear_existing:
            async with self._step("clear employee assignments"):
                await self._session.execute(
                    delete(TicketEmployee).where(TicketEmployee.ticket_id == ticket_id)
                )
        if not refs:
            return
        async with self._step(
            "assign employees",
            unique_message="Employee is already assigned to this ticket on this date",
        ):
            self._session.add_all(
                [
                    TicketEmployee(
                        id=new_id(),
                        ticket_id=ticket_id,
                        employee_id=ref.id,
                        date=on_date,
                        is_key=ref.is_key,
                    )
                    for ref in refs
                ]
            )

    async def _validate_merchandise(self, merchandise_ids: list[str], site_id: str | None) -> None:
        """Reject the whole batch when any equipment is unknown or on another site."""

        rows = (
            await self._session.execute(
                select(Merchandise.id, Merchandise.site_id).where(Merchandise.id.in_(merchandise_ids))
            )
        ).all()
        sites = {row.id: row.site_id for row in rows}
        missing = [merchandise_id for merchandise_id in merchandise_ids if merchandise_id not in sites]
        if missing:
            raise ValidationError(f"merchandise_ids: equipment not found {', '.join(missing)}")
        foreign = [
            merchandise_id
            for merchandise_id in merchandise_ids
            if site_id and sites[merchandise_id] and sites[merchandise_id] != site_id
        ]
        if foreign:
            raise ValidationError(
                f"merchandise_ids: equipment {', '.join(foreign)} must belong to the ticket's site"
            )

    async def _replace_merchandise(
        self,
        ticket_id: str,
        merchandise_ids: list[str],
        site_id: str | None,
        *,
        clear_existing: bool,
    ) -> None:
        if merchandise_ids:
            await self._validate_merchandise(merchandise_ids, site_id)
        if clear_existing:
            async with self._step("clear equipment links"):
                await self._session.execute(
                    delete(TicketMerchandise).where(TicketMerchandise.ticket_id == ticket_id)
                )
        if not merchandise_ids:
            return
        async with self._step("link equipment"):
            self._session.add_all(
                [
                    TicketMerchandise(ticket_id=ticket_id, merchandise_id=merchandise_id)
                    for merchandise_id in merchandise_ids
                ]
            )

    async def _replace_work_giver(self, ticket_id: str, work_giver_id: str | None) -> None:
        if work_giver_id is not None:
            work_giver = await self._session.get(WorkGiver, work_giver_id)
            if work_giver is None:
                raise ValidationError(f"work_giver_id: unknown work giver '{work_giver_id}'")
            if not work_giver.is_active:
                raise ValidationError(f"work_giver_id: work giver '{work_giver_id}' is inactive")
        async with self._step("set work giver"):
            await self._session.execute(
                delete(TicketWorkGiver).where(TicketWorkGiver.ticket_id == ticket_id)
            )
            if work_giver_id is not None:
                self._session.add(TicketWorkGiver(ticket_id=ticket_id, work_giver_id=work_giver_id))

    async def _site_name(self, site_id: str | None) -> str | None:
        if not site_id:
            return None
        site = await self._session.get(Site, site_id)
        return site.name if site else None

    async def _summarize(self, **context: Any) -> str | None:
        try:
            summary_context = await gather_summary_context(
                self._session,
                self._resolver,
                default_work_giver=self._settings.default_work_giver_name,
                **context,
            )
            result = await summarize_ticket_context(summary_context, settings=self._settings)
        except Exception as exc:
            logger.warning("Ticket summary generation failed: %s", exc)
            return None
        return result.get("summary")

    # Operations

    async def create(self, payload: TicketCreateInput, actor_id: str) -> dict[str, Any]:
        core = payload.ticket.model_dump()
        await self._check_references(core)

        company, company_created = await self._resolve_company(payload.company)
        site, site_created = await self._resolve_site(payload.site, company)
        contact, contact_created = await self._resolve_contact(
            payload.contact, site.id if site else None
        )

        appointment_values = (
            payload.appointment.model_dump(exclude_unset=True) if payload.appointment else {}
        )
        refs: list[EmployeeRef] = list(payload.employee_ids or [])
        merchandise_ids = list(dict.fromkeys(payload.merchandise_ids or []))

        summary = None
        if payload.summarize:
            summary = await self._summarize(
                ticket=core,
                company=company,
                site=site,
                contact=contact,
                appointment=appointment_values,
                employee_refs=refs,
                merchandise_ids=merchandise_ids,
                work_giver_id=payload.work_giver_id,
            )

        ticket = Ticket(
            id=new_id(),
            created_by=actor_id,
            site_id=site.id if site else None,
            contact_id=contact.id if contact else None,
            summary=summary,
            **core,
        )
        async with self._step("create ticket"):
            self._session.add(ticket)

        appointment = Appointment(id=new_id(), ticket_id=ticket.id, **appointment_values)
        async with self._step("create appointment"):
            self._session.add(appointment)
        async with self._step("link appointment"):
            ticket.appointment_id = appointment.id

        assignment_date = appointment.appointment_date or date.today()
        await self._replace_assignments(ticket.id, refs, assignment_date, clear_existing=False)
        await self._replace_merchandise(
            ticket.id, merchandise_ids, ticket.site_id, clear_existing=False
        )
        if payload.work_giver_id:
            await self._replace_work_giver(ticket.id, payload.work_giver_id)

        await record_ticket_audit(
            self._session,
            ticket_id=ticket.id,
            action=AuditAction.CREATED,
            changed_by=actor_id,
            new_values={
                **core,
                "site_id": ticket.site_id,
                "contact_id": ticket.contact_id,
                "appointment_id": appointment.id,
                "appointment": appointment_dict(appointment),
                "employee_ids": [ref.id for ref in refs],
                "merchandise_ids": merchandise_ids,
                "work_giver_id": payload.work_giver_id,
            },
            metadata={
                "company_created": company_created,
                "site_created": site_created,
                "contact_created": contact_created,
                "appointment_created": True,
            },
        )

        work_type = await self._session.get(WorkType, ticket.work_type_id)
        await self._bus.publish(
            TicketCreated(
                ticket_id=ticket.id,
                actor_id=actor_id,
                assigner_id=ticket.assigner_id,
                site_name=site.name if site else None,
                work_type_name=work_type.name if work_type else None,
            )
        )
        logger.info("Ticket %s created by %s", ticket.id, actor_id)
        return await self.get(ticket.id)

    async def update(
        self,
        ticket_id: str,
        payload: TicketChanges | TicketUpdateInput,
        actor_id: str,
    ) -> dict[str, Any]:
        changes = payload.to_changes() if isinstance(payload, TicketUpdateInput) else payload

        ticket = await self._session.get(Ticket, ticket_id, populate_existing=True)
        if ticket is None:
            raise NotFoundError("Ticket not found")

        snapshot = {name: getattr(ticket, name) for name in TICKET_CORE_FIELDS}
        existing_appointment = (
            await self._session.get(Appointment, ticket.appointment_id, populate_existing=True)
            if ticket.appointment_id
            else None
        )
        was_approved = bool(existing_appointment and existing_appointment.is_approved)
        actor_is_approver = await is_approver(
            self._session, actor_id, min_level=self._settings.approver_role_level
        )
        site_name_before = await self._site_name(ticket.site_id)

        ticket_updates: dict[str, Any] = {}
        if isinstance(changes.ticket, SetValue):
            ticket_updates.update(changes.ticket.value)
            ticket_updates.pop("created_by", None)
            await self._check_references(ticket_updates)

        company = None
        if isinstance(changes.company, SetValue):
            company, _ = await self._resolve_company(changes.company.value)

        if isinstance(changes.site, SetNull):
            ticket_updates["site_id"] = None
        elif isinstance(changes.site, SetValue):
            site, _ = await self._resolve_site(changes.site.value, company)
            ticket_updates["site_id"] = site.id

        if isinstance(changes.contact, SetNull):
            ticket_updates["contact_id"] = None
        elif isinstance(changes.contact, SetValue):
            contact_site_id = ticket_updates.get("site_id", ticket.site_id)
            contact, _ = await self._resolve_contact(changes.contact.value, contact_site_id)
            ticket_updates["contact_id"] = contact.id

        changed_fields, old_values, new_values = diff_values(snapshot, ticket_updates)
        if ticket_updates:
            async with self._step("update ticket"):
                for name, value in ticket_updates.items():
                    setattr(ticket, name, value)

        appointment_values: dict[str, Any] = {}
        if isinstance(changes.appointment, SetNull):
            if ticket.appointment_id:
                old_appointment_id = ticket.appointment_id
                async with self._step("unlink appointment"):
                    ticket.appointment_id = None
                changed_fields.append("appointment_id")
                old_values["appointment_id"] = old_appointment_id
                new_values["appointment_id"] = None
        elif isinstance(changes.appointment, SetValue):
            appointment_values = dict(changes.appointment.value)
            if existing_appointment is not None:
                before = appointment_dict(existing_appointment)
                async with self._step("update appointment"):
                    for name, value in appointment_values.items():
                        setattr(existing_appointment, name, value)
                fields, old, new = diff_values(before, appointment_values, prefix="appointment.")
                changed_fields.extend(fields)
                old_values.update(old)
                new_values.update(new)
            else:
                appointment = Appointment(id=new_id(), ticket_id=ticket.id, **appointment_values)
                async with self._step("create appointment"):
                    self._session.add(appointment)
                async with self._step("link appointment"):
                    ticket.appointment_id = appointment.id
                changed_fields.append("appointment_id")
                old_values["appointment_id"] = None
                new_values["appointment_id"] = appointment.id

        if isinstance(changes.employee_ids, (SetNull, SetValue)):
            refs = changes.employee_ids.value if isinstance(changes.employee_ids, SetValue) else []
            previous_ids = await load_employee_ids(self._session, ticket.id)
            linked_appointment = (
                await self._session.get(Appointment, ticket.appointment_id)
                if ticket.appointment_id
                else None
            )
            on_date = (
                linked_appointment.appointment_date if linked_appointment else None
            ) or date.today()
            await self._replace_assignments(ticket.id, refs, on_date, clear_existing=True)
            new_ids = [ref.id for ref in refs]
            if not same_members(previous_ids, new_ids):
                changed_fields.append("employee_ids")
                old_values["employee_ids"] = previous_ids
                new_values["employee_ids"] = new_ids

        if isinstance(changes.merchandise_ids, (SetNull, SetValue)):
            merchandise_ids = (
                list(dict.fromkeys(changes.merchandise_ids.value))
                if isinstance(changes.merchandise_ids, SetValue)
                else []
            )
            previous_merchandise = await load_merchandise_ids(self._session, ticket.id)
            await self._replace_merchandise(
                ticket.id, merchandise_ids, ticket.site_id, clear_existing=True
            )
            if not same_members(previous_merchandise, merchandise_ids):
                changed_fields.append("merchandise_ids")
                old_values["merchandise_ids"] = previous_merchandise
                new_values["merchandise_ids"] = merchandise_ids

        if isinstance(changes.work_giver_id, (SetNull, SetValue)):
            work_giver_id = (
                changes.work_giver_id.value if isinstance(changes.work_giver_id, SetValue) else None
            )
            previous_work_giver = await load_work_giver_id(self._session, ticket.id)
            await self._replace_work_giver(ticket.id, work_giver_id)
            if previous_work_giver != work_giver_id:
                changed_fields.append("work_giver_id")
                old_values["work_giver_id"] = previous_work_giver
                new_values["work_giver_id"] = work_giver_id

        if changed_fields:
            audit_id = await record_ticket_audit(
                self._session,
                ticket_id=ticket.id,
                action=AuditAction.UPDATED,
                changed_by=actor_id,
                old_values=old_values,
                new_values=new_values,
                changed_fields=changed_fields,
                metadata={
                    "company_changed": isinstance(changes.company, (SetNull, SetValue)),
                    "site_changed": "site_id" in changed_fields,
                    "contact_changed": "contact_id" in changed_fields,
                },
            )
            await self._bus.publish(
                TicketUpdated(
                    ticket_id=ticket.id,
                    actor_id=actor_id,
                    audit_id=audit_id,
                    changed_fields=list(changed_fields),
                )
            )
            await self._auto_unapprove(
                ticket,
                actor_id,
                changed_fields,
                was_approved=was_approved,
                actor_is_approver=actor_is_approver,
                site_name=site_name_before,
            )

        return await self.get(ticket.id)

    async def _auto_unapprove(
        self,
        ticket: Ticket,
        actor_id: str,
        changed_fields: Iterable[str],
        *,
        was_approved: bool,
        actor_is_approver: bool,
        site_name: str | None,
    ) -> None:
        """Withdraw approval when a non-approver edits an approved appointment."""

        trigger_fields = [path for path in changed_fields if is_appointment_field(path)]
        if not (was_approved and not actor_is_approver and ticket.appointment_id and trigger_fields):
            return
        appointment = await self._session.get(Appointment, ticket.appointment_id)
        if appointment is None:
            return
        async with self._step("revoke appointment approval"):
            appointment.is_approved = False
        audit_id = await record_ticket_audit(
            self._session,
            ticket_id=ticket.id,
            action=AuditAction.UNAPPROVED,
            changed_by=actor_id,
            old_values={"is_approved": True},
            new_values={"is_approved": False},
            changed_fields=["is_approved"],
            metadata={
                "auto_unapproved": True,
                "appointment_id": appointment.id,
                "trigger_fields": trigger_fields,
            },
        )
        await self._bus.publish(
            TicketUnapproved(
                ticket_id=ticket.id,
                actor_id=actor_id,
                site_name=site_name,
                audit_id=audit_id,
                automatic=True,
            )
        )
        logger.info("Appointment %s auto-unapproved after edit by %s", appointment.id, actor_id)

    async def delete(
        self,
        ticket_id: str,
        actor_id: str,
        *,
        delete_appointment: bool = False,
        delete_contact: bool = False,
    ) -> None:
        view = await self.get(ticket_id)
        employee_ids = await load_employee_ids(self._session, ticket_id)
        merchandise_ids = await load_merchandise_ids(self._session, ticket_id)
        appointment_id = view["appointment_id"]
        contact_id = view["contact_id"]

        if delete_appointment and appointment_id:
            try:
                async with self._step("delete appointment"):
                    await self._session.execute(
                        delete(Appointment).where(Appointment.id == appointment_id)
                    )
            except DatabaseError as exc:
                logger.warning(
                    "Continuing ticket %s deletion without removing appointment: %s",
                    ticket_id,
                    exc,
                )

        async with self._step("delete ticket"):
            await self._session.execute(delete(Ticket).where(Ticket.id == ticket_id))

        await record_ticket_audit(
            self._session,
            ticket_id=ticket_id,
            action=AuditAction.DELETED,
            changed_by=actor_id,
            old_values={
                **{name: view[name] for name in TICKET_CORE_FIELDS},
                "summary": view["summary"],
                "created_by": view["created_by"],
                "appointment": view["appointment"],
                "employee_ids": employee_ids,
                "merchandise_ids": merchandise_ids,
                "work_giver_id": (view["work_giver"] or {}).get("id"),
            },
            metadata={
                "delete_appointment": delete_appointment,
                "delete_contact": delete_contact,
            },
        )

        if delete_contact and contact_id:
            remaining = (
                await self._session.execute(
                    select(func.count(Ticket.id)).where(Ticket.contact_id == contact_id)
                )
            ).scalar_one()
            if remaining == 0:
                async with self._step("delete contact"):
                    await self._session.execute(delete(Contact).where(Contact.id == contact_id))
            else:
                logger.info("Contact %s kept; %d tickets still reference it", contact_id, remaining)
        logger.info("Ticket %s deleted by %s", ticket_id, actor_id)

    async def remove_ticket_employee(
        self,
        ticket_id: str,
        employee_id: str,
        on_date: date | str | None,
        actor_id: str,
    ) -> None:
        if not ticket_id or not employee_id or not on_date:
            raise ValidationError("ticket_id, employee_id and date are required")
        if isinstance(on_date, str):
            try:
                on_date = date.fromisoformat(on_date)
            except ValueError as exc:
                raise ValidationError(f"date: invalid date '{on_date}'") from exc

        assignment = (
            await self._session.execute(
                select(TicketEmployee)
                .where(TicketEmployee.ticket_id == ticket_id)
                .where(TicketEmployee.employee_id == employee_id)
                .where(TicketEmployee.date == on_date)
            )
        ).scalar_one_or_none()
        if assignment is None:
            raise NotFoundError("Employee assignment not found")
        snapshot = {
            "employee_id": assignment.employee_id,
            "date": assignment.date,
            "is_key": assignment.is_key,
        }

        async with self._step("remove employee assignment"):
            await self._session.delete(assignment)

        await record_ticket_audit(
            self._session,
            ticket_id=ticket_id,
            action=AuditAction.EMPLOYEE_REMOVED,
            changed_by=actor_id,
            old_values=snapshot,
            changed_fields=["employee_ids"],
        )
