"""Appointment approval workflow."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatchdesk.core.config import get_settings
from dispatchdesk.core.errors import DatabaseError, NotFoundError, ValidationError
from dispatchdesk.core.events import AppointmentApproved, EventBus, TicketUnapproved, event_bus
from dispatchdesk.models import Appointment, Employee, Site, Ticket
from dispatchdesk.schemas import AppointmentInput
from dispatchdesk.services.audit import AuditAction, record_ticket_audit
from dispatchdesk.services.ticket_reader import appointment_dict

logger = logging.getLogger(__name__)

_APPROVAL_SNAPSHOT_FIELDS = (
    "is_approved",
    "appointment_date",
    "appointment_time_start",
    "appointment_time_end",
    "appointment_type",
)
_EDITABLE_FIELDS = set(AppointmentInput.model_fields)


async def is_approver(
    session: AsyncSession,
    employee_id: str,
    *,
    min_level: int | None = None,
) -> bool:
    """Return whether the employee's role level allows approving appointments."""

    if min_level is None:
        min_level = get_settings().approver_role_level
    employee = await session.get(Employee, employee_id)
    return employee is not None and employee.role_level >= min_level


async def set_appointment_approval(
    session: AsyncSession,
    ticket_id: str,
    actor_id: str,
    *,
    is_approved: bool = True,
    changes: AppointmentInput | None = None,
    bus: EventBus = event_bus,
) -> dict[str, Any]:
    """Approve or unapprove the ticket's appointment and notify its technicians.

    ``changes`` lets the approver adjust the date, times or type in the same
    step. Only the fields the caller set are applied, and the audit entry
    records the appointment before and after.
    """

    ticket = await session.get(Ticket, ticket_id)
    if ticket is None:
        raise NotFoundError("Ticket not found")
    if not ticket.appointment_id:
        raise ValidationError("Ticket has no appointment to approve")
    appointment = await session.get(Appointment, ticket.appointment_id, populate_existing=True)
    if appointment is None:
        raise NotFoundError("Appointment not found")

    edits = (
        changes.model_dump(exclude_unset=True, include=_EDITABLE_FIELDS) if changes is not None else {}
    )
    start = edits.get("appointment_time_start", appointment.appointment_time_start)
    end = edits.get("appointment_time_end", appointment.appointment_time_end)
    if start is not None and end is not None and end < start:
        raise ValidationError("appointment_time_end must not be earlier than appointment_time_start")

    before = {name: getattr(appointment, name) for name in _APPROVAL_SNAPSHOT_FIELDS}
    for name, value in edits.items():
        setattr(appointment, name, value)
    appointment.is_approved = is_approved
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DatabaseError(f"Failed to update appointment approval: {exc}") from exc
    after = {name: getattr(appointment, name) for name in _APPROVAL_SNAPSHOT_FIELDS}

    audit_id = await record_ticket_audit(
        session,
        ticket_id=ticket_id,
        action=AuditAction.APPROVED if is_approved else AuditAction.UNAPPROVED,
        changed_by=actor_id,
        old_values=before,
        new_values=after,
        changed_fields=[name for name in _APPROVAL_SNAPSHOT_FIELDS if before[name] != after[name]],
        metadata={"appointment_id": appointment.id},
    )

    if is_approved:
        event = AppointmentApproved(ticket_id=ticket_id, actor_id=actor_id, audit_id=audit_id)
    else:
        site = await session.get(Site, ticket.site_id) if ticket.site_id else None
        event = TicketUnapproved(
            ticket_id=ticket_id,
            actor_id=actor_id,
            site_name=site.name if site else None,
            audit_id=audit_id,
            automatic=False,
        )
    await bus.publish(event)
    logger.info(
        "Appointment %s for ticket %s %s by %s",
        appointment.id,
        ticket_id,
        "approved" if is_approved else "unapproved",
        actor_id,
    )
    return appointment_dict(appointment)
