"""Detect technicians who already have an overlapping appointment."""

from __future__ import annotations

from datetime import date, time
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatchdesk.core.errors import DatabaseError
from dispatchdesk.models import Appointment, Ticket, TicketEmployee
from dispatchdesk.schemas import AppointmentType

DAY_START = time(0, 0, 0)
DAY_END = time(23, 59, 59)

# Working hours assumed for appointment types booked without explicit times.
DEFAULT_TYPE_WINDOWS: dict[str, tuple[time, time]] = {
    AppointmentType.HALF_MORNING.value: (time(8, 0), time(12, 0)),
    AppointmentType.HALF_AFTERNOON.value: (time(13, 0), time(17, 30)),
    AppointmentType.FULL_DAY.value: (time(8, 0), time(17, 30)),
}


def appointment_overlaps(
    appointment_type: str | None,
    time_start: time | None,
    time_end: time | None,
    window_start: time,
    window_end: time,
) -> bool:
    """Return whether an existing appointment blocks the requested window."""

    # Untyped appointments are still being scheduled and never block anyone.
    if appointment_type is None or appointment_type == AppointmentType.CALL_TO_SCHEDULE.value:
        return False
    if time_start is not None and time_end is not None:
        if time_start == time_end:
            return False
        return time_start < window_end and time_end > window_start
    default_window = DEFAULT_TYPE_WINDOWS.get(appointment_type)
    if default_window is not None:
        start, end = default_window
        return start < window_end and end > window_start
    # A time range with no times booked holds the whole day.
    return (
        appointment_type == AppointmentType.TIME_RANGE.value
        and time_start is None
        and time_end is None
    )


async def find_conflicting_employees(
    session: AsyncSession,
    employee_ids: Iterable[str],
    appointment_date: date | None,
    *,
    time_start: time | None = None,
    time_end: time | None = None,
    exclude_ticket_id: str | None = None,
) -> list[str]:
    """Return the employees assigned to another appointment overlapping the window."""

    candidates = list(dict.fromkeys(employee_ids))
    if not candidates or appointment_date is None:
        return []

    window_start = time_start or DAY_START
    window_end = time_end or DAY_END

    statement = (
        select(
            TicketEmployee.employee_id,
            Appointment.appointment_type,
            Appointment.appointment_time_start,
            Appointment.appointment_time_end,
        )
        .join(Ticket, TicketEmployee.ticket_id == Ticket.id)
        .join(Appointment, Ticket.appointment_id == Appointment.id)
        .where(TicketEmployee.employee_id.in_(candidates))
        .where(Appointment.appointment_date == appointment_date)
    )
    if exclude_ticket_id:
        statement = statement.where(TicketEmployee.ticket_id != exclude_ticket_id)

    try:
        rows = (await session.execute(statement)).all()
    except SQLAlchemyError as exc:
        raise DatabaseError(f"Failed to check appointment conflicts: {exc}") from exc

    conflicted = {
        row.employee_id
        for row in rows
        if appointment_overlaps(
            row.appointment_type,
            row.appointment_time_start,
            row.appointment_time_end,
            window_start,
            window_end,
        )
    }
    return sorted(conflicted)
