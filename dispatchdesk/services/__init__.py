"""Service-layer helpers for ticket orchestration and its side effects."""

from __future__ import annotations

__all__ = [
    "LocationResolver",
    "TicketOrchestrator",
    "confirm_technicians",
    "find_conflicting_employees",
    "register_event_handlers",
    "set_appointment_approval",
]

from .appointments import set_appointment_approval
from .conflict_checker import find_conflicting_employees
from .event_handlers import register_event_handlers
from .location_resolver import LocationResolver
from .technician_confirmation import confirm_technicians
from .tickets import TicketOrchestrator
