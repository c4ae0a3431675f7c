from __future__ import annotations

from datetime import date
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from dispatchdesk.core.config import get_settings
from dispatchdesk.core.db import get_session, open_session
from dispatchdesk.core.security import require_actor
from dispatchdesk.schemas import (
    AppointmentApprovalRequest,
    AuditEntryRead,
    ConfirmTechniciansRequest,
    ConflictCheckRequest,
    ConflictCheckResponse,
    TicketCreateInput,
    TicketUpdateInput,
    WatcherCreate,
    WatcherRead,
)
from dispatchdesk.services.appointments import set_appointment_approval
from dispatchdesk.services.audit import list_ticket_audit
from dispatchdesk.services.conflict_checker import find_conflicting_employees
from dispatchdesk.services.location_resolver import LocationResolver
from dispatchdesk.services.technician_confirmation import (
    confirm_technicians,
    generate_line_summary,
    get_confirmed_technicians,
    get_summaries_grouped_by_technicians,
)
from dispatchdesk.services.tickets import TicketOrchestrator
from dispatchdesk.services.watchers import add_watcher, list_watchers, remove_watcher

router = APIRouter(prefix="/api/tickets", tags=["Tickets"])


def get_location_resolver(request: Request) -> LocationResolver:
    resolver = getattr(request.app.state, "location_resolver", None)
    if resolver is None:
        resolver = LocationResolver(open_session)
        request.app.state.location_resolver = resolver
    return resolver


def get_orchestrator(
    session: AsyncSession = Depends(get_session),
    resolver: LocationResolver = Depends(get_location_resolver),
) -> TicketOrchestrator:
    return TicketOrchestrator(session, location_resolver=resolver)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateInput,
    actor_id: str = Depends(require_actor),
    orchestrator: TicketOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return await orchestrator.create(payload, actor_id)


@router.post("/conflicts", response_model=ConflictCheckResponse)
async def check_conflicts(
    payload: ConflictCheckRequest,
    _: str = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
) -> ConflictCheckResponse:
    conflicted = await find_conflicting_employees(
        session,
        payload.employee_ids,
        payload.appointment_date,
        time_start=payload.time_start,
        time_end=payload.time_end,
        exclude_ticket_id=payload.exclude_ticket_id,
    )
    return ConflictCheckResponse(conflicted_employee_ids=conflicted)


@router.get("/summaries")
async def get_daily_summaries(
    on_date: str = Query(alias="date"),
    format: Literal["full", "compact"] = Query(default="full"),
    _: str = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
    resolver: LocationResolver = Depends(get_location_resolver),
) -> dict[str, Any]:
    return await get_summaries_grouped_by_technicians(
        session,
        on_date,
        location_resolver=resolver,
        format=format,
        default_work_giver=get_settings().default_work_giver_name,
    )


@router.get("/{ticket_id}")
async def get_ticket(
    ticket_id: str,
    _: str = Depends(require_actor),
    orchestrator: TicketOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return await orchestrator.get(ticket_id)


@router.patch("/{ticket_id}")
async def update_ticket(
    ticket_id: str,
    payload: TicketUpdateInput,
    actor_id: str = Depends(require_actor),
    orchestrator: TicketOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return await orchestrator.update(ticket_id, payload, actor_id)


@router.delete("/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_ticket(
    ticket_id: str,
    delete_appointment: bool = Query(default=False),
    delete_contact: bool = Query(default=False),
    actor_id: str = Depends(require_actor),
    orchestrator: TicketOrchestrator = Depends(get_orchestrator),
) -> Response:
    await orchestrator.delete(
        ticket_id,
        actor_id,
        delete_appointment=delete_appointment,
        delete_contact=delete_contact,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/{ticket_id}/employees/{employee_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_ticket_employee(
    ticket_id: str,
    employee_id: str,
    on_date: date = Query(alias="date"),
    actor_id: str = Depends(require_actor),
    orchestrator: TicketOrchestrator = Depends(get_orchestrator),
) -> Response:
    await orchestrator.remove_ticket_employee(ticket_id, employee_id, on_date, actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{ticket_id}/confirm-technicians")
async def confirm_ticket_technicians(
    ticket_id: str,
    payload: ConfirmTechniciansRequest,
    actor_id: str = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    return await confirm_technicians(
        session, ticket_id, payload.employee_ids, actor_id, notes=payload.notes
    )


@router.get("/{ticket_id}/confirmed-technicians")
async def list_confirmed_technicians(
    ticket_id: str,
    on_date: date | None = Query(default=None, alias="date"),
    _: str = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
) -> list[dict[str, Any]]:
    return await get_confirmed_technicians(session, ticket_id, on_date)


@router.get("/{ticket_id}/line-summary")
async def get_line_summary(
    ticket_id: str,
    format: Literal["full", "compact"] = Query(default="full"),
    _: str = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
    resolver: LocationResolver = Depends(get_location_resolver),
) -> dict[str, str]:
    summary = await generate_line_summary(
        session,
        ticket_id,
        location_resolver=resolver,
        format=format,
        default_work_giver=get_settings().default_work_giver_name,
    )
    return {"ticket_id": ticket_id, "summary": summary}


@router.post("/{ticket_id}/appointment/approval")
async def approve_appointment(
    ticket_id: str,
    payload: AppointmentApprovalRequest,
    actor_id: str = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    return await set_appointment_approval(
        session, ticket_id, actor_id, is_approved=payload.is_approved, changes=payload
    )


@router.get("/{ticket_id}/watchers")
async def get_watchers(
    ticket_id: str,
    _: str = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
) -> list[dict[str, Any]]:
    return await list_watchers(session, ticket_id)


@router.post("/{ticket_id}/watchers", response_model=WatcherRead, status_code=status.HTTP_201_CREATED)
async def create_watcher(
    ticket_id: str,
    payload: WatcherCreate,
    actor_id: str = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
) -> WatcherRead:
    watcher = await add_watcher(session, ticket_id, payload.employee_id, added_by=actor_id)
    return WatcherRead.model_validate(watcher)


@router.delete("/{ticket_id}/watchers", status_code=status.HTTP_204_NO_CONTENT)
async def delete_watcher(
    ticket_id: str,
    employee_id: str | None = Query(default=None),
    actor_id: str = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
) -> Response:
    await remove_watcher(session, ticket_id, employee_id or actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{ticket_id}/audit", response_model=list[AuditEntryRead])
async def get_audit_trail(
    ticket_id: str,
    _: str = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
) -> list[AuditEntryRead]:
    entries = await list_ticket_audit(session, ticket_id)
    return [AuditEntryRead.model_validate(entry) for entry in entries]
