"""Side effects triggered by ticket events.

Each handler opens its own session so that notification and watcher writes
never share a transaction with the operation that published the event.
"""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from dispatchdesk.core.config import get_settings
from dispatchdesk.core.db import open_session
from dispatchdesk.core.errors import ServiceError
from dispatchdesk.core.events import (
    AppointmentApproved,
    CommentAdded,
    EventBus,
    TechniciansConfirmed,
    TicketCreated,
    TicketUnapproved,
    TicketUpdated,
)
from dispatchdesk.services.audit import AuditAction
from dispatchdesk.services.notifications import (
    notify_appointment_approval,
    notify_approvers_of_new_ticket,
    notify_comment,
    notify_last_approver_of_unapproval,
    notify_technicians_confirmed,
    notify_watchers,
)
from dispatchdesk.services.watchers import add_auto_watchers

logger = logging.getLogger(__name__)

SessionOpener = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class TicketEventHandlers:
    def __init__(self, open_session: SessionOpener = open_session) -> None:
        self._open_session = open_session

    async def on_ticket_created(self, event: TicketCreated) -> None:
        settings = get_settings()
        async with self._open_session() as session:
            added = await add_auto_watchers(
                session,
                event.ticket_id,
                creator_id=event.actor_id,
                assigner_id=event.assigner_id,
                superadmin_level=settings.superadmin_role_level,
            )
            logger.debug("Ticket %s auto-watchers: %s", event.ticket_id, added)
            await notify_approvers_of_new_ticket(
                session,
                event.ticket_id,
                event.actor_id,
                site_name=event.site_name,
                work_type=event.work_type_name,
            )

    async def on_ticket_updated(self, event: TicketUpdated) -> None:
        async with self._open_session() as session:
            await notify_watchers(
                session,
                event.ticket_id,
                AuditAction.UPDATED,
                event.actor_id,
                audit_id=event.audit_id,
                metadata={"changed_fields": event.changed_fields},
            )

    async def on_ticket_unapproved(self, event: TicketUnapproved) -> None:
        async with self._open_session() as session:
            if event.automatic:
                await notify_last_approver_of_unapproval(
                    session,
                    event.ticket_id,
                    event.actor_id,
                    site_name=event.site_name,
                    audit_id=event.audit_id,
                )
            await notify_appointment_approval(
                session,
                event.ticket_id,
                event.actor_id,
                is_approved=False,
                audit_id=event.audit_id,
            )
            await notify_watchers(
                session,
                event.ticket_id,
                AuditAction.UNAPPROVED,
                event.actor_id,
                audit_id=event.audit_id,
                metadata={"auto_unapproved": event.automatic},
            )

    async def on_appointment_approved(self, event: AppointmentApproved) -> None:
        async with self._open_session() as session:
            await notify_appointment_approval(
                session,
                event.ticket_id,
                event.actor_id,
                is_approved=True,
                audit_id=event.audit_id,
            )
            await notify_watchers(
                session,
                event.ticket_id,
                AuditAction.APPROVED,
                event.actor_id,
                audit_id=event.audit_id,
            )

    async def on_technicians_confirmed(self, event: TechniciansConfirmed) -> None:
        async with self._open_session() as session:
            await notify_technicians_confirmed(
                session,
                event.ticket_id,
                event.employee_ids,
                event.actor_id,
                appointment_date=event.appointment_date,
                audit_id=event.audit_id,
            )
            await notify_watchers(
                session,
                event.ticket_id,
                AuditAction.TECHNICIAN_CONFIRMED,
                event.actor_id,
                audit_id=event.audit_id,
            )

    async def on_comment_added(self, event: CommentAdded) -> None:
        async with self._open_session() as session:
            try:
                await notify_comment(
                    session,
                    event.ticket_id,
                    event.comment_id,
                    event.actor_id,
                    event.mentioned_ids,
                )
            except ServiceError as exc:
                logger.warning("Comment notifications failed for %s: %s", event.comment_id, exc)
            await notify_watchers(
                session,
                event.ticket_id,
                AuditAction.COMMENT_ADDED,
                event.actor_id,
                audit_id=event.audit_id,
                metadata={"comment_id": event.comment_id, "mentioned_ids": event.mentioned_ids},
            )


def register_event_handlers(
    bus: EventBus,
    open_session: SessionOpener = open_session,
) -> TicketEventHandlers:
    handlers = TicketEventHandlers(open_session)
    bus.subscribe(TicketCreated, handlers.on_ticket_created)
    bus.subscribe(TicketUpdated, handlers.on_ticket_updated)
    bus.subscribe(TicketUnapproved, handlers.on_ticket_unapproved)
    bus.subscribe(AppointmentApproved, handlers.on_appointment_approved)
    bus.subscribe(TechniciansConfirmed, handlers.on_technicians_confirmed)
    bus.subscribe(CommentAdded, handlers.on_comment_added)
    return handlers
