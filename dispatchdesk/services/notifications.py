"""Per-recipient in-app notifications for ticket events."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Any, Iterable, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatchdesk.core.config import get_settings
from dispatchdesk.core.errors import DatabaseError
from dispatchdesk.models import (
    AppointmentApprover,
    Employee,
    Notification,
    Site,
    Ticket,
    TicketComment,
    TicketEmployeeConfirmation,
    new_id,
    utcnow,
)
from dispatchdesk.services.audit import AuditAction, find_latest_actor, jsonable
from dispatchdesk.services.watchers import get_watcher_ids

logger = logging.getLogger(__name__)

UNKNOWN_SITE = "Unspecified site"
UNKNOWN_EMPLOYEE = "A colleague"


class NotificationType(str, Enum):
    APPROVAL = "approval"
    UNAPPROVAL = "unapproval"
    TECHNICIAN_CONFIRMED = "technician_confirmed"
    NEW_COMMENT = "new_comment"
    MENTION = "mention"
    TICKET_UPDATE = "ticket_update"
    APPROVAL_REQUEST = "approval_request"


WATCHER_MESSAGES: dict[str, tuple[str, str]] = {
    AuditAction.CREATED.value: ("New ticket created", "A ticket for {site} was created"),
    AuditAction.UPDATED.value: ("Ticket updated", "The ticket for {site} was edited"),
    AuditAction.DELETED.value: ("Ticket deleted", "The ticket for {site} was deleted"),
    AuditAction.APPROVED.value: ("Appointment approved", "The appointment for {site} was approved"),
    AuditAction.UNAPPROVED.value: (
        "Appointment unapproved",
        "The appointment for {site} is no longer approved",
    ),
    AuditAction.TECHNICIAN_CONFIRMED.value: (
        "Technicians confirmed",
        "Technicians were confirmed for {site}",
    ),
    AuditAction.TECHNICIAN_CHANGED.value: (
        "Technicians changed",
        "The confirmed technicians for {site} changed",
    ),
    AuditAction.EMPLOYEE_ASSIGNED.value: (
        "Employee assigned",
        "An employee was assigned to the job at {site}",
    ),
    AuditAction.EMPLOYEE_REMOVED.value: (
        "Employee removed",
        "An employee was removed from the job at {site}",
    ),
    AuditAction.WORK_GIVER_SET.value: ("Work giver set", "A work giver was set for {site}"),
    AuditAction.WORK_GIVER_CHANGED.value: (
        "Work giver changed",
        "The work giver for {site} changed",
    ),
    AuditAction.COMMENT_ADDED.value: ("New comment", "A new comment was posted on {site}"),
}
DEFAULT_WATCHER_MESSAGE = ("Ticket changed", "The ticket for {site} changed")


@dataclass
class NotificationDraft:
    recipient_id: str
    type: NotificationType | str
    title: str
    message: str
    ticket_id: str | None = None
    comment_id: str | None = None
    audit_id: str | None = None
    actor_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_model(self) -> Notification:
        return Notification(
            id=new_id(),
            recipient_id=self.recipient_id,
            type=NotificationType(self.type).value,
            title=self.title,
            message=self.message,
            ticket_id=self.ticket_id,
            comment_id=self.comment_id,
            audit_id=self.audit_id,
            actor_id=self.actor_id,
            is_read=False,
            metadata_=jsonable(self.metadata) if self.metadata else None,
        )


async def create_notifications(
    session: AsyncSession,
    drafts: Sequence[NotificationDraft],
) -> int:
    """Insert notifications in bulk. Failures are logged, never raised."""

    if not drafts:
        return 0
    session.add_all([draft.to_model() for draft in drafts])
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("Failed to create %d notifications: %s", len(drafts), exc)
        return 0
    return len(drafts)


async def _is_duplicate(
    session: AsyncSession,
    draft: NotificationDraft,
    window_minutes: int,
) -> bool:
    statement = select(Notification.id).where(Notification.recipient_id == draft.recipient_id)
    if draft.audit_id:
        statement = statement.where(Notification.audit_id == draft.audit_id)
    else:
        since = utcnow() - timedelta(minutes=window_minutes)
        statement = (
            statement.where(Notification.type == NotificationType(draft.type).value)
            .where(Notification.title == draft.title)
            .where(Notification.created_at >= since)
        )
        if draft.ticket_id:
            statement = statement.where(Notification.ticket_id == draft.ticket_id)
    result = await session.execute(statement.limit(1))
    return result.first() is not None


async def create_notifications_deduplicated(
    session: AsyncSession,
    drafts: Sequence[NotificationDraft],
    *,
    window_minutes: int | None = None,
) -> int:
    """Insert notifications, skipping ones the recipient already received.

    A draft carrying an ``audit_id`` is a duplicate when the recipient already
    has a notification for that audit entry. Other drafts are duplicates when
    the same type and title (and ticket, when given) reached the recipient
    within the last ``window_minutes``.
    """

    if not drafts:
        return 0
    if window_minutes is None:
        window_minutes = get_settings().notification_dedup_window_minutes

    try:
        fresh: list[NotificationDraft] = []
        for draft in drafts:
            if any(_same_delivery(draft, other) for other in fresh):
                continue
            if await _is_duplicate(session, draft, window_minutes):
                continue
            fresh.append(draft)
    except SQLAlchemyError as exc:
        logger.error("Failed to check notification duplicates: %s", exc)
        return 0
    return await create_notifications(session, fresh)


def _same_delivery(draft: NotificationDraft, other: NotificationDraft) -> bool:
    if draft.recipient_id != other.recipient_id:
        return False
    if draft.audit_id:
        return draft.audit_id == other.audit_id
    return (
        NotificationType(draft.type) == NotificationType(other.type)
        and draft.title == other.title
        and (not draft.ticket_id or draft.ticket_id == other.ticket_id)
    )


async def _site_name(session: AsyncSession, ticket_id: str, default: str = UNKNOWN_SITE) -> str:
    result = await session.execute(
        select(Site.name).join(Ticket, Ticket.site_id == Site.id).where(Ticket.id == ticket_id)
    )
    return result.scalar_one_or_none() or default


async def _employee_display_name(session: AsyncSession, employee_id: str) -> str:
    employee = await session.get(Employee, employee_id)
    if employee is None:
        return UNKNOWN_EMPLOYEE
    return employee.nickname or employee.name or UNKNOWN_EMPLOYEE


async def _confirmed_technician_ids(session: AsyncSession, ticket_id: str) -> list[str]:
    result = await session.execute(
        select(TicketEmployeeConfirmation.employee_id)
        .where(TicketEmployeeConfirmation.ticket_id == ticket_id)
        .distinct()
    )
    return list(result.scalars().all())


async def notify_watchers(
    session: AsyncSession,
    ticket_id: str,
    action: AuditAction | str,
    actor_id: str,
    *,
    audit_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> int:
    """Broadcast a ticket change to its watchers, never to the actor.

    For ``comment_added`` the broadcast also skips people who receive a
    dedicated comment or mention notification for the same comment.
    """

    action_value = AuditAction(action).value
    metadata = dict(metadata or {})
    recipients = [
        watcher_id
        for watcher_id in await get_watcher_ids(session, ticket_id)
        if watcher_id != actor_id
    ]
    if not recipients:
        return 0

    if action_value == AuditAction.COMMENT_ADDED.value and metadata.get("comment_id"):
        participants = set(
            (
                await session.execute(
                    select(TicketComment.author_id).where(TicketComment.ticket_id == ticket_id)
                )
            ).scalars().all()
        )
        participants.update(metadata.get("mentioned_ids") or [])
        recipients = [recipient for recipient in recipients if recipient not in participants]
        if not recipients:
            return 0

    site_name = await _site_name(session, ticket_id)
    title, template = WATCHER_MESSAGES.get(action_value, DEFAULT_WATCHER_MESSAGE)
    drafts = [
        NotificationDraft(
            recipient_id=recipient,
            type=NotificationType.TICKET_UPDATE,
            title=title,
            message=template.format(site=site_name),
            ticket_id=ticket_id,
            comment_id=metadata.get("comment_id"),
            audit_id=audit_id,
            actor_id=actor_id,
            metadata={"audit_action": action_value, **metadata},
        )
        for recipient in recipients
    ]
    return await create_notifications_deduplicated(session, drafts)


async def notify_appointment_approval(
    session: AsyncSession,
    ticket_id: str,
    actor_id: str,
    *,
    is_approved: bool,
    audit_id: str | None = None,
) -> int:
    """Tell the confirmed technicians that the appointment approval changed."""

    recipients = [
        employee_id
        for employee_id in await _confirmed_technician_ids(session, ticket_id)
        if employee_id != actor_id
    ]
    if not recipients:
        return 0
    site_name = await _site_name(session, ticket_id)
    if is_approved:
        kind = NotificationType.APPROVAL
        title = "Appointment approved"
        message = f"The appointment for {site_name} has been approved"
    else:
        kind = NotificationType.UNAPPROVAL
        title = "Appointment unapproved"
        message = f"The appointment for {site_name} is no longer approved"
    drafts = [
        NotificationDraft(
            recipient_id=recipient,
            type=kind,
            title=title,
            message=message,
            ticket_id=ticket_id,
            audit_id=audit_id,
            actor_id=actor_id,
        )
        for recipient in recipients
    ]
    return await create_notifications_deduplicated(session, drafts)


async def notify_technicians_confirmed(
    session: AsyncSession,
    ticket_id: str,
    employee_ids: Iterable[str],
    actor_id: str,
    *,
    appointment_date: date | str | None,
    audit_id: str | None = None,
) -> int:
    recipients = [employee_id for employee_id in employee_ids if employee_id != actor_id]
    if not recipients:
        return 0
    site_name = await _site_name(session, ticket_id)
    date_text = jsonable(appointment_date) or "an unscheduled date"
    drafts = [
        NotificationDraft(
            recipient_id=recipient,
            type=NotificationType.TECHNICIAN_CONFIRMED,
            title="You have been confirmed for a job",
            message=f"You are assigned to the job at {site_name} on {date_text}",
            ticket_id=ticket_id,
            audit_id=audit_id,
            actor_id=actor_id,
            metadata={"appointment_date": date_text},
        )
        for recipient in recipients
    ]
    return await create_notifications_deduplicated(session, drafts)


async def notify_comment(
    session: AsyncSession,
    ticket_id: str,
    comment_id: str,
    author_id: str,
    mentioned_ids: Iterable[str] = (),
) -> int:
    """Notify mentioned employees first, then earlier commenters."""

    previous_commenters = (
        await session.execute(
            select(TicketComment.author_id)
            .where(TicketComment.ticket_id == ticket_id)
            .where(TicketComment.id != comment_id)
            .order_by(TicketComment.created_at)
        )
    ).scalars().all()
    author_name = await _employee_display_name(session, author_id)
    site_name = await _site_name(session, ticket_id, default="the ticket")

    drafts: list[NotificationDraft] = []
    notified: set[str] = {author_id}
    for mentioned_id in mentioned_ids:
        if mentioned_id in notified:
            continue
        notified.add(mentioned_id)
        drafts.append(
            NotificationDraft(
                recipient_id=mentioned_id,
                type=NotificationType.MENTION,
                title="You were mentioned in a comment",
                message=f"{author_name} mentioned you in a comment on {site_name}",
                ticket_id=ticket_id,
                comment_id=comment_id,
                actor_id=author_id,
            )
        )
    for commenter_id in previous_commenters:
        if commenter_id in notified:
            continue
        notified.add(commenter_id)
        drafts.append(
            NotificationDraft(
                recipient_id=commenter_id,
                type=NotificationType.NEW_COMMENT,
                title="New comment",
                message=f"{author_name} commented on {site_name}",
                ticket_id=ticket_id,
                comment_id=comment_id,
                actor_id=author_id,
            )
        )
    return await create_notifications(session, drafts)


async def notify_last_approver_of_unapproval(
    session: AsyncSession,
    ticket_id: str,
    editor_id: str,
    *,
    site_name: str | None = None,
    audit_id: str | None = None,
) -> int:
    """Tell whoever last approved the appointment that an edit revoked it."""

    approver_id = await find_latest_actor(session, ticket_id, AuditAction.APPROVED)
    if approver_id is None:
        logger.info("No approval recorded for ticket %s; skipping approver notice", ticket_id)
        return 0
    if approver_id == editor_id:
        return 0
    editor_name = await _employee_display_name(session, editor_id)
    draft = NotificationDraft(
        recipient_id=approver_id,
        type=NotificationType.UNAPPROVAL,
        title="Appointment approval revoked",
        message=(
            f"{editor_name} edited the ticket for {site_name or UNKNOWN_SITE}, "
            "so its approval was withdrawn"
        ),
        ticket_id=ticket_id,
        audit_id=audit_id,
        actor_id=editor_id,
        metadata={"auto_unapproved": True},
    )
    return await create_notifications_deduplicated(session, [draft])


async def notify_approvers_of_new_ticket(
    session: AsyncSession,
    ticket_id: str,
    creator_id: str,
    *,
    site_name: str | None = None,
    work_type: str | None = None,
) -> int:
    """Ask every configured approver, except the creator, to approve the appointment."""

    approver_ids = (
        await session.execute(select(AppointmentApprover.employee_id))
    ).scalars().all()
    recipients = [approver_id for approver_id in approver_ids if approver_id != creator_id]
    if not recipients:
        return 0
    work_type_text = f" ({work_type})" if work_type else ""
    drafts = [
        NotificationDraft(
            recipient_id=recipient,
            type=NotificationType.APPROVAL_REQUEST,
            title="New ticket awaiting approval",
            message=(
                f"The ticket for {site_name or UNKNOWN_SITE}{work_type_text} "
                "is waiting for appointment approval"
            ),
            ticket_id=ticket_id,
            actor_id=creator_id,
        )
        for recipient in recipients
    ]
    return await create_notifications_deduplicated(session, drafts)


async def list_notifications(
    session: AsyncSession,
    recipient_id: str,
    *,
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
    search: str | None = None,
) -> dict[str, Any]:
    page = max(page, 1)
    limit = max(min(limit, 100), 1)

    filters = [Notification.recipient_id == recipient_id]
    if unread_only:
        filters.append(Notification.is_read.is_(False))
    term = (search or "").strip()
    if term:
        pattern = f"%{term}%"
        filters.append(or_(Notification.title.ilike(pattern), Notification.message.ilike(pattern)))

    try:
        total = (
            await session.execute(select(func.count(Notification.id)).where(*filters))
        ).scalar_one()
        unread_count = (
            await session.execute(
                select(func.count(Notification.id))
                .where(Notification.recipient_id == recipient_id)
                .where(Notification.is_read.is_(False))
            )
        ).scalar_one()
        items = (
            await session.execute(
                select(Notification)
                .where(*filters)
                .order_by(Notification.created_at.desc(), Notification.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
        ).scalars().all()
    except SQLAlchemyError as exc:
        raise DatabaseError(f"Failed to load notifications: {exc}") from exc

    return {
        "items": list(items),
        "total": total,
        "unread_count": unread_count,
        "page": page,
        "limit": limit,
    }


async def mark_as_read(
    session: AsyncSession,
    recipient_id: str,
    notification_ids: Iterable[str] | None = None,
) -> int:
    """Mark the given notifications (or all of them) read and return the count."""

    statement = (
        update(Notification)
        .where(Notification.recipient_id == recipient_id)
        .where(Notification.is_read.is_(False))
        .values(is_read=True, read_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if notification_ids is not None:
        ids = list(notification_ids)
        if not ids:
            return 0
        statement = statement.where(Notification.id.in_(ids))
    try:
        result = await session.execute(statement)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DatabaseError(f"Failed to mark notifications as read: {exc}") from exc
    return result.rowcount or 0
