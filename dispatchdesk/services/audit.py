"""Append-only audit trail for ticket changes."""

from __future__ import annotations

import logging
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatchdesk.core.errors import DatabaseError
from dispatchdesk.models import TicketAudit, new_id

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    APPROVED = "approved"
    UNAPPROVED = "unapproved"
    TECHNICIAN_CONFIRMED = "technician_confirmed"
    TECHNICIAN_CHANGED = "technician_changed"
    EMPLOYEE_ASSIGNED = "employee_assigned"
    EMPLOYEE_REMOVED = "employee_removed"
    WORK_GIVER_SET = "work_giver_set"
    WORK_GIVER_CHANGED = "work_giver_changed"
    COMMENT_ADDED = "comment_added"


def jsonable(value: Any) -> Any:
    """Convert dates, times and enums into JSON friendly values."""

    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [jsonable(item) for item in value]
    return value


def diff_values(
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    *,
    prefix: str = "",
) -> tuple[list[str], dict[str, Any], dict[str, Any]]:
    """Compare the keys of ``after`` against ``before``.

    Returns the changed field paths along with the old and new values keyed by
    the same paths.
    """

    changed: list[str] = []
    old_values: dict[str, Any] = {}
    new_values: dict[str, Any] = {}
    for key, value in after.items():
        previous = before.get(key)
        if jsonable(previous) == jsonable(value):
            continue
        path = f"{prefix}{key}"
        changed.append(path)
        old_values[path] = jsonable(previous)
        new_values[path] = jsonable(value)
    return changed, old_values, new_values


def same_members(before: Iterable[str], after: Iterable[str]) -> bool:
    return sorted(before) == sorted(after)


async def record_ticket_audit(
    session: AsyncSession,
    *,
    ticket_id: str,
    action: AuditAction | str,
    changed_by: str,
    old_values: Mapping[str, Any] | None = None,
    new_values: Mapping[str, Any] | None = None,
    changed_fields: Iterable[str] | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> str | None:
    """Persist an audit entry and return its id.

    Audit failures never break the calling operation, so store errors are
    logged and ``None`` is returned instead.
    """

    entry = TicketAudit(
        id=new_id(),
        ticket_id=ticket_id,
        action=AuditAction(action).value,
        changed_by=changed_by,
        old_values=jsonable(dict(old_values)) if old_values else None,
        new_values=jsonable(dict(new_values)) if new_values else None,
        changed_fields=list(changed_fields) if changed_fields else None,
        metadata_=jsonable(dict(metadata)) if metadata else None,
    )
    try:
        session.add(entry)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error(
            "Failed to record %s audit entry for ticket %s: %s",
            entry.action,
            ticket_id,
            exc,
        )
        return None
    return entry.id


async def list_ticket_audit(session: AsyncSession, ticket_id: str) -> list[TicketAudit]:
    try:
        result = await session.execute(
            select(TicketAudit)
            .where(TicketAudit.ticket_id == ticket_id)
            .order_by(TicketAudit.created_at.desc(), TicketAudit.id)
        )
    except SQLAlchemyError as exc:
        raise DatabaseError(f"Failed to load audit history: {exc}") from exc
    return list(result.scalars().all())


async def find_latest_actor(
    session: AsyncSession,
    ticket_id: str,
    action: AuditAction | str,
) -> str | None:
    """Return who most recently performed ``action`` on the ticket."""

    result = await session.execute(
        select(TicketAudit.changed_by)
        .where(TicketAudit.ticket_id == ticket_id)
        .where(TicketAudit.action == AuditAction(action).value)
        .order_by(TicketAudit.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
