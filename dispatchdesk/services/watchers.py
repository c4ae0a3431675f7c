"""Registry of employees subscribed to a ticket's notifications."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatchdesk.core.errors import DatabaseError, NotFoundError
from dispatchdesk.models import Employee, Ticket, TicketWatcher, new_id

logger = logging.getLogger(__name__)


class WatcherSource(str, Enum):
    MANUAL = "manual"
    AUTO_CREATOR = "auto_creator"
    AUTO_ASSIGNER = "auto_assigner"
    AUTO_SUPERADMIN = "auto_superadmin"


async def _existing_watcher_ids(session: AsyncSession, ticket_id: str) -> set[str]:
    result = await session.execute(
        select(TicketWatcher.employee_id).where(TicketWatcher.ticket_id == ticket_id)
    )
    return set(result.scalars().all())


async def add_watcher(
    session: AsyncSession,
    ticket_id: str,
    employee_id: str,
    *,
    added_by: str | None = None,
    source: WatcherSource = WatcherSource.MANUAL,
) -> TicketWatcher:
    """Subscribe an employee to a ticket. Subscribing twice is a no-op."""

    if await session.get(Ticket, ticket_id) is None:
        raise NotFoundError("Ticket not found")

    existing = (
        await session.execute(
            select(TicketWatcher)
            .where(TicketWatcher.ticket_id == ticket_id)
            .where(TicketWatcher.employee_id == employee_id)
        )
    ).scalar_one_or_none()
    if existing is not None:
        return existing

    watcher = TicketWatcher(
        id=new_id(),
        ticket_id=ticket_id,
        employee_id=employee_id,
        added_by=added_by or employee_id,
        source=WatcherSource(source).value,
    )
    session.add(watcher)
    try:
        await session.commit()
    except IntegrityError:
        # Lost a race with a concurrent subscription for the same employee.
        await session.rollback()
        existing = (
            await session.execute(
                select(TicketWatcher)
                .where(TicketWatcher.ticket_id == ticket_id)
                .where(TicketWatcher.employee_id == employee_id)
            )
        ).scalar_one_or_none()
        if existing is None:
            raise DatabaseError("Failed to add watcher")
        return existing
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DatabaseError(f"Failed to add watcher: {exc}") from exc
    return watcher


async def remove_watcher(session: AsyncSession, ticket_id: str, employee_id: str) -> None:
    try:
        await session.execute(
            delete(TicketWatcher)
            .where(TicketWatcher.ticket_id == ticket_id)
            .where(TicketWatcher.employee_id == employee_id)
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DatabaseError(f"Failed to remove watcher: {exc}") from exc


async def list_watchers(session: AsyncSession, ticket_id: str) -> list[dict]:
    try:
        rows = (
            await session.execute(
                select(TicketWatcher, Employee)
                .join(Employee, Employee.id == TicketWatcher.employee_id)
                .where(TicketWatcher.ticket_id == ticket_id)
                .order_by(TicketWatcher.added_at, TicketWatcher.id)
            )
        ).all()
    except SQLAlchemyError as exc:
        raise DatabaseError(f"Failed to load watchers: {exc}") from exc
    return [
        {
            "id": watcher.id,
            "ticket_id": watcher.ticket_id,
            "employee_id": watcher.employee_id,
            "added_by": watcher.added_by,
            "source": watcher.source,
            "added_at": watcher.added_at,
            "employee": {
                "id": employee.id,
                "name": employee.name,
                "nickname": employee.nickname,
            },
        }
        for watcher, employee in rows
    ]


async def get_watcher_ids(session: AsyncSession, ticket_id: str) -> list[str]:
    """Return watcher ids, or an empty list when the store is unavailable."""

    try:
        return sorted(await _existing_watcher_ids(session, ticket_id))
    except SQLAlchemyError as exc:
        logger.warning("Failed to load watchers for ticket %s: %s", ticket_id, exc)
        return []


async def is_watching(session: AsyncSession, ticket_id: str, employee_id: str) -> bool:
    result = await session.execute(
        select(TicketWatcher.id)
        .where(TicketWatcher.ticket_id == ticket_id)
        .where(TicketWatcher.employee_id == employee_id)
    )
    return result.first() is not None


async def _active_superadmin_ids(session: AsyncSession, superadmin_level: int) -> list[str]:
    result = await session.execute(
        select(Employee.id)
        .where(Employee.role_level == superadmin_level)
        .where(Employee.is_active.is_(True))
    )
    return list(result.scalars().all())


async def add_auto_watchers(
    session: AsyncSession,
    ticket_id: str,
    *,
    creator_id: str,
    assigner_id: str | None = None,
    superadmin_level: int = 3,
) -> list[str]:
    """Subscribe the creator, the assigner and every active superadmin.

    Returns the employees that were newly subscribed. A failed superadmin
    lookup still subscribes the creator and the assigner; other errors are
    logged and leave the ticket without auto-watchers.
    """

    planned: list[tuple[str, WatcherSource]] = [(creator_id, WatcherSource.AUTO_CREATOR)]
    if assigner_id and assigner_id != creator_id:
        planned.append((assigner_id, WatcherSource.AUTO_ASSIGNER))

    try:
        superadmins = await _active_superadmin_ids(session, superadmin_level)
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("Failed to load superadmins for ticket %s watchers: %s", ticket_id, exc)
        superadmins = []
    planned.extend((employee_id, WatcherSource.AUTO_SUPERADMIN) for employee_id in superadmins)

    try:
        existing = await _existing_watcher_ids(session, ticket_id)
        added: list[str] = []
        for employee_id, source in _first_per_employee(planned):
            if employee_id in existing:
                continue
            session.add(
                TicketWatcher(
                    id=new_id(),
                    ticket_id=ticket_id,
                    employee_id=employee_id,
                    added_by=None,
                    source=source.value,
                )
            )
            added.append(employee_id)
        await session.commit()
        return added
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("Failed to add auto-watchers for ticket %s: %s", ticket_id, exc)
        return []


def _first_per_employee(
    planned: Iterable[tuple[str, WatcherSource]],
) -> list[tuple[str, WatcherSource]]:
    seen: set[str] = set()
    unique: list[tuple[str, WatcherSource]] = []
    for employee_id, source in planned:
        if employee_id in seen:
            continue
        seen.add(employee_id)
        unique.append((employee_id, source))
    return unique
