import asyncio

import pytest

from sqlalchemy import select

from dispatchdesk.core.config import get_settings
from dispatchdesk.core.db import dispose_engine, open_session
from dispatchdesk.core.events import CommentAdded, event_bus
from dispatchdesk.models import Notification, TicketComment, new_id
from dispatchdesk.schemas import TicketCreateInput, TicketUpdateInput
from dispatchdesk.services.appointments import set_appointment_approval
from dispatchdesk.services.event_handlers import register_event_handlers
from dispatchdesk.services.notifications import (
    NotificationDraft,
    NotificationType,
    create_notifications_deduplicated,
    list_notifications,
    mark_as_read,
    notify_watchers,
)
from dispatchdesk.services.technician_confirmation import confirm_technicians
from dispatchdesk.services.tickets import TicketOrchestrator
from dispatchdesk.services.watchers import add_watcher, get_watcher_ids
from tests.seed_data import (
    APPROVER,
    ASSIGNER,
    CREATOR,
    SUPERADMIN,
    TECH_A,
    TECH_B,
    TECH_C,
    seed_reference_data,
    ticket_payload,
)


@pytest.fixture(autouse=True)
def notifications_db(tmp_path, monkeypatch):
    db_path = tmp_path / "notifications.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("DISPATCH_DESK_SUMMARY_ENABLED", "0")
    get_settings.cache_clear()
    asyncio.run(dispose_engine())
    event_bus.clear_subscribers()
    asyncio.run(event_bus.reset())
    register_event_handlers(event_bus)
    yield
    event_bus.clear_subscribers()
    asyncio.run(event_bus.reset())
    asyncio.run(dispose_engine())
    get_settings.cache_clear()


async def _create_ticket():
    await seed_reference_data()
    async with open_session() as session:
        ticket = await TicketOrchestrator(session).create(
            TicketCreateInput.model_validate(ticket_payload()), CREATOR
        )
    await event_bus.drain()
    return ticket


async def _inbox(recipient_id):
    async with open_session() as session:
        rows = (
            await session.execute(
                select(Notification)
                .where(Notification.recipient_id == recipient_id)
                .order_by(Notification.created_at)
            )
        ).scalars().all()
    return [(row.type, row.title) for row in rows]


@pytest.mark.asyncio
async def test_ticket_creation_subscribes_watchers_and_asks_approvers():
    ticket = await _create_ticket()

    async with open_session() as session:
        watcher_ids = await get_watcher_ids(session, ticket["id"])

    assert set(watcher_ids) == {CREATOR, ASSIGNER, SUPERADMIN}
    assert await _inbox(APPROVER) == [("approval_request", "New ticket awaiting approval")]
    assert await _inbox(CREATOR) == []


@pytest.mark.asyncio
async def test_approval_flow_notifies_technicians_and_watchers():
    ticket = await _create_ticket()

    async with open_session() as session:
        await set_appointment_approval(session, ticket["id"], APPROVER)
    await event_bus.drain()
    async with open_session() as session:
        await confirm_technicians(session, ticket["id"], [TECH_A, TECH_B], APPROVER)
    await event_bus.drain()

    assert await _inbox(TECH_A) == [("technician_confirmed", "You have been confirmed for a job")]
    assert await _inbox(CREATOR) == [
        ("ticket_update", "Appointment approved"),
        ("ticket_update", "Technicians confirmed"),
    ]


@pytest.mark.asyncio
async def test_auto_unapproval_notifies_last_approver_and_technicians():
    ticket = await _create_ticket()
    async with open_session() as session:
        await set_appointment_approval(session, ticket["id"], APPROVER)
    await event_bus.drain()
    async with open_session() as session:
        await confirm_technicians(session, ticket["id"], [TECH_A], APPROVER)
    await event_bus.drain()

    async with open_session() as session:
        await TicketOrchestrator(session).update(
            ticket["id"],
            TicketUpdateInput.model_validate({"appointment": {"appointment_date": "2026-11-04"}}),
            CREATOR,
        )
    await event_bus.drain()

    assert ("unapproval", "Appointment approval revoked") in await _inbox(APPROVER)
    assert await _inbox(TECH_A) == [
        ("technician_confirmed", "You have been confirmed for a job"),
        ("unapproval", "Appointment unapproved"),
    ]
    assigner_inbox = await _inbox(ASSIGNER)
    assert ("ticket_update", "Ticket updated") in assigner_inbox
    assert ("ticket_update", "Appointment unapproved") in assigner_inbox
    creator_titles = [title for _, title in await _inbox(CREATOR)]
    assert "Ticket updated" not in creator_titles


@pytest.mark.asyncio
async def test_redelivered_audit_event_is_not_notified_twice():
    ticket = await _create_ticket()

    async with open_session() as session:
        first = await notify_watchers(session, ticket["id"], "updated", CREATOR, audit_id="audit-1")
        second = await notify_watchers(session, ticket["id"], "updated", CREATOR, audit_id="audit-1")
        third = await notify_watchers(session, ticket["id"], "updated", CREATOR, audit_id="audit-2")

    assert first == 2
    assert second == 0
    assert third == 2


@pytest.mark.asyncio
async def test_time_window_dedup_without_audit_reference():
    await seed_reference_data()
    draft = NotificationDraft(
        recipient_id=TECH_A,
        type=NotificationType.APPROVAL_REQUEST,
        title="New ticket awaiting approval",
        message="Please review",
        ticket_id="ticket-1",
    )

    async with open_session() as session:
        assert await create_notifications_deduplicated(session, [draft, draft]) == 1
        assert await create_notifications_deduplicated(session, [draft]) == 0
        other_ticket = NotificationDraft(**{**draft.__dict__, "ticket_id": "ticket-2"})
        assert await create_notifications_deduplicated(session, [other_ticket]) == 1
        assert await create_notifications_deduplicated(session, [draft], window_minutes=0) == 1


@pytest.mark.asyncio
async def test_comment_notifications_skip_watchers_already_notified():
    ticket = await _create_ticket()
    earlier_comment = new_id()
    comment_id = new_id()
    async with open_session() as session:
        await add_watcher(session, ticket["id"], TECH_C, added_by=TECH_C)
        session.add(
            TicketComment(id=earlier_comment, ticket_id=ticket["id"], author_id=TECH_B, content="On my way")
        )
        await session.commit()
        session.add(
            TicketComment(id=comment_id, ticket_id=ticket["id"], author_id=TECH_A, content="@Gun please help")
        )
        await session.commit()

    await event_bus.publish(
        CommentAdded(
            ticket_id=ticket["id"],
            actor_id=TECH_A,
            comment_id=comment_id,
            mentioned_ids=[TECH_C, TECH_A],
        )
    )
    await event_bus.drain()

    assert await _inbox(TECH_C) == [("mention", "You were mentioned in a comment")]
    assert await _inbox(TECH_B) == [("new_comment", "New comment")]
    assert await _inbox(TECH_A) == []
    assert await _inbox(CREATOR) == [("ticket_update", "New comment")]


@pytest.mark.asyncio
async def test_list_and_mark_notifications_read():
    await seed_reference_data()
    drafts = [
        NotificationDraft(
            recipient_id=TECH_A,
            type=NotificationType.TICKET_UPDATE,
            title=f"Ticket updated {index}",
            message="The ticket for Bang Na Office was edited" if index % 2 else "Other site",
            audit_id=f"audit-{index}",
        )
        for index in range(5)
    ]
    async with open_session() as session:
        assert await create_notifications_deduplicated(session, drafts) == 5

        first_page = await list_notifications(session, TECH_A, page=1, limit=2)
        assert first_page["total"] == 5
        assert first_page["unread_count"] == 5
        assert len(first_page["items"]) == 2

        matches = await list_notifications(session, TECH_A, search="bang na")
        assert matches["total"] == 2

        read_ids = [item.id for item in first_page["items"]]
        assert await mark_as_read(session, TECH_A, read_ids) == 2
        assert await mark_as_read(session, TECH_A, read_ids) == 0
        assert await mark_as_read(session, TECH_B) == 0

        unread = await list_notifications(session, TECH_A, unread_only=True)
        assert unread["total"] == 3
        assert unread["unread_count"] == 3

        assert await mark_as_read(session, TECH_A) == 3
        assert (await list_notifications(session, TECH_A))["unread_count"] == 0
