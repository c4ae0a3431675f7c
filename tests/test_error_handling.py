import asyncio
import logging

import pytest

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatchdesk.core.config import get_settings
from dispatchdesk.core.db import dispose_engine, open_session
from dispatchdesk.core.errors import DatabaseError, ValidationError
from dispatchdesk.core.events import event_bus
from dispatchdesk.models import (
    Notification,
    Ticket,
    TicketAudit,
    TicketEmployee,
    TicketEmployeeConfirmation,
    TicketMerchandise,
)
from dispatchdesk.schemas import TicketCreateInput, TicketUpdateInput
from dispatchdesk.services.appointments import set_appointment_approval
from dispatchdesk.services.notifications import (
    NotificationDraft,
    NotificationType,
    create_notifications_deduplicated,
)
from dispatchdesk.services.technician_confirmation import confirm_technicians
from dispatchdesk.services.tickets import TicketOrchestrator
from tests.seed_data import APPROVER, CREATOR, MERCH_A, TECH_A, TECH_C, seed_reference_data, ticket_payload


@pytest.fixture(autouse=True)
def configure_database(tmp_path, monkeypatch):
    db_path = tmp_path / "errors.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("DISPATCH_DESK_SUMMARY_ENABLED", "0")
    get_settings.cache_clear()
    asyncio.run(dispose_engine())
    event_bus.clear_subscribers()
    asyncio.run(event_bus.reset())
    yield
    asyncio.run(event_bus.reset())
    asyncio.run(dispose_engine())
    get_settings.cache_clear()


def _unique_violation(table):
    return IntegrityError(
        f"INSERT INTO {table}", {}, Exception(f"UNIQUE constraint failed: {table}.date")
    )


def _fail_commit_when_pending(monkeypatch, model, error):
    """Make ``commit`` raise ``error`` while an instance of ``model`` is pending."""

    original_commit = AsyncSession.commit

    async def commit(self):
        if any(isinstance(instance, model) for instance in self.new):
            raise error
        return await original_commit(self)

    monkeypatch.setattr(AsyncSession, "commit", commit)


async def _create_ticket(**overrides):
    async with open_session() as session:
        return await TicketOrchestrator(session).create(
            TicketCreateInput.model_validate(ticket_payload(**overrides)), CREATOR
        )


async def _count(model):
    async with open_session() as session:
        return len((await session.execute(select(model))).scalars().all())


@pytest.mark.asyncio
async def test_unique_violation_on_assignment_becomes_validation_error(monkeypatch):
    await seed_reference_data()
    _fail_commit_when_pending(monkeypatch, TicketEmployee, _unique_violation("ticket_employees"))

    with pytest.raises(ValidationError) as excinfo:
        await _create_ticket()

    assert excinfo.value.message == "Employee is already assigned to this ticket on this date"
    assert excinfo.value.status_code == 400
    assert await _count(TicketEmployee) == 0
    assert await _count(Ticket) == 1


@pytest.mark.asyncio
async def test_unique_violation_on_update_assignment_becomes_validation_error(monkeypatch):
    await seed_reference_data()
    ticket = await _create_ticket()
    _fail_commit_when_pending(monkeypatch, TicketEmployee, _unique_violation("ticket_employees"))

    with pytest.raises(ValidationError) as excinfo:
        async with open_session() as session:
            await TicketOrchestrator(session).update(
                ticket["id"], TicketUpdateInput.model_validate({"employee_ids": [TECH_C]}), CREATOR
            )

    assert "already assigned" in excinfo.value.message


@pytest.mark.asyncio
async def test_other_integrity_errors_become_database_errors(monkeypatch):
    await seed_reference_data()
    _fail_commit_when_pending(
        monkeypatch,
        TicketEmployee,
        IntegrityError("INSERT INTO ticket_employees", {}, Exception("FOREIGN KEY constraint failed")),
    )

    with pytest.raises(DatabaseError) as excinfo:
        await _create_ticket()

    assert excinfo.value.message.startswith("Failed to assign employees")
    assert excinfo.value.code == "DATABASE_ERROR"


@pytest.mark.asyncio
async def test_store_failure_in_a_step_is_wrapped_and_keeps_earlier_steps(monkeypatch):
    await seed_reference_data()
    _fail_commit_when_pending(
        monkeypatch,
        TicketMerchandise,
        OperationalError("INSERT INTO ticket_merchandise", {}, Exception("database is locked")),
    )

    with pytest.raises(DatabaseError) as excinfo:
        await _create_ticket(merchandise_ids=[MERCH_A])

    assert excinfo.value.message.startswith("Failed to link equipment")
    assert "database is locked" in excinfo.value.message
    assert excinfo.value.status_code == 500
    assert await _count(TicketMerchandise) == 0
    assert await _count(Ticket) == 1
    assert await _count(TicketEmployee) == 2


async def _approved_ticket():
    await seed_reference_data()
    ticket = await _create_ticket()
    async with open_session() as session:
        await set_appointment_approval(session, ticket["id"], APPROVER)
    return ticket


@pytest.mark.asyncio
async def test_unique_violation_on_confirmation_becomes_validation_error(monkeypatch):
    ticket = await _approved_ticket()
    _fail_commit_when_pending(
        monkeypatch, TicketEmployeeConfirmation, _unique_violation("ticket_employee_confirmations")
    )

    with pytest.raises(ValidationError) as excinfo:
        async with open_session() as session:
            await confirm_technicians(session, ticket["id"], [TECH_A], APPROVER)

    assert excinfo.value.message == "Technician is already confirmed on this date"
    assert await _count(TicketEmployeeConfirmation) == 0


@pytest.mark.asyncio
async def test_store_failure_on_confirmation_becomes_database_error(monkeypatch):
    ticket = await _approved_ticket()
    _fail_commit_when_pending(
        monkeypatch,
        TicketEmployeeConfirmation,
        OperationalError("INSERT", {}, Exception("disk I/O error")),
    )

    with pytest.raises(DatabaseError) as excinfo:
        async with open_session() as session:
            await confirm_technicians(session, ticket["id"], [TECH_A], APPROVER)

    assert excinfo.value.message.startswith("Failed to confirm technicians")


@pytest.mark.asyncio
async def test_audit_write_failure_does_not_fail_the_operation(monkeypatch, caplog):
    await seed_reference_data()
    _fail_commit_when_pending(
        monkeypatch, TicketAudit, OperationalError("INSERT INTO ticket_audit", {}, Exception("disk full"))
    )

    with caplog.at_level(logging.ERROR):
        ticket = await _create_ticket()
        async with open_session() as session:
            updated = await TicketOrchestrator(session).update(
                ticket["id"],
                TicketUpdateInput.model_validate({"ticket": {"details": "Swap fan"}}),
                CREATOR,
            )

    assert updated["details"] == "Swap fan"
    assert await _count(TicketAudit) == 0
    assert f"Failed to record created audit entry for ticket {ticket['id']}" in caplog.text
    assert f"Failed to record updated audit entry for ticket {ticket['id']}" in caplog.text


@pytest.mark.asyncio
async def test_notification_insert_failure_is_logged_not_raised(monkeypatch, caplog):
    await seed_reference_data()
    _fail_commit_when_pending(
        monkeypatch, Notification, OperationalError("INSERT INTO notifications", {}, Exception("locked"))
    )
    drafts = [
        NotificationDraft(
            recipient_id=TECH_C,
            type=NotificationType.TICKET_UPDATE,
            title="Ticket updated",
            message="Bang Na Office",
            audit_id="audit-1",
        )
    ]

    with caplog.at_level(logging.ERROR):
        async with open_session() as session:
            created = await create_notifications_deduplicated(session, drafts)

    assert created == 0
    assert await _count(Notification) == 0
    assert "Failed to create 1 notifications" in caplog.text
