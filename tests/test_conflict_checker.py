import asyncio
from datetime import date, time

import pytest

from dispatchdesk.core.config import get_settings
from dispatchdesk.core.db import dispose_engine, open_session
from dispatchdesk.core.events import event_bus
from dispatchdesk.schemas import TicketCreateInput
from dispatchdesk.services.conflict_checker import appointment_overlaps, find_conflicting_employees
from dispatchdesk.services.tickets import TicketOrchestrator
from tests.seed_data import CREATOR, TECH_A, TECH_B, TECH_C, seed_reference_data, ticket_payload


@pytest.fixture(autouse=True)
def configure_database(tmp_path, monkeypatch):
    db_path = tmp_path / "conflicts.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    get_settings.cache_clear()
    asyncio.run(dispose_engine())
    event_bus.clear_subscribers()
    yield
    asyncio.run(event_bus.reset())
    asyncio.run(dispose_engine())
    get_settings.cache_clear()


DAY_START = time(0, 0)
DAY_END = time(23, 59, 59)


@pytest.mark.parametrize(
    ("appointment_type", "start", "end", "window", "expected"),
    [
        ("call_to_schedule", time(9), time(10), (DAY_START, DAY_END), False),
        ("time_range", time(9), time(10), (time(9, 30), time(11)), True),
        ("time_range", time(9), time(10), (time(10), time(11)), False),
        ("time_range", time(9), time(9), (DAY_START, DAY_END), False),
        ("time_range", None, None, (time(20), time(21)), True),
        ("half_morning", None, None, (time(11), time(14)), True),
        ("half_morning", None, None, (time(12), time(14)), False),
        ("half_afternoon", None, None, (time(9), time(12)), False),
        ("full_day", None, None, (time(17), time(18)), True),
        ("backlog", None, None, (DAY_START, DAY_END), False),
        (None, None, None, (DAY_START, DAY_END), False),
        (None, time(9), time(10), (DAY_START, DAY_END), False),
    ],
)
def test_appointment_overlaps(appointment_type, start, end, window, expected):
    assert appointment_overlaps(appointment_type, start, end, *window) is expected


async def _ticket(appointment, employee_ids):
    async with open_session() as session:
        return await TicketOrchestrator(session).create(
            TicketCreateInput.model_validate(
                ticket_payload(appointment=appointment, employee_ids=employee_ids)
            ),
            CREATOR,
        )


@pytest.mark.asyncio
async def test_find_conflicting_employees_on_same_date():
    await seed_reference_data()
    morning = await _ticket(
        {"appointment_date": "2026-11-02", "appointment_type": "half_morning"}, [TECH_A]
    )
    await _ticket(
        {
            "appointment_date": "2026-11-02",
            "appointment_type": "time_range",
            "appointment_time_start": "14:00:00",
            "appointment_time_end": "16:00:00",
        },
        [TECH_B],
    )
    await _ticket({"appointment_date": "2026-11-03", "appointment_type": "full_day"}, [TECH_C])
    await _ticket(
        {
            "appointment_date": "2026-11-02",
            "appointment_time_start": "09:00:00",
            "appointment_time_end": "10:00:00",
        },
        [TECH_C],
    )

    async with open_session() as session:
        whole_day = await find_conflicting_employees(
            session, [TECH_C, TECH_B, TECH_A, TECH_A], date(2026, 11, 2)
        )
        afternoon = await find_conflicting_employees(
            session,
            [TECH_A, TECH_B],
            date(2026, 11, 2),
            time_start=time(13),
            time_end=time(15),
        )
        excluding_morning = await find_conflicting_employees(
            session, [TECH_A, TECH_B], date(2026, 11, 2), exclude_ticket_id=morning["id"]
        )
        no_date = await find_conflicting_employees(session, [TECH_A], None)

    assert whole_day == [TECH_A, TECH_B]
    assert afternoon == [TECH_B]
    assert excluding_morning == [TECH_B]
    assert no_date == []
