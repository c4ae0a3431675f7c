import asyncio
import logging

import pytest

from dispatchdesk.core.events import (
    EventBus,
    TicketCreated,
    TicketUpdated,
)


@pytest.mark.asyncio
async def test_publish_records_event_and_runs_subscribers():
    bus = EventBus()
    seen: list[str] = []

    async def handler(event):
        await asyncio.sleep(0)
        seen.append(event.ticket_id)

    bus.subscribe(TicketCreated, handler)
    bus.subscribe(TicketCreated, handler)
    await bus.publish(TicketCreated(ticket_id="ticket-1", actor_id="emp-1"))
    await bus.publish(TicketUpdated(ticket_id="ticket-1", actor_id="emp-1"))
    await bus.drain()

    assert seen == ["ticket-1"]
    events = await bus.list_events()
    assert [event.event_type for event in events] == ["TicketCreated", "TicketUpdated"]
    assert events[0].as_dict()["event_type"] == "TicketCreated"


@pytest.mark.asyncio
async def test_failing_handler_is_logged_and_isolated(caplog):
    bus = EventBus()
    seen: list[str] = []

    async def broken(event):
        raise RuntimeError("boom")

    async def healthy(event):
        seen.append(event.ticket_id)

    bus.subscribe(TicketCreated, broken)
    bus.subscribe(TicketCreated, healthy)

    with caplog.at_level(logging.ERROR, logger="dispatchdesk.core.events"):
        await bus.publish(TicketCreated(ticket_id="ticket-2", actor_id="emp-1"))
        await bus.drain()

    assert seen == ["ticket-2"]
    assert "Handler broken failed for TicketCreated on ticket ticket-2" in caplog.text


@pytest.mark.asyncio
async def test_drain_waits_for_chained_events():
    bus = EventBus()
    seen: list[str] = []

    async def on_created(event):
        await bus.publish(TicketUpdated(ticket_id=event.ticket_id, actor_id=event.actor_id))

    async def on_updated(event):
        await asyncio.sleep(0.01)
        seen.append("updated")

    bus.subscribe(TicketCreated, on_created)
    bus.subscribe(TicketUpdated, on_updated)
    await bus.publish(TicketCreated(ticket_id="ticket-3", actor_id="emp-1"))
    await bus.drain()

    assert seen == ["updated"]


@pytest.mark.asyncio
async def test_reset_and_clear_subscribers():
    bus = EventBus()
    seen: list[str] = []

    async def handler(event):
        seen.append(event.ticket_id)

    bus.subscribe(TicketCreated, handler)
    await bus.publish(TicketCreated(ticket_id="ticket-4", actor_id="emp-1"))
    await bus.drain()
    await bus.reset()
    bus.clear_subscribers()
    await bus.publish(TicketCreated(ticket_id="ticket-5", actor_id="emp-1"))
    await bus.drain()

    assert seen == ["ticket-4"]
    assert [event.ticket_id for event in await bus.list_events()] == ["ticket-5"]


@pytest.mark.asyncio
async def test_event_history_keeps_only_recent_events():
    bus = EventBus(history_limit=3)

    for index in range(50):
        await bus.publish(TicketCreated(ticket_id=f"ticket-{index}", actor_id="emp-1"))

    assert [event.ticket_id for event in await bus.list_events()] == [
        "ticket-47",
        "ticket-48",
        "ticket-49",
    ]


@pytest.mark.asyncio
async def test_reset_cancels_running_handlers():
    bus = EventBus()
    started = asyncio.Event()
    cancelled: list[str] = []

    async def slow(event):
        started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.append(event.ticket_id)
            raise

    bus.subscribe(TicketCreated, slow)
    await bus.publish(TicketCreated(ticket_id="ticket-6", actor_id="emp-1"))
    await started.wait()
    await bus.reset()

    assert cancelled == ["ticket-6"]
    await bus.drain()
    assert await bus.list_events() == []
