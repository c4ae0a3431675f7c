"""In-process domain event channel for ticket side effects."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Type

from dispatchdesk.core.config import get_settings
from dispatchdesk.models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class DomainEvent:
    """Base class for events published by the ticket services."""

    ticket_id: str
    actor_id: str
    created_at: datetime = field(default_factory=utcnow, kw_only=True)

    @property
    def event_type(self) -> str:
        return type(self).__name__

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["event_type"] = self.event_type
        return payload


@dataclass
class TicketCreated(DomainEvent):
    assigner_id: str | None = None
    site_name: str | None = None
    work_type_name: str | None = None


@dataclass
class TicketUpdated(DomainEvent):
    audit_id: str | None = None
    changed_fields: List[str] = field(default_factory=list)


@dataclass
class TicketUnapproved(DomainEvent):
    site_name: str | None = None
    audit_id: str | None = None
    automatic: bool = False


@dataclass
class AppointmentApproved(DomainEvent):
    audit_id: str | None = None


@dataclass
class TechniciansConfirmed(DomainEvent):
    employee_ids: List[str] = field(default_factory=list)
    appointment_date: date | None = None
    audit_id: str | None = None


@dataclass
class CommentAdded(DomainEvent):
    comment_id: str = ""
    mentioned_ids: List[str] = field(default_factory=list)
    audit_id: str | None = None


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """Publish events to subscribers without blocking the publisher.

    Handlers run as background tasks. A failing handler is logged and never
    affects the publisher or the other handlers. Only the most recent
    ``history_limit`` events are kept for inspection.
    """

    def __init__(self, history_limit: int = 1000) -> None:
        self._lock = asyncio.Lock()
        self._events: Deque[DomainEvent] = deque(maxlen=history_limit)
        self._handlers: Dict[Type[DomainEvent], List[EventHandler]] = {}
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    def clear_subscribers(self) -> None:
        self._handlers.clear()

    async def publish(self, event: DomainEvent) -> None:
        async with self._lock:
            self._events.append(event)
        for handler in list(self._handlers.get(type(event), [])):
            task = asyncio.create_task(self._run(handler, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _run(self, handler: EventHandler, event: DomainEvent) -> None:
        try:
            await handler(event)
        except Exception:
            logger.exception(
                "Handler %s failed for %s on ticket %s",
                getattr(handler, "__name__", repr(handler)),
                event.event_type,
                event.ticket_id,
            )

    async def drain(self) -> None:
        """Wait until every scheduled handler, including chained ones, has finished."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def list_events(self) -> list[DomainEvent]:
        async with self._lock:
            return list(self._events)

    async def reset(self) -> None:
        """Cancel handlers still running and forget the recorded events."""

        running = [task for task in self._pending if not task.done()]
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        self._pending.clear()
        async with self._lock:
            self._events.clear()


event_bus = EventBus(get_settings().event_history_limit)
