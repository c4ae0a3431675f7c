from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dispatchdesk.api.routers import notifications as notifications_router
from dispatchdesk.api.routers import tickets as tickets_router
from dispatchdesk.core.config import get_settings
from dispatchdesk.core.db import dispose_engine, get_engine, open_session
from dispatchdesk.core.errors import ServiceError
from dispatchdesk.core.events import event_bus
from dispatchdesk.services.event_handlers import register_event_handlers
from dispatchdesk.services.location_resolver import LocationResolver

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    await get_engine()
    resolver = LocationResolver(open_session)
    if settings.location_eager_load:
        await resolver.warm()
    app.state.location_resolver = resolver
    event_bus.clear_subscribers()
    register_event_handlers(event_bus)
    yield
    await event_bus.drain()
    event_bus.clear_subscribers()
    await dispose_engine()


settings = get_settings()
app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.include_router(tickets_router.router)
app.include_router(notifications_router.router)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.as_dict()})


@app.get("/health", include_in_schema=False)
async def health() -> dict[str, str]:
    return {"status": "ok"}
