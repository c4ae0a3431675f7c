from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from dispatchdesk.core.db import get_session
from dispatchdesk.core.security import require_actor
from dispatchdesk.schemas import NotificationMarkRead, NotificationPage
from dispatchdesk.services.notifications import list_notifications, mark_as_read

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])


@router.get("", response_model=NotificationPage)
async def get_notifications(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    unread_only: bool = Query(default=False),
    search: str | None = Query(default=None),
    actor_id: str = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
) -> NotificationPage:
    result = await list_notifications(
        session,
        actor_id,
        page=page,
        limit=limit,
        unread_only=unread_only,
        search=search,
    )
    return NotificationPage.model_validate(result, from_attributes=True)


@router.post("/read")
async def mark_notifications_read(
    payload: NotificationMarkRead,
    actor_id: str = Depends(require_actor),
    session: AsyncSession = Depends(get_session),
) -> dict[str, int]:
    updated = await mark_as_read(session, actor_id, payload.notification_ids)
    return {"updated": updated}
