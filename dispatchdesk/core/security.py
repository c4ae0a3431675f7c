from __future__ import annotations

from fastapi import Header, HTTPException, status


async def require_actor(
    x_employee_id: str | None = Header(default=None, alias="X-Employee-Id"),
) -> str:
    """Return the acting employee id supplied by the upstream authentication layer."""

    actor_id = (x_employee_id or "").strip()
    if not actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Employee identity required",
        )
    return actor_id
