from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request

from app.db import get_db


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> UUID:
    """Identify the caller from the ``X-User-Id`` header set by the auth gateway."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return UUID(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid user identity") from exc


def require_admin(
    user_id: UUID = Depends(get_current_user_id),
    x_user_role: str | None = Header(default=None),
) -> UUID:
    if (x_user_role or "").lower() != "admin":
        raise HTTPException(status_code=403, detail="Admin role required")
    return user_id


async def get_raw_body(request: Request) -> bytes:
    return await request.body()


__all__ = [
    "get_db",
    "get_current_user_id",
    "get_raw_body",
    "require_admin",
]
