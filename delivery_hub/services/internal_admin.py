from fastapi import Header, HTTPException

from delivery_hub.core.config import settings


async def require_internal_admin(x_internal_admin_key: str | None = Header(default=None)) -> None:
    if not x_internal_admin_key or x_internal_admin_key != settings.internal_admin_key:
        raise HTTPException(status_code=403, detail="Internal admin key required")


async def admin_actor(x_admin_actor: str | None = Header(default=None)) -> str:
    # reviewer identity recorded on staging rows and log entries
    return (x_admin_actor or "internal").strip() or "internal"
