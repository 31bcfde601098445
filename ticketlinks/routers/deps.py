"""Request-scoped helpers shared by the routers."""
from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, Request

from ticketlinks.models import Principal

_TRUTHY = {"1", "true", "yes", "on"}


def get_principal(
    x_principal_id: Optional[str] = Header(None),
    x_principal_admin: Optional[str] = Header(None),
) -> Principal:
    """Build the requesting principal from the headers set by the auth proxy."""
    principal_id: int | None = None
    raw_id = (x_principal_id or "").strip()
    if raw_id:
        try:
            principal_id = int(raw_id)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid X-Principal-Id: {raw_id}")
    is_admin = (x_principal_admin or "").strip().lower() in _TRUTHY
    # Anonymous requests are never admin.
    return Principal(id=principal_id, isAdmin=is_admin and principal_id is not None)


def get_sync_service(request: Request):
    service = getattr(request.app.state, "ticket_sync", None)
    if not service:
        raise HTTPException(status_code=503, detail="Ticket sync service not initialized")
    return service


def get_lookup_service(request: Request):
    service = getattr(request.app.state, "ticket_lookup", None)
    if not service:
        raise HTTPException(status_code=503, detail="Ticket lookup service not initialized")
    return service
