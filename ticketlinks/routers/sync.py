"""Ticket sync queue status and bulk resync API."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ticketlinks.errors import QueueClosedError
from ticketlinks.models import Principal
from ticketlinks.routers.deps import get_principal, get_sync_service

ticket_sync_router = APIRouter(prefix="/api/ticket-sync", tags=["ticket-sync"])


@ticket_sync_router.post("/all")
async def sync_all_repositories(request: Request, principal: Principal = Depends(get_principal)):
    """Queue a ticket-link resync of every non-empty repository (admin only)."""
    if not principal.isAdmin:
        raise HTTPException(status_code=403, detail="Admin principal required")
    sync_service = get_sync_service(request)
    try:
        enqueued = await sync_service.enqueue_sync_all_repositories(principal.id)
    except QueueClosedError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"status": "ok", "enqueued": enqueued}


@ticket_sync_router.get("/status")
async def get_sync_status(request: Request):
    """Return queue state plus live and recent sync operations."""
    sync_service = get_sync_service(request)
    observability = await sync_service.get_observability_snapshot()
    queue = observability.get("queue") or {}
    return {
        "status": "active" if queue.get("running") else "stopped",
        "queue": queue,
        "operations": observability,
    }


@ticket_sync_router.get("/operations")
async def list_sync_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    """List recent sync/delete operations."""
    sync_service = get_sync_service(request)
    operations = await sync_service.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@ticket_sync_router.get("/operations/{operation_id}")
async def get_sync_operation(request: Request, operation_id: str):
    """Get one sync/delete operation by ID."""
    sync_service = get_sync_service(request)
    operation = await sync_service.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return operation
