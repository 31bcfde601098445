"""Ticket lookup API."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from ticketlinks import config
from ticketlinks.models import Principal, TicketAggregate
from ticketlinks.routers.deps import get_lookup_service, get_principal

tickets_router = APIRouter(prefix="/api/tickets", tags=["tickets"])


@tickets_router.get("/{ticket_id}", response_model=TicketAggregate)
async def get_ticket_commits(
    request: Request,
    ticket_id: str,
    page: int = Query(1),
    principal: Principal = Depends(get_principal),
):
    """Commits referencing a ticket, grouped by repository (50 per page)."""
    lookup = get_lookup_service(request)
    return await lookup.find_by_ticket(
        ticket_id,
        principal,
        page=max(page, 1),
        page_size=config.TICKET_PAGE_SIZE,
    )
