"""ticketlinks FastAPI backend: main application entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ticketlinks import config
from ticketlinks.catalog import load_manifest
from ticketlinks.db import connection, migrations
from ticketlinks.observability import initialize as initialize_observability, shutdown as shutdown_observability
from ticketlinks.routers.repos import repos_router
from ticketlinks.routers.sync import ticket_sync_router
from ticketlinks.routers.tickets import tickets_router
from ticketlinks.services.ticket_lookup import TicketLookupService
from ticketlinks.services.ticket_sync import TicketSyncService, create_sync_queue

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("ticketlinks")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("ticketlinks backend starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Load repository catalog manifest
    if config.REPOS_MANIFEST:
        await load_manifest(db, config.REPOS_MANIFEST)

    # 4. Services + sync queue
    ticket_sync = TicketSyncService(db)
    sync_queue = create_sync_queue(ticket_sync)
    await sync_queue.start()
    app.state.ticket_sync = ticket_sync
    app.state.sync_queue = sync_queue
    app.state.ticket_lookup = TicketLookupService(db)

    # 5. Optional resync of every repository (background task)
    if config.SYNC_ALL_ON_STARTUP:
        async def _run_startup_sync() -> None:
            delay = max(0, config.STARTUP_SYNC_DELAY_SECONDS)
            if delay > 0:
                await asyncio.sleep(delay)
            await ticket_sync.enqueue_sync_all_repositories()

        app.state.sync_task = asyncio.create_task(_run_startup_sync())

    yield

    logger.info("ticketlinks backend shutting down")

    if hasattr(app.state, "sync_task"):
        app.state.sync_task.cancel()
        try:
            await app.state.sync_task
        except asyncio.CancelledError:
            pass

    await sync_queue.stop(grace_seconds=config.SYNC_QUEUE_SHUTDOWN_GRACE_SECONDS)
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="ticketlinks API",
    description="Commit ↔ issue-tracker ticket link index",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(tickets_router)
app.include_router(repos_router)
app.include_router(ticket_sync_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    sync_queue = getattr(app.state, "sync_queue", None)
    return {
        "status": "ok",
        "db": "connected" if connection.is_connected() else "disconnected",
        "syncQueue": "running" if sync_queue and sync_queue.is_running else "stopped",
    }
