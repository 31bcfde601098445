"""Repository catalog API and the repository lifecycle hooks that drive ticket syncs."""
from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from ticketlinks.db import connection
from ticketlinks.db.factory import get_catalog_repository
from ticketlinks.errors import QueueClosedError, RepositoryNotFoundError
from ticketlinks.models import MirrorInfo, Repository
from ticketlinks.routers.deps import get_sync_service

logger = logging.getLogger("ticketlinks.repos")

repos_router = APIRouter(prefix="/api/repos", tags=["repos"])


class MirrorSpec(BaseModel):
    remoteAddress: str = ""
    intervalSeconds: int = Field(0, ge=0)


class RepositoryCreate(BaseModel):
    id: int = Field(..., ge=1)
    ownerId: int = 0
    ownerName: str = ""
    name: str = Field(..., min_length=1)
    path: str = Field(..., min_length=1)
    isPrivate: bool = False
    ownerVisibility: str = Field("public", pattern="^(public|limited|private)$")
    isEmpty: bool = False
    mirror: Optional[MirrorSpec] = None


class MirrorSyncedRequest(BaseModel):
    updatedUnix: Optional[int] = None
    nextUpdateUnix: Optional[int] = None


class TicketSyncRequest(BaseModel):
    background: bool = True
    trigger: str = "api"


def _enqueue(request: Request, repo_id: int) -> bool:
    sync_service = get_sync_service(request)
    try:
        return sync_service.enqueue_sync(repo_id)
    except QueueClosedError as e:
        raise HTTPException(status_code=503, detail=str(e))


async def _require_repository(repo_id: int) -> Repository:
    db = await connection.get_connection()
    repo = await get_catalog_repository(db).get_by_id(repo_id)
    if not repo:
        raise HTTPException(status_code=404, detail=f"Repository {repo_id} not found")
    return repo


@repos_router.get("", response_model=list[Repository])
async def list_repositories():
    """List every repository in the catalog."""
    db = await connection.get_connection()
    return await get_catalog_repository(db).list_all()


@repos_router.post("")
async def register_repository(request: Request, body: RepositoryCreate):
    """Register (or update) a repository and schedule its first ticket sync."""
    db = await connection.get_connection()
    catalog_repo = get_catalog_repository(db)
    repo = Repository(
        id=body.id,
        ownerId=body.ownerId,
        ownerName=body.ownerName,
        name=body.name,
        path=body.path,
        isPrivate=body.isPrivate,
        ownerVisibility=body.ownerVisibility,
        isEmpty=body.isEmpty,
        isMirror=body.mirror is not None,
    )
    await catalog_repo.upsert(repo)
    if body.mirror is not None:
        await catalog_repo.upsert_mirror(
            MirrorInfo(
                repoId=repo.id,
                remoteAddress=body.mirror.remoteAddress,
                intervalSeconds=body.mirror.intervalSeconds,
            )
        )

    queued = False if repo.isEmpty else _enqueue(request, repo.id)
    stored = await catalog_repo.get_by_id(repo.id)
    return {"status": "ok", "repository": stored, "syncQueued": queued}


@repos_router.delete("/{repo_id}")
async def delete_repository(request: Request, repo_id: int):
    """Drop a repository's ticket links and its catalog row in one transaction."""
    sync_service = get_sync_service(request)
    await _require_repository(repo_id)
    deleted_links = await sync_service.delete_all_for_repository(repo_id, remove_repository=True)
    logger.info("Repository %d removed (%d ticket links dropped)", repo_id, deleted_links)
    return {"status": "ok", "repoId": repo_id, "deletedLinks": deleted_links}


@repos_router.post("/{repo_id}/mirror-synced")
async def mirror_synced(request: Request, repo_id: int, body: MirrorSyncedRequest):
    """Pull-mirror hook: record the mirror update and resync the repository's links."""
    repo = await _require_repository(repo_id)
    if not repo.isMirror:
        raise HTTPException(status_code=400, detail=f"Repository {repo_id} is not a pull mirror")

    db = await connection.get_connection()
    catalog_repo = get_catalog_repository(db)
    mirror = await catalog_repo.get_mirror(repo_id) or MirrorInfo(repoId=repo_id)
    mirror.updatedUnix = body.updatedUnix if body.updatedUnix is not None else int(time.time())
    if body.nextUpdateUnix is not None:
        mirror.nextUpdateUnix = body.nextUpdateUnix
    elif mirror.intervalSeconds > 0:
        mirror.nextUpdateUnix = mirror.updatedUnix + mirror.intervalSeconds
    await catalog_repo.upsert_mirror(mirror)

    queued = _enqueue(request, repo_id)
    return {"status": "ok", "repoId": repo_id, "syncQueued": queued, "mirror": mirror}


@repos_router.post("/{repo_id}/ticket-sync")
async def trigger_ticket_sync(request: Request, repo_id: int, body: Optional[TicketSyncRequest] = None):
    """Queue a ticket-link resync, or run it in the foreground when ``background`` is false."""
    body = body or TicketSyncRequest()
    sync_service = get_sync_service(request)

    if body.background:
        await _require_repository(repo_id)
        queued = _enqueue(request, repo_id)
        return {"status": "ok", "mode": "background", "repoId": repo_id, "queued": queued}

    try:
        stats = await sync_service.sync_repository(repo_id, trigger=body.trigger)
    except RepositoryNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    operation_id = str(stats.get("operation_id") or "")
    operation = await sync_service.get_operation(operation_id) if operation_id else None
    return {
        "status": "ok",
        "mode": "foreground",
        "operationId": operation_id,
        "stats": stats,
        "operation": operation,
    }
