"""Repository history → ticket link index synchronization.

Parses the full commit log of a repository, reconciles it against the
persisted links and applies the delta in a single transaction. Syncs are
normally requested through the deduplicating queue so that at most one sync
per repository runs at a time.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from ticketlinks import config
from ticketlinks.db.factory import get_catalog_repository, get_link_repository
from ticketlinks.errors import CommitLogParseError, QueueClosedError, RepositoryNotFoundError
from ticketlinks.observability import record_link_changes, record_parser_failure, record_sync, start_span
from ticketlinks.reconcile import reconcile
from ticketlinks.services.sync_queue import DedupWorkQueue
from ticketlinks.vcs import GitRepository

logger = logging.getLogger("ticketlinks.sync")

GitOpener = Callable[[str], Awaitable[GitRepository]]


@dataclass(frozen=True)
class SyncTicketLinksJob:
    repo_id: int


class TicketSyncService:
    """Owns the only write path to the commit ↔ ticket link table."""

    def __init__(
        self,
        db: Any,  # Union[aiosqlite.Connection, asyncpg.Pool]
        *,
        git_opener: GitOpener | None = None,
        job_timeout_seconds: int | None = None,
    ):
        self.db = db
        self.link_repo = get_link_repository(db)
        self.catalog_repo = get_catalog_repository(db)
        self._open_git = git_opener or GitRepository.open
        timeout = config.SYNC_JOB_TIMEOUT_SECONDS if job_timeout_seconds is None else job_timeout_seconds
        self._job_timeout = timeout if timeout > 0 else None
        self._queue: DedupWorkQueue[SyncTicketLinksJob] | None = None
        self._repo_locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = 40

    # ── Queue integration ──────────────────────────────────────────

    def bind_queue(self, queue: DedupWorkQueue[SyncTicketLinksJob]) -> None:
        self._queue = queue

    @property
    def queue(self) -> DedupWorkQueue[SyncTicketLinksJob] | None:
        return self._queue

    async def handle_job(self, job: SyncTicketLinksJob) -> None:
        """Queue handler: run one sync, bounded by the optional job timeout."""
        if self._job_timeout:
            await asyncio.wait_for(
                self.sync_repository(job.repo_id, trigger="queue"),
                timeout=self._job_timeout,
            )
        else:
            await self.sync_repository(job.repo_id, trigger="queue")

    def enqueue_sync(self, repo_id: int) -> bool:
        """Fire-and-forget sync request. Returns False when an identical job was already waiting."""
        if self._queue is None:
            raise QueueClosedError("ticket sync queue is not initialized")
        return self._queue.push(SyncTicketLinksJob(repo_id=repo_id))

    async def enqueue_sync_all_repositories(self, principal_id: int | None = None) -> int:
        """Enqueue every non-empty repository, streaming the catalog in id order."""
        if self._queue is None:
            raise QueueClosedError("ticket sync queue is not initialized")
        enqueued = 0
        async for repo_id in self.catalog_repo.iter_non_empty_ids(config.CATALOG_BATCH_SIZE):
            if self._queue.push(SyncTicketLinksJob(repo_id=repo_id)):
                enqueued += 1
        logger.info(
            "Enqueued %d repositories for ticket sync (requested by principal=%s)",
            enqueued, principal_id,
        )
        return enqueued

    # ── Sync / delete ──────────────────────────────────────────────

    def _repo_lock(self, repo_id: int) -> asyncio.Lock:
        """Lock serializing every writer of one repository within this process."""
        lock = self._repo_locks.get(repo_id)
        if lock is None:
            lock = asyncio.Lock()
            self._repo_locks[repo_id] = lock
        return lock

    async def sync_repository(
        self,
        repo_id: int,
        *,
        trigger: str = "api",
        operation_id: str | None = None,
    ) -> dict[str, Any]:
        """Rebuild the link index of one repository from its full history.

        The persisted rows are loaded, diffed and rewritten inside a single
        transaction; any failure leaves the index exactly as it was.
        """
        stats: dict[str, Any] = {
            "repo_id": repo_id,
            "parsed": 0,
            "inserted": 0,
            "deleted": 0,
            "duration_ms": 0,
            "operation_id": "",
        }
        if not operation_id:
            operation_id = await self._start_operation("ticket_sync", repo_id, trigger)
        stats["operation_id"] = operation_id

        t0 = time.monotonic()
        try:
            with start_span("ticketlinks.sync_repository", {"repo.id": repo_id, "sync.trigger": trigger}):
                async with self._repo_lock(repo_id):
                    repo = await self.catalog_repo.get_by_id(repo_id)
                    if repo is None:
                        raise RepositoryNotFoundError(repo_id)
                    logger.debug("Syncing ticket links in Repo[%d:%s]", repo.id, repo.full_name)

                    await self._update_operation(operation_id, phase="parsing", message="Reading commit log")
                    git_repo = await self._open_git(repo.path)
                    try:
                        records = await git_repo.ticket_commits()
                    except CommitLogParseError:
                        record_parser_failure("commit_log")
                        raise
                    stats["parsed"] = len(records)

                    await self._update_operation(
                        operation_id,
                        phase="reconciling",
                        message="Applying link delta",
                        counters={"parsed": stats["parsed"]},
                    )
                    async with self.link_repo.transaction() as tx:
                        # The repository may have been removed while git was running.
                        if not await tx.claim_repository(repo_id):
                            raise RepositoryNotFoundError(repo_id)
                        persisted = await tx.list_for_repo(repo_id)
                        delta = reconcile(records, persisted)
                        for record in delta.to_insert:
                            await tx.insert(repo_id, record)
                        if delta.to_delete_ids:
                            await tx.delete_ids(repo_id, delta.to_delete_ids)
                    stats["inserted"] = len(delta.to_insert)
                    stats["deleted"] = len(delta.to_delete_ids)
        except BaseException as exc:
            elapsed = int((time.monotonic() - t0) * 1000)
            stats["duration_ms"] = elapsed
            record_sync("failed", elapsed, trigger=trigger)
            await self._finish_operation(
                operation_id,
                status="failed",
                stats=stats,
                error=str(exc) or type(exc).__name__,
            )
            raise

        elapsed = int((time.monotonic() - t0) * 1000)
        stats["duration_ms"] = elapsed
        record_sync("completed", elapsed, trigger=trigger)
        record_link_changes(inserted=stats["inserted"], deleted=stats["deleted"])
        await self._finish_operation(operation_id, status="completed", stats=stats)
        logger.info(
            f"Ticket sync complete for repo {repo_id}: "
            f"{stats['parsed']} ticket commits, "
            f"{stats['inserted']} inserted, "
            f"{stats['deleted']} deleted "
            f"in {elapsed}ms"
        )
        return stats

    async def delete_all_for_repository(
        self,
        repo_id: int,
        *,
        trigger: str = "api",
        remove_repository: bool = False,
    ) -> int:
        """Remove every link of a repository.

        Waits for an in-flight sync of the same repository. With
        ``remove_repository`` the catalog row is deleted in the same
        transaction, so a sync that starts afterwards finds no repository.
        """
        operation_id = await self._start_operation("ticket_delete", repo_id, trigger)
        try:
            async with self._repo_lock(repo_id):
                async with self.link_repo.transaction() as tx:
                    deleted = await tx.delete_all(repo_id)
                    if remove_repository:
                        await tx.delete_repository(repo_id)
        except BaseException as exc:
            await self._finish_operation(operation_id, status="failed", error=str(exc) or type(exc).__name__)
            raise
        record_link_changes(inserted=0, deleted=deleted)
        await self._finish_operation(operation_id, status="completed", stats={"deleted": deleted})
        logger.debug("Deleted %d ticket links of repo %d", deleted, repo_id)
        return deleted

    # ── Operation tracking ─────────────────────────────────────────

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        async with self._ops_lock:
            op_ids = self._operation_order[: max(1, limit)]
            return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        async with self._ops_lock:
            op = self._operations.get(operation_id)
            return copy.deepcopy(op) if op else None

    async def get_observability_snapshot(self) -> dict[str, Any]:
        async with self._ops_lock:
            active = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order
                if op_id in self._active_operation_ids and op_id in self._operations
            ]
            latest = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order[:5]
                if op_id in self._operations
            ]
        return {
            "activeOperationCount": len(active),
            "activeOperations": active,
            "recentOperations": latest,
            "trackedOperationCount": len(self._operations),
            "queue": self._queue.snapshot() if self._queue else None,
        }

    async def _start_operation(self, kind: str, repo_id: int, trigger: str) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            "id": op_id,
            "kind": kind,
            "repoId": repo_id,
            "trigger": trigger,
            "status": "running",
            "phase": "queued",
            "message": "",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "counters": {},
            "stats": {},
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history:]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (repo=%s trigger=%s)", op_id, kind, repo_id, trigger)
        return op_id

    async def _update_operation(
        self,
        operation_id: str,
        *,
        phase: str | None = None,
        message: str | None = None,
        counters: dict[str, Any] | None = None,
    ) -> None:
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            if phase:
                operation["phase"] = phase
            if message is not None:
                operation["message"] = message
            if counters:
                operation.setdefault("counters", {}).update(counters)
            operation["updatedAt"] = datetime.now(timezone.utc).isoformat()

    async def _finish_operation(
        self,
        operation_id: str,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        now = datetime.now(timezone.utc)
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = status
            operation["phase"] = status
            operation["updatedAt"] = now.isoformat()
            operation["finishedAt"] = now.isoformat()
            if stats:
                operation.setdefault("stats", {}).update(stats)
            if error:
                operation["error"] = error
            started_at = datetime.fromisoformat(operation["startedAt"])
            operation["durationMs"] = max(0, int((now - started_at).total_seconds() * 1000))
            self._active_operation_ids.discard(operation_id)

        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)


def create_sync_queue(
    service: TicketSyncService,
    *,
    name: str | None = None,
    workers: int | None = None,
) -> DedupWorkQueue[SyncTicketLinksJob]:
    """Build the ticket sync queue around ``service`` and bind it for enqueueing."""
    queue: DedupWorkQueue[SyncTicketLinksJob] = DedupWorkQueue(
        name or config.SYNC_QUEUE_NAME,
        service.handle_job,
        workers=workers or config.SYNC_QUEUE_WORKERS,
    )
    service.bind_queue(queue)
    return queue
