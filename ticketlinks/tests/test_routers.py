import types
import unittest
from unittest.mock import AsyncMock, patch

import aiosqlite
from fastapi import HTTPException

from ticketlinks.db.repositories import SqliteRepositoryCatalog
from ticketlinks.db.sqlite_migrations import run_migrations
from ticketlinks.errors import QueueClosedError, RepositoryNotFoundError
from ticketlinks.models import MirrorInfo, Principal, Repository, TicketAggregate
from ticketlinks.routers import deps
from ticketlinks.routers import repos as repos_router
from ticketlinks.routers import sync as sync_router
from ticketlinks.routers import tickets as tickets_router


class _FakeSyncService:
    def __init__(self) -> None:
        self.enqueued: list[int] = []
        self.deleted: list[tuple[int, bool]] = []
        self.synced: list[tuple[int, str]] = []
        self.closed = False
        self.missing: set[int] = set()

    def enqueue_sync(self, repo_id):
        if self.closed:
            raise QueueClosedError("queue ticket_commits_sync is closed")
        if repo_id in self.enqueued:
            return False
        self.enqueued.append(repo_id)
        return True

    async def enqueue_sync_all_repositories(self, principal_id=None):
        if self.closed:
            raise QueueClosedError("queue ticket_commits_sync is closed")
        return 3

    async def delete_all_for_repository(self, repo_id, trigger="api", remove_repository=False):
        self.deleted.append((repo_id, remove_repository))
        return 4

    async def sync_repository(self, repo_id, trigger="api", operation_id=None):
        if repo_id in self.missing:
            raise RepositoryNotFoundError(repo_id)
        self.synced.append((repo_id, trigger))
        return {"repo_id": repo_id, "parsed": 2, "inserted": 2, "deleted": 0, "operation_id": "OP-1"}

    async def get_observability_snapshot(self):
        return {
            "activeOperationCount": 0,
            "activeOperations": [],
            "recentOperations": [],
            "trackedOperationCount": 1,
            "queue": {"name": "ticket_commits_sync", "running": True},
        }

    async def list_operations(self, limit=20):
        return [{"id": "OP-1", "status": "completed"}][:limit]

    async def get_operation(self, operation_id):
        if operation_id == "OP-404":
            return None
        return {"id": operation_id, "status": "completed"}


class _FakeLookupService:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    async def find_by_ticket(self, ticket_id, principal, page=1, page_size=None):
        self.calls.append({"ticket_id": ticket_id, "principal": principal, "page": page, "page_size": page_size})
        return TicketAggregate(ticketId=ticket_id)


def _request(**state):
    return types.SimpleNamespace(app=types.SimpleNamespace(state=types.SimpleNamespace(**state)))


class PrincipalDependencyTests(unittest.TestCase):
    def test_missing_headers_yield_anonymous(self) -> None:
        principal = deps.get_principal(None, None)

        self.assertTrue(principal.is_anonymous)
        self.assertFalse(principal.isAdmin)

    def test_headers_are_parsed(self) -> None:
        principal = deps.get_principal(" 42 ", "true")

        self.assertEqual(principal.id, 42)
        self.assertTrue(principal.isAdmin)

    def test_admin_flag_requires_identity(self) -> None:
        self.assertFalse(deps.get_principal(None, "1").isAdmin)

    def test_invalid_id_is_rejected(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            deps.get_principal("abc", None)

        self.assertEqual(ctx.exception.status_code, 400)


class TicketsRouterTests(unittest.IsolatedAsyncioTestCase):
    async def test_non_positive_page_is_treated_as_first(self) -> None:
        lookup = _FakeLookupService()
        principal = Principal(id=3)

        payload = await tickets_router.get_ticket_commits(_request(ticket_lookup=lookup), "ABC-1", page=-2, principal=principal)

        self.assertEqual(payload.ticketId, "ABC-1")
        self.assertEqual(lookup.calls[0]["page"], 1)
        self.assertEqual(lookup.calls[0]["page_size"], 50)
        self.assertIs(lookup.calls[0]["principal"], principal)

    async def test_missing_service_returns_503(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await tickets_router.get_ticket_commits(_request(), "ABC-1", page=1, principal=Principal())

        self.assertEqual(ctx.exception.status_code, 503)


class ReposRouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.catalog = SqliteRepositoryCatalog(self.db)
        self.sync = _FakeSyncService()
        self.request = _request(ticket_sync=self.sync)
        patcher = patch.object(repos_router.connection, "get_connection", AsyncMock(return_value=self.db))
        patcher.start()
        self.addCleanup(patcher.stop)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_register_repository_enqueues_sync(self) -> None:
        payload = await repos_router.register_repository(
            self.request,
            repos_router.RepositoryCreate(
                id=1, name="api", path="/git/api", ownerName="acme",
                mirror=repos_router.MirrorSpec(remoteAddress="https://example.com/api.git", intervalSeconds=600),
            ),
        )

        self.assertTrue(payload["syncQueued"])
        self.assertEqual(self.sync.enqueued, [1])
        stored = await self.catalog.get_by_id(1)
        self.assertTrue(stored.isMirror)
        mirror = await self.catalog.get_mirror(1)
        self.assertEqual(mirror.intervalSeconds, 600)

    async def test_register_empty_repository_does_not_enqueue(self) -> None:
        payload = await repos_router.register_repository(
            self.request, repos_router.RepositoryCreate(id=2, name="empty", path="/git/empty", isEmpty=True),
        )

        self.assertFalse(payload["syncQueued"])
        self.assertEqual(self.sync.enqueued, [])

    async def test_register_with_closed_queue_returns_503(self) -> None:
        self.sync.closed = True

        with self.assertRaises(HTTPException) as ctx:
            await repos_router.register_repository(
                self.request, repos_router.RepositoryCreate(id=3, name="x", path="/git/x"),
            )

        self.assertEqual(ctx.exception.status_code, 503)

    async def test_list_repositories(self) -> None:
        await self.catalog.upsert(Repository(id=2, name="b", path="/git/b"))
        await self.catalog.upsert(Repository(id=1, name="a", path="/git/a"))

        repos = await repos_router.list_repositories()

        self.assertEqual([r.id for r in repos], [1, 2])

    async def test_delete_repository_removes_links_and_catalog_entry_together(self) -> None:
        await self.catalog.upsert(Repository(id=1, name="a", path="/git/a"))

        payload = await repos_router.delete_repository(self.request, 1)

        self.assertEqual(payload["deletedLinks"], 4)
        self.assertEqual(self.sync.deleted, [(1, True)])

    async def test_delete_unknown_repository_returns_404(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await repos_router.delete_repository(self.request, 77)

        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(self.sync.deleted, [])

    async def test_mirror_synced_updates_mirror_and_enqueues(self) -> None:
        await self.catalog.upsert(Repository(id=1, name="m", path="/git/m", isMirror=True))
        await self.catalog.upsert_mirror(MirrorInfo(repoId=1, remoteAddress="https://example.com/m.git", intervalSeconds=60))

        payload = await repos_router.mirror_synced(self.request, 1, repos_router.MirrorSyncedRequest(updatedUnix=1000))

        self.assertTrue(payload["syncQueued"])
        mirror = await self.catalog.get_mirror(1)
        self.assertEqual((mirror.updatedUnix, mirror.nextUpdateUnix), (1000, 1060))

    async def test_mirror_synced_rejects_regular_repository(self) -> None:
        await self.catalog.upsert(Repository(id=1, name="a", path="/git/a"))

        with self.assertRaises(HTTPException) as ctx:
            await repos_router.mirror_synced(self.request, 1, repos_router.MirrorSyncedRequest())

        self.assertEqual(ctx.exception.status_code, 400)

    async def test_ticket_sync_background_enqueues(self) -> None:
        await self.catalog.upsert(Repository(id=1, name="a", path="/git/a"))

        payload = await repos_router.trigger_ticket_sync(self.request, 1, None)

        self.assertEqual(payload["mode"], "background")
        self.assertEqual(self.sync.enqueued, [1])

    async def test_ticket_sync_foreground_returns_stats(self) -> None:
        payload = await repos_router.trigger_ticket_sync(
            self.request, 1, repos_router.TicketSyncRequest(background=False, trigger="manual"),
        )

        self.assertEqual(payload["mode"], "foreground")
        self.assertEqual(payload["stats"]["inserted"], 2)
        self.assertEqual(self.sync.synced, [(1, "manual")])

    async def test_ticket_sync_foreground_unknown_repository_returns_404(self) -> None:
        self.sync.missing.add(9)

        with self.assertRaises(HTTPException) as ctx:
            await repos_router.trigger_ticket_sync(self.request, 9, repos_router.TicketSyncRequest(background=False))

        self.assertEqual(ctx.exception.status_code, 404)


class TicketSyncRouterTests(unittest.IsolatedAsyncioTestCase):
    async def test_sync_all_requires_admin(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await sync_router.sync_all_repositories(_request(ticket_sync=_FakeSyncService()), principal=Principal(id=5))

        self.assertEqual(ctx.exception.status_code, 403)

    async def test_sync_all_reports_enqueued_count(self) -> None:
        payload = await sync_router.sync_all_repositories(
            _request(ticket_sync=_FakeSyncService()), principal=Principal(id=1, isAdmin=True),
        )

        self.assertEqual(payload["enqueued"], 3)

    async def test_sync_all_with_closed_queue_returns_503(self) -> None:
        service = _FakeSyncService()
        service.closed = True

        with self.assertRaises(HTTPException) as ctx:
            await sync_router.sync_all_repositories(_request(ticket_sync=service), principal=Principal(id=1, isAdmin=True))

        self.assertEqual(ctx.exception.status_code, 503)

    async def test_status_includes_queue_and_operations(self) -> None:
        payload = await sync_router.get_sync_status(_request(ticket_sync=_FakeSyncService()))

        self.assertEqual(payload["status"], "active")
        self.assertEqual(payload["queue"]["name"], "ticket_commits_sync")
        self.assertIn("operations", payload)

    async def test_operations_listing_and_lookup(self) -> None:
        request = _request(ticket_sync=_FakeSyncService())

        listing = await sync_router.list_sync_operations(request, limit=5)
        operation = await sync_router.get_sync_operation(request, "OP-1")

        self.assertEqual(listing["count"], 1)
        self.assertEqual(operation["id"], "OP-1")
        with self.assertRaises(HTTPException) as ctx:
            await sync_router.get_sync_operation(request, "OP-404")
        self.assertEqual(ctx.exception.status_code, 404)


if __name__ == "__main__":
    unittest.main()
