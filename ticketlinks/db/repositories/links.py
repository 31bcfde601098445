"""SQLite implementation of the commit ↔ ticket link index."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import aiosqlite

from ticketlinks.access import SqlParams, visible_repositories_sql
from ticketlinks.db.repositories.base import connection_lock
from ticketlinks.models import CommitTicketLink, Principal
from ticketlinks.parsers.commit_log import ParsedCommitRecord

# Stay well below SQLITE_MAX_VARIABLE_NUMBER.
DELETE_CHUNK_SIZE = 500


def _row_to_link(row: Any) -> CommitTicketLink:
    return CommitTicketLink(
        id=row["id"],
        repoId=row["repo_id"],
        ticket=row["ticket"],
        sha=row["sha"],
        createdUnix=row["created_unix"],
    )


class SqliteLinkWriter:
    """Write operations bound to an open transaction."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def list_for_repo(self, repo_id: int) -> list[CommitTicketLink]:
        async with self.db.execute(
            "SELECT * FROM commit_ticket_links WHERE repo_id = ? ORDER BY created_unix DESC, id DESC",
            (repo_id,),
        ) as cur:
            return [_row_to_link(r) for r in await cur.fetchall()]

    async def insert(self, repo_id: int, record: ParsedCommitRecord) -> int:
        async with self.db.execute(
            "INSERT INTO commit_ticket_links (repo_id, ticket, sha, created_unix) VALUES (?, ?, ?, ?)",
            (repo_id, record.ticket, record.sha, record.created_unix),
        ) as cur:
            return cur.lastrowid or 0

    async def delete_ids(self, repo_id: int, ids: list[int]) -> int:
        deleted = 0
        for start in range(0, len(ids), DELETE_CHUNK_SIZE):
            chunk = ids[start:start + DELETE_CHUNK_SIZE]
            placeholders = ", ".join("?" for _ in chunk)
            async with self.db.execute(
                f"DELETE FROM commit_ticket_links WHERE repo_id = ? AND id IN ({placeholders})",
                (repo_id, *chunk),
            ) as cur:
                deleted += max(cur.rowcount, 0)
        return deleted

    async def delete_all(self, repo_id: int) -> int:
        async with self.db.execute(
            "DELETE FROM commit_ticket_links WHERE repo_id = ?", (repo_id,)
        ) as cur:
            return max(cur.rowcount, 0)

    async def claim_repository(self, repo_id: int) -> bool:
        """True while the repository is still in the catalog.

        BEGIN IMMEDIATE already holds the database write lock, so no other
        writer can interleave until the transaction ends.
        """
        async with self.db.execute("SELECT 1 FROM repositories WHERE id = ?", (repo_id,)) as cur:
            return await cur.fetchone() is not None

    async def delete_repository(self, repo_id: int) -> bool:
        async with self.db.execute("DELETE FROM repositories WHERE id = ?", (repo_id,)) as cur:
            return cur.rowcount > 0


class SqliteCommitTicketLinkRepository:
    """Link rows keyed by repository, queried by ticket."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self._lock = connection_lock(db)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqliteLinkWriter]:
        """Run the block as one transaction; any exception (or cancellation) rolls back."""
        async with self._lock:
            await self.db.execute("BEGIN IMMEDIATE")
            try:
                yield SqliteLinkWriter(self.db)
            except BaseException:
                await self.db.rollback()
                raise
            await self.db.commit()

    async def list_for_repo(self, repo_id: int) -> list[CommitTicketLink]:
        async with self._lock:
            return await SqliteLinkWriter(self.db).list_for_repo(repo_id)

    async def count_by_ticket(self, ticket: str, principal: Principal) -> int:
        params = SqlParams()
        ticket_ph = params.add(ticket)
        visible = visible_repositories_sql(principal, params)
        async with self._lock:
            async with self.db.execute(
                f"SELECT COUNT(*) FROM commit_ticket_links WHERE ticket = {ticket_ph} AND repo_id IN ({visible})",
                params.values,
            ) as cur:
                row = await cur.fetchone()
        return row[0] if row else 0

    async def find_by_ticket(
        self, ticket: str, principal: Principal, offset: int, limit: int,
    ) -> list[CommitTicketLink]:
        params = SqlParams()
        ticket_ph = params.add(ticket)
        visible = visible_repositories_sql(principal, params)
        query = (
            f"SELECT * FROM commit_ticket_links WHERE ticket = {ticket_ph} AND repo_id IN ({visible}) "
            f"ORDER BY repo_id ASC, created_unix ASC, id ASC LIMIT {params.add(limit)} OFFSET {params.add(offset)}"
        )
        async with self._lock:
            async with self.db.execute(query, params.values) as cur:
                return [_row_to_link(r) for r in await cur.fetchall()]
