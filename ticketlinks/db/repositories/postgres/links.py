"""PostgreSQL implementation of the commit ↔ ticket link index."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg

from ticketlinks.access import SqlParams, visible_repositories_sql
from ticketlinks.models import CommitTicketLink, Principal
from ticketlinks.parsers.commit_log import ParsedCommitRecord


def _row_to_link(row: Any) -> CommitTicketLink:
    return CommitTicketLink(
        id=row["id"],
        repoId=row["repo_id"],
        ticket=row["ticket"],
        sha=row["sha"],
        createdUnix=row["created_unix"],
    )


class PostgresLinkWriter:
    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    async def list_for_repo(self, repo_id: int) -> list[CommitTicketLink]:
        rows = await self.conn.fetch(
            "SELECT * FROM commit_ticket_links WHERE repo_id = $1 ORDER BY created_unix DESC, id DESC",
            repo_id,
        )
        return [_row_to_link(r) for r in rows]

    async def insert(self, repo_id: int, record: ParsedCommitRecord) -> int:
        return await self.conn.fetchval(
            """INSERT INTO commit_ticket_links (repo_id, ticket, sha, created_unix)
               VALUES ($1, $2, $3, $4) RETURNING id""",
            repo_id, record.ticket, record.sha, record.created_unix,
        )

    async def delete_ids(self, repo_id: int, ids: list[int]) -> int:
        if not ids:
            return 0
        status = await self.conn.execute(
            "DELETE FROM commit_ticket_links WHERE repo_id = $1 AND id = ANY($2::bigint[])",
            repo_id, ids,
        )
        return _affected(status)

    async def delete_all(self, repo_id: int) -> int:
        status = await self.conn.execute("DELETE FROM commit_ticket_links WHERE repo_id = $1", repo_id)
        return _affected(status)

    async def claim_repository(self, repo_id: int) -> bool:
        """Take the per-repository advisory lock, then report whether the repository still exists.

        The lock is released when the surrounding transaction ends, so two
        writers of the same repository serialize even across processes.
        """
        await self.conn.execute("SELECT pg_advisory_xact_lock($1)", repo_id)
        return await self.conn.fetchval("SELECT 1 FROM repositories WHERE id = $1", repo_id) is not None

    async def delete_repository(self, repo_id: int) -> bool:
        status = await self.conn.execute("DELETE FROM repositories WHERE id = $1", repo_id)
        return _affected(status) > 0


def _affected(status: str) -> int:
    # asyncpg returns command tags such as "DELETE 3"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class PostgresCommitTicketLinkRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresLinkWriter]:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                yield PostgresLinkWriter(conn)

    async def list_for_repo(self, repo_id: int) -> list[CommitTicketLink]:
        async with self.db.acquire() as conn:
            return await PostgresLinkWriter(conn).list_for_repo(repo_id)

    async def count_by_ticket(self, ticket: str, principal: Principal) -> int:
        params = SqlParams("numeric")
        ticket_ph = params.add(ticket)
        visible = visible_repositories_sql(principal, params)
        val = await self.db.fetchval(
            f"SELECT COUNT(*) FROM commit_ticket_links WHERE ticket = {ticket_ph} AND repo_id IN ({visible})",
            *params.values,
        )
        return val or 0

    async def find_by_ticket(
        self, ticket: str, principal: Principal, offset: int, limit: int,
    ) -> list[CommitTicketLink]:
        params = SqlParams("numeric")
        ticket_ph = params.add(ticket)
        visible = visible_repositories_sql(principal, params)
        query = (
            f"SELECT * FROM commit_ticket_links WHERE ticket = {ticket_ph} AND repo_id IN ({visible}) "
            f"ORDER BY repo_id ASC, created_unix ASC, id ASC LIMIT {params.add(limit)} OFFSET {params.add(offset)}"
        )
        rows = await self.db.fetch(query, *params.values)
        return [_row_to_link(r) for r in rows]
