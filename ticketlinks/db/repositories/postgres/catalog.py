"""PostgreSQL implementation of the repository catalog."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, AsyncIterator

import asyncpg

from ticketlinks.models import MirrorInfo, Repository


def _row_to_repository(row: Any) -> Repository:
    return Repository(
        id=row["id"],
        ownerId=row["owner_id"],
        ownerName=row["owner_name"],
        name=row["name"],
        path=row["path"],
        isPrivate=bool(row["is_private"]),
        ownerVisibility=row["owner_visibility"],
        isEmpty=bool(row["is_empty"]),
        isMirror=bool(row["is_mirror"]),
        createdAt=row["created_at"],
    )


class PostgresRepositoryCatalog:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def upsert(self, repo: Repository) -> None:
        created_at = repo.createdAt or datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO repositories (
                id, owner_id, owner_name, name, path,
                is_private, owner_visibility, is_empty, is_mirror, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT(id) DO UPDATE SET
                owner_id=EXCLUDED.owner_id, owner_name=EXCLUDED.owner_name,
                name=EXCLUDED.name, path=EXCLUDED.path,
                is_private=EXCLUDED.is_private, owner_visibility=EXCLUDED.owner_visibility,
                is_empty=EXCLUDED.is_empty, is_mirror=EXCLUDED.is_mirror
            """,
            repo.id, repo.ownerId, repo.ownerName, repo.name, repo.path,
            repo.isPrivate, repo.ownerVisibility, repo.isEmpty, repo.isMirror,
            created_at,
        )

    async def get_by_id(self, repo_id: int) -> Repository | None:
        row = await self.db.fetchrow("SELECT * FROM repositories WHERE id = $1", repo_id)
        return _row_to_repository(row) if row else None

    async def list_all(self) -> list[Repository]:
        rows = await self.db.fetch("SELECT * FROM repositories ORDER BY id")
        return [_row_to_repository(r) for r in rows]

    async def delete(self, repo_id: int) -> bool:
        status = await self.db.execute("DELETE FROM repositories WHERE id = $1", repo_id)
        return status.endswith(" 1")

    async def iter_non_empty_ids(self, batch_size: int = 50) -> AsyncIterator[int]:
        last_id = 0
        while True:
            rows = await self.db.fetch(
                "SELECT id FROM repositories WHERE NOT is_empty AND id > $1 ORDER BY id LIMIT $2",
                last_id, batch_size,
            )
            if not rows:
                return
            for row in rows:
                yield row["id"]
            last_id = rows[-1]["id"]

    async def get_mirror(self, repo_id: int) -> MirrorInfo | None:
        row = await self.db.fetchrow("SELECT * FROM repo_mirrors WHERE repo_id = $1", repo_id)
        if not row:
            return None
        return MirrorInfo(
            repoId=row["repo_id"],
            remoteAddress=row["remote_address"],
            intervalSeconds=row["interval_seconds"],
            updatedUnix=row["updated_unix"],
            nextUpdateUnix=row["next_update_unix"],
        )

    async def upsert_mirror(self, mirror: MirrorInfo) -> None:
        await self.db.execute(
            """INSERT INTO repo_mirrors (repo_id, remote_address, interval_seconds, updated_unix, next_update_unix)
               VALUES ($1, $2, $3, $4, $5)
               ON CONFLICT(repo_id) DO UPDATE SET
                 remote_address=EXCLUDED.remote_address, interval_seconds=EXCLUDED.interval_seconds,
                 updated_unix=EXCLUDED.updated_unix, next_update_unix=EXCLUDED.next_update_unix""",
            mirror.repoId, mirror.remoteAddress, mirror.intervalSeconds,
            mirror.updatedUnix, mirror.nextUpdateUnix,
        )

    async def grant_access(self, repo_id: int, user_id: int, mode: str = "read") -> None:
        await self.db.execute(
            """INSERT INTO repo_access (repo_id, user_id, mode) VALUES ($1, $2, $3)
               ON CONFLICT(repo_id, user_id) DO UPDATE SET mode=EXCLUDED.mode""",
            repo_id, user_id, mode,
        )

    async def revoke_access(self, repo_id: int, user_id: int) -> None:
        await self.db.execute(
            "DELETE FROM repo_access WHERE repo_id = $1 AND user_id = $2", repo_id, user_id
        )
