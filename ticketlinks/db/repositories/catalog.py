"""SQLite implementation of the repository catalog (repositories, mirrors, access grants)."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, AsyncIterator

import aiosqlite

from ticketlinks.db.repositories.base import connection_lock
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


def _row_to_mirror(row: Any) -> MirrorInfo:
    return MirrorInfo(
        repoId=row["repo_id"],
        remoteAddress=row["remote_address"],
        intervalSeconds=row["interval_seconds"],
        updatedUnix=row["updated_unix"],
        nextUpdateUnix=row["next_update_unix"],
    )


class SqliteRepositoryCatalog:
    """Repositories known to the service and who may see them."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self._lock = connection_lock(db)

    async def upsert(self, repo: Repository) -> None:
        created_at = repo.createdAt or datetime.now(timezone.utc).isoformat()
        async with self._lock:
            await self.db.execute(
                """INSERT INTO repositories (
                    id, owner_id, owner_name, name, path,
                    is_private, owner_visibility, is_empty, is_mirror, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    owner_id=excluded.owner_id, owner_name=excluded.owner_name,
                    name=excluded.name, path=excluded.path,
                    is_private=excluded.is_private, owner_visibility=excluded.owner_visibility,
                    is_empty=excluded.is_empty, is_mirror=excluded.is_mirror
                """,
                (
                    repo.id, repo.ownerId, repo.ownerName, repo.name, repo.path,
                    1 if repo.isPrivate else 0, repo.ownerVisibility,
                    1 if repo.isEmpty else 0, 1 if repo.isMirror else 0,
                    created_at,
                ),
            )
            await self.db.commit()

    async def get_by_id(self, repo_id: int) -> Repository | None:
        async with self.db.execute("SELECT * FROM repositories WHERE id = ?", (repo_id,)) as cur:
            row = await cur.fetchone()
            return _row_to_repository(row) if row else None

    async def list_all(self) -> list[Repository]:
        async with self.db.execute("SELECT * FROM repositories ORDER BY id") as cur:
            return [_row_to_repository(r) for r in await cur.fetchall()]

    async def delete(self, repo_id: int) -> bool:
        async with self._lock:
            async with self.db.execute("DELETE FROM repositories WHERE id = ?", (repo_id,)) as cur:
                deleted = cur.rowcount > 0
            await self.db.commit()
        return deleted

    async def iter_non_empty_ids(self, batch_size: int = 50) -> AsyncIterator[int]:
        """Yield ids of non-empty repositories, one keyset page at a time."""
        last_id = 0
        while True:
            async with self.db.execute(
                "SELECT id FROM repositories WHERE is_empty = 0 AND id > ? ORDER BY id LIMIT ?",
                (last_id, batch_size),
            ) as cur:
                batch = [row[0] for row in await cur.fetchall()]
            if not batch:
                return
            for repo_id in batch:
                yield repo_id
            last_id = batch[-1]

    # ── Mirrors ────────────────────────────────────────────────────

    async def get_mirror(self, repo_id: int) -> MirrorInfo | None:
        async with self.db.execute("SELECT * FROM repo_mirrors WHERE repo_id = ?", (repo_id,)) as cur:
            row = await cur.fetchone()
            return _row_to_mirror(row) if row else None

    async def upsert_mirror(self, mirror: MirrorInfo) -> None:
        async with self._lock:
            await self.db.execute(
                """INSERT INTO repo_mirrors (repo_id, remote_address, interval_seconds, updated_unix, next_update_unix)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(repo_id) DO UPDATE SET
                     remote_address=excluded.remote_address, interval_seconds=excluded.interval_seconds,
                     updated_unix=excluded.updated_unix, next_update_unix=excluded.next_update_unix""",
                (
                    mirror.repoId, mirror.remoteAddress, mirror.intervalSeconds,
                    mirror.updatedUnix, mirror.nextUpdateUnix,
                ),
            )
            await self.db.commit()

    # ── Access grants ──────────────────────────────────────────────

    async def grant_access(self, repo_id: int, user_id: int, mode: str = "read") -> None:
        async with self._lock:
            await self.db.execute(
                """INSERT INTO repo_access (repo_id, user_id, mode) VALUES (?, ?, ?)
                   ON CONFLICT(repo_id, user_id) DO UPDATE SET mode=excluded.mode""",
                (repo_id, user_id, mode),
            )
            await self.db.commit()

    async def revoke_access(self, repo_id: int, user_id: int) -> None:
        async with self._lock:
            await self.db.execute(
                "DELETE FROM repo_access WHERE repo_id = ? AND user_id = ?", (repo_id, user_id)
            )
            await self.db.commit()
