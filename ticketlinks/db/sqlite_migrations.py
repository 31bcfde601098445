"""Database schema creation and versioning.

All CREATE TABLE statements for the link index and repository catalog.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("ticketlinks.db")

SCHEMA_VERSION = 1

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Repository catalog ─────────────────────────────────────────
CREATE TABLE IF NOT EXISTS repositories (
    id               INTEGER PRIMARY KEY,
    owner_id         INTEGER NOT NULL DEFAULT 0,
    owner_name       TEXT NOT NULL DEFAULT '',
    name             TEXT NOT NULL,
    path             TEXT NOT NULL,
    is_private       INTEGER NOT NULL DEFAULT 0,
    owner_visibility TEXT NOT NULL DEFAULT 'public',
    is_empty         INTEGER NOT NULL DEFAULT 0,
    is_mirror        INTEGER NOT NULL DEFAULT 0,
    created_at       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_repositories_owner ON repositories(owner_id);

CREATE TABLE IF NOT EXISTS repo_mirrors (
    repo_id          INTEGER PRIMARY KEY REFERENCES repositories(id) ON DELETE CASCADE,
    remote_address   TEXT NOT NULL DEFAULT '',
    interval_seconds INTEGER NOT NULL DEFAULT 0,
    updated_unix     INTEGER NOT NULL DEFAULT 0,
    next_update_unix INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS repo_access (
    repo_id  INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
    user_id  INTEGER NOT NULL,
    mode     TEXT NOT NULL DEFAULT 'read',
    PRIMARY KEY (repo_id, user_id)
);

CREATE INDEX IF NOT EXISTS idx_repo_access_user ON repo_access(user_id);

-- ── 2. Ticket ↔ commit index ──────────────────────────────────────
CREATE TABLE IF NOT EXISTS commit_ticket_links (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    repo_id       INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
    ticket        TEXT NOT NULL,
    sha           TEXT NOT NULL,
    created_unix  INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_links_ticket ON commit_ticket_links(ticket, repo_id, created_unix);
CREATE INDEX IF NOT EXISTS idx_links_repo   ON commit_ticket_links(repo_id);
"""


async def _current_version(db: aiosqlite.Connection) -> int:
    async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
        row = await cur.fetchone()
    return int(row[0]) if row and row[0] is not None else 0


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables and record the schema version."""
    await db.executescript(_TABLES)

    if await _current_version(db) >= SCHEMA_VERSION:
        await db.commit()
        return

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
