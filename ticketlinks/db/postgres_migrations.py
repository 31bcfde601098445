"""Postgres schema creation and versioning (mirrors sqlite_migrations)."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("ticketlinks.db")

SCHEMA_VERSION = 1

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS repositories (
    id               BIGINT PRIMARY KEY,
    owner_id         BIGINT NOT NULL DEFAULT 0,
    owner_name       TEXT NOT NULL DEFAULT '',
    name             TEXT NOT NULL,
    path             TEXT NOT NULL,
    is_private       BOOLEAN NOT NULL DEFAULT FALSE,
    owner_visibility TEXT NOT NULL DEFAULT 'public',
    is_empty         BOOLEAN NOT NULL DEFAULT FALSE,
    is_mirror        BOOLEAN NOT NULL DEFAULT FALSE,
    created_at       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_repositories_owner ON repositories(owner_id);

CREATE TABLE IF NOT EXISTS repo_mirrors (
    repo_id          BIGINT PRIMARY KEY REFERENCES repositories(id) ON DELETE CASCADE,
    remote_address   TEXT NOT NULL DEFAULT '',
    interval_seconds BIGINT NOT NULL DEFAULT 0,
    updated_unix     BIGINT NOT NULL DEFAULT 0,
    next_update_unix BIGINT NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS repo_access (
    repo_id  BIGINT NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
    user_id  BIGINT NOT NULL,
    mode     TEXT NOT NULL DEFAULT 'read',
    PRIMARY KEY (repo_id, user_id)
);

CREATE INDEX IF NOT EXISTS idx_repo_access_user ON repo_access(user_id);

CREATE TABLE IF NOT EXISTS commit_ticket_links (
    id            BIGSERIAL PRIMARY KEY,
    repo_id       BIGINT NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
    ticket        VARCHAR(64) NOT NULL,
    sha           VARCHAR(64) NOT NULL,
    created_unix  BIGINT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_links_ticket ON commit_ticket_links(ticket, repo_id, created_unix);
CREATE INDEX IF NOT EXISTS idx_links_repo   ON commit_ticket_links(repo_id);
"""


async def run_migrations(pool: asyncpg.Pool) -> None:
    """Create all tables and record the schema version."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(_TABLES)
            current = await conn.fetchval("SELECT MAX(version) FROM schema_version")
            if current is not None and int(current) >= SCHEMA_VERSION:
                return
            await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
    logger.info(f"Postgres migrations complete, schema version {SCHEMA_VERSION}")
