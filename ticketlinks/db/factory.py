"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any

import aiosqlite

from ticketlinks.db.repositories.catalog import SqliteRepositoryCatalog
from ticketlinks.db.repositories.links import SqliteCommitTicketLinkRepository


def get_link_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteCommitTicketLinkRepository(db)
    from ticketlinks.db.repositories.postgres.links import PostgresCommitTicketLinkRepository
    return PostgresCommitTicketLinkRepository(db)


def get_catalog_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteRepositoryCatalog(db)
    from ticketlinks.db.repositories.postgres.catalog import PostgresRepositoryCatalog
    return PostgresRepositoryCatalog(db)
