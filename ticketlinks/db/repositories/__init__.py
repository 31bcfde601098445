"""Repository package for database access."""

from .catalog import SqliteRepositoryCatalog
from .links import SqliteCommitTicketLinkRepository, SqliteLinkWriter

__all__ = [
    "SqliteRepositoryCatalog",
    "SqliteCommitTicketLinkRepository",
    "SqliteLinkWriter",
]
