"""Exception types raised by the ticket link services."""
from __future__ import annotations


class TicketLinksError(Exception):
    """Base class for ticketlinks failures."""


class CommitLogParseError(TicketLinksError):
    """The commit log stream could not be parsed (bad timestamp, oversized line)."""


class VcsError(TicketLinksError):
    """A git command failed or the repository could not be opened."""


class RepositoryNotFoundError(TicketLinksError):
    def __init__(self, repo_id: int):
        super().__init__(f"repository {repo_id} not found")
        self.repo_id = repo_id


class QueueClosedError(TicketLinksError):
    """Raised when pushing to a queue that has been stopped."""


class CatalogManifestError(TicketLinksError):
    """The repository manifest is unreadable or has invalid entries."""
