"""Ticket → commits aggregation across all repositories visible to a principal."""
from __future__ import annotations

import logging
from itertools import groupby
from typing import Any, Awaitable, Callable

from ticketlinks import config
from ticketlinks.db.factory import get_catalog_repository, get_link_repository
from ticketlinks.errors import RepositoryNotFoundError, TicketLinksError
from ticketlinks.models import Principal, RepositoryCommits, TicketAggregate
from ticketlinks.observability import start_span
from ticketlinks.vcs import GitRepository

logger = logging.getLogger("ticketlinks.lookup")

GitOpener = Callable[[str], Awaitable[GitRepository]]


class TicketLookupService:
    """Read-only view over the link index, hydrated from git."""

    def __init__(self, db: Any, *, git_opener: GitOpener | None = None):
        self.db = db
        self.link_repo = get_link_repository(db)
        self.catalog_repo = get_catalog_repository(db)
        self._open_git = git_opener or GitRepository.open

    async def find_by_ticket(
        self,
        ticket_id: str,
        principal: Principal,
        page: int = 1,
        page_size: int | None = None,
    ) -> TicketAggregate:
        """Return one page of commits referencing ``ticket_id``, grouped by repository.

        ``totalCommits`` counts every visible link for the ticket, not just the
        page. Repositories that fail to hydrate, or whose linked commits are
        all gone from git, are left out.
        """
        aggregate = TicketAggregate(ticketId=ticket_id)
        with start_span("ticketlinks.find_by_ticket", {"ticket.id": ticket_id}):
            total = await self.link_repo.count_by_ticket(ticket_id, principal)
            if total == 0:
                return aggregate
            aggregate.totalCommits = total

            size = page_size or config.TICKET_PAGE_SIZE
            page = max(page, 1)
            links = await self.link_repo.find_by_ticket(
                ticket_id, principal, offset=(page - 1) * size, limit=size,
            )

            groups: list[RepositoryCommits] = []
            for repo_id, rows in groupby(links, key=lambda link: link.repoId):
                shas = [row.sha for row in rows]
                try:
                    group = await self._hydrate(repo_id, shas)
                except Exception as exc:
                    logger.warning(
                        "Skipping repo %d for ticket %s: %s", repo_id, ticket_id, exc,
                    )
                    continue
                if group.commits:
                    groups.append(group)

        groups.sort(key=lambda group: group.repository.id)
        aggregate.repositories = groups
        return aggregate

    async def _hydrate(self, repo_id: int, shas: list[str]) -> RepositoryCommits:
        repo = await self.catalog_repo.get_by_id(repo_id)
        if repo is None:
            raise RepositoryNotFoundError(repo_id)

        mirror = None
        if repo.isMirror:
            mirror = await self.catalog_repo.get_mirror(repo_id)
            if mirror is None:
                raise TicketLinksError(f"mirror info missing for repository {repo.full_name}")

        git_repo = await self._open_git(repo.path)
        commits = await git_repo.get_commits(shas)
        return RepositoryCommits(repository=repo, pullMirror=mirror, commits=commits)
