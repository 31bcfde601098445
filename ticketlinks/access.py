"""Repository visibility predicate used to scope ticket queries to a principal."""
from __future__ import annotations

from typing import Any

from ticketlinks.models import Principal

PUBLIC = "public"
LIMITED = "limited"
PRIVATE = "private"


class SqlParams:
    """Collects bind values and hands out placeholders.

    ``style="qmark"`` yields ``?`` (sqlite), ``style="numeric"`` yields
    ``$1, $2, ...`` (asyncpg) starting after ``offset`` existing parameters.
    """

    def __init__(self, style: str = "qmark", offset: int = 0):
        self.style = style
        self.values: list[Any] = []
        self._offset = offset

    def add(self, value: Any) -> str:
        self.values.append(value)
        if self.style == "numeric":
            return f"${self._offset + len(self.values)}"
        return "?"


def visible_repositories_sql(principal: Principal, params: SqlParams) -> str:
    """Return a ``SELECT id FROM repositories WHERE ...`` subquery for ``principal``.

    Admins see everything. Anonymous principals see non-private repositories
    of public owners. Signed-in principals also see repositories they own,
    repositories they were granted access to, and non-private repositories of
    limited-visibility owners.
    """
    if principal.isAdmin:
        return "SELECT id FROM repositories"

    if principal.is_anonymous:
        return (
            "SELECT id FROM repositories "
            f"WHERE is_private = {params.add(False)} AND owner_visibility = {params.add(PUBLIC)}"
        )

    owner = params.add(principal.id)
    grantee = params.add(principal.id)
    not_private = params.add(False)
    public = params.add(PUBLIC)
    limited = params.add(LIMITED)
    return (
        "SELECT id FROM repositories "
        f"WHERE owner_id = {owner} "
        f"OR id IN (SELECT repo_id FROM repo_access WHERE user_id = {grantee}) "
        f"OR (is_private = {not_private} AND owner_visibility IN ({public}, {limited}))"
    )
