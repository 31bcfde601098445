"""Compute the insert/delete delta between git history and the persisted link index."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from ticketlinks.models import CommitTicketLink
from ticketlinks.parsers.commit_log import ParsedCommitRecord

LinkKey = tuple[str, str]


def link_key(item: Any) -> LinkKey:
    """(ticket, sha) identity shared by parsed records and persisted rows."""
    return (item.ticket, item.sha)


def _mapping_of(items: Iterable[Any]) -> dict[LinkKey, Any]:
    mapping: dict[LinkKey, Any] = {}
    for item in items:
        mapping[link_key(item)] = item
    return mapping


@dataclass
class ReconcileResult:
    to_insert: list[ParsedCommitRecord] = field(default_factory=list)
    to_delete_ids: list[int] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.to_insert and not self.to_delete_ids


def reconcile(
    authoritative: Sequence[ParsedCommitRecord],
    persisted: Sequence[CommitTicketLink],
) -> ReconcileResult:
    """Symmetric difference by (ticket, sha).

    Records already indexed are left alone; their stored timestamp is never
    refreshed. An empty ``authoritative`` deletes every persisted row.
    """
    authoritative_map = _mapping_of(authoritative)
    persisted_map = _mapping_of(persisted)

    result = ReconcileResult()
    for key, record in authoritative_map.items():
        if key not in persisted_map:
            result.to_insert.append(record)

    for row in persisted:
        if link_key(row) not in authoritative_map:
            result.to_delete_ids.append(row.id)

    return result
