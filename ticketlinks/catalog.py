"""Repository catalog manifest loader.

The manifest is a YAML document of the form::

    repositories:
      - id: 1
        owner: acme
        ownerId: 10
        name: api
        path: /srv/git/acme/api.git
        private: false
        ownerVisibility: public
        mirror:
          remoteAddress: https://example.com/acme/api.git
          intervalSeconds: 28800
        access:
          - userId: 42
            mode: write
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ticketlinks.db.factory import get_catalog_repository
from ticketlinks.errors import CatalogManifestError
from ticketlinks.models import MirrorInfo, Repository

logger = logging.getLogger("ticketlinks.catalog")


def _entry_to_repository(entry: dict[str, Any]) -> Repository:
    return Repository(
        id=entry.get("id"),
        ownerId=entry.get("ownerId", 0),
        ownerName=str(entry.get("owner", "") or ""),
        name=entry.get("name"),
        path=str(entry.get("path", "") or ""),
        isPrivate=bool(entry.get("private", False)),
        ownerVisibility=str(entry.get("ownerVisibility", "public") or "public"),
        isEmpty=bool(entry.get("empty", False)),
        isMirror=bool(entry.get("mirror")),
        createdAt=str(entry.get("createdAt", "") or ""),
    )


def _entry_to_mirror(repo_id: int, raw: Any) -> MirrorInfo | None:
    if not raw:
        return None
    if not isinstance(raw, dict):
        raw = {"remoteAddress": str(raw)}
    return MirrorInfo(
        repoId=repo_id,
        remoteAddress=str(raw.get("remoteAddress", "") or ""),
        intervalSeconds=int(raw.get("intervalSeconds", 0) or 0),
        updatedUnix=int(raw.get("updatedUnix", 0) or 0),
        nextUpdateUnix=int(raw.get("nextUpdateUnix", 0) or 0),
    )


def parse_manifest(text: str) -> list[tuple[Repository, MirrorInfo | None, list[tuple[int, str]]]]:
    """Parse manifest text into ``(repository, mirror, grants)`` triples."""
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise CatalogManifestError(f"invalid manifest YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise CatalogManifestError("manifest must be a mapping with a 'repositories' list")

    entries = data.get("repositories") or []
    if not isinstance(entries, list):
        raise CatalogManifestError("'repositories' must be a list")

    parsed = []
    seen: set[int] = set()
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise CatalogManifestError(f"repositories[{index}] must be a mapping")
        try:
            repo = _entry_to_repository(entry)
            mirror = _entry_to_mirror(repo.id, entry.get("mirror"))
            grants = [
                (int(grant["userId"]), str(grant.get("mode", "read")))
                for grant in entry.get("access") or []
            ]
        except (ValidationError, KeyError, TypeError, ValueError) as exc:
            raise CatalogManifestError(f"repositories[{index}] is invalid: {exc}") from exc
        if repo.id in seen:
            raise CatalogManifestError(f"repositories[{index}]: duplicate id {repo.id}")
        seen.add(repo.id)
        parsed.append((repo, mirror, grants))
    return parsed


async def load_manifest(db: Any, path: str | Path) -> int:
    """Upsert every repository of the manifest at ``path``. Returns the number loaded."""
    manifest_path = Path(path).expanduser()
    try:
        text = manifest_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CatalogManifestError(f"cannot read manifest {manifest_path}: {exc}") from exc

    catalog_repo = get_catalog_repository(db)
    entries = parse_manifest(text)
    for repo, mirror, grants in entries:
        await catalog_repo.upsert(repo)
        if mirror is not None:
            await catalog_repo.upsert_mirror(mirror)
        for user_id, mode in grants:
            await catalog_repo.grant_access(repo.id, user_id, mode)

    logger.info(f"Loaded {len(entries)} repositories from {manifest_path}")
    return len(entries)
