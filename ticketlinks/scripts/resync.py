#!/usr/bin/env python3
"""Rebuild (or drop) the commit ↔ ticket link index outside the server.

Usage:
  python -m ticketlinks.scripts.resync --repo-id 42
  python -m ticketlinks.scripts.resync --all
  python -m ticketlinks.scripts.resync --repo-id 42 --delete
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any, AsyncIterator

from ticketlinks import config
from ticketlinks.catalog import load_manifest
from ticketlinks.db import connection, migrations
from ticketlinks.db.factory import get_catalog_repository
from ticketlinks.errors import TicketLinksError
from ticketlinks.services.ticket_sync import TicketSyncService


async def _targets(db: Any, repo_ids: list[int], all_repos: bool) -> AsyncIterator[int]:
    for repo_id in repo_ids:
        yield repo_id
    if all_repos:
        async for repo_id in get_catalog_repository(db).iter_non_empty_ids(config.CATALOG_BATCH_SIZE):
            yield repo_id


async def _run(repo_ids: list[int], all_repos: bool, delete: bool, as_json: bool) -> int:
    db = await connection.get_connection()
    try:
        await migrations.run_migrations(db)
        if config.REPOS_MANIFEST:
            await load_manifest(db, config.REPOS_MANIFEST)
        service = TicketSyncService(db)

        processed = 0
        failures = 0
        results = []
        async for repo_id in _targets(db, repo_ids, all_repos):
            processed += 1
            try:
                if delete:
                    deleted = await service.delete_all_for_repository(repo_id, trigger="cli")
                    result = {"repo_id": repo_id, "deleted": deleted}
                else:
                    result = await service.sync_repository(repo_id, trigger="cli")
            except TicketLinksError as exc:
                failures += 1
                result = {"repo_id": repo_id, "error": str(exc)}
            if as_json:
                results.append(result)
            elif "error" in result:
                print(f"{repo_id}: FAILED {result['error']}")
            elif delete:
                print(f"{repo_id}: deleted={result['deleted']}")
            else:
                print(
                    f"{repo_id}: parsed={result['parsed']} "
                    f"inserted={result['inserted']} deleted={result['deleted']} "
                    f"duration_ms={result['duration_ms']}"
                )

        if not processed:
            print("No repositories selected.")
            return 0
        if as_json:
            print(json.dumps(results, indent=2))
        return 1 if failures else 0
    finally:
        await connection.close_connection()


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--repo-id", type=int, action="append", default=[], help="Repository ID (repeatable)")
    parser.add_argument("--all", action="store_true", help="All non-empty repositories in the catalog")
    parser.add_argument("--delete", action="store_true", help="Drop links instead of rebuilding them")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    args = parser.parse_args()
    if args.delete and args.all:
        parser.error("--delete cannot be combined with --all")
    logging.basicConfig(level=logging.WARNING)
    return asyncio.run(_run(args.repo_id, args.all, args.delete, args.json))


if __name__ == "__main__":
    raise SystemExit(main())
