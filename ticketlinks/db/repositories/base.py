"""Helpers shared by the SQLite repositories."""
from __future__ import annotations

import asyncio
import weakref

import aiosqlite

# One shared connection means one open transaction at a time.
_connection_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()


def connection_lock(db: aiosqlite.Connection) -> asyncio.Lock:
    """Return the lock serialising writes on ``db``."""
    lock = _connection_locks.get(db)
    if lock is None:
        lock = asyncio.Lock()
        _connection_locks[db] = lock
    return lock
