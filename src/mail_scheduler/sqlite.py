# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite async access layer using aiosqlite.

Connections are opened per operation, so any number of coroutines can share
one :class:`SqliteDb`. Multi-statement atomic sections go through
:meth:`SqliteDb.transaction`, which takes the database write lock up front
(``BEGIN IMMEDIATE``) so no other writer can interleave.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import aiosqlite

# Seconds a connection waits on a locked database before giving up.
BUSY_TIMEOUT = 30.0


class SqliteDb:
    """Per-operation SQLite helper shared by the store, the queue and the counters."""

    def __init__(self, db_path: str, *, busy_timeout: float = BUSY_TIMEOUT):
        """Initialize the helper.

        Args:
            db_path: Path to the SQLite file. ``:memory:`` is accepted but
                every operation then sees a fresh, empty database.
            busy_timeout: Seconds to wait for a competing writer.
        """
        self.db_path = db_path or ":memory:"
        self.busy_timeout = busy_timeout

    def _connect(self, **kwargs: Any) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path, timeout=self.busy_timeout, **kwargs)

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        async with self._connect() as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return cursor.rowcount

    async def insert(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute an INSERT, return the rowid of the new row."""
        async with self._connect() as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return int(cursor.lastrowid)

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        async with self._connect() as db:
            async with db.execute(query, params or {}) as cursor:
                row = await cursor.fetchone()
                if row is None:
                    return None
                cols = [c[0] for c in cursor.description]
                return dict(zip(cols, row, strict=True))

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        async with self._connect() as db:
            async with db.execute(query, params or {}) as cursor:
                rows = await cursor.fetchall()
                cols = [c[0] for c in cursor.description]
                return [dict(zip(cols, row, strict=True)) for row in rows]

    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (for schema creation)."""
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(script)
            await db.commit()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield a connection holding the write lock for the whole block.

        The block is committed when it exits normally and rolled back when it
        raises.
        """
        async with self._connect(isolation_level=None) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")


async def fetch_row(db: aiosqlite.Connection, query: str, params: dict[str, Any]) -> dict[str, Any] | None:
    """Fetch one row as a dict on an already open connection."""
    async with db.execute(query, params) as cursor:
        row = await cursor.fetchone()
        if row is None:
            return None
        cols = [c[0] for c in cursor.description]
        return dict(zip(cols, row, strict=True))
