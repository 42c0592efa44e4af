# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Atomic expiring counters backed by SQLite.

Provides the two primitives the rate limiter needs: an atomic
``increment`` that returns the post-increment value and an ``expire`` that
gives a key a time-to-live. An expired key behaves exactly like a key that
never existed, so the next increment starts again from 1 with no expiry.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from .sqlite import SqliteDb, fetch_row

COUNTERS_SCHEMA = """
CREATE TABLE IF NOT EXISTS rate_counters (
    key TEXT PRIMARY KEY,
    value INTEGER NOT NULL,
    expires_ts REAL
);
CREATE INDEX IF NOT EXISTS idx_rate_counters_expires ON rate_counters(expires_ts);
"""


class CounterStore:
    """Shared counter store; every worker reads and increments through it."""

    def __init__(self, db: SqliteDb | str, *, clock: Callable[[], float] = time.time):
        """Bind the store to a database and a clock.

        Args:
            db: A :class:`SqliteDb` or a database path.
            clock: Returns the current epoch time; injectable for tests.
        """
        self.db = db if isinstance(db, SqliteDb) else SqliteDb(db)
        self.clock = clock

    async def init_db(self) -> None:
        await self.db.execute_script(COUNTERS_SCHEMA)

    async def increment(self, key: str) -> int:
        """Increment ``key`` by one and return the new value.

        The upsert and the read back run under the database write lock, so
        concurrent callers always observe distinct values.
        """
        now = self.clock()
        async with self.db.transaction() as db:
            await db.execute(
                """
                INSERT INTO rate_counters (key, value, expires_ts)
                VALUES (:key, 1, NULL)
                ON CONFLICT(key) DO UPDATE SET
                    value = CASE
                        WHEN rate_counters.expires_ts IS NOT NULL AND rate_counters.expires_ts <= :now THEN 1
                        ELSE rate_counters.value + 1
                    END,
                    expires_ts = CASE
                        WHEN rate_counters.expires_ts IS NOT NULL AND rate_counters.expires_ts <= :now THEN NULL
                        ELSE rate_counters.expires_ts
                    END
                """,
                {"key": key, "now": now},
            )
            row = await fetch_row(db, "SELECT value FROM rate_counters WHERE key = :key", {"key": key})
        return int(row["value"]) if row else 0

    async def expire(self, key: str, seconds: float) -> bool:
        """Set the time-to-live of ``key``. Returns False when the key is absent."""
        now = self.clock()
        changed = await self.db.execute(
            """
            UPDATE rate_counters SET expires_ts = :expires_ts
            WHERE key = :key AND (expires_ts IS NULL OR expires_ts > :now)
            """,
            {"key": key, "expires_ts": now + float(seconds), "now": now},
        )
        return changed > 0

    async def get(self, key: str) -> int:
        """Return the live value of ``key`` (0 when absent or expired)."""
        row = await self.db.fetch_one(
            """
            SELECT value FROM rate_counters
            WHERE key = :key AND (expires_ts IS NULL OR expires_ts > :now)
            """,
            {"key": key, "now": self.clock()},
        )
        return int(row["value"]) if row else 0

    async def purge_expired(self) -> int:
        """Delete expired keys, returning how many were removed."""
        return await self.db.execute(
            "DELETE FROM rate_counters WHERE expires_ts IS NOT NULL AND expires_ts <= :now",
            {"now": self.clock()},
        )
