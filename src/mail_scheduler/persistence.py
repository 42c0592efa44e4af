# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite backed message store used by the scheduler and the workers.

The store is the single source of truth for message status. The only
transition that can race between schedulers, ``PENDING -> PROCESSING``, is
performed by :meth:`MessageStore.try_claim` as one conditional ``UPDATE``.

Example::

    store = MessageStore("/data/scheduler.db")
    await store.init_db()
    msg_id = await store.insert(ScheduledMessage(to="a@b.c", subject="Hi", body="<p>Hi</p>", scheduled_ts=now))
    for message in await store.find_due(limit=10, now=now):
        if await store.try_claim(message.id):
            ...
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from .models import MessageStatus, ScheduledMessage
from .sqlite import SqliteDb

MESSAGES_SCHEMA = """
CREATE TABLE IF NOT EXISTS scheduled_messages (
    id TEXT PRIMARY KEY,
    recipient TEXT NOT NULL,
    subject TEXT NOT NULL,
    body TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    sender TEXT,
    scheduled_ts REAL NOT NULL,
    created_ts REAL NOT NULL,
    claimed_ts REAL,
    sent_ts REAL,
    error TEXT
);
CREATE INDEX IF NOT EXISTS idx_messages_due ON scheduled_messages(status, scheduled_ts);
CREATE INDEX IF NOT EXISTS idx_messages_created ON scheduled_messages(created_ts);
"""

_COLUMNS = "id, recipient, subject, body, status, sender, scheduled_ts, created_ts, claimed_ts, sent_ts, error"

# Statuses a message can be finalized from. Finalizing never skips PROCESSING.
_CLAIMED_STATUSES = (MessageStatus.PROCESSING.value, MessageStatus.SENT.value, MessageStatus.FAILED.value)


class MessageStore:
    """Durable record of every scheduled message and its status."""

    def __init__(self, db: SqliteDb | str, *, clock: Callable[[], float] = time.time):
        """Bind the store to a database.

        Args:
            db: A :class:`SqliteDb` or a database path.
            clock: Returns the current epoch time; injectable for tests.
        """
        self.db = db if isinstance(db, SqliteDb) else SqliteDb(db)
        self.clock = clock

    async def init_db(self) -> None:
        """Create the schema if missing."""
        await self.db.execute_script(MESSAGES_SCHEMA)

    # Writes -------------------------------------------------------------------
    async def insert(self, message: ScheduledMessage) -> str:
        """Persist a new message as ``PENDING`` and return its id."""
        if message.created_ts is None:
            message.created_ts = self.clock()
        message.status = MessageStatus.PENDING
        await self.db.execute(
            f"""
            INSERT INTO scheduled_messages ({_COLUMNS})
            VALUES (:id, :recipient, :subject, :body, :status, :sender,
                    :scheduled_ts, :created_ts, NULL, NULL, NULL)
            """,
            {
                "id": message.id,
                "recipient": message.to,
                "subject": message.subject,
                "body": message.body,
                "status": message.status.value,
                "sender": message.sender,
                "scheduled_ts": float(message.scheduled_ts),
                "created_ts": float(message.created_ts),
            },
        )
        return message.id

    async def try_claim(self, message_id: str, now: float | None = None) -> bool:
        """Move a message from ``PENDING`` to ``PROCESSING``.

        Compare-and-set on the status column: when several schedulers race
        for the same row exactly one of them sees a changed row.

        Returns:
            True if this call performed the transition.
        """
        changed = await self.db.execute(
            """
            UPDATE scheduled_messages
            SET status = :processing, claimed_ts = :now
            WHERE id = :id AND status = :pending
            """,
            {
                "id": message_id,
                "now": self.clock() if now is None else now,
                "processing": MessageStatus.PROCESSING.value,
                "pending": MessageStatus.PENDING.value,
            },
        )
        return changed == 1

    async def mark_sent(self, message_id: str, sent_ts: float | None = None) -> bool:
        """Record a successful delivery.

        Overwrites an earlier ``FAILED`` written by a previous attempt of the
        same job: the last writer wins once the message has been claimed.
        """
        return await self._finalize(
            message_id,
            MessageStatus.SENT,
            sent_ts=self.clock() if sent_ts is None else sent_ts,
            error=None,
        )

    async def mark_failed(self, message_id: str, error: str) -> bool:
        """Record a failed delivery attempt with a human-readable reason."""
        return await self._finalize(message_id, MessageStatus.FAILED, sent_ts=None, error=error)

    async def _finalize(self, message_id: str, status: MessageStatus, *, sent_ts: float | None, error: str | None) -> bool:
        placeholders = ", ".join(f":s{idx}" for idx in range(len(_CLAIMED_STATUSES)))
        params: dict[str, Any] = {f"s{idx}": value for idx, value in enumerate(_CLAIMED_STATUSES)}
        params.update({"id": message_id, "status": status.value, "sent_ts": sent_ts, "error": error})
        changed = await self.db.execute(
            f"""
            UPDATE scheduled_messages
            SET status = :status, sent_ts = :sent_ts, error = :error
            WHERE id = :id AND status IN ({placeholders})
            """,
            params,
        )
        return changed > 0

    async def refresh_claim(self, message_id: str, previous_claimed_ts: float | None, now: float) -> bool:
        """Take over a stale claim, only if nobody refreshed it in the meantime.

        The message stays ``PROCESSING``; ``claimed_ts`` acts as the token of
        the conditional update.
        """
        if previous_claimed_ts is None:
            condition = "claimed_ts IS NULL"
        else:
            condition = "claimed_ts = :previous"
        changed = await self.db.execute(
            f"""
            UPDATE scheduled_messages
            SET claimed_ts = :now
            WHERE id = :id AND status = :processing AND {condition}
            """,
            {
                "id": message_id,
                "now": now,
                "previous": previous_claimed_ts,
                "processing": MessageStatus.PROCESSING.value,
            },
        )
        return changed == 1

    # Reads --------------------------------------------------------------------
    async def get(self, message_id: str) -> ScheduledMessage | None:
        row = await self.db.fetch_one(
            f"SELECT {_COLUMNS} FROM scheduled_messages WHERE id = :id",
            {"id": message_id},
        )
        return ScheduledMessage.from_row(row) if row else None

    async def list_recent(self, limit: int | None = None) -> list[ScheduledMessage]:
        """Return messages ordered by creation time, newest first."""
        query = f"SELECT {_COLUMNS} FROM scheduled_messages ORDER BY created_ts DESC, rowid DESC"
        params: dict[str, Any] = {}
        if limit is not None:
            query += " LIMIT :limit"
            params["limit"] = int(limit)
        rows = await self.db.fetch_all(query, params)
        return [ScheduledMessage.from_row(row) for row in rows]

    async def find_due(self, limit: int, now: float | None = None) -> list[ScheduledMessage]:
        """Return up to ``limit`` pending messages due at ``now``, earliest first."""
        rows = await self.db.fetch_all(
            f"""
            SELECT {_COLUMNS} FROM scheduled_messages
            WHERE status = :pending AND scheduled_ts <= :now
            ORDER BY scheduled_ts ASC, created_ts ASC, id ASC
            LIMIT :limit
            """,
            {
                "pending": MessageStatus.PENDING.value,
                "now": self.clock() if now is None else now,
                "limit": int(limit),
            },
        )
        return [ScheduledMessage.from_row(row) for row in rows]

    async def find_stale_claims(self, older_than: float, limit: int) -> list[ScheduledMessage]:
        """Return ``PROCESSING`` messages claimed before ``older_than``."""
        rows = await self.db.fetch_all(
            f"""
            SELECT {_COLUMNS} FROM scheduled_messages
            WHERE status = :processing AND (claimed_ts IS NULL OR claimed_ts < :older_than)
            ORDER BY claimed_ts ASC, scheduled_ts ASC
            LIMIT :limit
            """,
            {
                "processing": MessageStatus.PROCESSING.value,
                "older_than": older_than,
                "limit": int(limit),
            },
        )
        return [ScheduledMessage.from_row(row) for row in rows]

    async def count_by_status(self) -> dict[str, int]:
        """Return the number of messages per status (every status is present)."""
        rows = await self.db.fetch_all(
            "SELECT status, COUNT(*) AS total FROM scheduled_messages GROUP BY status"
        )
        counts = {status.value: 0 for status in MessageStatus}
        counts.update({row["status"]: int(row["total"]) for row in rows})
        return counts
