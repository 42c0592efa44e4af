# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Durable, ordered, retrying work queue between the scheduler and the workers.

Jobs live in the ``delivery_jobs`` table until a worker acknowledges them, so
a crash never loses a job: an active job whose lock expires is handed out
again by :meth:`DispatchQueue.recover_stalled`. Delivery is therefore
at-least-once and handlers must tolerate duplicates. Acknowledgements from a
worker whose lock already expired are ignored.

Job lifecycle::

    enqueue -> waiting -> (reserve) active -> complete -> removed / completed
                  ^                   |
                  +---- fail (backoff)+-> attempts exhausted -> removed / failed

Retry behaviour is described by :class:`JobOptions` and :class:`Backoff`.
With the defaults a failing job runs three times, waiting 1s after the
first failure and 2s after the second.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .models import DeliveryJob
from .sqlite import SqliteDb, fetch_row

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_NAME = "email-queue"
DEFAULT_JOB_NAME = "send-email"
DEFAULT_LOCK_DURATION = 300.0

BACKOFF_EXPONENTIAL = "exponential"
BACKOFF_FIXED = "fixed"

STATE_WAITING = "waiting"
STATE_ACTIVE = "active"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"
JOB_STATES = (STATE_WAITING, STATE_ACTIVE, STATE_COMPLETED, STATE_FAILED)

# A reservation is identified by its worker and attempt number; both change
# when a stalled job is handed out again.
_OWNED_BY = "id = :id AND state = :active AND worker_id = :worker_id AND attempts_made = :attempts_made"

QUEUE_SCHEMA = """
CREATE TABLE IF NOT EXISTS delivery_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue TEXT NOT NULL,
    name TEXT NOT NULL,
    message_id TEXT,
    payload TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'waiting',
    attempts_made INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    backoff_type TEXT NOT NULL,
    backoff_delay REAL NOT NULL,
    remove_on_success INTEGER NOT NULL,
    remove_on_fail INTEGER NOT NULL,
    available_ts REAL NOT NULL,
    locked_until REAL,
    worker_id TEXT,
    last_error TEXT,
    created_ts REAL NOT NULL,
    finished_ts REAL
);
CREATE INDEX IF NOT EXISTS idx_jobs_ready ON delivery_jobs(queue, state, available_ts);
CREATE INDEX IF NOT EXISTS idx_jobs_message ON delivery_jobs(message_id);
CREATE TABLE IF NOT EXISTS queue_limiter (
    queue TEXT PRIMARY KEY,
    window_start REAL NOT NULL,
    count INTEGER NOT NULL
);
"""


@dataclass(frozen=True)
class Backoff:
    """Delay policy between attempts of the same job."""

    type: str = BACKOFF_EXPONENTIAL
    delay: float = 1.0

    def __post_init__(self) -> None:
        if self.type not in (BACKOFF_EXPONENTIAL, BACKOFF_FIXED):
            raise ValueError(f"Unknown backoff type: {self.type!r}")
        if self.delay < 0:
            raise ValueError("Backoff delay must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after attempt number ``attempt`` (1-based) failed."""
        attempt = max(1, int(attempt))
        if self.type == BACKOFF_FIXED:
            return self.delay
        return self.delay * 2 ** (attempt - 1)


@dataclass(frozen=True)
class JobOptions:
    """Per-job retry and retention options."""

    max_attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)
    remove_on_success: bool = True
    remove_on_fail: bool = True
    delay: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


@dataclass(frozen=True)
class QueueLimiter:
    """Global cap of ``max`` reservations per window of ``duration`` seconds."""

    max: int = 100
    duration: float = 3600.0

    def __post_init__(self) -> None:
        if self.max < 1:
            raise ValueError("Limiter max must be >= 1")
        if self.duration <= 0:
            raise ValueError("Limiter duration must be > 0")


@dataclass
class QueuedJob:
    """A job handed to a worker, with its attempt bookkeeping."""

    id: int
    data: DeliveryJob
    attempts_made: int
    options: JobOptions
    name: str = DEFAULT_JOB_NAME
    worker_id: str | None = None
    last_error: str | None = None

    @property
    def is_last_attempt(self) -> bool:
        return self.attempts_made >= self.options.max_attempts


def _options_from_row(row: dict[str, Any]) -> JobOptions:
    return JobOptions(
        max_attempts=int(row["max_attempts"]),
        backoff=Backoff(type=row["backoff_type"], delay=float(row["backoff_delay"])),
        remove_on_success=bool(row["remove_on_success"]),
        remove_on_fail=bool(row["remove_on_fail"]),
    )


class DispatchQueue:
    """SQLite implementation of the durable dispatch queue."""

    def __init__(
        self,
        db: SqliteDb | str,
        *,
        name: str = DEFAULT_QUEUE_NAME,
        default_options: JobOptions | None = None,
        limiter: QueueLimiter | None = None,
        lock_duration: float = DEFAULT_LOCK_DURATION,
        clock: Callable[[], float] = time.time,
    ):
        """Configure the queue.

        Args:
            db: A :class:`SqliteDb` or a database path.
            name: Queue name; several queues can share one table.
            default_options: Options applied when ``enqueue`` gets none.
            limiter: Optional global throughput cap enforced on ``reserve``.
            lock_duration: Seconds a reserved job stays owned by its worker
                before it is considered stalled.
            clock: Returns the current epoch time; injectable for tests.
        """
        self.db = db if isinstance(db, SqliteDb) else SqliteDb(db)
        self.name = name
        self.default_options = default_options or JobOptions()
        self.limiter = limiter
        self.lock_duration = float(lock_duration)
        self.clock = clock
        self._wake_event = asyncio.Event()

    async def init_db(self) -> None:
        await self.db.execute_script(QUEUE_SCHEMA)

    # Producer side ------------------------------------------------------------
    async def enqueue(
        self,
        job: DeliveryJob,
        options: JobOptions | None = None,
        *,
        name: str = DEFAULT_JOB_NAME,
    ) -> int:
        """Add a job and return its queue id. The job is durable on return."""
        options = options or self.default_options
        now = self.clock()
        job_id = await self.db.insert(
            """
            INSERT INTO delivery_jobs (
                queue, name, message_id, payload, state, attempts_made, max_attempts,
                backoff_type, backoff_delay, remove_on_success, remove_on_fail,
                available_ts, created_ts
            ) VALUES (
                :queue, :name, :message_id, :payload, :state, 0, :max_attempts,
                :backoff_type, :backoff_delay, :remove_on_success, :remove_on_fail,
                :available_ts, :created_ts
            )
            """,
            {
                "queue": self.name,
                "name": name,
                "message_id": job.message_id,
                "payload": json.dumps(job.to_payload()),
                "state": STATE_WAITING,
                "max_attempts": options.max_attempts,
                "backoff_type": options.backoff.type,
                "backoff_delay": options.backoff.delay,
                "remove_on_success": int(options.remove_on_success),
                "remove_on_fail": int(options.remove_on_fail),
                "available_ts": now + max(0.0, options.delay),
                "created_ts": now,
            },
        )
        logger.debug("Enqueued job %s for message %s", job_id, job.message_id)
        self._wake_event.set()
        return job_id

    # Consumer side ------------------------------------------------------------
    async def reserve(self, worker_id: str) -> QueuedJob | None:
        """Hand the earliest available job to ``worker_id``.

        Returns None when nothing is ready or the global limiter is saturated.
        The attempt counter is incremented here, so a worker crash still
        consumes an attempt.
        """
        now = self.clock()
        async with self.db.transaction() as db:
            row = await fetch_row(
                db,
                """
                SELECT * FROM delivery_jobs
                WHERE queue = :queue AND state = :waiting AND available_ts <= :now
                ORDER BY available_ts ASC, id ASC
                LIMIT 1
                """,
                {"queue": self.name, "waiting": STATE_WAITING, "now": now},
            )
            if row is None:
                return None
            if self.limiter is not None and not await self._take_limiter_slot(db, now):
                return None
            await db.execute(
                """
                UPDATE delivery_jobs
                SET state = :active, attempts_made = attempts_made + 1,
                    locked_until = :locked_until, worker_id = :worker_id
                WHERE id = :id
                """,
                {
                    "id": row["id"],
                    "active": STATE_ACTIVE,
                    "locked_until": now + self.lock_duration,
                    "worker_id": worker_id,
                },
            )
        return QueuedJob(
            id=int(row["id"]),
            data=DeliveryJob.from_payload(json.loads(row["payload"])),
            attempts_made=int(row["attempts_made"]) + 1,
            options=_options_from_row(row),
            name=row["name"],
            worker_id=worker_id,
            last_error=row["last_error"],
        )

    async def _take_limiter_slot(self, db, now: float) -> bool:
        """Count one reservation against the global window; runs under the write lock."""
        limiter = self.limiter
        row = await fetch_row(
            db,
            "SELECT window_start, count FROM queue_limiter WHERE queue = :queue",
            {"queue": self.name},
        )
        if row is None or now >= float(row["window_start"]) + limiter.duration:
            await db.execute(
                """
                INSERT INTO queue_limiter (queue, window_start, count) VALUES (:queue, :now, 1)
                ON CONFLICT(queue) DO UPDATE SET window_start = excluded.window_start, count = 1
                """,
                {"queue": self.name, "now": now},
            )
            return True
        if int(row["count"]) >= limiter.max:
            logger.debug(
                "Queue %s limiter saturated (%d per %ss)", self.name, limiter.max, limiter.duration
            )
            return False
        await db.execute(
            "UPDATE queue_limiter SET count = count + 1 WHERE queue = :queue",
            {"queue": self.name},
        )
        return True

    @staticmethod
    def _owner_params(job: QueuedJob) -> dict[str, Any]:
        return {
            "id": job.id,
            "active": STATE_ACTIVE,
            "worker_id": job.worker_id,
            "attempts_made": job.attempts_made,
        }

    def _log_lost_lock(self, job: QueuedJob, action: str) -> None:
        logger.warning(
            "Job %s (attempt %d, worker %s) lost its lock before %s; ignoring",
            job.id,
            job.attempts_made,
            job.worker_id,
            action,
        )

    async def complete(self, job: QueuedJob) -> bool:
        """Acknowledge a successfully processed job.

        Returns:
            False when the reservation is no longer held, e.g. the lock
            expired and the job went to another worker. The row is left alone.
        """
        params = self._owner_params(job)
        if job.options.remove_on_success:
            changed = await self.db.execute(
                f"DELETE FROM delivery_jobs WHERE {_OWNED_BY}",
                params,
            )
        else:
            changed = await self.db.execute(
                f"""
                UPDATE delivery_jobs
                SET state = :completed, finished_ts = :now, locked_until = NULL
                WHERE {_OWNED_BY}
                """,
                {**params, "completed": STATE_COMPLETED, "now": self.clock()},
            )
        if not changed:
            self._log_lost_lock(job, "completion")
            return False
        return True

    async def fail(self, job: QueuedJob, error: BaseException | str) -> bool:
        """Record a failed attempt.

        Returns:
            True if the job was rescheduled for another attempt, False if its
            attempts are exhausted and it left the queue, or if the
            reservation was no longer held.
        """
        reason = str(error) or error.__class__.__name__
        now = self.clock()
        if not job.is_last_attempt:
            delay = job.options.backoff.delay_for(job.attempts_made)
            changed = await self.db.execute(
                f"""
                UPDATE delivery_jobs
                SET state = :waiting, available_ts = :available_ts, locked_until = NULL,
                    worker_id = NULL, last_error = :error
                WHERE {_OWNED_BY}
                """,
                {**self._owner_params(job), "waiting": STATE_WAITING, "available_ts": now + delay, "error": reason},
            )
            if not changed:
                self._log_lost_lock(job, "retry")
                return False
            logger.info(
                "Job %s attempt %d/%d failed, retrying in %.1fs: %s",
                job.id,
                job.attempts_made,
                job.options.max_attempts,
                delay,
                reason,
            )
            self._wake_event.set()
            return True

        logger.warning(
            "Job %s for message %s failed permanently after %d attempts: %s",
            job.id,
            job.data.message_id,
            job.attempts_made,
            reason,
        )
        params = self._owner_params(job)
        if job.options.remove_on_fail:
            changed = await self.db.execute(f"DELETE FROM delivery_jobs WHERE {_OWNED_BY}", params)
        else:
            changed = await self.db.execute(
                f"""
                UPDATE delivery_jobs
                SET state = :failed, finished_ts = :now, locked_until = NULL, last_error = :error
                WHERE {_OWNED_BY}
                """,
                {**params, "failed": STATE_FAILED, "now": now, "error": reason},
            )
        if not changed:
            self._log_lost_lock(job, "final failure")
        return False

    async def recover_stalled(self) -> int:
        """Return active jobs whose lock expired to the waiting state.

        Jobs that already used all their attempts are dropped instead.

        Returns:
            Number of jobs made available again.
        """
        now = self.clock()
        recovered = 0
        async with self.db.transaction() as db:
            async with db.execute(
                """
                SELECT id, message_id, attempts_made, max_attempts, remove_on_fail
                FROM delivery_jobs
                WHERE queue = :queue AND state = :active AND locked_until < :now
                """,
                {"queue": self.name, "active": STATE_ACTIVE, "now": now},
            ) as cursor:
                rows = await cursor.fetchall()
            for job_id, message_id, attempts_made, max_attempts, remove_on_fail in rows:
                if attempts_made >= max_attempts:
                    logger.error(
                        "Stalled job %s for message %s exhausted its %d attempts, dropping it",
                        job_id,
                        message_id,
                        max_attempts,
                    )
                    if remove_on_fail:
                        await db.execute("DELETE FROM delivery_jobs WHERE id = :id", {"id": job_id})
                    else:
                        await db.execute(
                            """
                            UPDATE delivery_jobs
                            SET state = :failed, finished_ts = :now, locked_until = NULL,
                                last_error = 'job stalled'
                            WHERE id = :id
                            """,
                            {"id": job_id, "failed": STATE_FAILED, "now": now},
                        )
                    continue
                await db.execute(
                    """
                    UPDATE delivery_jobs
                    SET state = :waiting, available_ts = :now, locked_until = NULL, worker_id = NULL
                    WHERE id = :id
                    """,
                    {"id": job_id, "waiting": STATE_WAITING, "now": now},
                )
                recovered += 1
        if recovered:
            logger.warning("Recovered %d stalled job(s) in queue %s", recovered, self.name)
            self._wake_event.set()
        return recovered

    # Introspection ------------------------------------------------------------
    async def has_live_job(self, message_id: str) -> bool:
        """Return True while a waiting or active job exists for the message."""
        row = await self.db.fetch_one(
            """
            SELECT 1 AS found FROM delivery_jobs
            WHERE queue = :queue AND message_id = :message_id AND state IN (:waiting, :active)
            LIMIT 1
            """,
            {"queue": self.name, "message_id": message_id, "waiting": STATE_WAITING, "active": STATE_ACTIVE},
        )
        return row is not None

    async def counts(self) -> dict[str, int]:
        """Return the number of jobs per state (every state is present)."""
        rows = await self.db.fetch_all(
            "SELECT state, COUNT(*) AS total FROM delivery_jobs WHERE queue = :queue GROUP BY state",
            {"queue": self.name},
        )
        counts = {state: 0 for state in JOB_STATES}
        counts.update({row["state"]: int(row["total"]) for row in rows})
        return counts

    async def list_jobs(self, state: str | None = None) -> list[dict[str, Any]]:
        """Return raw job rows, oldest first, optionally filtered by state."""
        query = "SELECT * FROM delivery_jobs WHERE queue = :queue"
        params: dict[str, Any] = {"queue": self.name}
        if state is not None:
            query += " AND state = :state"
            params["state"] = state
        query += " ORDER BY id ASC"
        rows = await self.db.fetch_all(query, params)
        for row in rows:
            row["payload"] = json.loads(row["payload"])
        return rows

    async def next_available_ts(self) -> float | None:
        """Epoch time at which the next waiting job becomes available."""
        row = await self.db.fetch_one(
            "SELECT MIN(available_ts) AS ts FROM delivery_jobs WHERE queue = :queue AND state = :waiting",
            {"queue": self.name, "waiting": STATE_WAITING},
        )
        if row is None or row["ts"] is None:
            return None
        return float(row["ts"])

    async def wait_for_job(self, timeout: float | None) -> None:
        """Pause a consumer until a job is enqueued or ``timeout`` elapses."""
        if timeout is None or math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except TimeoutError:
            return
        self._wake_event.clear()

    def wake(self) -> None:
        """Wake every consumer blocked in :meth:`wait_for_job`."""
        self._wake_event.set()
