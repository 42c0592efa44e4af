# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Service object that owns and wires the delivery pipeline.

``MailScheduler`` is constructed once at startup. It builds the message
store, the dispatch queue, the counter store and rate limiter, the poller
and the worker pool around one SQLite database and one mail transport, and
exposes the operations used by the HTTP API and the CLI.

Example::

    service = MailScheduler(db_path="/data/scheduler.db", transport=LogTransport())
    await service.start()
    await service.submit(to="bob@example.com", subject="Hi", body="<p>Hi</p>", sender="alice")
    ...
    await service.stop()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .counters import CounterStore
from .dispatch_queue import Backoff, DispatchQueue, JobOptions, QueueLimiter
from .logger import get_logger
from .models import ANONYMOUS_SENDER, ScheduledMessage, to_epoch
from .persistence import MessageStore
from .prometheus import SchedulerMetrics
from .rate_limit import RateLimiter
from .scheduler import Scheduler
from .sqlite import SqliteDb
from .transport import LogTransport, MailTransport, SmtpTransport
from .worker import WorkerPool

MAINTENANCE_INTERVAL = 150.0


class MailScheduler:
    """Coordinate persistence, polling, queueing and delivery."""

    def __init__(
        self,
        *,
        db_path: str = "./mail_scheduler.db",
        transport: MailTransport | None = None,
        poll_interval: float = 5.0,
        batch_size: int = 10,
        orphan_timeout: float | None = None,
        max_attempts: int = 3,
        backoff_type: str = "exponential",
        backoff_delay: float = 1.0,
        remove_on_success: bool = True,
        global_limit_max: int | None = 100,
        global_limit_duration: float = 3600.0,
        concurrency: int = 5,
        sender_limit: int = 10,
        sender_window: int = 3600,
        worker_poll_interval: float = 0.5,
        clock: Callable[[], float] = time.time,
        metrics: SchedulerMetrics | None = None,
        logger: logging.Logger | None = None,
    ):
        """Prepare the runtime collaborators; nothing runs until :meth:`start`."""
        self.logger = logger or get_logger()
        self.clock = clock
        self.metrics = metrics or SchedulerMetrics()
        self.db = SqliteDb(db_path)
        self.transport = transport or LogTransport()

        self.store = MessageStore(self.db, clock=clock)
        self.counters = CounterStore(self.db, clock=clock)
        self.rate_limiter = RateLimiter(self.counters)
        self.job_options = JobOptions(
            max_attempts=max_attempts,
            backoff=Backoff(type=backoff_type, delay=backoff_delay),
            remove_on_success=remove_on_success,
        )
        # None disables the global cap; 0 is rejected by QueueLimiter
        limiter = (
            QueueLimiter(max=global_limit_max, duration=global_limit_duration)
            if global_limit_max is not None
            else None
        )
        self.queue = DispatchQueue(self.db, default_options=self.job_options, limiter=limiter, clock=clock)
        self.scheduler = Scheduler(
            self.store,
            self.queue,
            interval=poll_interval,
            batch_size=batch_size,
            job_options=self.job_options,
            orphan_timeout=orphan_timeout,
            clock=clock,
            metrics=self.metrics,
        )
        self.workers = WorkerPool(
            self.queue,
            self.store,
            self.transport,
            self.rate_limiter,
            concurrency=concurrency,
            sender_limit=sender_limit,
            sender_window=sender_window,
            poll_interval=worker_poll_interval,
            clock=clock,
            metrics=self.metrics,
        )

        self._stop = asyncio.Event()
        self._task_maintenance: asyncio.Task | None = None
        self._initialized = False

    @classmethod
    def from_settings(cls, settings: dict[str, Any], **overrides: Any) -> MailScheduler:
        """Build a service from :func:`mail_scheduler.config.load_settings` output."""
        transport = overrides.pop("transport", None)
        if transport is None and settings.get("smtp_host"):
            transport = SmtpTransport(
                settings["smtp_host"],
                int(settings.get("smtp_port") or 587),
                settings.get("smtp_user"),
                settings.get("smtp_password"),
                use_tls=settings.get("smtp_use_tls"),
                from_address=settings["smtp_from"],
                timeout=float(settings.get("smtp_timeout") or 10.0),
            )
        kwargs: dict[str, Any] = {
            key: settings[key]
            for key in (
                "db_path",
                "poll_interval",
                "batch_size",
                "orphan_timeout",
                "max_attempts",
                "backoff_type",
                "backoff_delay",
                "remove_on_success",
                "global_limit_max",
                "global_limit_duration",
                "concurrency",
                "sender_limit",
                "sender_window",
                "worker_poll_interval",
            )
            if settings.get(key) is not None
        }
        kwargs.update(overrides)
        return cls(transport=transport, **kwargs)

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Create the schema of every component (idempotent)."""
        if self._initialized:
            return
        await self.store.init_db()
        await self.queue.init_db()
        await self.counters.init_db()
        self._initialized = True
        await self.refresh_gauges()

    async def start(self) -> None:
        """Start the poller, the workers and the maintenance loop."""
        await self.init()
        self._stop.clear()
        if isinstance(self.transport, LogTransport):
            self.logger.warning("No SMTP relay configured, messages will only be logged")
        self.scheduler.start()
        self.workers.start()
        self._task_maintenance = asyncio.create_task(self._maintenance_loop(), name="maintenance-loop")
        self.logger.info("Mail scheduler started")

    async def stop(self) -> None:
        """Stop polling, let in-flight deliveries finish, release the transport."""
        self._stop.set()
        await self.scheduler.stop()
        await self.workers.stop()
        if self._task_maintenance is not None:
            await asyncio.gather(self._task_maintenance, return_exceptions=True)
            self._task_maintenance = None
        await self.transport.close()
        self.logger.info("Mail scheduler stopped")

    async def _maintenance_loop(self) -> None:
        """Keep gauges fresh, prune expired counters and idle SMTP connections."""
        while not self._stop.is_set():
            try:
                async with asyncio.timeout(MAINTENANCE_INTERVAL):
                    await self._stop.wait()
                return
            except TimeoutError:
                pass
            try:
                await self.counters.purge_expired()
                await self.transport.cleanup()
                await self.refresh_gauges()
            except Exception as exc:
                self.logger.exception("Maintenance cycle failed: %s", exc)

    # ------------------------------------------------------------------ commands
    async def submit(
        self,
        to: str | None,
        subject: str | None,
        body: str | None,
        *,
        sender: str | None = None,
        scheduled_at: datetime | float | None = None,
    ) -> ScheduledMessage:
        """Store a new message as ``PENDING``.

        Raises:
            ValueError: When ``to``, ``subject`` or ``body`` is missing.
        """
        if not to or not subject or not body:
            raise ValueError("Missing required fields")
        now = self.clock()
        scheduled_ts = to_epoch(scheduled_at)
        message = ScheduledMessage(
            to=to,
            subject=subject,
            body=body,
            sender=sender or ANONYMOUS_SENDER,
            scheduled_ts=now if scheduled_ts is None else scheduled_ts,
            created_ts=now,
        )
        await self.store.insert(message)
        self.logger.info("Scheduled email %s for %s", message.id, message.scheduled_at.isoformat())
        return message

    async def list_messages(self, limit: int | None = None) -> list[ScheduledMessage]:
        """Return stored messages, newest first."""
        return await self.store.list_recent(limit)

    def run_now(self) -> None:
        """Wake the poller so due messages are claimed immediately."""
        self.scheduler.wake()

    async def stats(self) -> dict[str, dict[str, int]]:
        """Return message counts per status and job counts per state."""
        return {
            "messages": await self.store.count_by_status(),
            "jobs": await self.queue.counts(),
        }

    async def refresh_gauges(self) -> None:
        """Refresh the metrics describing stored messages and queued jobs."""
        try:
            stats = await self.stats()
        except Exception:
            self.logger.exception("Failed to refresh gauges")
            return
        self.metrics.set_message_counts(stats["messages"])
        self.metrics.set_queue_counts(stats["jobs"])
