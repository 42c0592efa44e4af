# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Worker pool that performs the deliveries.

Up to ``concurrency`` worker tasks pull jobs from the dispatch queue, each
processing one job to completion before reserving the next. Per job:

1. senders over their per-window quota are rejected before any send, which
   consumes an attempt and lets the queue retry later with backoff;
2. the transport sends the message and the store records ``SENT``;
3. on a send error the store records ``FAILED`` first, then the error goes
   back to the queue to drive retries. A store error after a successful send
   acknowledges the job and leaves the message ``PROCESSING``.

A failing job never stops its worker. The global throughput ceiling is the
queue's own limiter, independent of the per-sender rate limiter.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from .dispatch_queue import DispatchQueue, QueuedJob
from .logger import get_logger
from .persistence import MessageStore
from .prometheus import SchedulerMetrics
from .rate_limit import RateLimiter
from .transport import MailTransport

DEFAULT_CONCURRENCY = 5
DEFAULT_SENDER_LIMIT = 10
DEFAULT_SENDER_WINDOW = 3600
DEFAULT_POLL_INTERVAL = 0.5
STALLED_CHECK_INTERVAL = 30.0


class SenderRateLimited(RuntimeError):
    """Raised when a sender exceeded its quota; the attempt is retried later."""

    def __init__(self, sender: str):
        super().__init__(f"Rate limit exceeded for sender {sender}")
        self.sender = sender


class DeliveryNotRecorded(RuntimeError):
    """The message was sent but its ``SENT`` status could not be stored."""

    def __init__(self, message_id: str):
        super().__init__(f"Email {message_id} was sent but could not be marked as sent")
        self.message_id = message_id


class WorkerPool:
    """Bounded-concurrency consumer of the dispatch queue."""

    def __init__(
        self,
        queue: DispatchQueue,
        store: MessageStore,
        transport: MailTransport,
        rate_limiter: RateLimiter,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        sender_limit: int = DEFAULT_SENDER_LIMIT,
        sender_window: int = DEFAULT_SENDER_WINDOW,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.time,
        metrics: SchedulerMetrics | None = None,
        logger: logging.Logger | None = None,
    ):
        self.queue = queue
        self.store = store
        self.transport = transport
        self.rate_limiter = rate_limiter
        self.concurrency = max(1, int(concurrency))
        self.sender_limit = int(sender_limit)
        self.sender_window = int(sender_window)
        self.poll_interval = max(0.0, float(poll_interval))
        self.clock = clock
        self.metrics = metrics
        self.logger = logger or get_logger("MailScheduler.worker")

        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._last_stalled_check = 0.0

    # ------------------------------------------------------------------ per job
    async def process(self, job: QueuedJob) -> None:
        """Deliver one job; raises when the attempt failed."""
        data = job.data
        self.logger.info(
            "Processing job %s for email %s (attempt %d/%d)",
            job.id,
            data.message_id,
            job.attempts_made,
            job.options.max_attempts,
        )

        if data.sender:
            limited = await self.rate_limiter.is_sender_limited(data.sender, self.sender_limit, self.sender_window)
            if limited:
                self.logger.warning("Rate limit exceeded for sender %s", data.sender)
                if self.metrics:
                    self.metrics.inc_rate_limited(data.sender)
                exc = SenderRateLimited(data.sender)
                if job.is_last_attempt:
                    # The queue drops the job after this attempt
                    await self.store.mark_failed(data.message_id, str(exc))
                raise exc

        try:
            await self.transport.send(data.to, data.subject, data.body)
        except Exception as exc:
            self.logger.error("Failed to send email %s: %s", data.message_id, exc)
            await self.store.mark_failed(data.message_id, str(exc) or exc.__class__.__name__)
            if self.metrics:
                self.metrics.inc_failed(data.sender)
            raise
        if self.metrics:
            self.metrics.inc_sent(data.sender)

        try:
            await self.store.mark_sent(data.message_id, self.clock())
        except Exception as exc:
            raise DeliveryNotRecorded(data.message_id) from exc
        self.logger.info("Email %s sent successfully.", data.message_id)

    async def process_next(self, worker_id: str = "worker-0") -> bool:
        """Reserve and process one job.

        Returns:
            False when no job was available, True otherwise (whatever the
            outcome of the attempt).

        Raises:
            DeliveryNotRecorded: after acknowledging a job whose message went
                out but could not be marked as sent.
        """
        job = await self.queue.reserve(worker_id)
        if job is None:
            return False
        try:
            await self.process(job)
        except DeliveryNotRecorded:
            # Already delivered, never retried
            await self.queue.complete(job)
            raise
        except Exception as exc:
            if await self.queue.fail(job, exc) and self.metrics:
                self.metrics.inc_retry()
        else:
            await self.queue.complete(job)
        return True

    # --------------------------------------------------------------------- loop
    async def _worker_loop(self, worker_id: str) -> None:
        self.logger.debug("Worker %s started", worker_id)
        while not self._stop.is_set():
            try:
                await self._maybe_recover_stalled()
                processed = await self.process_next(worker_id)
            except Exception as exc:
                # Queue or store unavailable; keep the worker alive
                self.logger.exception("Unhandled error in worker %s: %s", worker_id, exc)
                processed = False
            if not processed and not self._stop.is_set():
                await self.queue.wait_for_job(self.poll_interval)
        self.logger.debug("Worker %s stopped", worker_id)

    async def _maybe_recover_stalled(self) -> None:
        now = time.monotonic()
        if now - self._last_stalled_check < STALLED_CHECK_INTERVAL:
            return
        self._last_stalled_check = now
        await self.queue.recover_stalled()

    def start(self) -> list[asyncio.Task]:
        """Spawn the worker tasks (idempotent)."""
        if self._tasks:
            return self._tasks
        self._stop.clear()
        self._last_stalled_check = 0.0
        self._tasks = [
            asyncio.create_task(self._worker_loop(f"worker-{idx}"), name=f"email-worker-{idx}")
            for idx in range(self.concurrency)
        ]
        self.logger.info("Started %d email worker(s)", self.concurrency)
        return self._tasks

    async def stop(self) -> None:
        """Stop pulling new jobs and wait for the in-flight ones to finish."""
        self._stop.set()
        self.queue.wake()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
