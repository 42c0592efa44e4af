# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Poller that turns due messages into delivery jobs.

Each pass reads a batch of due messages, claims them one by one through the
store's conditional update and enqueues a :class:`DeliveryJob` for every
claim it wins. Passes never overlap: the next wait starts only after the
current pass has finished, and a failing pass is logged and followed by the
next one as usual.

A claim that commits but whose enqueue fails leaves the message in
``PROCESSING`` with no job (an orphaned claim). It is reported at ERROR
level and counted; when ``orphan_timeout`` is set, a sweep re-dispatches
such messages after the timeout without moving them back to ``PENDING``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable

from .dispatch_queue import DispatchQueue, JobOptions
from .logger import get_logger
from .models import DeliveryJob, ScheduledMessage
from .persistence import MessageStore
from .prometheus import SchedulerMetrics

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_BATCH_SIZE = 10


class Scheduler:
    """Periodic claim-and-dispatch loop over the message store."""

    def __init__(
        self,
        store: MessageStore,
        queue: DispatchQueue,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        job_options: JobOptions | None = None,
        orphan_timeout: float | None = None,
        clock: Callable[[], float] = time.time,
        metrics: SchedulerMetrics | None = None,
        logger: logging.Logger | None = None,
    ):
        """Wire the poller to its collaborators.

        Args:
            store: Message store to scan and claim from.
            queue: Queue receiving the delivery jobs.
            interval: Seconds between the end of a pass and the next one.
            batch_size: Maximum messages read per pass.
            job_options: Options for every enqueued job (queue default if None).
            orphan_timeout: Seconds after which a claimed message without a
                live job is re-dispatched. None disables the sweep.
            clock: Returns the current epoch time.
            metrics: Optional metrics sink.
            logger: Optional logger.
        """
        self.store = store
        self.queue = queue
        self.interval = max(0.0, float(interval))
        self.batch_size = max(1, int(batch_size))
        self.job_options = job_options
        self.orphan_timeout = orphan_timeout
        self.clock = clock
        self.metrics = metrics
        self.logger = logger or get_logger("MailScheduler.poller")

        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    # ---------------------------------------------------------------- one pass
    async def run_once(self) -> int:
        """Run a single pass and return the number of jobs enqueued.

        Store and queue errors propagate to the caller; :meth:`run` is the
        place where they are contained.
        """
        now = self.clock()
        candidates = await self.store.find_due(self.batch_size, now)
        if candidates:
            self.logger.debug("Found %d due message(s)", len(candidates))

        enqueued = 0
        for message in candidates:
            if not await self.store.try_claim(message.id, now):
                self.logger.debug("Message %s already claimed, skipping", message.id)
                continue
            if self.metrics:
                self.metrics.inc_claimed()
            if await self._dispatch(message):
                enqueued += 1

        if self.orphan_timeout is not None:
            enqueued += await self.sweep_orphans(now)
        return enqueued

    async def _dispatch(self, message: ScheduledMessage) -> bool:
        """Enqueue the job of a claimed message; report an orphan on failure."""
        try:
            await self.queue.enqueue(DeliveryJob.from_message(message), self.job_options)
        except Exception as exc:
            self.logger.error(
                "Message %s claimed but could not be enqueued, it stays PROCESSING without a job: %s",
                message.id,
                exc,
            )
            if self.metrics:
                self.metrics.inc_orphaned()
            return False
        self.logger.info("Queued message %s for %s", message.id, message.to)
        return True

    async def sweep_orphans(self, now: float | None = None) -> int:
        """Re-dispatch claimed messages that have no live job after the timeout."""
        if self.orphan_timeout is None:
            return 0
        now = self.clock() if now is None else now
        stale = await self.store.find_stale_claims(now - self.orphan_timeout, self.batch_size)
        redispatched = 0
        for message in stale:
            if await self.queue.has_live_job(message.id):
                continue
            if not await self.store.refresh_claim(message.id, message.claimed_ts, now):
                continue
            self.logger.warning("Re-dispatching orphaned claim for message %s", message.id)
            if await self._dispatch(message):
                redispatched += 1
                if self.metrics:
                    self.metrics.inc_redispatched()
        return redispatched

    # -------------------------------------------------------------------- loop
    async def run(self) -> None:
        """Poll until :meth:`stop` is called."""
        self.logger.info("Starting email poller (interval=%ss, batch=%d)", self.interval, self.batch_size)
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                self.logger.exception("Error in email poller: %s", exc)
            await self._wait_for_wakeup(self.interval)
        self.logger.info("Email poller stopped")

    def start(self) -> asyncio.Task:
        """Start the loop as a background task (idempotent)."""
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(self.run(), name="email-poller")
        return self._task

    async def stop(self) -> None:
        """Stop the loop; a pass in progress is allowed to finish."""
        self._stop.set()
        self._wake_event.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def wake(self) -> None:
        """Cut the current wait short and poll immediately."""
        self._wake_event.set()

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the loop while allowing external wake-ups via :meth:`wake`."""
        if self._stop.is_set():
            return
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
