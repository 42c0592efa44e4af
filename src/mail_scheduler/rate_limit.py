# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Fixed-window rate limiter built on the shared counter store.

Each identifier owns one counter per window. The first event of a window
creates the counter and gives it a time-to-live equal to the window; when
it expires the next event opens a fresh window.

The limiter under-throttles at window boundaries (up to ``2 * limit``
events can pass across a boundary) but each check is a single atomic
increment, so concurrent workers never race on a read-modify-write.

Example:
    Checking a sender before delivery::

        limiter = RateLimiter(counters)
        if await limiter.is_sender_limited("alice", limit=10, window_seconds=3600):
            raise SenderRateLimited("alice")
"""

from __future__ import annotations

import logging

from .counters import CounterStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "rate-limit:"


class RateLimiter:
    """Answer "has this identifier exceeded N events per window W?"."""

    def __init__(self, counters: CounterStore):
        self.counters = counters

    async def is_limited(self, identifier: str, limit: int = 5, window_seconds: int = 60) -> bool:
        """Count one event for ``identifier`` and report whether it is over the limit.

        Args:
            identifier: Key of the throttled subject, e.g. ``sender:alice``.
                Empty identifiers are always reported as limited.
            limit: Events allowed per window.
            window_seconds: Window length in seconds.

        Returns:
            True when this event is beyond ``limit`` for the current window.
        """
        if not identifier:
            logger.warning("Rate check without identifier, treating as limited")
            return True

        key = f"{KEY_PREFIX}{identifier}"
        count = await self.counters.increment(key)
        if count == 1:
            await self.counters.expire(key, window_seconds)

        limited = count > limit
        if limited:
            logger.info("Rate limit hit for %s: %d > %d per %ss", identifier, count, limit, window_seconds)
        else:
            logger.debug("Rate check for %s: %d/%d", identifier, count, limit)
        return limited

    async def is_sender_limited(self, sender: str, limit: int, window_seconds: int) -> bool:
        """Rate check scoped to a message sender."""
        if not sender:
            return await self.is_limited("", limit, window_seconds)
        return await self.is_limited(f"sender:{sender}", limit, window_seconds)
