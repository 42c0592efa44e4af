# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics exposed by the mail scheduler."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from .models import ANONYMOUS_SENDER


class SchedulerMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.claimed = Counter("msched_claimed_total", "Messages claimed by the poller", registry=self.registry)
        self.orphaned = Counter(
            "msched_orphaned_claims_total",
            "Messages claimed but never enqueued",
            registry=self.registry,
        )
        self.redispatched = Counter(
            "msched_redispatched_total",
            "Orphaned claims re-enqueued by the sweep",
            registry=self.registry,
        )
        self.sent = Counter("msched_sent_total", "Total sent emails", ["sender"], registry=self.registry)
        self.failed = Counter("msched_failed_total", "Total failed delivery attempts", ["sender"], registry=self.registry)
        self.rate_limited = Counter(
            "msched_rate_limited_total", "Total rate limited attempts", ["sender"], registry=self.registry
        )
        self.retries = Counter("msched_retries_total", "Delivery attempts rescheduled", registry=self.registry)
        self.queue_jobs = Gauge("msched_queue_jobs", "Jobs in the dispatch queue", ["state"], registry=self.registry)
        self.messages = Gauge("msched_messages", "Stored messages", ["status"], registry=self.registry)

    def inc_claimed(self):
        self.claimed.inc()

    def inc_orphaned(self):
        self.orphaned.inc()

    def inc_redispatched(self):
        self.redispatched.inc()

    def inc_sent(self, sender: str | None):
        """Increase the ``sent`` counter for the given sender."""
        self.sent.labels(sender=sender or ANONYMOUS_SENDER).inc()

    def inc_failed(self, sender: str | None):
        """Increase the ``failed`` counter for the given sender."""
        self.failed.labels(sender=sender or ANONYMOUS_SENDER).inc()

    def inc_rate_limited(self, sender: str | None):
        """Increase the ``rate_limited`` counter for the given sender."""
        self.rate_limited.labels(sender=sender or ANONYMOUS_SENDER).inc()

    def inc_retry(self):
        self.retries.inc()

    def set_queue_counts(self, counts: dict[str, int]):
        """Update the per-state queue gauge."""
        for state, value in counts.items():
            self.queue_jobs.labels(state=state).set(value)

    def set_message_counts(self, counts: dict[str, int]):
        """Update the per-status message gauge."""
        for status, value in counts.items():
            self.messages.labels(status=status).set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
