# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Deferred email delivery service.

Features:
    - Messages persisted with a PENDING/PROCESSING/SENT/FAILED state machine
    - Periodic poller that atomically claims due messages
    - Durable SQLite job queue with retry and exponential backoff
    - Worker pool with bounded concurrency and a global throughput cap
    - Fixed-window per-sender rate limiting
    - FastAPI REST API for submission and listing
    - Prometheus metrics for monitoring

Example::

    from mail_scheduler.service import MailScheduler
    from mail_scheduler.api import create_app

    scheduler = MailScheduler(db_path="/data/scheduler.db")
    app = create_app(scheduler, api_token="secret")
"""

__version__ = "0.3.0"
