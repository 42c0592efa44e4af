# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application built from
:func:`mail_scheduler.config.load_settings`; the service is started and
stopped by the application lifespan.

Usage:
    uvicorn mail_scheduler.server:app --host 0.0.0.0 --port 3001

Environment variables:
    MSCHED_CONFIG: Path to config.ini (default: config.ini)
    MSCHED_DB_PATH: Path to SQLite database (default: ./mail_scheduler.db)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config import load_settings
from .service import MailScheduler

_settings = load_settings()
_scheduler = MailScheduler.from_settings(_settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler - starts and stops the scheduler."""
    await _scheduler.start()
    yield
    await _scheduler.stop()


app = create_app(_scheduler, api_token=_settings.get("api_token"), lifespan=lifespan)
