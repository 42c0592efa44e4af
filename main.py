# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Run the mail scheduler with its HTTP API.

Settings are read by :func:`mail_scheduler.config.load_settings` from
``config.ini`` (or ``$MSCHED_CONFIG``) with ``MSCHED_*`` environment
variables as fallbacks.
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from mail_scheduler.api import create_app
from mail_scheduler.config import load_settings
from mail_scheduler.logger import configure_logging
from mail_scheduler.service import MailScheduler


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings["log_level"])
    # Create service instance but don't start it yet - let uvicorn handle the event loop
    service = MailScheduler.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.stop()

    app = create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
