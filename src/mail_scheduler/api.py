# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""
FastAPI application factory and HTTP schemas for the mail scheduler.

The module exposes a `create_app` function that builds the REST API used to
submit and inspect scheduled emails and to control the poller. Authentication
is enforced through a configurable API token carried in the ``X-API-Token``
header; ``/health`` is always public.
"""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field

from .service import MailScheduler

service: MailScheduler | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class EmailPayload(BaseModel):
    """Submission body; required fields are checked by the endpoint."""
    model_config = ConfigDict(populate_by_name=True)
    to: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    sender: Optional[str] = None
    scheduled_at: Optional[datetime] = Field(default=None, alias="scheduledAt")


class EmailRecord(BaseModel):
    """Stored message as returned by the API."""
    model_config = ConfigDict(populate_by_name=True)
    id: str
    to: str
    subject: str
    body: str
    sender: Optional[str] = None
    status: str
    scheduled_at: datetime = Field(alias="scheduledAt")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    sent_at: Optional[datetime] = Field(default=None, alias="sentAt")
    error: Optional[str] = None


class CommandStatus(BaseModel):
    ok: bool
    error: Optional[str] = None


class StatusResponse(CommandStatus):
    """Message counts per status and job counts per queue state."""
    messages: dict[str, int] = Field(default_factory=dict)
    jobs: dict[str, int] = Field(default_factory=dict)


def _require_service() -> MailScheduler:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def create_app(
    svc: MailScheduler,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`mail_scheduler.service.MailScheduler` that
        implements the operations behind each endpoint.
    api_token:
        Optional secret used to protect every endpoint but ``/health``. When
        provided, the ``X-API-Token`` header must match this value.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    global service
    service = svc

    api = FastAPI(title="Mail Scheduler", lifespan=lifespan)
    api.state.api_token = api_token
    emails = APIRouter(prefix="/api/emails", tags=["emails"], dependencies=[auth_dependency])
    commands = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.get("/health")
    async def health():
        """Liveness probe."""
        return {"status": "ok"}

    @api.get("/status", response_model=StatusResponse, dependencies=[auth_dependency])
    async def status_report():
        """Return message and job counts."""
        stats = await _require_service().stats()
        return StatusResponse(ok=True, **stats)

    @emails.post("", response_model=EmailRecord, status_code=status.HTTP_201_CREATED)
    async def schedule_email(payload: EmailPayload):
        """Store a message for delivery at ``scheduledAt`` (default: now)."""
        svc = _require_service()
        if not payload.to or not payload.subject or not payload.body:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Missing required fields")
        message = await svc.submit(
            payload.to,
            payload.subject,
            payload.body,
            sender=payload.sender,
            scheduled_at=payload.scheduled_at,
        )
        return EmailRecord.model_validate(message.as_dict())

    @emails.get("", response_model=list[EmailRecord])
    async def list_emails(limit: Optional[int] = None):
        """List stored messages, newest first."""
        messages = await _require_service().list_messages(limit)
        return [EmailRecord.model_validate(msg.as_dict()) for msg in messages]

    @commands.post("/run-now", response_model=CommandStatus, response_model_exclude_none=True)
    async def run_now():
        """Trigger an immediate poller pass."""
        _require_service().run_now()
        return CommandStatus(ok=True)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the pipeline."""
        svc = _require_service()
        await svc.refresh_gauges()
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(emails)
    api.include_router(commands)
    return api
