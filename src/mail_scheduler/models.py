# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Domain records shared by the store, the queue and the workers.

Models:
    - MessageStatus: lifecycle of a scheduled message
    - ScheduledMessage: a persisted message and its delivery state
    - DeliveryJob: the unit of work carried on the dispatch queue
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

ANONYMOUS_SENDER = "anonymous"


class MessageStatus(str, Enum):
    """Delivery status of a scheduled message.

    Transitions are ``PENDING -> PROCESSING -> {SENT | FAILED}``. A message
    leaves ``PENDING`` exactly once, through ``MessageStore.try_claim``.
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"


def new_message_id() -> str:
    return uuid.uuid4().hex


def to_datetime(ts: float | None) -> datetime | None:
    """Convert a stored epoch value into an aware UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), timezone.utc)


def to_epoch(value: datetime | float | int | None) -> float | None:
    """Convert a datetime (naive values are taken as UTC) into epoch seconds."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    return float(value)


@dataclass
class ScheduledMessage:
    """A message waiting for, undergoing or done with delivery.

    Timestamps are epoch seconds (UTC). ``sent_ts`` is only set on success
    and ``error`` only on failure.
    """

    to: str
    subject: str
    body: str
    scheduled_ts: float
    sender: str | None = None
    id: str = field(default_factory=new_message_id)
    status: MessageStatus = MessageStatus.PENDING
    created_ts: float | None = None
    claimed_ts: float | None = None
    sent_ts: float | None = None
    error: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ScheduledMessage:
        return cls(
            id=row["id"],
            to=row["recipient"],
            subject=row["subject"],
            body=row["body"],
            sender=row.get("sender"),
            status=MessageStatus(row["status"]),
            scheduled_ts=row["scheduled_ts"],
            created_ts=row.get("created_ts"),
            claimed_ts=row.get("claimed_ts"),
            sent_ts=row.get("sent_ts"),
            error=row.get("error"),
        )

    @property
    def scheduled_at(self) -> datetime | None:
        return to_datetime(self.scheduled_ts)

    @property
    def created_at(self) -> datetime | None:
        return to_datetime(self.created_ts)

    @property
    def claimed_at(self) -> datetime | None:
        return to_datetime(self.claimed_ts)

    @property
    def sent_at(self) -> datetime | None:
        return to_datetime(self.sent_ts)

    def is_due(self, now: float) -> bool:
        return self.status is MessageStatus.PENDING and self.scheduled_ts <= now

    def as_dict(self) -> dict[str, Any]:
        """Return a JSON friendly representation used by the API and the CLI."""
        return {
            "id": self.id,
            "to": self.to,
            "subject": self.subject,
            "body": self.body,
            "sender": self.sender,
            "status": self.status.value,
            "scheduledAt": self.scheduled_at,
            "createdAt": self.created_at,
            "sentAt": self.sent_at,
            "error": self.error,
        }


@dataclass
class DeliveryJob:
    """Denormalized copy of a message, so workers never re-read the store."""

    message_id: str
    to: str
    subject: str
    body: str
    sender: str | None = None

    @classmethod
    def from_message(cls, message: ScheduledMessage) -> DeliveryJob:
        return cls(
            message_id=message.id,
            to=message.to,
            subject=message.subject,
            body=message.body,
            sender=message.sender or None,
        )

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> DeliveryJob:
        return cls(
            message_id=payload["message_id"],
            to=payload["to"],
            subject=payload["subject"],
            body=payload["body"],
            sender=payload.get("sender"),
        )

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)
