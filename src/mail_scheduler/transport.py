# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Mail transports used by the worker pool.

:class:`SmtpTransport` delivers through aiosmtplib. Connections are opened
lazily and kept per asyncio task by :class:`SMTPPool`, so each worker
reuses its own connection and no two workers share an SMTP session.

:class:`LogTransport` only logs and is used when no SMTP host is configured.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid

import aiosmtplib

logger = logging.getLogger(__name__)

DEFAULT_FROM_ADDRESS = '"Mail Scheduler" <scheduler@localhost>'

ConnectionParams = tuple[str, int, str | None, str | None, bool]


class TransportNotConfigured(RuntimeError):
    """Raised when a transport is used without the settings it needs."""


@dataclass
class DeliveryInfo:
    """What the transport knows about an accepted message."""

    message_id: str
    response: str = ""


class MailTransport(ABC):
    """Collaborator that performs the actual send."""

    @abstractmethod
    async def send(self, to: str, subject: str, html_body: str) -> DeliveryInfo:
        """Send one HTML message. Any exception means the delivery failed."""

    async def cleanup(self) -> None:
        """Release idle resources; called periodically by the service."""

    async def close(self) -> None:
        """Release every resource held by the transport."""


class SMTPPool:
    """Reuse SMTP connections per task to reduce connection overhead."""

    def __init__(self, ttl: int = 300):
        """Create a pool with the given time-to-live, in seconds."""
        self.ttl = ttl
        self.pool: dict[int, tuple[aiosmtplib.SMTP, float, ConnectionParams]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, host: str, port: int, user: str | None, password: str | None, use_tls: bool, timeout: float) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed."""
        # use_tls means implicit TLS (port 465); STARTTLS is left to aiosmtplib's defaults otherwise
        smtp = aiosmtplib.SMTP(hostname=host, port=port, use_tls=use_tls, timeout=timeout)

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=timeout + 5.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection responds correctly to NOOP."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except Exception:
            return False

    async def _quit(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except Exception as exc:
            logger.debug("Ignoring error while closing SMTP connection: %s", exc)

    async def get_connection(
        self,
        host: str,
        port: int,
        user: str | None,
        password: str | None,
        *,
        use_tls: bool,
        timeout: float = 10.0,
    ) -> aiosmtplib.SMTP:
        """Return a pooled connection bound to the calling task."""
        task_id = id(asyncio.current_task())
        params = (host, port, user, password, use_tls)

        async with self.lock:
            entry = self.pool.get(task_id)

        if entry:
            smtp, last_used, entry_params = entry
            fresh_enough = (time.time() - last_used) < self.ttl
            if entry_params == params and fresh_enough and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[task_id] = (smtp, time.time(), params)
                return smtp
            async with self.lock:
                self.pool.pop(task_id, None)
            await self._quit(smtp)

        smtp = await self._connect(host, port, user, password, use_tls, timeout)
        async with self.lock:
            self.pool[task_id] = (smtp, time.time(), params)
        return smtp

    async def discard(self) -> None:
        """Drop the calling task's connection, e.g. after a failed send."""
        task_id = id(asyncio.current_task())
        async with self.lock:
            entry = self.pool.pop(task_id, None)
        if entry:
            await self._quit(entry[0])

    async def cleanup(self) -> None:
        """Close idle or broken connections still registered in the pool."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        expired: list[tuple[int, aiosmtplib.SMTP]] = []
        for task_id, (smtp, last_used, _params) in items:
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                expired.append((task_id, smtp))

        for task_id, _smtp in expired:
            async with self.lock:
                entry = self.pool.pop(task_id, None)
            if entry:
                await self._quit(entry[0])

    async def close_all(self) -> None:
        async with self.lock:
            entries = list(self.pool.values())
            self.pool.clear()
        for smtp, _last_used, _params in entries:
            await self._quit(smtp)


class SmtpTransport(MailTransport):
    """Deliver HTML messages through an SMTP relay."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        *,
        use_tls: bool | None = None,
        from_address: str = DEFAULT_FROM_ADDRESS,
        timeout: float = 10.0,
        send_timeout: float = 30.0,
        pool: SMTPPool | None = None,
    ):
        if not host:
            raise TransportNotConfigured("SMTP host is required")
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        # Implicit TLS by default only on the SMTPS port
        self.use_tls = (self.port == 465) if use_tls is None else bool(use_tls)
        self.from_address = from_address
        self.timeout = timeout
        self.send_timeout = send_timeout
        self.pool = pool or SMTPPool()

    def build_message(self, to: str, subject: str, html_body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.from_address
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid(domain=self.host)
        msg.set_content(html_body, subtype="html")
        return msg

    async def send(self, to: str, subject: str, html_body: str) -> DeliveryInfo:
        msg = self.build_message(to, subject, html_body)
        smtp = await self.pool.get_connection(
            self.host, self.port, self.user, self.password, use_tls=self.use_tls, timeout=self.timeout
        )
        try:
            async with asyncio.timeout(self.send_timeout):
                _errors, response = await smtp.send_message(msg)
        except Exception:
            # The session state is unknown after a failed send
            await self.pool.discard()
            raise
        logger.info("Message sent: %s", msg["Message-ID"])
        return DeliveryInfo(message_id=msg["Message-ID"], response=response)

    async def cleanup(self) -> None:
        await self.pool.cleanup()

    async def close(self) -> None:
        await self.pool.close_all()


class LogTransport(MailTransport):
    """Transport that logs instead of sending; keeps a copy of what it got."""

    def __init__(self, max_history: int = 100):
        self.max_history = max_history
        self.history: list[dict[str, str]] = []

    async def send(self, to: str, subject: str, html_body: str) -> DeliveryInfo:
        message_id = f"<{uuid.uuid4().hex}@mail-scheduler.local>"
        logger.info("Message %s to %s (%s) logged, not sent", message_id, to, subject)
        self.history.append({"to": to, "subject": subject, "body": html_body, "message_id": message_id})
        del self.history[: -self.max_history]
        return DeliveryInfo(message_id=message_id, response="logged")
