# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SMTP transport performing exactly one delivery attempt per call."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional, Tuple

import aiosmtplib

from .logger import get_logger


@dataclass(frozen=True)
class SendResult:
    """Outcome of a single delivery attempt."""

    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "SendResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: str) -> "SendResult":
        return cls(ok=False, error=reason or "unknown error")


class SMTPTransport:
    """Send plain-text emails through one reusable SMTP connection.

    The connection is reused while it is younger than ``ttl`` seconds and
    answers NOOP; otherwise it is replaced. Delivery problems never raise,
    they are reported through :class:`SendResult`.
    """

    def __init__(
        self,
        host: Optional[str],
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
        *,
        use_tls: Optional[bool] = None,
        start_tls: Optional[bool] = None,
        ttl: int = 300,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.sender = sender or user
        # Port 465 speaks TLS from the first byte, 587 upgrades with STARTTLS.
        self.use_tls = (self.port == 465) if use_tls is None else bool(use_tls)
        self.start_tls = (self.port == 587) if start_tls is None else bool(start_tls)
        self.ttl = ttl
        self.timeout = float(timeout)
        self.logger = get_logger("BirthdayMailQueue.transport")
        self._connection: Optional[Tuple[aiosmtplib.SMTP, float]] = None
        self._lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return bool(self.host and self.sender)

    async def _connect(self) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed."""
        smtp = aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            use_tls=self.use_tls,
            start_tls=self.start_tls and not self.use_tls,
            timeout=10.0,
        )

        async def _do_connect():
            await smtp.connect()
            if self.user and self.password:
                await smtp.login(self.user, self.password)

        await asyncio.wait_for(_do_connect(), timeout=15.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection responds correctly to NOOP."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False

    async def _quit(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            pass

    async def get_connection(self) -> aiosmtplib.SMTP:
        """Return the cached connection, reconnecting when stale or broken."""
        entry = self._connection
        if entry:
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                self._connection = (smtp, time.time())
                return smtp
            self._connection = None
            await self._quit(smtp)
        smtp = await self._connect()
        self._connection = (smtp, time.time())
        return smtp

    def build_message(self, recipient: str, subject: str, body: str) -> EmailMessage:
        """Build the plain-text message for one recipient.

        Args:
            recipient: Destination address.
            subject: Subject header.
            body: Plain-text content.

        Returns:
            An :class:`~email.message.EmailMessage` sent from ``sender``.
        """
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = recipient
        msg["Subject"] = subject
        msg.set_content(body or "")
        return msg

    async def send(self, recipient: Optional[str], subject: str, body: str) -> SendResult:
        """Attempt delivery once; never retries internally.

        Args:
            recipient: Destination address; empty values fail immediately.
            subject: Subject header.
            body: Plain-text content.

        Returns:
            :class:`SendResult` with ``ok`` set on delivery, otherwise the
            error text of the SMTP, timeout or network failure.
        """
        if not self.configured:
            return SendResult.failure("Email not configured")
        if not recipient:
            return SendResult.failure("No email address for contact")
        msg = self.build_message(recipient, subject, body)
        async with self._lock:
            try:
                smtp = await self.get_connection()
                async with asyncio.timeout(self.timeout):
                    await smtp.send_message(msg, sender=self.sender)
            except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
                self.logger.warning("SMTP delivery to %s failed: %s", recipient, exc)
                broken = self._connection
                self._connection = None
                if broken:
                    await self._quit(broken[0])
                return SendResult.failure(str(exc) or exc.__class__.__name__)
        return SendResult.success()

    async def close(self) -> None:
        """Close the cached connection, if any."""
        entry, self._connection = self._connection, None
        if entry:
            await self._quit(entry[0])
