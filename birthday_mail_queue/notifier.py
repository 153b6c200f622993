"""User-facing notifications emitted by the queue processor.

Notifiers are best effort: the processor logs and ignores any error they raise.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional

import aiohttp

from .logger import get_logger


class LoggingNotifier:
    """Write notifications to the application log."""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("BirthdayMailQueue.notify")

    async def notify(self, title: str, body: str) -> None:
        self.logger.info("%s: %s", title, body)


class WebhookNotifier:
    """POST notifications as JSON to an HTTP endpoint."""

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.url = url
        self.token = token
        self.user = user
        self.password = password
        self.timeout = timeout
        self.logger = get_logger("BirthdayMailQueue.notify")

    async def notify(self, title: str, body: str) -> None:
        headers: Dict[str, str] = {}
        auth = None
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        elif self.user:
            auth = aiohttp.BasicAuth(self.user, self.password or "")
        payload = {
            "title": title,
            "body": body,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }
        self.logger.debug("Posting notification to %s: %s", self.url, title)
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.post(self.url, json=payload, auth=auth, headers=headers or None) as resp:
                resp.raise_for_status()
