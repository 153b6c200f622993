# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""In-memory sliding-window rate limiter for outbound emails.

The limiter keeps the timestamps of recent sends in two windows, one minute
and one hour long, and answers whether one more send fits under both caps.
State lives only for the lifetime of the process; it is not persisted.

Example:
    Gating a send::

        limiter = RateLimiter(max_per_minute=10, max_per_hour=100)
        if limiter.can_send():
            await transport.send(...)
            limiter.record_sent()
"""

from __future__ import annotations

import time
from collections import deque
from typing import Any, Deque, Dict, Optional

MINUTE_WINDOW = 60
HOUR_WINDOW = 3600


class RateLimiter:
    """Per-process limiter with independent per-minute and per-hour caps."""

    def __init__(self, max_per_minute: int = 10, max_per_hour: int = 100):
        self.max_per_minute = int(max_per_minute)
        self.max_per_hour = int(max_per_hour)
        self._minute: Deque[float] = deque()
        self._hour: Deque[float] = deque()

    @staticmethod
    def _prune(window: Deque[float], span: int, now: float) -> None:
        while window and now - window[0] >= span:
            window.popleft()

    def _prune_all(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        self._prune(self._minute, MINUTE_WINDOW, now)
        self._prune(self._hour, HOUR_WINDOW, now)
        return now

    def can_send(self) -> bool:
        """Check both windows after dropping expired timestamps.

        Returns:
            ``True`` when one more send fits under the per-minute and the
            per-hour cap.
        """
        self._prune_all()
        return len(self._minute) < self.max_per_minute and len(self._hour) < self.max_per_hour

    def record_sent(self) -> None:
        """Account for a send that happened right now."""
        now = time.time()
        self._minute.append(now)
        self._hour.append(now)

    def cleanup(self) -> None:
        """Drop expired timestamps even when nothing is being sent."""
        self._prune_all()

    def update_config(self, max_per_minute: Optional[int] = None, max_per_hour: Optional[int] = None) -> None:
        """Replace the caps; recorded timestamps are kept as they are.

        Args:
            max_per_minute: New per-minute cap, unchanged when ``None``.
            max_per_hour: New per-hour cap, unchanged when ``None``.
        """
        if max_per_minute is not None:
            self.max_per_minute = int(max_per_minute)
        if max_per_hour is not None:
            self.max_per_hour = int(max_per_hour)

    def occupancy(self) -> Dict[str, Dict[str, Any]]:
        """Return the current window usage.

        Returns:
            ``{"minute": {"used", "max"}, "hour": {"used", "max"}}``.
        """
        self._prune_all()
        return {
            "minute": {"used": len(self._minute), "max": self.max_per_minute},
            "hour": {"used": len(self._hour), "max": self.max_per_hour},
        }
