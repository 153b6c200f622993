# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Queue processor draining the email queue under rate control.

The processor decouples "a birthday occurred" from "an email was sent":
producers only insert pending rows through :meth:`EmailQueueProcessor.enqueue`,
while the processor pulls eligible rows in small batches, gates every send on
the :class:`~birthday_mail_queue.rate_limit.RateLimiter` and reclassifies each
message as sent, pending for retry, or failed.

Cycles are serialized, so at most one transport call is in flight at any time
and the limiter's check-then-record sequence is never interleaved.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import aiosqlite

from .logger import get_logger
from .models import ContactSnapshot, MessageStatus, QueueConfig, QueuedMessage
from .notifier import LoggingNotifier
from .persistence import QueueStore
from .prometheus import QueueMetrics
from .rate_limit import RateLimiter
from .transport import SendResult

RATE_LIMIT_KEYS = ("max_per_minute", "max_per_hour")
ATTEMPTS_WINDOW = 86400


class ProcessorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


def _calculate_retry_delay(retry_count: int, delays: Sequence[int]) -> int:
    """Return the backoff in seconds before retry number ``retry_count + 1``.

    An empty ``delays`` sequence means no backoff. Retries beyond the list
    reuse its last value.
    """
    if not delays:
        return 0
    if retry_count >= len(delays):
        return int(delays[-1])
    return int(delays[retry_count])


def _empty_report() -> Dict[str, Any]:
    return {"processed": 0, "sent": 0, "retried": 0, "failed": 0, "rate_limited": False}


class EmailQueueProcessor:
    """Coordinate the queue store, the rate limiter and the mail transport."""

    def __init__(
        self,
        store: QueueStore,
        transport,
        *,
        notifier=None,
        config: QueueConfig | None = None,
        metrics: QueueMetrics | None = None,
        logger=None,
    ):
        self.store = store
        self.transport = transport
        self.notifier = notifier or LoggingNotifier()
        self.config = config or QueueConfig()
        self.rate_limiter = RateLimiter(self.config.max_per_minute, self.config.max_per_hour)
        self.metrics = metrics or QueueMetrics()
        self.logger = logger or get_logger()

        self._state = ProcessorState.IDLE
        self._stop: Optional[asyncio.Event] = None
        self._task_processing: Optional[asyncio.Task] = None
        self._task_cleanup: Optional[asyncio.Task] = None
        self._cycle_lock = asyncio.Lock()
        self._cycles = 0

    # --------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Create the store schema and prime the pending gauge."""
        await self.store.init_db()
        await self._refresh_pending_gauge()

    @property
    def state(self) -> ProcessorState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is ProcessorState.RUNNING

    @property
    def cycles_run(self) -> int:
        """Number of cycles started since construction."""
        return self._cycles

    async def start_processing(self) -> None:
        """Run a cycle now and then on a fixed interval until stopped.

        Calling it while already running does nothing.
        """
        if self.running:
            self.logger.info("Queue processor already running")
            return
        self._state = ProcessorState.RUNNING
        stop = asyncio.Event()
        self._stop = stop
        self._task_processing = asyncio.create_task(self._processing_loop(stop), name="bmq-processing")
        self._task_cleanup = asyncio.create_task(self._cleanup_loop(stop), name="bmq-rate-cleanup")
        self.logger.info(
            "Email queue processor started (interval=%.1fs, batch=%d)",
            self.config.processing_interval,
            self.config.batch_size,
        )

    async def stop_processing(self, wait: bool = False) -> None:
        """Prevent new cycles from starting.

        A cycle already in flight is not interrupted; pass ``wait=True`` to
        return only once it has finished and both loops have exited.
        """
        if not self.running:
            self.logger.debug("Queue processor is not running")
            return
        self._state = ProcessorState.IDLE
        if self._stop is not None:
            self._stop.set()
        tasks = [task for task in (self._task_processing, self._task_cleanup) if task is not None]
        self._task_processing = None
        self._task_cleanup = None
        self._stop = None
        self.logger.info("Email queue processor stopped")
        if wait and tasks:
            await asyncio.gather(*tasks)

    async def process_now(self) -> Dict[str, Any]:
        """Run one cycle immediately, regardless of the recurring schedule."""
        self.logger.info("Manual queue processing triggered")
        return await self._run_cycle()

    async def close(self) -> None:
        """Stop processing and release the transport connection."""
        await self.stop_processing(wait=True)
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()

    async def _wait(self, stop: asyncio.Event, timeout: float) -> None:
        """Sleep up to ``timeout`` seconds, waking early when ``stop`` is set."""
        if stop.is_set():
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await stop.wait()
        except TimeoutError:
            return

    async def _processing_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            await self._run_cycle(stop)
            await self._wait(stop, self.config.processing_interval)

    async def _cleanup_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            await self._wait(stop, self.config.cleanup_interval)
            if stop.is_set():
                break
            self.rate_limiter.cleanup()

    # ------------------------------------------------------------------ cycles
    async def _run_cycle(self, stop: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        """Run one cycle; errors end the cycle but never escape it.

        Args:
            stop: Stop signal of the recurring loop. A cycle that was still
                waiting for the lock when it was set does not start.

        Returns:
            The cycle report: ``processed``, ``sent``, ``retried``,
            ``failed``, ``rate_limited`` and, on error, ``error``.
        """
        async with self._cycle_lock:
            if stop is not None and stop.is_set():
                return _empty_report()
            self._cycles += 1
            try:
                return await self._process_cycle()
            except Exception as exc:
                self.logger.exception("Queue processing error: %s", exc)
                report = _empty_report()
                report["error"] = str(exc)
                return report

    async def _process_cycle(self) -> Dict[str, Any]:
        report = _empty_report()
        if not self.rate_limiter.can_send():
            self.logger.debug("Queue processing paused due to rate limits")
            self.metrics.inc_rate_limited()
            report["rate_limited"] = True
            return report

        messages = await self.store.select_eligible(self.config.batch_size)
        if not messages:
            return report

        self.logger.info("Processing %d queued email(s)", len(messages))
        for index, message in enumerate(messages):
            if not self.rate_limiter.can_send():
                self.logger.debug("Rate limit reached, %d message(s) left pending", len(messages) - index)
                self.metrics.inc_rate_limited()
                report["rate_limited"] = True
                break
            if index and self.config.message_delay > 0:
                await asyncio.sleep(self.config.message_delay)
            outcome = await self._deliver(message)
            report["processed"] += 1
            report[outcome] += 1

        await self._refresh_pending_gauge()
        return report

    async def _deliver(self, message: QueuedMessage) -> str:
        """Attempt delivery of one message and record the outcome.

        Transport errors are converted into a failed attempt; store errors
        propagate and end the cycle.
        """
        contact = message.contact
        self.logger.info("Sending email to %s (queue id %s)", contact.name or "-", message.id)
        try:
            result = await self.transport.send(contact.email, message.subject, message.body)
        except Exception as exc:
            result = SendResult.failure(str(exc) or exc.__class__.__name__)

        if not result.ok:
            return await self._handle_failure(message, result.error or "unknown error")

        await self.store.mark_sent(message.id)
        self.rate_limiter.record_sent()
        self.metrics.inc_sent()
        await self.store.log_attempt(message.id, contact.id, MessageStatus.SENT.value)
        self.logger.info("Email sent to %s", contact.name or contact.email)
        await self._notify("Email Sent", f"Birthday email sent to {contact.name or contact.email}")
        return "sent"

    async def _handle_failure(self, message: QueuedMessage, error: str) -> str:
        name = message.contact_name or message.contact_email or "-"
        if self.config.count_failed_attempts:
            self.rate_limiter.record_sent()

        if message.retry_count < message.max_retries - 1:
            delay = _calculate_retry_delay(message.retry_count, self.config.retry_delays)
            deferred_until = time.time() + delay if delay else None
            await self.store.mark_retry(message.id, error, deferred_until)
            await self.store.log_attempt(message.id, message.contact_id, "retry", error)
            self.metrics.inc_retried()
            self.logger.warning(
                "Failed to send email to %s: %s - will retry (attempt %d/%d)",
                name,
                error,
                message.retry_count + 2,
                message.max_retries,
            )
            return "retried"

        await self.store.mark_failed(message.id, error)
        await self.store.log_attempt(message.id, message.contact_id, MessageStatus.FAILED.value, error)
        self.metrics.inc_failed()
        self.logger.error(
            "Message %s to %s failed permanently after %d attempts: %s",
            message.id,
            name,
            message.max_retries,
            error,
        )
        await self._notify("Email Failed", f"Failed to send email to {name} after {message.max_retries} attempts")
        return "failed"

    async def _notify(self, title: str, body: str) -> None:
        try:
            await self.notifier.notify(title, body)
        except Exception as exc:
            self.logger.warning("Notification '%s' could not be delivered: %s", title, exc)

    async def _refresh_pending_gauge(self) -> None:
        try:
            counts = await self.store.count_by_status()
        except Exception:
            self.logger.exception("Failed to refresh pending gauge")
            return
        self.metrics.set_pending(counts.get(MessageStatus.PENDING.value, 0))

    # ----------------------------------------------------------------- producer
    async def enqueue(
        self,
        contact: Any,
        subject: str,
        body: str,
        priority: int = 0,
        *,
        max_retries: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Insert a pending message; processing picks it up on its own schedule."""
        snapshot = ContactSnapshot.from_any(contact)
        if not snapshot.email:
            return {"ok": False, "error": "No email address for contact"}
        retries = self.config.max_retries if max_retries is None else int(max_retries)
        try:
            queue_id = await self.store.insert_queued(snapshot, subject, body, int(priority), retries)
        except (aiosqlite.Error, OSError) as exc:
            self.logger.error("Error adding email for %s to queue: %s", snapshot.name or snapshot.email, exc)
            return {"ok": False, "error": str(exc)}
        self.logger.info("Added email to queue for %s (ID: %s)", snapshot.name or snapshot.email, queue_id)
        await self._refresh_pending_gauge()
        return {"ok": True, "queue_id": queue_id}

    async def enqueue_many(self, items: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
        """Enqueue a batch, e.g. every birthday found by the daily sweep."""
        queued: List[int] = []
        rejected: List[Dict[str, Any]] = []
        for index, item in enumerate(items):
            if not isinstance(item, Mapping) or "contact" not in item:
                rejected.append({"index": index, "reason": "invalid payload"})
                continue
            result = await self.enqueue(
                item["contact"],
                item.get("subject", ""),
                item.get("body", ""),
                item.get("priority", 0),
                max_retries=item.get("max_retries"),
            )
            if result["ok"]:
                queued.append(result["queue_id"])
            else:
                rejected.append({"index": index, "reason": result["error"]})
        return {"ok": bool(queued) or not rejected, "queued": queued, "rejected": rejected}

    # --------------------------------------------------------------- inspection
    async def get_stats(self) -> Dict[str, Any]:
        """Return queue counts, limiter occupancy and recent delivery attempts.

        Returns:
            ``pending``, ``sent``, ``failed`` and ``total`` message counts,
            ``rate_limits`` with ``used``/``max`` per window, and
            ``last_24h`` with the logged attempt outcomes of the last day.
        """
        counts = await self.store.count_by_status()
        attempts = await self.store.count_attempts_since(time.time() - ATTEMPTS_WINDOW)
        return {**counts, "rate_limits": self.rate_limiter.occupancy(), "last_24h": attempts}

    async def get_status(self) -> Dict[str, Any]:
        """Return the processor state together with its configuration.

        Returns:
            ``running``, ``state``, ``cycles`` (cycles run so far),
            ``config`` (current :class:`QueueConfig` values) and ``stats``
            as returned by :meth:`get_stats`.
        """
        return {
            "running": self.running,
            "state": self._state.value,
            "cycles": self._cycles,
            "config": self.config.model_dump(),
            "stats": await self.get_stats(),
        }

    async def list_messages(self, status: Optional[str] = None, limit: Optional[int] = None) -> List[QueuedMessage]:
        return await self.store.list_messages(status=status, limit=limit)

    async def send_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        return await self.store.list_send_log(limit)

    # ------------------------------------------------------------------ control
    def update_config(self, partial: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Merge new settings; rate limits apply from the next check on."""
        self.config = self.config.merged(partial)
        if partial and any(key in partial for key in RATE_LIMIT_KEYS):
            self.rate_limiter.update_config(self.config.max_per_minute, self.config.max_per_hour)
        self.logger.info("Queue configuration updated: %s", self.config.model_dump())
        return self.config.model_dump()

    async def cleanup_old_items(self, days_old: float = 30) -> int:
        """Delete sent and failed messages older than ``days_old`` days."""
        removed = await self.store.delete_older_than(days_old)
        if removed:
            self.logger.info("Removed %d old queue item(s)", removed)
            await self._refresh_pending_gauge()
        return removed
