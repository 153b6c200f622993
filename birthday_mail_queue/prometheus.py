# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics exposed by the queue processor.

Every :class:`QueueMetrics` instance owns its registry, so several processors
(or test cases) can coexist in one interpreter without name clashes. The
``/metrics`` endpoint of the control API serves :meth:`QueueMetrics.generate_latest`.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class QueueMetrics:
    """Wrapper around the Prometheus registry used by the processor.

    Attributes:
        registry: The collector registry holding every metric below.
        sent: Counter of delivered emails.
        retried: Counter of failed attempts left pending for a retry.
        failed: Counter of emails that exhausted their retries.
        rate_limited: Counter of cycles cut short by the rate limiter.
        pending: Gauge of messages currently pending.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry.

        Args:
            registry: Registry to register into. A private one is created
                when omitted.
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("bmq_sent_total", "Total sent emails", registry=self.registry)
        self.retried = Counter("bmq_retried_total", "Total failed attempts scheduled for retry", registry=self.registry)
        self.failed = Counter("bmq_failed_total", "Total emails failed after exhausting retries", registry=self.registry)
        self.rate_limited = Counter("bmq_rate_limited_total", "Total cycles stopped by the rate limiter", registry=self.registry)
        self.pending = Gauge("bmq_pending_messages", "Current pending messages", registry=self.registry)

    def inc_sent(self) -> None:
        """Increase the ``sent`` counter."""
        self.sent.inc()

    def inc_retried(self) -> None:
        """Increase the ``retried`` counter."""
        self.retried.inc()

    def inc_failed(self) -> None:
        """Increase the ``failed`` counter."""
        self.failed.inc()

    def inc_rate_limited(self) -> None:
        """Increase the ``rate_limited`` counter."""
        self.rate_limited.inc()

    def set_pending(self, value: int) -> None:
        """Update the gauge tracking pending messages.

        Args:
            value: Current number of pending messages.
        """
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot.

        Returns:
            The registry rendered in Prometheus text exposition format.
        """
        return generate_latest(self.registry)
