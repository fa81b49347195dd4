# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for the submission endpoint.

All metrics use the ``qi_`` prefix (quote-intake).

Metrics exposed:
    - ``qi_submissions_total``: Counter of submissions per outcome status.
    - ``qi_uploads_accepted_total``: Counter of stored attachments.
    - ``qi_uploads_rejected_total``: Counter of rejected attachments per reason.
    - ``qi_rate_limited_total``: Counter of submissions refused by the limiter.
    - ``qi_rollbacks_total``: Counter of submissions whose files were removed
      after a transport failure.

Example:
    Accessing metrics via the HTTP API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, generate_latest


class IntakeMetrics:
    """Prometheus metrics collector for quote submissions.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        submissions: Counter labeled by outcome ``status``.
        uploads_accepted: Counter of accepted attachments.
        uploads_rejected: Counter labeled by rejection ``reason``.
        rate_limited: Counter of rate-limited submissions.
        rollbacks: Counter of rolled back submissions.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A new one is
                created when omitted, so tests never share counters.
        """
        self.registry = registry or CollectorRegistry()
        self.submissions = Counter(
            "qi_submissions_total",
            "Total quote submissions by outcome",
            ["status"],
            registry=self.registry,
        )
        self.uploads_accepted = Counter(
            "qi_uploads_accepted_total",
            "Total attachments accepted",
            registry=self.registry,
        )
        self.uploads_rejected = Counter(
            "qi_uploads_rejected_total",
            "Total attachments rejected",
            ["reason"],
            registry=self.registry,
        )
        self.rate_limited = Counter(
            "qi_rate_limited_total",
            "Total submissions refused by the rate limiter",
            registry=self.registry,
        )
        self.rollbacks = Counter(
            "qi_rollbacks_total",
            "Total submissions rolled back after a transport failure",
            registry=self.registry,
        )

    def inc_submission(self, status: str) -> None:
        self.submissions.labels(status=status).inc()

    def inc_uploads(self, accepted: int, rejected_reasons: list[str]) -> None:
        """Record the attachment decisions of one submission."""
        if accepted:
            self.uploads_accepted.inc(accepted)
        for reason in rejected_reasons:
            self.uploads_rejected.labels(reason=reason).inc()

    def inc_rate_limited(self) -> None:
        self.rate_limited.inc()

    def inc_rollback(self) -> None:
        self.rollbacks.inc()

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
