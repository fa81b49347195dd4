# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Collects cleanup reports, logs them and notifies when enough was freed.

Notifications are only sent for applied runs whose total freed space is
strictly above the configured threshold. A notifier that fails is logged
and otherwise ignored; it never changes the outcome of the run.
"""

from __future__ import annotations

from collections.abc import Sequence

from .config import IntakeConfig
from .filestore import DiskSpaceStatus, format_size
from .logger import get_logger
from .mailer import MailTransport, SmtpTransport
from .notify import MailNotifier, Notifier, WebhookNotifier
from .retention.policy import MIB, CleanupReport, RetentionSummary, RunMode

logger = get_logger("ReportingSink")


class ReportingSink:
    def __init__(
        self,
        mode: RunMode,
        notifiers: Sequence[Notifier] = (),
        threshold_bytes: int = 50 * MIB,
    ):
        self.summary = RetentionSummary(mode=mode)
        self.notifiers = list(notifiers)
        self.threshold_bytes = threshold_bytes

    def record_disk(self, status: DiskSpaceStatus | None) -> None:
        self.summary.disk = status

    def record(self, report: CleanupReport) -> None:
        verb = "would remove" if report.mode is RunMode.DRY_RUN else "removed"
        message = "%s: %s %d files, %s"
        args = (report.name, verb, report.files_removed, format_size(report.bytes_freed))
        if report.logs_rotated:
            message += ", %d logs rotated (%d lines trimmed)"
            args += (report.logs_rotated, report.lines_trimmed)
        if report.errors:
            logger.warning(message + " with errors: %s", *args, "; ".join(report.errors))
        else:
            logger.info(message, *args)
        self.summary.reports.append(report)

    async def finalize(self) -> RetentionSummary:
        """Log the totals and notify when the run qualifies."""
        summary = self.summary
        logger.info(
            "Cleanup %s: %d files, %s freed, %d error(s)",
            summary.mode.value,
            summary.files_removed,
            format_size(summary.bytes_freed),
            len(summary.errors),
        )
        if summary.mode is RunMode.APPLIED and summary.bytes_freed > self.threshold_bytes and self.notifiers:
            payload = {"event": "cleanup_report", **summary.to_dict()}
            for notifier in self.notifiers:
                try:
                    delivered = await notifier.post(payload)
                except Exception as exc:
                    logger.warning("Notifier %s raised: %s", type(notifier).__name__, exc)
                    delivered = False
                summary.notified = summary.notified or delivered
        return summary


def build_notifiers(config: IntakeConfig, transport: MailTransport | None = None) -> list[Notifier]:
    """Notifiers for cleanup summaries: webhook and/or admin e-mail."""
    notifiers: list[Notifier] = []
    settings = config.notifications
    if settings.webhook_url:
        notifiers.append(WebhookNotifier(settings.webhook_url, settings.webhook_secret))
    if config.mail.admin_email and config.mail.sender:
        notifiers.append(MailNotifier(transport or SmtpTransport(config.mail), config.mail.admin_email))
    return notifiers
