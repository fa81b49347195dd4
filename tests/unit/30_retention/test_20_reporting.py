from dataclasses import replace
from pathlib import Path

import pytest

from quote_intake.config import MailConfig, NotificationConfig
from quote_intake.notify import MailNotifier, WebhookNotifier
from quote_intake.reporting import ReportingSink, build_notifiers
from quote_intake.retention.policy import MIB, CleanupReport, RunMode


class RecordingNotifier:
    def __init__(self, result=True, error=None):
        self.result = result
        self.error = error
        self.payloads = []

    async def post(self, payload):
        self.payloads.append(payload)
        if self.error:
            raise self.error
        return self.result


def report(name, freed, mode=RunMode.APPLIED, errors=()):
    return CleanupReport(name, Path("/srv") / name, mode, files_removed=1 if freed else 0,
                         bytes_freed=freed, errors=errors)


@pytest.mark.asyncio
async def test_notifies_only_above_threshold():
    notifier = RecordingNotifier()
    sink = ReportingSink(RunMode.APPLIED, [notifier], threshold_bytes=50 * MIB)
    sink.record(report("uploads", 30 * MIB))
    sink.record(report("logs", 20 * MIB))

    summary = await sink.finalize()
    assert summary.bytes_freed == 50 * MIB
    assert summary.notified is False
    assert notifier.payloads == []

    sink = ReportingSink(RunMode.APPLIED, [notifier], threshold_bytes=50 * MIB)
    sink.record(report("uploads", 50 * MIB + 1))
    summary = await sink.finalize()
    assert summary.notified is True
    [payload] = notifier.payloads
    assert payload["event"] == "cleanup_report"
    assert payload["bytes_freed"] == 50 * MIB + 1
    assert payload["directories"][0]["name"] == "uploads"


@pytest.mark.asyncio
async def test_dry_run_never_notifies():
    notifier = RecordingNotifier()
    sink = ReportingSink(RunMode.DRY_RUN, [notifier], threshold_bytes=0)
    sink.record(report("uploads", 100 * MIB, mode=RunMode.DRY_RUN))
    summary = await sink.finalize()
    assert summary.notified is False
    assert notifier.payloads == []


@pytest.mark.asyncio
async def test_notifier_failures_are_contained():
    failing = RecordingNotifier(error=RuntimeError("boom"))
    refusing = RecordingNotifier(result=False)
    sink = ReportingSink(RunMode.APPLIED, [failing, refusing], threshold_bytes=0)
    sink.record(report("uploads", 10))
    sink.record(report("logs", 0, errors=("directory does not exist",)))

    summary = await sink.finalize()

    assert summary.notified is False
    assert len(failing.payloads) == len(refusing.payloads) == 1
    assert summary.errors == [("logs", "directory does not exist")]
    assert summary.to_dict()["errors"] == [{"directory": "logs", "error": "directory does not exist"}]


def test_build_notifiers(intake_config, transport):
    assert build_notifiers(intake_config) == []

    config = replace(
        intake_config,
        notifications=NotificationConfig(webhook_url="https://hooks.example.com/x"),
        mail=MailConfig(sender="site@example.com", admin_email="admin@example.com"),
    )
    webhook, mail = build_notifiers(config, transport)
    assert isinstance(webhook, WebhookNotifier)
    assert isinstance(mail, MailNotifier)
    assert mail.recipient == "admin@example.com"
