import asyncio
import json
from dataclasses import replace

import pytest

from quote_intake.config import MailConfig, RateLimitConfig, SubmissionConfig
from quote_intake.errors import ConfigurationError, StorageError
from quote_intake.kvstore import SqliteKeyValueStore
from quote_intake.metrics import IntakeMetrics
from quote_intake.pipeline import SubmissionPipeline, SubmissionStatus, build_pipeline, detect_city
from quote_intake.rate_limit import RateLimiter
from quote_intake.uploads import UploadValidator

NOW = 1_767_000_000.0
CLIENT = "203.0.113.50"


class RecordingNotifier:
    def __init__(self):
        self.events = []

    async def post(self, payload):
        self.events.append(payload)
        return True


class BrokenStore(SqliteKeyValueStore):
    async def update(self, key, fn):
        raise StorageError("database is locked")


def make_pipeline(config, transport, store=None, notifier=None):
    limiter = RateLimiter(store or SqliteKeyValueStore(config.paths.rate_limit_db), config.rate_limit,
                          clock=lambda: NOW)
    validator = UploadValidator(config.uploads, config.paths.uploads_dir, clock=lambda: NOW)
    return SubmissionPipeline(config, limiter, validator, transport, metrics=IntakeMetrics(),
                              notifier=notifier, clock=lambda: NOW)


def uploads_in(config):
    directory = config.paths.uploads_dir
    return sorted(p.name for p in directory.iterdir()) if directory.exists() else []


@pytest.mark.asyncio
async def test_six_attachments_five_stored_one_warning(intake_config, transport, valid_form, make_upload, file_bytes):
    pipeline = make_pipeline(intake_config, transport)
    await pipeline.init()
    candidates = [make_upload(f"photo{i}.jpg", file_bytes["jpeg"], "image/jpeg") for i in range(6)]

    outcome = await pipeline.submit(valid_form, candidates, CLIENT)

    assert outcome.status is SubmissionStatus.SENT
    assert len(outcome.stored) == 5
    assert len(outcome.warnings) == 1
    assert "limit exceeded" in outcome.warnings[0]
    assert len(uploads_in(intake_config)) == 5

    [mail] = transport.sent
    assert mail["recipient"] == "quotes@example.com"
    assert mail["subject"].startswith("[ATTACHMENTS] Quote request - Maria Silva (Vila Velha)")
    assert len(mail["attachments"]) == 5
    assert mail["reply_to"] == "maria@example.com"
    assert mail["headers"] == {"X-Priority": "1", "Importance": "High"}
    assert "photo5.jpg" in mail["text"]


@pytest.mark.asyncio
async def test_transport_failure_rolls_back(intake_config, failing_transport, valid_form, make_upload, file_bytes):
    pipeline = make_pipeline(intake_config, failing_transport)
    await pipeline.init()
    candidates = [make_upload(f"photo{i}.jpg", file_bytes["jpeg"], "image/jpeg") for i in range(2)]

    outcome = await pipeline.submit(valid_form, candidates, CLIENT)

    assert outcome.status is SubmissionStatus.TRANSPORT_ERROR
    assert outcome.stored == []
    assert "try again later" in outcome.message
    assert uploads_in(intake_config) == []
    assert b"qi_rollbacks_total 1.0" in pipeline.metrics.generate_latest()


class AbortingTransport:
    def __init__(self, exc):
        self.exc = exc

    async def send(self, *args, **kwargs):
        raise self.exc


@pytest.mark.asyncio
@pytest.mark.parametrize("exc", [asyncio.CancelledError(), RuntimeError("smtp library bug")])
async def test_aborted_send_rolls_back(intake_config, valid_form, make_upload, file_bytes, exc):
    pipeline = make_pipeline(intake_config, AbortingTransport(exc))
    await pipeline.init()
    candidates = [
        make_upload("a.jpg", file_bytes["jpeg"], "image/jpeg"),
        make_upload("b.pdf", file_bytes["pdf"], "application/pdf"),
    ]

    with pytest.raises(type(exc)):
        await pipeline.submit(valid_form, candidates, CLIENT)

    assert uploads_in(intake_config) == []
    assert b"qi_rollbacks_total 1.0" in pipeline.metrics.generate_latest()


@pytest.mark.asyncio
async def test_invalid_form_stores_nothing(intake_config, transport, valid_form, make_upload, file_bytes):
    pipeline = make_pipeline(intake_config, transport)
    await pipeline.init()
    candidate = make_upload("photo.jpg", file_bytes["jpeg"], "image/jpeg")

    outcome = await pipeline.submit({**valid_form, "email": "nope"}, [candidate], CLIENT)

    assert outcome.status is SubmissionStatus.INVALID
    assert outcome.errors == ["Invalid e-mail address"]
    assert uploads_in(intake_config) == []
    assert candidate.temp_path.exists()
    assert transport.sent == []


@pytest.mark.asyncio
async def test_rate_limited_after_budget(intake_config, transport, valid_form):
    config = replace(intake_config, rate_limit=RateLimitConfig(max_requests=2))
    pipeline = make_pipeline(config, transport)
    await pipeline.init()

    statuses = [(await pipeline.submit(valid_form, [], CLIENT)).status for _ in range(3)]

    assert statuses == [SubmissionStatus.SENT, SubmissionStatus.SENT, SubmissionStatus.RATE_LIMITED]
    assert len(transport.sent) == 2
    output = pipeline.metrics.generate_latest()
    assert b"qi_rate_limited_total 1.0" in output
    assert b'qi_submissions_total{status="sent"} 2.0' in output


@pytest.mark.asyncio
async def test_invalid_attempts_count_towards_limit(intake_config, transport, valid_form):
    config = replace(intake_config, rate_limit=RateLimitConfig(max_requests=1))
    pipeline = make_pipeline(config, transport)
    await pipeline.init()

    await pipeline.submit({**valid_form, "email": "nope"}, [], CLIENT)
    outcome = await pipeline.submit(valid_form, [], CLIENT)
    assert outcome.status is SubmissionStatus.RATE_LIMITED


@pytest.mark.asyncio
async def test_broken_rate_limit_store_admits(intake_config, transport, valid_form):
    pipeline = make_pipeline(intake_config, transport, store=BrokenStore(intake_config.paths.rate_limit_db))
    await pipeline.init()

    outcome = await pipeline.submit(valid_form, [], CLIENT)
    assert outcome.status is SubmissionStatus.SENT


@pytest.mark.asyncio
async def test_backup_webhook_and_admin_bcc(intake_config, transport, valid_form):
    config = replace(intake_config, mail=replace(intake_config.mail, admin_email="boss@example.com"))
    notifier = RecordingNotifier()
    pipeline = make_pipeline(config, transport, notifier=notifier)
    await pipeline.init()

    form = {**valid_form, "city": "Serra", "budget-range": "R$ 10.000 - 30.000"}
    outcome = await pipeline.submit(form, [], CLIENT, user_agent="pytest")

    assert outcome.ok
    assert transport.sent[0]["bcc"] == "boss@example.com"
    assert transport.sent[0]["headers"] is None
    [backup] = list((config.paths.backups_dir / "emails").glob("quote_*.json"))
    record = json.loads(backup.read_text())
    assert record["city"] == "Serra"
    assert record["user_agent"] == "pytest"
    assert record["request"]["email"] == "maria@example.com"
    assert record["email_html"] == transport.sent[0]["html"]
    assert "Maria Silva" in record["email_html"]
    [event] = notifier.events
    assert event["event"] == "new_quote"
    assert event["city"] == "Serra"
    assert event["phone"] == "(27) 99999-1234"
    assert event["budget_range"] == "R$ 10.000 - 30.000"


@pytest.mark.asyncio
async def test_backup_disabled(intake_config, transport, valid_form):
    config = replace(intake_config, submission=SubmissionConfig(backup_emails=False))
    pipeline = make_pipeline(config, transport)
    await pipeline.init()

    await pipeline.submit(valid_form, [], CLIENT)
    assert not (config.paths.backups_dir / "emails").exists()


def test_detect_city():
    lookup = {"Vila Velha": ("praia da costa",), "Serra": ("laranjeiras",)}
    assert detect_city("Av. Central, Laranjeiras", lookup, "Grande Vitória") == "Serra"
    assert detect_city("Somewhere else 42", lookup, "Grande Vitória") == "Grande Vitória"


def test_build_pipeline_requires_mail(intake_config):
    with pytest.raises(ConfigurationError):
        build_pipeline(replace(intake_config, mail=MailConfig()))
    assert build_pipeline(intake_config).notifier is None
