# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Submission pipeline: admission, validation, storage, delivery, rollback.

One call to :meth:`SubmissionPipeline.submit` handles one quote request:

1. the client key is checked against the rate limiter;
2. form fields are validated, and nothing is stored when they are invalid;
3. attachments are validated and the accepted ones moved into storage;
4. the quote e-mail is rendered and handed to the mail transport;
5. when the transport fails, or the send is cancelled or crashes, every file
   stored in step 3 is deleted again.

After a successful delivery a JSON backup of the request is written and a
``new_quote`` webhook event is posted. Both are best-effort.

The pipeline never raises for conditions the submitter can act on; they are
returned as a :class:`SubmissionOutcome`.
"""

from __future__ import annotations

import json
import secrets
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .config import IntakeConfig
from .errors import StorageError, TransportError
from .filestore import Clock, LocalFileStore, system_clock
from .forms import QuoteRequest, parse_quote_request
from .kvstore import SqliteKeyValueStore
from .logger import get_logger
from .mailer import MailTransport, RenderedEmail, SmtpTransport, render_quote_email
from .metrics import IntakeMetrics
from .notify import Notifier, WebhookNotifier
from .rate_limit import RateLimiter
from .uploads import StoredFile, UploadCandidate, UploadValidator

logger = get_logger("SubmissionPipeline")

SUCCESS_MESSAGE = "Quote request sent successfully! We will contact you within 24 hours."
RETRY_MESSAGE = "We could not send your request right now. Please try again later."


class SubmissionStatus(str, Enum):
    SENT = "sent"
    INVALID = "invalid"
    RATE_LIMITED = "rate_limited"
    TRANSPORT_ERROR = "transport_error"


@dataclass
class SubmissionOutcome:
    """Result of one submission attempt.

    Attributes:
        status: What happened.
        message: Summary for the submitter.
        errors: Form validation messages (``invalid`` only).
        warnings: One message per rejected attachment.
        stored: Files kept after the submission (empty unless ``sent``).
        retry_after: Seconds until a rate-limited client may retry.
    """

    status: SubmissionStatus
    message: str = ""
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    stored: list[StoredFile] = field(default_factory=list)
    retry_after: float | None = None

    @property
    def ok(self) -> bool:
        return self.status is SubmissionStatus.SENT

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "ok": self.ok,
            "message": self.message,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "files": [item.original_name for item in self.stored],
            "retry_after": self.retry_after,
        }


def detect_city(address: str, lookup: Mapping[str, Iterable[str]], default: str) -> str:
    """Return the first city whose neighbourhood terms occur in ``address``."""
    lowered = address.lower()
    for city, terms in lookup.items():
        if any(term in lowered for term in terms):
            return city
    return default


class SubmissionPipeline:
    """Orchestrates the handling of one quote request.

    Attributes:
        config: Process configuration.
        limiter: Sliding-window admission control.
        validator: Attachment validation and storage.
        transport: Mail delivery.
        store: Filesystem access used for rollback and backups.
        metrics: Optional Prometheus counters.
        notifier: Optional receiver of ``new_quote`` events.
    """

    def __init__(
        self,
        config: IntakeConfig,
        limiter: RateLimiter,
        validator: UploadValidator,
        transport: MailTransport,
        store: LocalFileStore | None = None,
        metrics: IntakeMetrics | None = None,
        notifier: Notifier | None = None,
        clock: Clock = system_clock,
    ):
        self.config = config
        self.limiter = limiter
        self.validator = validator
        self.transport = transport
        self.store = store or validator.store
        self.metrics = metrics
        self.notifier = notifier
        self.clock = clock

    async def init(self) -> None:
        """Prepare persistent state (rate-limit table, upload directory)."""
        await self.limiter.init()
        await self.store.ensure_dir(self.validator.upload_dir)

    async def submit(
        self,
        form_data: Mapping[str, Any],
        candidates: Iterable[UploadCandidate],
        client_key: str,
        user_agent: str | None = None,
    ) -> SubmissionOutcome:
        """Run one submission through the pipeline.

        Args:
            form_data: Raw form fields.
            candidates: Received files, still in temporary storage.
            client_key: Rate-limit identity, normally the client address.
            user_agent: Recorded in the e-mail backup only.
        """
        outcome = await self._submit(form_data, candidates, client_key, user_agent)
        if self.metrics is not None:
            self.metrics.inc_submission(outcome.status.value)
        return outcome

    async def _submit(
        self,
        form_data: Mapping[str, Any],
        candidates: Iterable[UploadCandidate],
        client_key: str,
        user_agent: str | None,
    ) -> SubmissionOutcome:
        try:
            admission = await self.limiter.admit(client_key)
        except StorageError as exc:
            # Fail open
            logger.error("Rate limit check failed for %s, admitting: %s", client_key, exc)
        else:
            if not admission.allowed:
                if self.metrics is not None:
                    self.metrics.inc_rate_limited()
                return SubmissionOutcome(
                    status=SubmissionStatus.RATE_LIMITED,
                    message=admission.reason or "",
                    retry_after=admission.retry_after,
                )

        request, errors = parse_quote_request(
            dict(form_data), submission=self.config.submission, antispam=self.config.antispam
        )
        if request is None:
            logger.info("Invalid submission from %s: %s", client_key, "; ".join(errors))
            return SubmissionOutcome(status=SubmissionStatus.INVALID, message="; ".join(errors), errors=errors)

        upload = await self.validator.validate(candidates)
        warnings = [str(warning) for warning in upload.warnings]
        if self.metrics is not None:
            self.metrics.inc_uploads(len(upload.accepted), [w.reason.value for w in upload.warnings])

        submission = self.config.submission
        city = request.city or detect_city(request.address, submission.city_lookup, submission.default_city)
        sent_at = datetime.fromtimestamp(self.clock())
        rendered = render_quote_email(
            request, city, upload.accepted, warnings, client_ip=client_key, sent_at=sent_at
        )
        headers = {"X-Priority": "1", "Importance": "High"} if rendered.high_priority else None
        mail = self.config.mail
        bcc = mail.admin_email if mail.admin_email and mail.admin_email != mail.recipient else None

        try:
            await self.transport.send(
                mail.recipient or "",
                rendered.subject,
                rendered.html_body,
                rendered.text_body,
                upload.accepted,
                reply_to=request.email,
                bcc=bcc,
                headers=headers,
            )
        except TransportError as exc:
            logger.error("Delivery of quote from %s failed, rolling back %d file(s): %s",
                         request.email, len(upload.accepted), exc)
            await self.rollback(upload.accepted)
            if self.metrics is not None:
                self.metrics.inc_rollback()
            return SubmissionOutcome(
                status=SubmissionStatus.TRANSPORT_ERROR, message=RETRY_MESSAGE, warnings=warnings
            )
        except BaseException:
            # No stored file may outlive an aborted send.
            logger.error("Delivery of quote from %s aborted, rolling back %d file(s)",
                         request.email, len(upload.accepted))
            await self.rollback(upload.accepted)
            if self.metrics is not None:
                self.metrics.inc_rollback()
            raise

        logger.info("Quote from %s <%s> sent with %d attachment(s)", request.name, request.email, len(upload.accepted))
        await self._after_send(request, city, rendered, upload.accepted, warnings, client_key, user_agent, sent_at)
        return SubmissionOutcome(
            status=SubmissionStatus.SENT,
            message=SUCCESS_MESSAGE,
            warnings=warnings,
            stored=upload.accepted,
        )

    async def rollback(self, stored: Iterable[StoredFile]) -> int:
        """Delete stored files. Returns how many were removed."""
        removed = 0
        for item in stored:
            try:
                await self.store.delete(item.path, missing_ok=True)
                removed += 1
            except OSError as exc:
                logger.error("Rollback could not delete %s: %s", item.path, exc)
        return removed

    async def _after_send(
        self,
        request: QuoteRequest,
        city: str,
        rendered: RenderedEmail,
        stored: list[StoredFile],
        warnings: list[str],
        client_key: str,
        user_agent: str | None,
        sent_at: datetime,
    ) -> None:
        if self.config.submission.backup_emails:
            await self.write_backup(
                request, city, stored, warnings, client_key, user_agent, sent_at, html_body=rendered.html_body
            )
        if self.notifier is not None:
            await self.notifier.post(
                {
                    "event": "new_quote",
                    "name": request.name,
                    "email": request.email,
                    "phone": request.phone,
                    "project_type": request.project_type,
                    "budget_range": request.budget_range,
                    "city": city,
                    "attachments": len(stored),
                    "timestamp": sent_at.isoformat(timespec="seconds"),
                }
            )

    async def write_backup(
        self,
        request: QuoteRequest,
        city: str,
        stored: list[StoredFile],
        warnings: list[str],
        client_key: str,
        user_agent: str | None,
        sent_at: datetime,
        html_body: str | None = None,
    ) -> None:
        """Write a JSON copy of the request below ``backups/emails``."""
        directory = self.config.paths.backups_dir / "emails"
        path = directory / f"quote_{sent_at.strftime('%Y%m%d_%H%M%S')}_{secrets.token_hex(4)}.json"
        record = {
            "timestamp": sent_at.isoformat(timespec="seconds"),
            "client_ip": client_key,
            "user_agent": user_agent,
            "city": city,
            "request": request.model_dump(mode="json"),
            "files": [
                {"original_name": item.original_name, "stored_name": item.stored_name, "size": item.size}
                for item in stored
            ],
            "warnings": warnings,
            "email_html": html_body,
        }
        try:
            await self.store.write_atomic(path, json.dumps(record, ensure_ascii=False, indent=2).encode("utf-8"))
        except OSError as exc:
            logger.warning("Could not write e-mail backup %s: %s", path, exc)


def build_pipeline(
    config: IntakeConfig,
    transport: MailTransport | None = None,
    metrics: IntakeMetrics | None = None,
) -> SubmissionPipeline:
    """Wire a pipeline from configuration.

    Raises:
        ConfigurationError: If recipient or sender are not configured.
    """
    config.require_mail()
    store = LocalFileStore()
    limiter = RateLimiter(SqliteKeyValueStore(config.paths.rate_limit_db), config.rate_limit)
    validator = UploadValidator(config.uploads, config.paths.uploads_dir, store=store)
    notifications = config.notifications
    notifier = None
    if notifications.webhook_url and notifications.notify_submissions:
        notifier = WebhookNotifier(notifications.webhook_url, notifications.webhook_secret)
    return SubmissionPipeline(
        config,
        limiter,
        validator,
        transport or SmtpTransport(config.mail),
        store=store,
        metrics=metrics,
        notifier=notifier,
    )
