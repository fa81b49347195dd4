# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Quote e-mail rendering and SMTP delivery.

The pipeline only depends on the :class:`MailTransport` protocol; the
production implementation, :class:`SmtpTransport`, builds an
``email.message.EmailMessage`` with a plain-text body, an HTML alternative
and the stored attachments, then sends it with ``aiosmtplib``. Any failure
surfaces as :class:`~quote_intake.errors.TransportError` so the pipeline can
roll back the stored files.
"""

from __future__ import annotations

import asyncio
import html
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Protocol

import aiosmtplib

from .config import MailConfig
from .errors import TransportError
from .filestore import format_size
from .forms import QuoteRequest
from .logger import get_logger
from .uploads import StoredFile

logger = get_logger("Mailer")


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html_body: str
    text_body: str
    high_priority: bool = False


class MailTransport(Protocol):
    """Delivers one message; raises :class:`TransportError` on failure."""

    async def send(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: str,
        attachments: Sequence[StoredFile] = (),
        *,
        reply_to: str | None = None,
        bcc: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None: ...


def render_quote_email(
    request: QuoteRequest,
    city: str,
    stored: Sequence[StoredFile],
    warnings: Sequence[str],
    *,
    client_ip: str | None = None,
    sent_at: datetime | None = None,
) -> RenderedEmail:
    """Render the notification sent to the business for one quote request.

    The subject is tagged ``[ATTACHMENTS]`` when files were accepted,
    otherwise ``[BUDGET]`` when a budget range was given. Either condition
    marks the message as high priority.
    """
    sent_at = sent_at or datetime.now()
    if stored:
        tag = "[ATTACHMENTS] "
    elif request.budget_range:
        tag = "[BUDGET] "
    else:
        tag = ""
    subject = f"{tag}Quote request - {request.name} ({city}) - {request.project_label}"
    high_priority = bool(stored or request.budget_range)

    rows = [
        ("Name", request.name),
        ("E-mail", request.email),
        ("Phone", request.phone),
        ("City", city),
        ("Project type", request.project_label),
        ("Start date", request.start_date_display),
        ("Budget", request.budget_range or "Not specified"),
        ("Address", request.address),
    ]
    services = request.services or ["No specific service selected."]
    attachments = [f"{item.original_name} ({format_size(item.size)})" for item in stored]
    footer = f"Sent on {sent_at.strftime('%d/%m/%Y at %H:%M')}" + (f" | {client_ip}" if client_ip else "")

    text_lines = [subject, ""]
    text_lines += [f"{label}: {value}" for label, value in rows]
    text_lines += ["", "Services:"] + [f"- {service}" for service in services]
    text_lines += ["", "Project description:", request.message]
    if attachments:
        text_lines += ["", f"Attachments ({len(attachments)}):"] + [f"- {item}" for item in attachments]
    if warnings:
        text_lines += ["", "Upload warnings:"] + [f"- {warning}" for warning in warnings]
    text_lines += ["", footer]

    esc = html.escape
    parts = [
        "<!DOCTYPE html><html><head><meta charset='UTF-8'>",
        f"<title>{esc(subject)}</title></head><body>",
        "<h1>New quote request</h1>",
        f"<p>Priority: {'HIGH' if high_priority else 'NORMAL'}</p>",
        "<table>",
    ]
    parts += [f"<tr><th>{esc(label)}</th><td>{esc(value)}</td></tr>" for label, value in rows]
    parts.append("</table><h3>Services</h3><ul>")
    parts += [f"<li>{esc(service)}</li>" for service in services]
    parts.append(f"</ul><h3>Project description</h3><p style='white-space: pre-wrap'>{esc(request.message)}</p>")
    if attachments:
        parts.append(f"<h3>Attachments ({len(attachments)})</h3><ul>")
        parts += [f"<li>{esc(item)}</li>" for item in attachments]
        parts.append("</ul>")
    if warnings:
        parts.append("<h3>Upload warnings</h3><ul>")
        parts += [f"<li>{esc(str(warning))}</li>" for warning in warnings]
        parts.append("</ul>")
    parts.append(f"<p><small>{esc(footer)}</small></p></body></html>")

    return RenderedEmail(
        subject=subject,
        html_body="".join(parts),
        text_body="\n".join(text_lines) + "\n",
        high_priority=high_priority,
    )


class SmtpTransport:
    """:class:`MailTransport` delivering through an SMTP server."""

    def __init__(self, config: MailConfig):
        self.config = config

    async def build_message(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: str,
        attachments: Sequence[StoredFile] = (),
        *,
        reply_to: str | None = None,
        bcc: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> EmailMessage:
        """Build the MIME message. Attachment content is read from disk."""
        msg = EmailMessage()
        msg["From"] = formataddr((self.config.sender_name, self.config.sender or ""))
        msg["To"] = recipient
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid()
        if reply_to:
            msg["Reply-To"] = reply_to
        if bcc and bcc != recipient:
            msg["Bcc"] = bcc
        for header, value in (headers or {}).items():
            msg[header] = value
        msg.set_content(text_body)
        msg.add_alternative(html_body, subtype="html")

        for item in attachments:
            try:
                content = await asyncio.to_thread(item.path.read_bytes)
            except OSError as exc:
                raise TransportError(f"Cannot read attachment {item.original_name}: {exc}") from exc
            maintype, _, subtype = (item.content_type or "application/octet-stream").partition("/")
            msg.add_attachment(content, maintype=maintype, subtype=subtype or "octet-stream", filename=item.original_name)
        return msg

    async def send(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: str,
        attachments: Sequence[StoredFile] = (),
        *,
        reply_to: str | None = None,
        bcc: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        msg = await self.build_message(
            recipient, subject, html_body, text_body, attachments, reply_to=reply_to, bcc=bcc, headers=headers
        )
        cfg = self.config
        try:
            await aiosmtplib.send(
                msg,
                hostname=cfg.smtp_host,
                port=cfg.smtp_port,
                username=cfg.smtp_user,
                password=cfg.smtp_password,
                use_tls=cfg.use_tls,
                start_tls=cfg.start_tls and not cfg.use_tls,
                timeout=cfg.timeout,
            )
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            logger.error("SMTP delivery to %s via %s:%s failed: %s", recipient, cfg.smtp_host, cfg.smtp_port, exc)
            raise TransportError(str(exc) or exc.__class__.__name__) from exc
        logger.info("Mail '%s' delivered to %s", subject, recipient)
