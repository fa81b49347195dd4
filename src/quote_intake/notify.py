# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Outbound notifications for retention summaries and new submissions.

Notifiers are best-effort: a failure is logged and reported as ``False``,
never raised, so a broken webhook cannot fail a cleanup run or a
submission that was already delivered.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import html
import json
from typing import Any, Protocol

import aiohttp

from .errors import TransportError
from .filestore import format_size
from .logger import get_logger
from .mailer import MailTransport

logger = get_logger("Notifier")


class Notifier(Protocol):
    async def post(self, payload: dict[str, Any]) -> bool: ...


class WebhookNotifier:
    """POSTs JSON events to an HTTP endpoint.

    When ``secret`` is set, the raw body is signed with HMAC-SHA256 and the
    hex digest is sent in the ``X-Signature`` header.
    """

    def __init__(self, url: str, secret: str | None = None, timeout: float = 5.0):
        self.url = url
        self.secret = secret
        self.timeout = timeout

    def sign(self, body: bytes) -> str:
        return hmac.new((self.secret or "").encode(), body, hashlib.sha256).hexdigest()

    async def post(self, payload: dict[str, Any]) -> bool:
        body = json.dumps(payload, default=str).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Signature"] = self.sign(body)
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(self.url, data=body, headers=headers) as resp:
                    resp.raise_for_status()
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            logger.warning("Webhook %s failed: %s", self.url, exc)
            return False
        logger.debug("Webhook %s delivered event %s", self.url, payload.get("event"))
        return True


class MailNotifier:
    """Sends a cleanup summary as a short plain e-mail."""

    def __init__(self, transport: MailTransport, recipient: str):
        self.transport = transport
        self.recipient = recipient

    @staticmethod
    def render(payload: dict[str, Any]) -> tuple[str, str]:
        freed = format_size(payload.get("bytes_freed", 0))
        subject = f"Cleanup report: {payload.get('files_removed', 0)} files removed, {freed} freed"
        lines = [subject, ""]
        for directory in payload.get("directories", []):
            lines.append(
                f"- {directory['name']}: {directory['files_removed']} files, "
                f"{format_size(directory['bytes_freed'])}"
            )
        for error in payload.get("errors", []):
            lines.append(f"! {error['directory']}: {error['error']}")
        return subject, "\n".join(lines) + "\n"

    async def post(self, payload: dict[str, Any]) -> bool:
        subject, text = self.render(payload)
        html_body = f"<pre>{html.escape(text)}</pre>"
        try:
            await self.transport.send(self.recipient, subject, html_body, text)
        except TransportError as exc:
            logger.warning("Summary mail to %s failed: %s", self.recipient, exc)
            return False
        return True
