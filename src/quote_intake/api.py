# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application receiving quote requests.

Endpoints:
    - ``POST /quote``: multipart form submission. Browsers are redirected
      (303) to the success or error page; clients sending
      ``Accept: application/json`` get the outcome as JSON.
    - ``GET /quote``: redirects to the home page.
    - ``GET /health``: liveness probe.
    - ``GET /metrics``: Prometheus metrics.

Uploaded files are spooled into the temp directory and handed to the
pipeline as :class:`~quote_intake.uploads.UploadCandidate` records. Whatever
the pipeline did not move into storage is deleted once the request ends.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import AsyncContextManager
from urllib.parse import urlencode

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from .logger import get_logger
from .metrics import IntakeMetrics
from .pipeline import SubmissionOutcome, SubmissionPipeline, SubmissionStatus
from .uploads import TransferStatus, UploadCandidate

logger = get_logger("QuoteAPI")

FORM_FIELDS = (
    "name",
    "email",
    "phone",
    "address",
    "message",
    "project-type",
    "start-date",
    "budget-range",
    "city",
)

STATUS_CODES = {
    SubmissionStatus.SENT: 200,
    SubmissionStatus.INVALID: 422,
    SubmissionStatus.RATE_LIMITED: 429,
    SubmissionStatus.TRANSPORT_ERROR: 502,
}

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


def client_key(request: Request, trust_forwarded_for: bool = False) -> str:
    """Identity used for rate limiting: the peer address, or the first
    ``X-Forwarded-For`` hop when the app runs behind a trusted proxy."""
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def _spool(source, directory: Path, suffix: str) -> tuple[Path, int]:
    directory.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix="upload_", suffix=suffix, dir=directory)
    with os.fdopen(fd, "wb") as target:
        source.seek(0)
        shutil.copyfileobj(source, target)
        size = target.tell()
    return Path(name), size


async def receive_uploads(uploads: list, temp_dir: Path) -> list[UploadCandidate]:
    """Write received files to ``temp_dir`` and describe them as candidates."""
    candidates = []
    for upload in uploads:
        filename = upload.filename or ""
        if not filename:
            candidates.append(UploadCandidate("", "", 0, temp_dir, TransferStatus.NO_FILE))
            continue
        try:
            path, size = await asyncio.to_thread(_spool, upload.file, temp_dir, Path(filename).suffix[:16])
        except OSError as exc:
            logger.error("Cannot spool upload %s: %s", filename, exc)
            candidates.append(UploadCandidate(filename, upload.content_type or "", 0, temp_dir, TransferStatus.FAILED))
            continue
        finally:
            await upload.close()
        candidates.append(UploadCandidate(filename, upload.content_type or "", size, path))
    return candidates


async def discard_leftovers(pipeline: SubmissionPipeline, candidates: list[UploadCandidate]) -> None:
    """Delete spooled files the pipeline did not move into storage."""
    for candidate in candidates:
        if candidate.transfer_status is not TransferStatus.OK:
            continue
        try:
            await pipeline.store.delete(candidate.temp_path, missing_ok=True)
        except OSError as exc:
            logger.warning("Cannot remove spooled upload %s: %s", candidate.temp_path, exc)


def redirect_url(outcome: SubmissionOutcome, success_url: str, error_url: str) -> str:
    if outcome.ok:
        params = {"sent": "true", "files": str(len(outcome.stored))}
        if outcome.warnings:
            params["warnings"] = ". ".join(outcome.warnings)
        if outcome.stored:
            params["uploaded"] = ", ".join(item.original_name for item in outcome.stored)
        return f"{success_url}?{urlencode(params)}"
    params = {"error": ". ".join(outcome.errors) if outcome.errors else outcome.message}
    if outcome.warnings:
        params["warning"] = ". ".join(outcome.warnings)
    return f"{error_url}?{urlencode(params)}"


def create_app(
    pipeline: SubmissionPipeline,
    metrics: IntakeMetrics | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        pipeline: Handles each submission.
        metrics: Exposed on ``/metrics``; the pipeline's own metrics are used
            when omitted.
        lifespan: Optional lifespan context manager for startup/shutdown.
    """
    api = FastAPI(title="Quote Intake", lifespan=lifespan)
    api.state.pipeline = pipeline
    metrics = metrics or pipeline.metrics
    submission = pipeline.config.submission
    temp_dir = pipeline.config.paths.temp_dir

    @api.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring."""
        return {"status": "ok"}

    @api.get("/metrics")
    async def metrics_endpoint():
        if metrics is None:
            return Response(content=b"", media_type="text/plain; version=0.0.4")
        return Response(content=metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @api.get("/quote")
    async def quote_page():
        return RedirectResponse("/index.html", status_code=303)

    @api.post("/quote")
    async def submit_quote(request: Request):
        form = await request.form()
        fields: dict[str, object] = {}
        for key in FORM_FIELDS:
            value = form.get(key)
            if isinstance(value, str):
                fields[key] = value
        fields["services"] = [v for v in form.getlist("services") + form.getlist("services[]") if isinstance(v, str)]
        uploads = [
            v for v in form.getlist("attachments") + form.getlist("attachments[]") if not isinstance(v, str)
        ]

        candidates = await receive_uploads(uploads, temp_dir)
        try:
            outcome = await pipeline.submit(
                fields,
                candidates,
                client_key(request, submission.trust_forwarded_for),
                request.headers.get("user-agent"),
            )
        finally:
            await discard_leftovers(pipeline, candidates)
            await form.close()

        if "application/json" in request.headers.get("accept", ""):
            return JSONResponse(status_code=STATUS_CODES[outcome.status], content=outcome.to_dict())
        return RedirectResponse(
            redirect_url(outcome, submission.success_url, submission.error_url), status_code=303
        )

    return api
