# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Validation and storage of files attached to a quote request.

Every candidate goes through the same ordered checks and stops at the first
one it fails. The cheapest and most authoritative checks come first:

1. transfer status reported by the server,
2. byte size,
3. number of files already accepted for this submission,
4. declared content type against the allow-list,
5. file extension against the allow-list and the declared type,
6. content type sniffed from the file's magic bytes, which must be allowed
   *and* equal to the declared type.

A rejected file becomes an :class:`UploadWarning`; it never fails the
submission. Accepted files are moved into the upload directory under a
collision-resistant name and returned as :class:`StoredFile` records. The
caller owns them from then on and deletes them if the submission is rolled
back.
"""

from __future__ import annotations

import asyncio
import mimetypes
import re
import secrets
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path, PurePath

import filetype

from .config import UploadConfig
from .filestore import Clock, LocalFileStore, format_size, system_clock
from .logger import get_logger

logger = get_logger("UploadValidator")

# Non-canonical names browsers and clients send for allowed types
MIME_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "video/avi": "video/x-msvideo",
    "video/msvideo": "video/x-msvideo",
    "video/mov": "video/quicktime",
    "video/wmv": "video/x-ms-wmv",
}

TYPE_EXTENSIONS: dict[str, tuple[str, ...]] = {
    "image/jpeg": ("jpg", "jpeg", "jpe"),
    "image/png": ("png",),
    "image/gif": ("gif",),
    "image/webp": ("webp",),
    "video/mp4": ("mp4", "m4v"),
    "video/quicktime": ("mov", "qt"),
    "video/x-msvideo": ("avi",),
    "video/x-ms-wmv": ("wmv",),
    "application/pdf": ("pdf",),
}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def normalize_mime(content_type: str | None) -> str:
    """Lower-case a content type, drop parameters and resolve aliases."""
    if not content_type:
        return ""
    base = content_type.split(";", 1)[0].strip().lower()
    return MIME_ALIASES.get(base, base)


def typical_extensions(content_type: str) -> tuple[str, ...]:
    """Extensions commonly used for ``content_type`` (without dots)."""
    if content_type in TYPE_EXTENSIONS:
        return TYPE_EXTENSIONS[content_type]
    return tuple(ext.lstrip(".") for ext in mimetypes.guess_all_extensions(content_type))


def sanitize_basename(name: str, max_length: int) -> str:
    """Replace unsafe characters with ``_`` and bound the length."""
    cleaned = _UNSAFE_CHARS.sub("_", name)[:max_length]
    return cleaned or "file"


class TransferStatus(str, Enum):
    """Transfer outcome reported by the web server for one file."""

    OK = "ok"
    TOO_LARGE = "too_large"
    PARTIAL = "partial"
    NO_FILE = "no_file"
    FAILED = "failed"


class RejectReason(str, Enum):
    TRANSFER_ERROR = "transfer_error"
    TOO_LARGE = "too_large"
    LIMIT_EXCEEDED = "limit_exceeded"
    TYPE_NOT_ALLOWED = "type_not_allowed"
    EXTENSION_NOT_ALLOWED = "extension_not_allowed"
    EXTENSION_MISMATCH = "extension_mismatch"
    CONTENT_MISMATCH = "content_mismatch"
    STORE_FAILED = "store_failed"


@dataclass(frozen=True)
class UploadCandidate:
    """A file received with a submission, still in temporary storage."""

    original_name: str
    content_type: str
    size: int
    temp_path: Path
    transfer_status: TransferStatus = TransferStatus.OK

    @property
    def extension(self) -> str:
        return PurePath(self.original_name).suffix.lstrip(".").lower()


@dataclass(frozen=True)
class StoredFile:
    """An accepted file moved into the upload directory."""

    stored_name: str
    original_name: str
    size: int
    content_type: str
    created_at: float
    directory: Path

    @property
    def path(self) -> Path:
        return self.directory / self.stored_name


@dataclass(frozen=True)
class UploadWarning:
    """A candidate that was not stored, with the reason."""

    filename: str
    reason: RejectReason
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass
class UploadResult:
    accepted: list[StoredFile] = field(default_factory=list)
    warnings: list[UploadWarning] = field(default_factory=list)


class UploadValidator:
    """Applies the ordered validation layers and stores accepted files.

    Attributes:
        config: Size/count limits, allow-lists and naming options.
        upload_dir: Destination directory for accepted files.
        store: Filesystem access.
    """

    def __init__(
        self,
        config: UploadConfig,
        upload_dir: Path,
        store: LocalFileStore | None = None,
        clock: Clock = system_clock,
    ):
        self.config = config
        self.upload_dir = Path(upload_dir)
        self.store = store or LocalFileStore()
        self.clock = clock
        self._allowed_types = {normalize_mime(t) for t in config.allowed_types}
        self._allowed_extensions = {e.lower().lstrip(".") for e in config.allowed_extensions}

    async def validate(self, candidates: Iterable[UploadCandidate]) -> UploadResult:
        """Filter ``candidates`` in submission order.

        Returns:
            Accepted files (in submission order) and one warning per rejected
            candidate. Candidates without a name or with ``NO_FILE`` status
            are ignored silently.
        """
        result = UploadResult()
        for candidate in candidates:
            if not candidate.original_name or candidate.transfer_status is TransferStatus.NO_FILE:
                continue
            warning = await self._check(candidate, accepted_count=len(result.accepted))
            if warning is None:
                stored = await self._store(candidate)
                if isinstance(stored, UploadWarning):
                    warning = stored
                else:
                    result.accepted.append(stored)
                    logger.info("Stored upload %s as %s (%d bytes)", candidate.original_name, stored.stored_name, stored.size)
                    continue
            logger.info("Rejected upload %s: %s", candidate.original_name, warning.reason.value)
            result.warnings.append(warning)
        return result

    async def _check(self, candidate: UploadCandidate, accepted_count: int) -> UploadWarning | None:
        name = candidate.original_name

        def reject(reason: RejectReason, message: str) -> UploadWarning:
            return UploadWarning(filename=name, reason=reason, message=message)

        if candidate.transfer_status is not TransferStatus.OK:
            messages = {
                TransferStatus.TOO_LARGE: f"File '{name}' exceeds the maximum upload size",
                TransferStatus.PARTIAL: f"Upload of '{name}' was interrupted",
            }
            return reject(
                RejectReason.TRANSFER_ERROR,
                messages.get(candidate.transfer_status, f"Upload of '{name}' failed"),
            )

        if candidate.size > self.config.max_file_size:
            return reject(
                RejectReason.TOO_LARGE,
                f"File '{name}' is too large ({format_size(candidate.size)}). "
                f"Maximum: {format_size(self.config.max_file_size)}",
            )

        if accepted_count >= self.config.max_files:
            return reject(
                RejectReason.LIMIT_EXCEEDED,
                f"File '{name}' skipped: limit exceeded (maximum {self.config.max_files} files)",
            )

        declared = normalize_mime(candidate.content_type)
        if declared not in self._allowed_types:
            return reject(RejectReason.TYPE_NOT_ALLOWED, f"File type of '{name}' is not allowed")

        extension = candidate.extension
        if extension not in self._allowed_extensions:
            return reject(RejectReason.EXTENSION_NOT_ALLOWED, f"Extension of '{name}' is not allowed")
        if extension not in typical_extensions(declared):
            return reject(
                RejectReason.EXTENSION_MISMATCH,
                f"Extension of '{name}' does not match its declared type",
            )

        sniffed = normalize_mime(await self._sniff(candidate.temp_path))
        if sniffed not in self._allowed_types or sniffed != declared:
            logger.warning(
                "Content of %s sniffed as %r but declared as %r", name, sniffed or None, declared
            )
            return reject(
                RejectReason.CONTENT_MISMATCH,
                f"Content of '{name}' does not match its declared type",
            )
        return None

    @staticmethod
    async def _sniff(path: Path) -> str | None:
        try:
            return await asyncio.to_thread(filetype.guess_mime, str(path))
        except OSError as exc:
            logger.warning("Cannot read %s for content sniffing: %s", path, exc)
            return None

    def stored_name_for(self, candidate: UploadCandidate, now: float) -> str:
        """Build ``prefix + timestamp + token + sanitized basename + extension``."""
        stamp = datetime.fromtimestamp(now).strftime("%Y%m%d_%H%M%S")
        token = secrets.token_hex(8)
        basename = sanitize_basename(PurePath(candidate.original_name).stem, self.config.max_basename_length)
        return f"{self.config.name_prefix}{stamp}_{token}_{basename}.{candidate.extension}"

    async def _store(self, candidate: UploadCandidate) -> StoredFile | UploadWarning:
        now = self.clock()
        stored_name = self.stored_name_for(candidate, now)
        try:
            await self.store.move(candidate.temp_path, self.upload_dir / stored_name)
        except OSError as exc:
            logger.error("Failed to move %s into %s: %s", candidate.original_name, self.upload_dir, exc)
            return UploadWarning(
                filename=candidate.original_name,
                reason=RejectReason.STORE_FAILED,
                message=f"Could not save file '{candidate.original_name}'",
            )
        return StoredFile(
            stored_name=stored_name,
            original_name=candidate.original_name,
            size=candidate.size,
            content_type=normalize_mime(candidate.content_type),
            created_at=now,
            directory=self.upload_dir,
        )
