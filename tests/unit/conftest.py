import itertools
from dataclasses import replace
from pathlib import Path

import pytest

from quote_intake.config import IntakeConfig, MailConfig, PathsConfig
from quote_intake.errors import TransportError
from quote_intake.uploads import UploadCandidate

JPEG_BYTES = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00" + b"\x00" * 64
PNG_BYTES = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR" + b"\x00" * 64
PDF_BYTES = b"%PDF-1.4\n%\xe2\xe3\xcf\xd3\n" + b"0" * 64

VALID_FORM = {
    "name": "Maria Silva",
    "email": "maria@example.com",
    "phone": "(27) 99999-1234",
    "address": "Rua das Flores 123, Praia da Costa",
    "message": "I need a full renovation of my kitchen and bathroom.",
    "project-type": "reforma-completa",
}


_sequence = itertools.count()


class RecordingTransport:
    """MailTransport double that records calls and can be told to fail."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send(self, recipient, subject, html_body, text_body, attachments=(), *,
                   reply_to=None, bcc=None, headers=None):
        if self.fail:
            raise TransportError("connection refused")
        self.sent.append(
            {
                "recipient": recipient,
                "subject": subject,
                "html": html_body,
                "text": text_body,
                "attachments": list(attachments),
                "reply_to": reply_to,
                "bcc": bcc,
                "headers": headers,
            }
        )


def make_candidate(directory: Path, name: str, content: bytes, content_type: str) -> UploadCandidate:
    path = directory / f"tmp_{next(_sequence)}_{name}"
    path.write_bytes(content)
    return UploadCandidate(original_name=name, content_type=content_type, size=len(content), temp_path=path)


@pytest.fixture
def incoming(tmp_path):
    directory = tmp_path / "incoming"
    directory.mkdir()
    return directory


@pytest.fixture
def intake_config(tmp_path):
    paths = PathsConfig(
        base_dir=tmp_path,
        uploads_dir=tmp_path / "uploads",
        logs_dir=tmp_path / "logs",
        backups_dir=tmp_path / "backups",
        temp_dir=tmp_path / "temp",
        cache_dir=tmp_path / "cache",
        rate_limit_db=tmp_path / "state" / "rate_limit.db",
    )
    mail = MailConfig(recipient="quotes@example.com", sender="site@example.com")
    return replace(IntakeConfig(), paths=paths, mail=mail)


@pytest.fixture
def valid_form():
    return dict(VALID_FORM)


@pytest.fixture
def file_bytes():
    return {"jpeg": JPEG_BYTES, "png": PNG_BYTES, "pdf": PDF_BYTES}


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def failing_transport():
    return RecordingTransport(fail=True)


@pytest.fixture
def make_upload(incoming):
    def _make(name: str, content: bytes, content_type: str) -> UploadCandidate:
        return make_candidate(incoming, name, content, content_type)

    return _make
