import re

import pytest

from quote_intake.config import UploadConfig
from quote_intake.uploads import (
    RejectReason,
    TransferStatus,
    UploadCandidate,
    UploadValidator,
    normalize_mime,
    sanitize_basename,
)

NOW = 1_700_000_000.0


@pytest.fixture
def validator(tmp_path):
    return UploadValidator(UploadConfig(), tmp_path / "uploads", clock=lambda: NOW)


def test_normalize_mime_aliases():
    assert normalize_mime("image/JPG") == "image/jpeg"
    assert normalize_mime("video/avi") == "video/x-msvideo"
    assert normalize_mime("image/png; charset=binary") == "image/png"
    assert normalize_mime(None) == ""


def test_sanitize_basename():
    assert sanitize_basename("minha foto (1)", 50) == "minha_foto__1_"
    assert sanitize_basename("x" * 80, 50) == "x" * 50
    assert sanitize_basename("", 50) == "file"


@pytest.mark.asyncio
async def test_accepts_valid_jpeg(validator, make_upload, file_bytes):
    candidate = make_upload("kitchen photo.jpg", file_bytes["jpeg"], "image/jpeg")
    result = await validator.validate([candidate])

    assert result.warnings == []
    [stored] = result.accepted
    assert re.fullmatch(r"rc_\d{8}_\d{6}_[0-9a-f]{16}_kitchen_photo\.jpg", stored.stored_name)
    assert stored.path.read_bytes() == file_bytes["jpeg"]
    assert not candidate.temp_path.exists()


@pytest.mark.asyncio
async def test_spoofed_content_is_rejected(validator, make_upload, file_bytes, tmp_path):
    # PDF bytes declared and named as a JPEG
    candidate = make_upload("photo.jpg", file_bytes["pdf"], "image/jpeg")
    result = await validator.validate([candidate])

    assert result.accepted == []
    [warning] = result.warnings
    assert warning.reason is RejectReason.CONTENT_MISMATCH
    assert not (tmp_path / "uploads").exists() or not any((tmp_path / "uploads").iterdir())


@pytest.mark.asyncio
async def test_sixth_file_exceeds_limit(validator, make_upload, file_bytes):
    candidates = [make_upload(f"photo{i}.png", file_bytes["png"], "image/png") for i in range(6)]
    result = await validator.validate(candidates)

    assert [s.original_name for s in result.accepted] == [f"photo{i}.png" for i in range(5)]
    [warning] = result.warnings
    assert warning.filename == "photo5.png"
    assert warning.reason is RejectReason.LIMIT_EXCEEDED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "name, content_type, kind, reason",
    [
        ("doc.exe", "application/x-msdownload", "pdf", RejectReason.TYPE_NOT_ALLOWED),
        ("photo.bmp", "image/jpeg", "jpeg", RejectReason.EXTENSION_NOT_ALLOWED),
        ("photo.png", "image/jpeg", "jpeg", RejectReason.EXTENSION_MISMATCH),
        ("plan.pdf", "application/pdf", "png", RejectReason.CONTENT_MISMATCH),
    ],
)
async def test_rejection_layers(validator, make_upload, file_bytes, name, content_type, kind, reason):
    result = await validator.validate([make_upload(name, file_bytes[kind], content_type)])
    assert result.accepted == []
    assert [w.reason for w in result.warnings] == [reason]


@pytest.mark.asyncio
async def test_size_limit(tmp_path, make_upload, file_bytes):
    validator = UploadValidator(UploadConfig(max_file_size=10), tmp_path / "uploads")
    result = await validator.validate([make_upload("big.jpg", file_bytes["jpeg"], "image/jpeg")])
    assert [w.reason for w in result.warnings] == [RejectReason.TOO_LARGE]
    assert "too large" in str(result.warnings[0])


@pytest.mark.asyncio
async def test_transfer_errors_and_empty_slots(validator, tmp_path):
    candidates = [
        UploadCandidate("", "", 0, tmp_path / "none"),
        UploadCandidate("x.jpg", "image/jpeg", 0, tmp_path / "none", TransferStatus.NO_FILE),
        UploadCandidate("y.jpg", "image/jpeg", 0, tmp_path / "none", TransferStatus.PARTIAL),
    ]
    result = await validator.validate(candidates)
    assert result.accepted == []
    assert [(w.filename, w.reason) for w in result.warnings] == [("y.jpg", RejectReason.TRANSFER_ERROR)]


@pytest.mark.asyncio
async def test_rejected_files_do_not_count_towards_limit(tmp_path, make_upload, file_bytes):
    validator = UploadValidator(UploadConfig(max_files=1), tmp_path / "uploads")
    result = await validator.validate(
        [
            make_upload("bad.jpg", file_bytes["pdf"], "image/jpeg"),
            make_upload("good.pdf", file_bytes["pdf"], "application/pdf"),
        ]
    )
    assert [s.original_name for s in result.accepted] == ["good.pdf"]
