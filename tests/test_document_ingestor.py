from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any

import pytest
import requests

from invoicebot.config import Settings
from invoicebot.document_ingestor import DownloadError, FileDocumentIngestor, detect_format
from invoicebot.extraction_service import DemoVisionClient, InvoiceExtractor

_PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 24


class _FakeResponse:
    def __init__(self, content: bytes, headers: dict[str, str] | None = None, status_error: bool = False) -> None:
        self._content = content
        self.headers = headers or {}
        self._status_error = status_error

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        return None

    def raise_for_status(self) -> None:
        if self._status_error:
            raise requests.HTTPError("404 Client Error")

    def iter_content(self, chunk_size: int) -> Any:
        for start in range(0, len(self._content), 8):
            yield self._content[start : start + 8]


class _FakeSession:
    def __init__(self, response: _FakeResponse | None = None, error: Exception | None = None) -> None:
        self._response = response
        self._error = error
        self.requests: list[tuple[str, float]] = []

    def get(self, url: str, *, stream: bool, timeout: float) -> _FakeResponse:
        self.requests.append((url, timeout))
        if self._error is not None:
            raise self._error
        assert self._response is not None
        return self._response


def _ingestor(tmp_path: Path, session: _FakeSession, **kwargs: Any) -> FileDocumentIngestor:
    return FileDocumentIngestor(tmp_path / "temp", session=session, **kwargs)


@pytest.mark.parametrize(
    ("head", "expected"),
    [
        (b"\xff\xd8\xff\xe0....", "jpg"),
        (_PNG[:16], "png"),
        (b"RIFF\x00\x00\x00\x00WEBPVP8 ", "webp"),
        (b"RIFF\x00\x00\x00\x00WAVEfmt ", None),
        (b"%PDF-1.7\n", "pdf"),
        (b"II*\x00rest", "tiff"),
        (b"hello world", None),
    ],
)
def test_detect_format(head: bytes, expected: str | None) -> None:
    assert detect_format(head) == expected


def test_download_and_store_writes_named_file(tmp_path: Path) -> None:
    session = _FakeSession(_FakeResponse(_PNG))
    path = _ingestor(tmp_path, session).download_and_store("https://files.example/doc", 7, 9)

    assert path.parent == tmp_path / "temp"
    assert path.name.startswith("user_7_msg_9_")
    assert path.suffix == ".png"
    assert path.read_bytes() == _PNG
    assert session.requests == [("https://files.example/doc", 30.0)]


def test_download_rejects_oversized_stream(tmp_path: Path) -> None:
    session = _FakeSession(_FakeResponse(_PNG))
    with pytest.raises(DownloadError) as exc_info:
        _ingestor(tmp_path, session, max_file_size_bytes=16).download_and_store("u", 1, 1)
    assert exc_info.value.code == "too_large"


def test_download_rejects_declared_oversize(tmp_path: Path) -> None:
    session = _FakeSession(_FakeResponse(_PNG, headers={"Content-Length": str(50 * 1024 * 1024)}))
    with pytest.raises(DownloadError, match="maximum size") as exc_info:
        _ingestor(tmp_path, session).download_and_store("u", 1, 1)
    assert exc_info.value.code == "too_large"


def test_download_rejects_unsupported_format(tmp_path: Path) -> None:
    session = _FakeSession(_FakeResponse(_PNG))
    with pytest.raises(DownloadError) as exc_info:
        _ingestor(tmp_path, session, supported_formats=("jpg", "pdf")).download_and_store("u", 1, 1)
    assert exc_info.value.code == "unsupported_format"
    assert list((tmp_path / "temp").iterdir()) == []


@pytest.mark.parametrize(
    ("content", "suffix"),
    [(b"BM" + b"\x00" * 30, ".bmp"), (b"II*\x00" + b"\x00" * 28, ".tiff"), (b"MM\x00*" + b"\x00" * 28, ".tiff")],
)
def test_stored_bitmap_and_tiff_documents_reach_extraction(tmp_path: Path, content: bytes, suffix: str) -> None:
    session = _FakeSession(_FakeResponse(content))
    ingestor = _ingestor(tmp_path, session, supported_formats=Settings().supported_formats)
    path = ingestor.download_and_store("https://files.example/scan", 1, 1)
    assert path.suffix == suffix

    result = InvoiceExtractor(DemoVisionClient(), "DEMO").process(path)
    assert result.success
    assert result.error_code is None
    assert result.invoice is not None
    assert result.invoice.invoice_number == "DEMO-1"


def test_jpeg_setting_accepts_jpg_content(tmp_path: Path) -> None:
    session = _FakeSession(_FakeResponse(b"\xff\xd8\xff\xe0" + b"\x00" * 12))
    path = _ingestor(tmp_path, session, supported_formats=("jpeg",)).download_and_store("u", 1, 1)
    assert path.suffix == ".jpg"


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (requests.Timeout("slow"), "timeout"),
        (requests.ConnectionError("refused"), "download_failed"),
    ],
)
def test_download_maps_request_errors(tmp_path: Path, error: Exception, code: str) -> None:
    with pytest.raises(DownloadError) as exc_info:
        _ingestor(tmp_path, _FakeSession(error=error)).download_and_store("u", 1, 1)
    assert exc_info.value.code == code


def test_download_maps_http_errors(tmp_path: Path) -> None:
    session = _FakeSession(_FakeResponse(_PNG, status_error=True))
    with pytest.raises(DownloadError) as exc_info:
        _ingestor(tmp_path, session).download_and_store("u", 1, 1)
    assert exc_info.value.code == "download_failed"


def test_storage_stats_and_cleanup(tmp_path: Path) -> None:
    ingestor = _ingestor(tmp_path, _FakeSession(), retention_hours=1)
    old = tmp_path / "temp" / "old.png"
    fresh = tmp_path / "temp" / "fresh.png"
    old.write_bytes(b"x" * 1024)
    fresh.write_bytes(b"x" * 1024)
    two_hours_ago = time.time() - 2 * 3600
    os.utime(old, (two_hours_ago, two_hours_ago))

    stats = ingestor.storage_stats()
    assert stats.total_files == 2
    assert stats.oldest_file_age_hours >= 2

    assert ingestor.cleanup_expired_files() == 1
    assert not old.exists()
    assert fresh.exists()


def test_delete_file_ignores_missing(tmp_path: Path) -> None:
    ingestor = _ingestor(tmp_path, _FakeSession())
    target = tmp_path / "temp" / "doc.png"
    target.write_bytes(_PNG)
    ingestor.delete_file(target)
    ingestor.delete_file(target)
    assert not target.exists()


def test_from_settings(tmp_path: Path) -> None:
    settings = Settings(temp_storage_path=str(tmp_path / "dl"), max_image_size_mb=1, image_retention_hours=3)
    ingestor = FileDocumentIngestor.from_settings(settings)
    assert ingestor.retention_hours == 3
    assert (tmp_path / "dl").is_dir()
