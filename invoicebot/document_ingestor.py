from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import requests

from invoicebot.config import Settings

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024

# (extension, leading bytes); first match wins.
_SIGNATURES: tuple[tuple[str, bytes], ...] = (
    ("jpg", b"\xff\xd8\xff"),
    ("png", b"\x89PNG\r\n\x1a\n"),
    ("gif", b"GIF8"),
    ("webp", b"RIFF"),
    ("bmp", b"BM"),
    ("tiff", b"II*\x00"),
    ("tiff", b"MM\x00*"),
    ("pdf", b"%PDF"),
)

_EQUIVALENT_FORMATS = {"jpg": {"jpg", "jpeg"}, "tiff": {"tiff", "tif"}}


class DownloadError(RuntimeError):
    def __init__(self, message: str, code: str = "download_failed") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class StorageStats:
    total_files: int
    total_size_mb: float
    oldest_file_age_hours: float


def detect_format(head: bytes) -> str | None:
    for extension, signature in _SIGNATURES:
        if head.startswith(signature):
            if extension == "webp" and head[8:12] != b"WEBP":
                continue
            return extension
    return None


class FileDocumentIngestor:
    def __init__(
        self,
        temp_dir: str | Path,
        *,
        max_file_size_bytes: int = 10 * 1024 * 1024,
        supported_formats: tuple[str, ...] = ("jpg", "jpeg", "png", "pdf"),
        retention_hours: int = 0,
        session: Any = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._temp_dir = Path(temp_dir)
        self._temp_dir.mkdir(parents=True, exist_ok=True)
        self._max_bytes = max_file_size_bytes
        self._formats = {f.lower().lstrip(".") for f in supported_formats}
        self._retention_hours = retention_hours
        self._session = session or requests.Session()
        self._timeout = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "FileDocumentIngestor":
        return cls(
            settings.temp_storage_path,
            max_file_size_bytes=settings.max_file_size_bytes,
            supported_formats=settings.supported_formats,
            retention_hours=settings.image_retention_hours,
        )

    @property
    def retention_hours(self) -> int:
        return self._retention_hours

    def _is_supported(self, detected: str) -> bool:
        accepted = _EQUIVALENT_FORMATS.get(detected, {detected})
        return bool(accepted & self._formats)

    def _fetch(self, file_url: str) -> bytes:
        try:
            with self._session.get(file_url, stream=True, timeout=self._timeout) as response:
                response.raise_for_status()
                declared = response.headers.get("Content-Length")
                if declared and declared.isdigit() and int(declared) > self._max_bytes:
                    raise DownloadError(self._too_large_message(), code="too_large")
                buffer = bytearray()
                for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                    buffer.extend(chunk)
                    if len(buffer) > self._max_bytes:
                        raise DownloadError(self._too_large_message(), code="too_large")
                return bytes(buffer)
        except requests.Timeout as exc:
            raise DownloadError("Timeout downloading file. File may be too large.", code="timeout") from exc
        except requests.RequestException as exc:
            raise DownloadError(f"Error downloading file: {exc}", code="download_failed") from exc

    def _too_large_message(self) -> str:
        return f"File exceeds maximum size allowed ({self._max_bytes // (1024 * 1024)}MB)"

    def download_and_store(self, file_url: str, user_id: int, message_id: int) -> Path:
        logger.info("Downloading document for user %s from %s...", user_id, file_url[:50])
        content = self._fetch(file_url)

        detected = detect_format(content[:16])
        if detected is None or not self._is_supported(detected):
            raise DownloadError(
                f"Unsupported file format. Allowed formats: {', '.join(sorted(self._formats))}",
                code="unsupported_format",
            )

        timestamp = int(time.time() * 1000)
        path = self._temp_dir / f"user_{user_id}_msg_{message_id}_{timestamp}.{detected}"
        path.write_bytes(content)
        logger.info("Stored %s (%.2fMB)", path.name, len(content) / (1024 * 1024))
        return path

    def delete_file(self, file_path: str | Path) -> None:
        path = Path(file_path)
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.exception("Error deleting file %s", path)
            return
        logger.debug("Deleted temporary file %s", path.name)

    def _files(self) -> list[Path]:
        return [p for p in self._temp_dir.iterdir() if p.is_file()]

    def storage_stats(self) -> StorageStats:
        now = time.time()
        total_size = 0
        oldest_hours = 0.0
        files = self._files()
        for path in files:
            stat = path.stat()
            total_size += stat.st_size
            oldest_hours = max(oldest_hours, (now - stat.st_mtime) / 3600)
        return StorageStats(
            total_files=len(files),
            total_size_mb=total_size / (1024 * 1024),
            oldest_file_age_hours=oldest_hours,
        )

    def cleanup_expired_files(self) -> int:
        max_age_seconds = self._retention_hours * 3600
        now = time.time()
        deleted = 0
        for path in self._files():
            if now - path.stat().st_mtime > max_age_seconds:
                self.delete_file(path)
                deleted += 1
        if deleted:
            logger.info("Cleanup removed %d expired file(s)", deleted)
        return deleted

