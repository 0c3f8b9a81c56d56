from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AuditLogger:
    """Append-only JSONL record of user actions, rotated by size."""

    def __init__(
        self,
        log_dir: str | Path = "logs/audit",
        *,
        max_size_mb: int = 100,
        rotation_enabled: bool = True,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._dir = Path(log_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._max_bytes = max_size_mb * 1024 * 1024
        self._rotation_enabled = rotation_enabled
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def current_path(self) -> Path:
        return self._dir / f"audit_{self._clock().strftime('%Y-%m-%d')}.jsonl"

    def _rotate_if_needed(self, path: Path) -> None:
        if not self._rotation_enabled or not path.exists():
            return
        if path.stat().st_size < self._max_bytes:
            return
        stamp = self._clock().strftime("%Y%m%dT%H%M%S%f")
        path.rename(path.with_name(f"{path.stem}_{stamp}{path.suffix}"))

    def audit(self, action: str, user_id: int, details: dict[str, Any] | None = None) -> None:
        event = {
            "timestamp": self._clock().isoformat(),
            "action": action,
            "user_id": user_id,
            "details": details or {},
        }
        with self._lock:
            path = self.current_path
            self._rotate_if_needed(path)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(event, ensure_ascii=False, default=str) + "\n")
        logger.info("audit action=%s user_id=%s", action, user_id)

    def list_entries(self, action: str | None = None, user_id: int | None = None) -> list[dict[str, Any]]:
        return read_audit_entries(self._dir, action=action, user_id=user_id)


def read_audit_entries(
    log_dir: str | Path,
    *,
    action: str | None = None,
    user_id: int | None = None,
) -> list[dict[str, Any]]:
    directory = Path(log_dir)
    if not directory.exists():
        return []
    items: list[dict[str, Any]] = []
    for path in sorted(directory.glob("audit_*.jsonl")):
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            event = json.loads(line)
            if action and event.get("action") != action:
                continue
            if user_id is not None and event.get("user_id") != user_id:
                continue
            items.append(event)
    items.sort(key=lambda e: str(e.get("timestamp", "")))
    return items
