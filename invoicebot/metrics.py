from __future__ import annotations

import json
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


@dataclass
class MetricsCollector:
    counters: Counter[str] = field(default_factory=Counter)
    latencies_ms: list[int] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            self.counters[name] += value

    def observe_latency(self, value_ms: int) -> None:
        with self._lock:
            self.latencies_ms.append(value_ms)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            ordered = sorted(self.latencies_ms)
            counters = dict(self.counters)
        p95 = ordered[int(0.95 * (len(ordered) - 1))] if ordered else 0
        return {
            "invoices_processed_total": counters.get("invoices_processed_total", 0),
            "invoices_success_total": counters.get("invoices_success_total", 0),
            "invoices_failed_total": counters.get("invoices_failed_total", 0),
            "excel_exports_total": counters.get("excel_exports_total", 0),
            "sessions_expired_total": counters.get("sessions_expired_total", 0),
            "extraction_latency_p95_ms": p95,
        }


class JsonlMetricsSink:
    def __init__(self, path: str | Path = "logs/metrics.jsonl") -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, event: dict[str, Any]) -> None:
        payload = {
            "recorded_at_utc": datetime.now(timezone.utc).isoformat(),
            **event,
        }
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(payload, ensure_ascii=True) + "\n")

    def emit_snapshot(self, snapshot: dict[str, Any], *, stage: str) -> None:
        for key, value in snapshot.items():
            if isinstance(value, int):
                self.emit({"metric": key, "value": value, "stage": stage})
