from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Query

from invoicebot.audit_log import read_audit_entries


def create_monitoring_app(
    *,
    metrics_path: str | Path = "logs/metrics.jsonl",
    audit_log_dir: str | Path = "logs/audit",
) -> FastAPI:
    app = FastAPI(title="Invoice Bot Monitoring API", version="0.1.0")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/stats")
    def stats() -> dict[str, Any]:
        counters = _aggregate_metrics(_read_jsonl(metrics_path))
        counters["audit_events_total"] = len(read_audit_entries(audit_log_dir))
        return counters

    @app.get("/audit")
    def audit(limit: int = Query(default=50, ge=1, le=1000), action: str | None = None) -> dict[str, Any]:
        items = read_audit_entries(audit_log_dir, action=action)
        return {"count": len(items), "items": items[-limit:]}

    return app


def _read_jsonl(path: str | Path) -> list[dict[str, Any]]:
    p = Path(path)
    if not p.exists():
        return []
    rows: list[dict[str, Any]] = []
    for line in p.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        rows.append(json.loads(line))
    return rows


def _aggregate_metrics(events: list[dict[str, Any]]) -> dict[str, Any]:
    """Sum counter events; latency gauges keep their latest value."""
    counters: dict[str, int] = {}
    for event in events:
        name = event.get("metric")
        value = event.get("value")
        if not isinstance(name, str) or not isinstance(value, int):
            continue
        if name.endswith("_ms"):
            counters[name] = value
        else:
            counters[name] = counters.get(name, 0) + value
    return counters
