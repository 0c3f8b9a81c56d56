from __future__ import annotations

import os

import uvicorn

from invoicebot.monitoring_api import create_monitoring_app

app = create_monitoring_app(
    metrics_path=os.getenv("METRICS_PATH", "logs/metrics.jsonl"),
    audit_log_dir=os.getenv("AUDIT_LOG_DIR", "./logs/audit"),
)


def main(host: str = "0.0.0.0", port: int = 8000) -> None:
    uvicorn.run("invoicebot.monitoring_main:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
