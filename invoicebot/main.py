from __future__ import annotations

import argparse
import logging
from pathlib import Path

from invoicebot.access_control import RateLimiter, Whitelist
from invoicebot.audit_log import AuditLogger
from invoicebot.config import Settings, load_dotenv
from invoicebot.document_ingestor import FileDocumentIngestor
from invoicebot.excel_export import ExcelExporter
from invoicebot.extraction_service import InvoiceExtractor, build_vision_client
from invoicebot.logger import configure_logging
from invoicebot.metrics import JsonlMetricsSink, MetricsCollector
from invoicebot.normalization import DEFAULT_BANK_DIRECTORY, BankDirectory
from invoicebot.session_repository import InMemoryInvoiceRepository
from invoicebot.use_cases import GenerateExcelUseCase, ManageSessionUseCase, ProcessInvoiceUseCase

_URL_PREFIXES = ("http://", "https://")


def _is_url(source: str) -> bool:
    return source.lower().startswith(_URL_PREFIXES)


def _bank_directory(settings: Settings) -> BankDirectory:
    if settings.bank_rules_path:
        return BankDirectory.from_path(settings.bank_rules_path)
    return DEFAULT_BANK_DIRECTORY


def run_process(sources: list[str], *, user_id: int, output: str) -> int:
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    client, model_name = build_vision_client(settings)
    extractor = InvoiceExtractor(client, model_name, bank_directory=_bank_directory(settings))
    metrics = MetricsCollector()
    repository = InMemoryInvoiceRepository(settings.session_timeout_minutes, metrics=metrics)
    audit = AuditLogger(
        settings.audit_log_dir,
        max_size_mb=settings.audit_log_max_size_mb,
        rotation_enabled=settings.audit_log_rotation,
    )
    metrics_sink = JsonlMetricsSink(settings.metrics_path)

    process = ProcessInvoiceUseCase(
        FileDocumentIngestor.from_settings(settings),
        extractor,
        repository,
        whitelist=Whitelist.from_settings(settings),
        rate_limiter=RateLimiter.from_settings(settings),
        audit=audit,
        metrics=metrics,
    )
    for message_id, source in enumerate(sources, start=1):
        if _is_url(source):
            response = process.execute(source, user_id, message_id)
        else:
            response = process.execute_file(source, user_id, message_id)
        if response.success and response.invoice is not None:
            invoice = response.invoice
            logger.info(
                "%s: %s %s (%s) confidence=%s",
                source,
                invoice.invoice_number,
                invoice.get_formatted_amount(),
                invoice.vendor.name,
                invoice.metadata.confidence,
            )
        else:
            logger.error("%s: %s [%s]", source, response.error, response.error_code)

    info = ManageSessionUseCase(repository, audit=audit).get_session_info(user_id)
    logger.info(
        "Session summary invoices=%d total=%.2f currencies=%s",
        info.invoice_count,
        info.total_amount,
        ",".join(info.currencies),
    )

    export = GenerateExcelUseCase(repository, ExcelExporter(), audit=audit, metrics=metrics).execute(user_id)
    metrics_sink.emit_snapshot(metrics.snapshot(), stage="process")
    if not export.success or export.excel_bytes is None:
        logger.error("No workbook written: %s", export.error)
        return 1

    target = Path(output)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(export.excel_bytes)
    logger.info("Wrote %d invoice(s) to %s", export.invoice_count, target)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Invoice Bot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    process = subparsers.add_parser("process", help="Extract invoices and write an Excel workbook")
    process.add_argument("sources", nargs="+", metavar="SOURCE", help="Local file path or http(s) URL")
    process.add_argument("--user-id", type=int, default=0)
    process.add_argument("--output", default="facturas.xlsx")

    serve = subparsers.add_parser("serve-monitoring", help="Run the monitoring API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == "process":
        return run_process(args.sources, user_id=args.user_id, output=args.output)
    if args.command == "serve-monitoring":
        load_dotenv()
        from invoicebot.monitoring_main import main as serve

        serve(host=args.host, port=args.port)
        return 0
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
