from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from invoicebot.access_control import RateLimiter, Whitelist
from invoicebot.audit_log import AuditLogger
from invoicebot.document_ingestor import DownloadError, FileDocumentIngestor
from invoicebot.excel_export import ExcelExporter
from invoicebot.extraction_service import InvoiceExtractor, ProcessingResult
from invoicebot.invoice import Invoice
from invoicebot.logger import log_invoice_event
from invoicebot.metrics import MetricsCollector
from invoicebot.session_repository import InMemoryInvoiceRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessInvoiceResponse:
    success: bool
    total_invoices: int
    invoice: Invoice | None = None
    error: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class GenerateExcelResponse:
    success: bool
    invoice_count: int
    excel_bytes: bytes | None = None
    error: str | None = None


@dataclass(frozen=True)
class SessionInfo:
    has_session: bool
    invoice_count: int = 0
    total_amount: float = 0.0
    currencies: list[str] = field(default_factory=list)
    vendor_summary: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class ClearSessionResponse:
    success: bool
    cleared_count: int


class ProcessInvoiceUseCase:
    """Download (or take) one document, extract it and store the invoice in the user's session."""

    def __init__(
        self,
        ingestor: FileDocumentIngestor,
        extractor: InvoiceExtractor,
        repository: InMemoryInvoiceRepository,
        *,
        whitelist: Whitelist | None = None,
        rate_limiter: RateLimiter | None = None,
        audit: AuditLogger | None = None,
        metrics: MetricsCollector | None = None,
        clock: Any = time.monotonic,
    ) -> None:
        self._ingestor = ingestor
        self._extractor = extractor
        self._repository = repository
        self._whitelist = whitelist
        self._rate_limiter = rate_limiter
        self._audit = audit
        self._metrics = metrics or MetricsCollector()
        self._clock = clock

    def _rejected(self, user_id: int, error: str, code: str) -> ProcessInvoiceResponse:
        return ProcessInvoiceResponse(
            success=False,
            total_invoices=self._repository.get_invoice_count(user_id),
            error=error,
            error_code=code,
        )

    def _admit(self, user_id: int) -> ProcessInvoiceResponse | None:
        if self._whitelist is not None:
            auth = self._whitelist.is_authorized(user_id)
            if not auth.authorized:
                if self._audit is not None:
                    self._audit.audit("access_denied", user_id, {"reason": auth.reason})
                return self._rejected(user_id, auth.reason or "Unauthorized", "unauthorized")
        if self._rate_limiter is not None:
            limit = self._rate_limiter.check(user_id)
            if not limit.allowed:
                if self._audit is not None:
                    self._audit.audit("rate_limited", user_id, {"retry_after_seconds": limit.retry_after_seconds})
                return self._rejected(
                    user_id,
                    f"Rate limit exceeded. Retry in {limit.retry_after_seconds}s",
                    "rate_limited",
                )
        return None

    def execute(self, file_url: str, user_id: int, message_id: int) -> ProcessInvoiceResponse:
        rejected = self._admit(user_id)
        if rejected is not None:
            return rejected
        log_invoice_event(
            logger,
            logging.INFO,
            "Processing invoice",
            user_id=user_id,
            message_id=message_id,
            stage="download",
        )
        try:
            path = self._ingestor.download_and_store(file_url, user_id, message_id)
        except DownloadError as exc:
            self._metrics.increment("invoices_processed_total")
            self._metrics.increment("invoices_failed_total")
            log_invoice_event(
                logger,
                logging.WARNING,
                f"Download failed: {exc}",
                user_id=user_id,
                message_id=message_id,
                stage="download",
                outcome=exc.code,
            )
            return self._rejected(user_id, str(exc), exc.code)

        try:
            return self._run(path, user_id, message_id)
        finally:
            if self._ingestor.retention_hours == 0:
                self._ingestor.delete_file(path)

    def execute_file(self, file_path: str | Path, user_id: int, message_id: int) -> ProcessInvoiceResponse:
        rejected = self._admit(user_id)
        if rejected is not None:
            return rejected
        return self._run(Path(file_path), user_id, message_id)

    def _run(self, path: Path, user_id: int, message_id: int) -> ProcessInvoiceResponse:
        started = self._clock()
        result: ProcessingResult = self._extractor.process(path)
        latency_ms = int((self._clock() - started) * 1000)
        self._metrics.increment("invoices_processed_total")
        self._metrics.observe_latency(latency_ms)

        if not result.success or result.invoice is None:
            self._metrics.increment("invoices_failed_total")
            log_invoice_event(
                logger,
                logging.WARNING,
                f"Invoice extraction failed: {result.error}",
                user_id=user_id,
                message_id=message_id,
                stage="extract",
                latency_ms=latency_ms,
                outcome=result.error_code,
            )
            if self._audit is not None:
                self._audit.audit(
                    "invoice_failed",
                    user_id,
                    {"message_id": message_id, "error_code": result.error_code, "error": result.error},
                )
            return self._rejected(user_id, result.error or "Unknown processing error", result.error_code or "unknown")

        invoice = result.invoice
        self._repository.add_invoice(user_id, invoice)
        total = self._repository.get_invoice_count(user_id)
        self._metrics.increment("invoices_success_total")
        log_invoice_event(
            logger,
            logging.INFO,
            f"Invoice processed. Session total: {total}",
            user_id=user_id,
            message_id=message_id,
            invoice_number=invoice.invoice_number,
            stage="store",
            latency_ms=latency_ms,
            outcome="stored",
        )
        if self._audit is not None:
            self._audit.audit(
                "invoice_processed",
                user_id,
                {
                    "message_id": message_id,
                    "invoice_number": invoice.invoice_number,
                    "total_amount": invoice.total_amount,
                    "currency": invoice.currency,
                    "confidence": invoice.metadata.confidence,
                },
            )
        return ProcessInvoiceResponse(success=True, total_invoices=total, invoice=invoice)


class GenerateExcelUseCase:
    def __init__(
        self,
        repository: InMemoryInvoiceRepository,
        exporter: ExcelExporter,
        *,
        audit: AuditLogger | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._repository = repository
        self._exporter = exporter
        self._audit = audit
        self._metrics = metrics or MetricsCollector()

    def execute(self, user_id: int) -> GenerateExcelResponse:
        invoices = self._repository.get_invoices(user_id)
        if not invoices:
            logger.warning("No invoices found for user %s", user_id)
            return GenerateExcelResponse(success=False, invoice_count=0, error="No invoices to generate Excel")

        content = self._exporter.generate_excel(invoices)
        self._metrics.increment("excel_exports_total")
        if self._audit is not None:
            self._audit.audit("excel_generated", user_id, {"invoice_count": len(invoices)})
        log_invoice_event(
            logger,
            logging.INFO,
            f"Excel generated with {len(invoices)} invoice(s)",
            user_id=user_id,
            stage="export",
            outcome="generated",
        )
        return GenerateExcelResponse(success=True, invoice_count=len(invoices), excel_bytes=content)


class ManageSessionUseCase:
    def __init__(self, repository: InMemoryInvoiceRepository, *, audit: AuditLogger | None = None) -> None:
        self._repository = repository
        self._audit = audit

    def get_session_info(self, user_id: int) -> SessionInfo:
        if not self._repository.has_session(user_id):
            return SessionInfo(has_session=False)
        invoices = self._repository.get_invoices(user_id)
        currencies: list[str] = []
        vendor_summary: dict[str, float] = {}
        for invoice in invoices:
            if invoice.currency not in currencies:
                currencies.append(invoice.currency)
            name = invoice.vendor.name
            vendor_summary[name] = vendor_summary.get(name, 0.0) + invoice.total_amount
        return SessionInfo(
            has_session=True,
            invoice_count=len(invoices),
            total_amount=sum(invoice.total_amount for invoice in invoices),
            currencies=currencies,
            vendor_summary=vendor_summary,
        )

    def clear_session(self, user_id: int) -> ClearSessionResponse:
        count = self._repository.get_invoice_count(user_id)
        if count == 0:
            return ClearSessionResponse(success=True, cleared_count=0)
        self._repository.clear_invoices(user_id)
        if self._audit is not None:
            self._audit.audit("session_cleared", user_id, {"cleared_count": count})
        logger.info("Session cleared for user %s. %d invoice(s) removed", user_id, count)
        return ClearSessionResponse(success=True, cleared_count=count)

    def get_invoice_count(self, user_id: int) -> int:
        return self._repository.get_invoice_count(user_id)
