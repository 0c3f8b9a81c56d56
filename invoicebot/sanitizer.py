"""Turn an untrusted model extraction into canonical invoice properties.

Every field goes through a pure normalizer; nothing here raises. The result is a
candidate for ``Invoice.create``, which performs the final invariant checks.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from invoicebot.confidence import DEFAULT_INVOICE_NUMBER, calculate_confidence
from invoicebot.normalization import (
    DEFAULT_BANK_DIRECTORY,
    DEFAULT_CURRENCY,
    UNKNOWN_VENDOR,
    BankDirectory,
    as_number,
    calculate_total_amount,
    normalize_currency,
    normalize_date,
    normalize_items,
    normalize_receiver_bank,
    normalize_text,
    normalize_vendor,
    parse_date,
    pick,
)

DEFAULT_ITEM_DESCRIPTION = "Comprobante procesado"


@dataclass(frozen=True)
class SanitizeContext:
    processing_time_ms: int = 0
    model_label: str | None = None
    default_item_description: str = DEFAULT_ITEM_DESCRIPTION
    default_invoice_number: str = DEFAULT_INVOICE_NUMBER
    default_currency: str = DEFAULT_CURRENCY


def _non_negative(value: Any) -> float:
    number = as_number(value)
    if number is None or number < 0:
        return 0.0
    return number


def normalize_taxes(raw: Any) -> dict[str, float] | None:
    if not isinstance(raw, dict):
        return None
    return {
        "iva": _non_negative(raw.get("iva")),
        "other_taxes": _non_negative(pick(raw, "otherTaxes", "other_taxes")),
    }


def sanitize(
    raw: Any,
    context: SanitizeContext | None = None,
    *,
    bank_directory: BankDirectory = DEFAULT_BANK_DIRECTORY,
    now: datetime | None = None,
) -> dict[str, Any]:
    ctx = context or SanitizeContext()
    data = raw if isinstance(raw, dict) else {}
    processed_at = now or datetime.now(timezone.utc)

    vendor = normalize_vendor(data.get("vendor"))
    raw_total = pick(data, "totalAmount", "total_amount")
    items = normalize_items(data.get("items"), ctx.default_item_description, raw_total)
    total_amount = calculate_total_amount(raw_total, items)
    receiver_vendor = "" if vendor["name"] == UNKNOWN_VENDOR else vendor["name"]
    receiver_bank = normalize_receiver_bank(
        pick(data, "receiverBank", "receiver_bank"),
        receiver_vendor,
        bank_directory,
    )

    raw_date = data.get("date")
    props: dict[str, Any] = {
        "invoice_number": normalize_text(pick(data, "invoiceNumber", "invoice_number"))
        or ctx.default_invoice_number,
        "date": normalize_date(raw_date, today=processed_at.date()),
        "operation_type": normalize_text(pick(data, "operationType", "operation_type")) or None,
        "vendor": vendor,
        "total_amount": total_amount,
        "currency": normalize_currency(data.get("currency"), default=ctx.default_currency),
        "receiver_bank": receiver_bank,
        "items": items,
        "taxes": normalize_taxes(data.get("taxes")),
        "payment_method": normalize_text(pick(data, "paymentMethod", "payment_method")) or None,
    }

    # A date that fell back to "today" was not extracted; score it as missing.
    scored = {**props, "date": parse_date(raw_date)}
    props["metadata"] = {
        "processed_at": processed_at.isoformat(),
        "processing_time_ms": max(int(ctx.processing_time_ms), 0),
        "confidence": calculate_confidence(
            scored, invoice_number_placeholder=ctx.default_invoice_number
        ),
        "model": ctx.model_label,
    }
    return props
