from __future__ import annotations

from typing import Any, Literal, Mapping

from invoicebot.normalization import MIN_TOTAL_AMOUNT, UNKNOWN_VENDOR, as_number

Confidence = Literal["high", "medium", "low"]

DEFAULT_INVOICE_NUMBER = "COMPROBANTE-001"

REQUIRED_FIELDS = ("invoice_number", "date", "vendor", "total_amount", "items")
OPTIONAL_FIELDS = ("operation_type", "receiver_bank", "taxes", "payment_method")

HIGH_THRESHOLD = 10
MEDIUM_THRESHOLD = 6


def _has_required(name: str, value: Any, invoice_number_placeholder: str) -> bool:
    if name == "invoice_number":
        return isinstance(value, str) and bool(value.strip()) and value != invoice_number_placeholder
    if name == "vendor":
        vendor_name = value.get("name") if isinstance(value, Mapping) else None
        return isinstance(vendor_name, str) and bool(vendor_name.strip()) and vendor_name != UNKNOWN_VENDOR
    if name == "total_amount":
        amount = as_number(value)
        return amount is not None and amount > MIN_TOTAL_AMOUNT
    if name == "items":
        # A lone zero-value line is what the sanitizer synthesizes when nothing was extracted.
        if not isinstance(value, list) or not value:
            return False
        return any((as_number(item.get("subtotal")) or 0.0) > 0 for item in value if isinstance(item, Mapping))
    return bool(value)


def calculate_confidence(
    fields: Mapping[str, Any],
    *,
    invoice_number_placeholder: str = DEFAULT_INVOICE_NUMBER,
) -> Confidence:
    score = 0
    for name in REQUIRED_FIELDS:
        if _has_required(name, fields.get(name), invoice_number_placeholder):
            score += 2
    for name in OPTIONAL_FIELDS:
        if fields.get(name):
            score += 1
    if score >= HIGH_THRESHOLD:
        return "high"
    if score >= MEDIUM_THRESHOLD:
        return "medium"
    return "low"
