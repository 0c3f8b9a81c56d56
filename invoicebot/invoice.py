from __future__ import annotations

import copy
import re
from typing import Any, Mapping

from pydantic import BaseModel, ValidationError

from schemas.invoice_schema import InvoiceItem, InvoiceMetadata, InvoiceRecord, Taxes, Vendor

_DATE_RE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")

_CURRENCY_SYMBOLS = {
    "ARS": "$",
    "USD": "US$",
    "EUR": "€",
    "BRL": "R$",
    "UYU": "$U",
}


class InvoiceValidationError(ValueError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


def _get(data: Any, snake: str, camel: str | None = None) -> Any:
    if isinstance(data, BaseModel):
        return getattr(data, snake, None)
    if isinstance(data, Mapping):
        if snake in data:
            return data[snake]
        if camel is not None:
            return data.get(camel)
    return None


def _check_invariants(props: Mapping[str, Any]) -> None:
    invoice_number = _get(props, "invoice_number", "invoiceNumber")
    if not isinstance(invoice_number, str) or not invoice_number.strip():
        raise InvoiceValidationError("invoice_number", "Invoice number is required")

    invoice_date = _get(props, "date")
    if not isinstance(invoice_date, str) or not _DATE_RE.fullmatch(invoice_date):
        raise InvoiceValidationError("date", "Invalid date format. Expected YYYY-MM-DD")

    vendor_name = _get(_get(props, "vendor"), "name")
    if not isinstance(vendor_name, str) or not vendor_name.strip():
        raise InvoiceValidationError("vendor", "Vendor name is required")

    total_amount = _get(props, "total_amount", "totalAmount")
    if isinstance(total_amount, bool) or not isinstance(total_amount, (int, float)) or not total_amount > 0:
        raise InvoiceValidationError("total_amount", "Total amount must be positive")

    currency = _get(props, "currency")
    if not isinstance(currency, str) or len(currency) != 3:
        raise InvoiceValidationError("currency", "Currency must be a 3-letter ISO code")

    items = _get(props, "items")
    if not isinstance(items, (list, tuple)) or len(items) == 0:
        raise InvoiceValidationError("items", "Invoice must have at least one item")


def format_amount(amount: float, currency: str) -> str:
    """Format like es-AR currency output: ``$ 1.234,56``."""
    digits = f"{abs(amount):,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    sign = "-" if amount < 0 else ""
    symbol = _CURRENCY_SYMBOLS.get(currency.upper(), currency.upper())
    return f"{sign}{symbol} {digits}"


class Invoice:
    """Validated, immutable invoice. Build it with ``Invoice.create``."""

    def __init__(self, props: Mapping[str, Any]) -> None:
        _check_invariants(props)
        payload = props.model_dump() if isinstance(props, BaseModel) else copy.deepcopy(dict(props))
        try:
            self._record = InvoiceRecord.model_validate(payload)
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first["loc"]) or "invoice"
            raise InvoiceValidationError(location, f"Invalid {location}: {first['msg']}") from exc

    @classmethod
    def create(cls, props: Mapping[str, Any]) -> "Invoice":
        return cls(props)

    @property
    def invoice_number(self) -> str:
        return self._record.invoice_number

    @property
    def date(self) -> str:
        return self._record.date

    @property
    def operation_type(self) -> str | None:
        return self._record.operation_type

    @property
    def vendor(self) -> Vendor:
        return self._record.vendor.model_copy(deep=True)

    @property
    def total_amount(self) -> float:
        return self._record.total_amount

    @property
    def currency(self) -> str:
        return self._record.currency

    @property
    def receiver_bank(self) -> str:
        return self._record.receiver_bank

    @property
    def items(self) -> list[InvoiceItem]:
        return [item.model_copy(deep=True) for item in self._record.items]

    @property
    def taxes(self) -> Taxes | None:
        if self._record.taxes is None:
            return None
        return self._record.taxes.model_copy(deep=True)

    @property
    def payment_method(self) -> str | None:
        return self._record.payment_method

    @property
    def metadata(self) -> InvoiceMetadata:
        return self._record.metadata.model_copy(deep=True)

    def get_total_with_taxes(self) -> float:
        taxes = self._record.taxes
        if taxes is None:
            return self._record.total_amount
        return self._record.total_amount + taxes.iva + taxes.other_taxes

    def get_formatted_date(self) -> str:
        year, month, day = self._record.date.split("-")
        return f"{day}/{month}/{year}"

    def is_high_confidence(self) -> bool:
        return self._record.metadata.confidence == "high"

    def get_formatted_amount(self) -> str:
        return format_amount(self._record.total_amount, self._record.currency)

    def to_dict(self, *, by_alias: bool = False) -> dict[str, Any]:
        return self._record.model_dump(by_alias=by_alias)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Invoice):
            return NotImplemented
        return self._record == other._record

    def __repr__(self) -> str:
        return (
            f"Invoice(invoice_number={self.invoice_number!r}, date={self.date!r}, "
            f"total_amount={self.total_amount!r}, currency={self.currency!r})"
        )
