from __future__ import annotations

import json
import math
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from schemas.invoice_schema import TAX_ID_MISSING, TAX_ID_PATTERN

DEFAULT_CURRENCY = "ARS"
UNKNOWN_VENDOR = "Unknown Vendor"
MIN_TOTAL_AMOUNT = 0.01

_ISO_DATE_RE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")
_DMY_SLASH_RE = re.compile(r"([0-9]{2})/([0-9]{2})/([0-9]{4})")
_YMD_SLASH_RE = re.compile(r"[0-9]{4}/[0-9]{2}/[0-9]{2}")
_TAX_ID_RE = re.compile(TAX_ID_PATTERN)

# Values the model uses to say "field present but empty".
_EMPTY_MARKERS = {"-", "--", "n/a", "na", "none", "null", "no figura", "sin datos"}

DEFAULT_PAYMENT_PROCESSORS = (
    "mercado pago",
    "mercadopago",
    "modo",
    "visa",
    "mastercard",
    "american express",
    "amex",
    "link",
    "red link",
    "posnet",
    "pos",
)

DEFAULT_ISSUER_BANKS = (
    "banco galicia",
    "galicia",
    "banco nacion",
    "banco de la nacion argentina",
    "banco provincia",
    "banco de la provincia de buenos aires",
    "bbva",
    "banco frances",
    "santander",
    "banco macro",
    "hsbc",
    "icbc",
    "credicoop",
    "banco ciudad",
    "supervielle",
    "banco patagonia",
    "itau",
    "comafi",
    "banco hipotecario",
    "brubank",
)


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", stripped.lower()).strip()


def _compile_terms(terms: tuple[str, ...]) -> re.Pattern[str] | None:
    folded = sorted({_fold(t) for t in terms if _fold(t)}, key=len, reverse=True)
    if not folded:
        return None
    alternation = "|".join(re.escape(t) for t in folded)
    return re.compile(rf"(?<![a-z0-9])(?:{alternation})(?![a-z0-9])")


@dataclass(frozen=True)
class BankDirectory:
    """Name lists used to tell processors and issuer banks apart from receiving banks."""

    payment_processors: tuple[str, ...] = DEFAULT_PAYMENT_PROCESSORS
    issuer_banks: tuple[str, ...] = DEFAULT_ISSUER_BANKS
    _processor_re: re.Pattern[str] | None = field(default=None, init=False, repr=False, compare=False)
    _issuer_re: re.Pattern[str] | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_processor_re", _compile_terms(self.payment_processors))
        object.__setattr__(self, "_issuer_re", _compile_terms(self.issuer_banks))

    @classmethod
    def from_dict(cls, rules: dict[str, Any]) -> "BankDirectory":
        processors = rules.get("payment_processors", DEFAULT_PAYMENT_PROCESSORS)
        issuers = rules.get("issuer_banks", DEFAULT_ISSUER_BANKS)
        return cls(
            payment_processors=tuple(str(x) for x in processors),
            issuer_banks=tuple(str(x) for x in issuers),
        )

    @classmethod
    def from_path(cls, path: str | Path) -> "BankDirectory":
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Bank rules file must contain a JSON object: {path}")
        return cls.from_dict(payload)

    def is_payment_processor(self, name: str) -> bool:
        return bool(self._processor_re and self._processor_re.search(_fold(name)))

    def is_issuer_bank(self, name: str) -> bool:
        return bool(self._issuer_re and self._issuer_re.search(_fold(name)))


DEFAULT_BANK_DIRECTORY = BankDirectory()


def as_number(value: Any) -> float | None:
    """Return a finite float for numeric input (or a plain numeric string), else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        text = value.strip().lstrip("$").strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def normalize_text(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()


def parse_date(value: Any) -> str | None:
    """Rewrite a recognised date string to YYYY-MM-DD; None when unrecognised."""
    text = normalize_text(value)
    if _ISO_DATE_RE.fullmatch(text):
        return text
    match = _DMY_SLASH_RE.fullmatch(text)
    if match:
        day, month, year = match.groups()
        return f"{year}-{month}-{day}"
    if _YMD_SLASH_RE.fullmatch(text):
        return text.replace("/", "-")
    return None


def normalize_date(value: Any, today: date | None = None) -> str:
    parsed = parse_date(value)
    if parsed is not None:
        return parsed
    current = today or datetime.now(timezone.utc).date()
    return current.strftime("%Y-%m-%d")


def normalize_currency(value: Any, default: str = DEFAULT_CURRENCY) -> str:
    text = normalize_text(value)
    if len(text) == 3:
        return text.upper()
    return default


def normalize_tax_id(value: Any) -> str:
    text = normalize_text(value)
    if _TAX_ID_RE.fullmatch(text):
        return text
    return TAX_ID_MISSING


def _optional_text(value: Any) -> str | None:
    text = normalize_text(value)
    return text or None


def normalize_vendor(raw: Any) -> dict[str, Any]:
    data = raw if isinstance(raw, dict) else {}
    return {
        "name": normalize_text(data.get("name")) or UNKNOWN_VENDOR,
        "tax_id": normalize_tax_id(pick(data, "taxId", "tax_id", "cuit")),
        "cvu": _optional_text(data.get("cvu")),
        "address": _optional_text(data.get("address")),
    }


def _single_item(description: str, amount: float) -> dict[str, Any]:
    return {
        "description": description,
        "quantity": 1.0,
        "unit_price": amount,
        "subtotal": amount,
    }


def normalize_items(raw_items: Any, default_description: str, raw_total: Any) -> list[dict[str, Any]]:
    if not isinstance(raw_items, list) or not raw_items:
        total = as_number(raw_total)
        return [_single_item(default_description, total if total is not None and total > 0 else 0.0)]

    items: list[dict[str, Any]] = []
    for raw in raw_items:
        data = raw if isinstance(raw, dict) else {}
        description = normalize_text(data.get("description")) or default_description
        if not description:
            continue
        quantity = as_number(data.get("quantity"))
        if quantity is None or quantity <= 0:
            quantity = 1.0
        unit_price = as_number(pick(data, "unitPrice", "unit_price"))
        if unit_price is None or unit_price < 0:
            unit_price = 0.0
        subtotal = quantity * unit_price
        if not math.isfinite(subtotal):
            unit_price = 0.0
            subtotal = 0.0
        items.append(
            {
                "description": description,
                "quantity": quantity,
                "unit_price": unit_price,
                "subtotal": subtotal,
            }
        )

    if not items:
        return [_single_item(default_description, 0.0)]
    return items


def normalize_receiver_bank(
    value: Any,
    vendor_name: str,
    directory: BankDirectory = DEFAULT_BANK_DIRECTORY,
) -> str:
    text = normalize_text(value)
    if not text or text.lower() in _EMPTY_MARKERS:
        return ""
    if directory.is_payment_processor(text):
        return ""
    if directory.is_issuer_bank(text):
        return normalize_text(vendor_name)
    return text


def calculate_total_amount(raw_total: Any, items: list[dict[str, Any]]) -> float:
    total = as_number(raw_total)
    if total is not None and total > 0:
        return total
    items_sum = sum(as_number(item.get("subtotal")) or 0.0 for item in items)
    if math.isfinite(items_sum) and items_sum > 0:
        return items_sum
    return MIN_TOTAL_AMOUNT
