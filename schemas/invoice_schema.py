from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

TAX_ID_PATTERN = r"^\d{2}-?\d{8}-?\d{1}$"
TAX_ID_MISSING = "No figura"


class _Shape(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class Vendor(_Shape):
    name: str = Field(min_length=1)
    tax_id: str = Field(default=TAX_ID_MISSING, pattern=rf"({TAX_ID_PATTERN})|^{TAX_ID_MISSING}$")
    cvu: str | None = None
    address: str | None = None


class InvoiceItem(_Shape):
    description: str = Field(min_length=1)
    quantity: float
    unit_price: float = Field(ge=0)
    subtotal: float


class Taxes(_Shape):
    iva: float = 0.0
    other_taxes: float = 0.0


class InvoiceMetadata(_Shape):
    processed_at: str = Field(min_length=1)
    processing_time_ms: int = Field(ge=0)
    confidence: Literal["high", "medium", "low"]
    model: str | None = None


class InvoiceRecord(_Shape):
    invoice_number: str = Field(min_length=1)
    date: str = Field(pattern=r"^[0-9]{4}-[0-9]{2}-[0-9]{2}$")
    operation_type: str | None = None
    vendor: Vendor
    total_amount: float = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    receiver_bank: str = ""
    items: list[InvoiceItem] = Field(min_length=1)
    taxes: Taxes | None = None
    payment_method: str | None = None
    metadata: InvoiceMetadata
