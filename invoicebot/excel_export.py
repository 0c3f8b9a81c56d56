from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Iterable

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from invoicebot.invoice import Invoice
from invoicebot.normalization import MIN_TOTAL_AMOUNT
from schemas.invoice_schema import TAX_ID_MISSING

logger = logging.getLogger(__name__)

SHEET_TITLE = "Facturas"
COLUMNS = ("Fecha", "Tipo Operación", "Cuit", "Monto Bruto", "Banco receptor", "Observaciones")
AMOUNT_FORMAT = "$#,##0.00"
DEFAULT_OPERATION_TYPE = "Transferencia"
AMOUNT_NOT_DETECTED = "Monto no detectado"

_HEADER_FONT = Font(bold=True, color="FFFFFF")
_HEADER_FILL = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")

# (keywords, label); first match wins.
_OPERATION_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("transfer",), "Transferencia"),
    (("efectivo", "cash"), "Efectivo"),
    (("cheque", "check"), "Cheque"),
    (("tarjeta", "card"), "Tarjeta"),
)


@dataclass(frozen=True)
class ExcelRow:
    fecha: str
    tipo_operacion: str
    cuit: str
    monto_bruto: float
    banco_receptor: str
    observaciones: str

    def values(self) -> tuple[str | float, ...]:
        return (
            self.fecha,
            self.tipo_operacion,
            self.cuit,
            self.monto_bruto,
            self.banco_receptor,
            self.observaciones,
        )


def operation_type_from_payment(payment_method: str | None) -> str:
    if not payment_method:
        return DEFAULT_OPERATION_TYPE
    method = payment_method.lower()
    for keywords, label in _OPERATION_KEYWORDS:
        if any(keyword in method for keyword in keywords):
            return label
    return DEFAULT_OPERATION_TYPE


def invoice_to_row(invoice: Invoice) -> ExcelRow:
    vendor = invoice.vendor
    if vendor.cvu:
        cuit = vendor.cvu
    elif vendor.tax_id and vendor.tax_id != TAX_ID_MISSING:
        cuit = vendor.tax_id
    else:
        cuit = vendor.name
    bank = invoice.receiver_bank or " ".join(word.capitalize() for word in vendor.name.split(" "))
    note = AMOUNT_NOT_DETECTED if invoice.total_amount <= MIN_TOTAL_AMOUNT else ""
    return ExcelRow(
        fecha=invoice.get_formatted_date(),
        tipo_operacion=invoice.operation_type or operation_type_from_payment(invoice.payment_method),
        cuit=cuit,
        monto_bruto=invoice.total_amount,
        banco_receptor=bank,
        observaciones=note,
    )


class ExcelExporter:
    def build_workbook(self, invoices: Iterable[Invoice]) -> Workbook:
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = SHEET_TITLE
        sheet.append(COLUMNS)
        for cell in sheet[1]:
            cell.font = _HEADER_FONT
            cell.fill = _HEADER_FILL
            cell.alignment = Alignment(horizontal="center", vertical="center")

        for invoice in invoices:
            sheet.append(invoice_to_row(invoice).values())
            sheet.cell(row=sheet.max_row, column=COLUMNS.index("Monto Bruto") + 1).number_format = AMOUNT_FORMAT

        for index, column in enumerate(sheet.iter_cols(min_row=1, max_row=sheet.max_row), start=1):
            longest = max(len(str(cell.value)) if cell.value is not None else 0 for cell in column)
            sheet.column_dimensions[get_column_letter(index)].width = max(12, longest + 4)
        return workbook

    def generate_excel(self, invoices: Iterable[Invoice]) -> bytes:
        rows = list(invoices)
        buffer = BytesIO()
        self.build_workbook(rows).save(buffer)
        logger.info("Generated Excel workbook with %d invoice(s)", len(rows))
        return buffer.getvalue()

    def save_excel(self, invoices: Iterable[Invoice], path: str | Path) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.generate_excel(invoices))
        return target
