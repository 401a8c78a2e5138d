"""
Export Format Handler Service

Encodes transformed rows (label -> value dicts) into export payloads:
- CSV: every field quoted, CRLF row separator, UTF-8
- JSON: exportInfo metadata envelope plus the rows
- XLSX: "Export Data" sheet plus an "Export Info" sheet (openpyxl)

Encoders are plain strategy objects. ExportFormatHandler resolves a format
name to its encoder and also builds multi-sheet workbooks.
"""

import csv
import io
import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Font, PatternFill, Alignment
from openpyxl.utils import get_column_letter

from error_handlers import UnsupportedFormatError
from export_schemas import ExportFormat, ExportOptions, FieldMapping, WorkbookProperties
from services.field_transformer import active_fields

# Configure logging
logger = logging.getLogger(__name__)

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

HEADER_FONT = Font(bold=True, color="FFFFFF")
HEADER_FILL = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
HYPERLINK_FONT = Font(color="0563C1", underline="single")
MAX_COLUMN_WIDTH = 50


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_cell_value(value: Any) -> Any:
    """Coerce a row value into something openpyxl can store."""
    if value is None:
        return ""
    if isinstance(value, str):
        return ILLEGAL_CHARACTERS_RE.sub("", value)
    if isinstance(value, (bool, int, float, datetime, date)):
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return ILLEGAL_CHARACTERS_RE.sub("", str(value))


def write_cell(ws, row: int, column: int, value: Any):
    """Write a literal value; strings starting with '=' stay text, not formulas."""
    cell = ws.cell(row=row, column=column, value=to_cell_value(value))
    if isinstance(cell.value, str) and cell.value.startswith("="):
        cell.data_type = "s"
    return cell


def style_header_row(ws, row: int, column_count: int) -> None:
    for col_idx in range(1, column_count + 1):
        cell = ws.cell(row=row, column=col_idx)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(horizontal="center", vertical="center")


def autosize_columns(ws, fields: List[FieldMapping]) -> None:
    """Use the field width hint, else the longest value (capped)."""
    for col_idx, field in enumerate(fields, 1):
        column_letter = get_column_letter(col_idx)
        if field.width:
            ws.column_dimensions[column_letter].width = field.width
            continue
        max_length = 0
        for cell in ws[column_letter]:
            if cell.value is not None:
                max_length = max(max_length, len(str(cell.value)))
        ws.column_dimensions[column_letter].width = min(max_length + 2, MAX_COLUMN_WIDTH)


def populate_data_sheet(ws, rows: List[Dict[str, Any]], fields: List[FieldMapping]) -> None:
    """Header of labels, then one row per record in field order."""
    for col_idx, field in enumerate(fields, 1):
        write_cell(ws, 1, col_idx, field.label)
    style_header_row(ws, 1, len(fields))

    for row_idx, row in enumerate(rows, 2):
        for col_idx, field in enumerate(fields, 1):
            write_cell(ws, row_idx, col_idx, row.get(field.label, ""))

    autosize_columns(ws, fields)
    ws.freeze_panes = ws["A2"]


def workbook_bytes(workbook: Workbook) -> bytes:
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class CsvEncoder:
    """All fields quoted, '"' doubled inside values, CRLF between rows."""

    format = ExportFormat.CSV
    content_type = "text/csv"
    extension = "csv"

    def encode(self, rows: List[Dict[str, Any]], fields: List[FieldMapping], options: ExportOptions) -> bytes:
        fields = active_fields(fields)
        output = io.StringIO()
        writer = csv.writer(
            output,
            quoting=csv.QUOTE_ALL,
            quotechar='"',
            doublequote=True,
            lineterminator="\r\n",
        )

        if options.include_headers:
            writer.writerow([field.label for field in fields])

        for row in rows:
            writer.writerow([self._cell(row.get(field.label, "")) for field in fields])

        content = output.getvalue()
        if content.endswith("\r\n"):
            content = content[:-2]

        logger.debug(f"CSV encoded: {len(rows)} rows, {len(fields)} columns")
        return content.encode("utf-8")

    @staticmethod
    def _cell(value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False, default=str)
        return value


class JsonEncoder:
    """exportInfo envelope with the rows under "data", 2-space indented."""

    format = ExportFormat.JSON
    content_type = "application/json"
    extension = "json"

    def encode(self, rows: List[Dict[str, Any]], fields: List[FieldMapping], options: ExportOptions) -> bytes:
        document = {
            "exportInfo": {
                "exportedAt": _iso_now(),
                "timezone": options.timezone or "UTC",
                "totalRecords": len(rows),
                "version": "1.0",
            },
            "data": rows,
        }
        logger.debug(f"JSON encoded: {len(rows)} rows")
        return json.dumps(document, indent=2, ensure_ascii=False, default=str).encode("utf-8")


class XlsxEncoder:
    """Workbook with an "Export Data" sheet and an "Export Info" sheet."""

    format = ExportFormat.XLSX
    content_type = XLSX_CONTENT_TYPE
    extension = "xlsx"

    def encode(self, rows: List[Dict[str, Any]], fields: List[FieldMapping], options: ExportOptions) -> bytes:
        fields = active_fields(fields)
        workbook = Workbook()

        ws = workbook.active
        ws.title = "Export Data"
        populate_data_sheet(ws, rows, fields)

        self._add_info_sheet(workbook, rows, fields, options)

        logger.debug(f"XLSX encoded: {len(rows)} rows, {len(fields)} columns")
        return workbook_bytes(workbook)

    def _add_info_sheet(self, workbook: Workbook, rows, fields: List[FieldMapping], options: ExportOptions) -> None:
        ws = workbook.create_sheet("Export Info")
        info_rows = [
            ["Export Information", ""],
            ["Exported At", _iso_now()],
            ["Timezone", options.timezone or "UTC"],
            ["Total Records", len(rows)],
            ["Fields Exported", len(fields)],
            ["", ""],
            ["Field Mappings", ""],
        ]
        info_rows.extend([field.label, field.key] for field in fields)

        for row_idx, values in enumerate(info_rows, 1):
            for col_idx, value in enumerate(values, 1):
                write_cell(ws, row_idx, col_idx, value)

        ws["A1"].font = Font(bold=True, size=14)
        ws["A7"].font = Font(bold=True)
        ws.column_dimensions["A"].width = 25
        ws.column_dimensions["B"].width = 50


def sanitize_multi_sheet_name(name: str, index: int) -> str:
    """
    Excel-safe sheet name with a two digit index suffix ("Issues_01").

    Reserved characters become '-', names are kept within 31 characters.
    """
    suffix = f"_{index:02d}"
    if not name:
        return f"Sheet{suffix}"

    sanitized = re.sub(r"[:\\/?*\[\]']", "-", name)
    sanitized = re.sub(r"^-+|-+$", "", sanitized)
    sanitized = re.sub(r"-+", "-", sanitized).strip()
    if not sanitized:
        sanitized = "Sheet"

    if len(sanitized) > 28:
        return f"{sanitized[:25].rstrip('-')}{suffix}"
    return f"{sanitized}{suffix}"


@dataclass
class SheetData:
    name: str
    rows: List[Dict[str, Any]]
    fields: List[FieldMapping]


class ExportFormatHandler:
    """
    Resolves export formats to encoders.

    Supports:
    - csv, json and xlsx encoders (replaceable through the constructor)
    - content types, extensions and download filenames
    - multi-sheet workbooks with a linked Summary sheet
    """

    def __init__(self, encoders: Optional[Dict[str, Any]] = None):
        """Initialize ExportFormatHandler"""
        if encoders is None:
            encoders = {
                ExportFormat.CSV.value: CsvEncoder(),
                ExportFormat.JSON.value: JsonEncoder(),
                ExportFormat.XLSX.value: XlsxEncoder(),
            }
        self.encoders = {str(getattr(key, "value", key)).lower(): encoder for key, encoder in encoders.items()}
        logger.info(f"ExportFormatHandler initialized with formats: {sorted(self.encoders)}")

    def get_encoder(self, format: str):
        """
        Get the encoder for a format name.

        Raises:
            UnsupportedFormatError: No encoder is registered for the format
        """
        key = str(getattr(format, "value", format) or "").lower()
        encoder = self.encoders.get(key)
        if encoder is None:
            raise UnsupportedFormatError(str(format))
        return encoder

    def get_content_type(self, format: str) -> str:
        return self.get_encoder(format).content_type

    def get_extension(self, format: str) -> str:
        return self.get_encoder(format).extension

    def get_filename(self, filename: str, format: str) -> str:
        """Append the format extension unless the filename already carries it."""
        extension = self.get_extension(format)
        if filename.lower().endswith(f".{extension}"):
            return filename
        return f"{filename}.{extension}"

    def encode_workbook(
        self,
        sheets: List[SheetData],
        include_summary: bool = True,
        properties: WorkbookProperties = None,
    ) -> bytes:
        """
        Build one workbook holding several data sheets.

        A Summary sheet linking to every data sheet is added first when
        include_summary is set and there is more than one sheet.
        """
        workbook = Workbook()
        workbook.remove(workbook.active)

        if properties is not None:
            if properties.title:
                workbook.properties.title = properties.title
            if properties.creator:
                workbook.properties.creator = properties.creator
            if properties.subject:
                workbook.properties.subject = properties.subject
            if properties.description:
                workbook.properties.description = properties.description

        sheet_names = [sanitize_multi_sheet_name(sheet.name, index) for index, sheet in enumerate(sheets, 1)]

        if include_summary and len(sheets) > 1:
            self._add_summary_sheet(workbook, sheets, sheet_names)

        for sheet, sheet_name in zip(sheets, sheet_names):
            ws = workbook.create_sheet(sheet_name)
            populate_data_sheet(ws, sheet.rows, active_fields(sheet.fields))

        logger.debug(f"Multi-sheet workbook encoded: {len(sheets)} sheets")
        return workbook_bytes(workbook)

    def _add_summary_sheet(self, workbook: Workbook, sheets: List[SheetData], sheet_names: List[str]) -> None:
        ws = workbook.create_sheet("Summary")
        headers = ["Sheet Name", "Records", "Columns", "Link"]
        for col_idx, header in enumerate(headers, 1):
            write_cell(ws, 1, col_idx, header)
        style_header_row(ws, 1, len(headers))

        for row_idx, (sheet, sheet_name) in enumerate(zip(sheets, sheet_names), 2):
            write_cell(ws, row_idx, 1, sheet.name)
            write_cell(ws, row_idx, 2, len(sheet.rows))
            write_cell(ws, row_idx, 3, len(active_fields(sheet.fields)))
            link = write_cell(ws, row_idx, 4, "Go to Sheet")
            link.hyperlink = f"#'{sheet_name}'!A1"
            link.font = HYPERLINK_FONT

        for column_letter, width in zip("ABCD", (30, 15, 15, 20)):
            ws.column_dimensions[column_letter].width = width
