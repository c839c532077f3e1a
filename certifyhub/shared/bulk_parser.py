"""Header validation and tabular parsing for bulk certificate generation.

Both input modes (pasted text and uploaded files) funnel into
:func:`rows_from_table`, which treats the first row as the header, validates it
against the editable field labels and then maps every data row onto a
:class:`BulkRow` keyed by field id.
"""

from __future__ import annotations

import csv
import io
import os
import re
from datetime import date, datetime
from typing import Any, NamedTuple, Sequence

from openpyxl import load_workbook

from .fields import BulkRow, Field

RECIPIENT_EMAIL_HEADER = "Recipient Email"

_MULTI_SPACE = re.compile(r"\s{2,}")
_LINE_BREAK = re.compile(r"\r?\n")
_TEXT_EXTENSIONS = {".csv", ".txt", ".tsv"}


class HeaderValidation(NamedTuple):
    is_valid: bool
    missing_fields: list[str]
    extra_fields: list[str]


class ParseResult(NamedTuple):
    rows: list[BulkRow]
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.time() == datetime.min.time():
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def validate_header(header: Sequence[Any], fields: Sequence[Field]) -> HeaderValidation:
    trimmed = [_cell_text(cell).strip() for cell in header]
    header_set = set(trimmed)
    labels = [f.label.strip() for f in fields]
    label_set = set(labels)
    missing = [label for label in labels if label not in header_set]
    extra = [
        cell
        for cell in trimmed
        if cell and cell not in label_set and cell != RECIPIENT_EMAIL_HEADER
    ]
    return HeaderValidation(not missing, missing, extra)


def format_header_error(validation: HeaderValidation, fields: Sequence[Field]) -> str:
    message = (
        f"Header validation failed. Missing fields: {', '.join(validation.missing_fields)}. "
    )
    if validation.extra_fields:
        message += f"Extra fields: {', '.join(validation.extra_fields)}. "
    message += f"Required fields: {', '.join(f.label for f in fields)}."
    return message


def split_line(line: str) -> list[str]:
    """Split one pasted line into cells.

    Tabs win over commas, commas over runs of spaces. Comma separated lines go
    through the csv module so double-quoted cells may contain commas.
    """
    if "\t" in line:
        return line.split("\t")
    if "," in line:
        return next(csv.reader([line]))
    return _MULTI_SPACE.split(line)


def rows_from_table(table: Sequence[Sequence[Any]], fields: Sequence[Field]) -> ParseResult:
    header = list(table[0])
    validation = validate_header(header, fields)
    if not validation.is_valid:
        return ParseResult([], format_header_error(validation, fields))

    trimmed = [_cell_text(cell).strip() for cell in header]
    column_for = {f.id: trimmed.index(f.label.strip()) for f in fields}
    email_col = (
        trimmed.index(RECIPIENT_EMAIL_HEADER)
        if RECIPIENT_EMAIL_HEADER in trimmed
        else None
    )

    rows: list[BulkRow] = []
    for cols in table[1:]:
        row = BulkRow()
        for field_id, idx in column_for.items():
            if idx < len(cols) and cols[idx] is not None:
                row.values[field_id] = _cell_text(cols[idx])
        if email_col is not None and email_col < len(cols) and cols[email_col] is not None:
            row.recipient_email = _cell_text(cols[email_col]).strip()
        rows.append(row)

    if not rows:
        return ParseResult([], "No valid data rows found after header.")
    return ParseResult(rows)


def parse_text(text: str, fields: Sequence[Field]) -> ParseResult:
    lines = [line for line in _LINE_BREAK.split(text or "") if line]
    if not lines:
        return ParseResult([], "No data found in pasted content.")
    try:
        table = [split_line(line) for line in lines]
    except csv.Error as exc:
        return ParseResult([], f"Error parsing pasted data: {exc}")
    return rows_from_table(table, fields)


def _read_csv_table(data: bytes) -> list[list[str]]:
    text = data.decode("utf-8-sig")
    return [row for row in csv.reader(io.StringIO(text)) if any(c.strip() for c in row)]


def _read_workbook_table(data: bytes) -> list[list[Any]] | None:
    workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    try:
        if not workbook.sheetnames:
            return None
        sheet = workbook[workbook.sheetnames[0]]
        table: list[list[Any]] = []
        for values in sheet.iter_rows(values_only=True):
            if all(v is None or _cell_text(v).strip() == "" for v in values):
                continue
            table.append(list(values))
        return table
    finally:
        workbook.close()


def parse_spreadsheet(
    data: bytes, fields: Sequence[Field], filename: str | None = None
) -> ParseResult:
    """Parse an uploaded CSV or spreadsheet (first sheet only)."""
    if not data:
        return ParseResult([], "Failed to read file content.")
    ext = os.path.splitext(filename or "")[1].lower()
    try:
        if ext in _TEXT_EXTENSIONS:
            table = _read_csv_table(data)
        else:
            table = _read_workbook_table(data)
    except Exception as exc:
        return ParseResult([], f"Error processing Excel file: {exc}")
    if table is None:
        return ParseResult([], "No sheets found in the Excel file.")
    if not table:
        return ParseResult([], "Excel file is empty.")
    return rows_from_table(table, fields)
