"""Spreadsheet extraction: first sheet as a list of header-keyed rows."""

from __future__ import annotations

import csv
import datetime
import json
from pathlib import Path
from typing import Any

import openpyxl

from ..errors import PermanentExternalError
from .base import BaseExtractor

MAX_ROWS = 10_000


def _cell(value: Any) -> Any:
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat()
    return value


def _rows_to_records(rows: list[list[Any]]) -> list[dict[str, Any]]:
    """Key every data row by the first non-empty row."""
    rows = [r for r in rows if any(v not in (None, "") for v in r)]
    if not rows:
        return []
    header = [
        str(h).strip() if h not in (None, "") else f"column_{i + 1}"
        for i, h in enumerate(rows[0])
    ]
    records = []
    for row in rows[1:MAX_ROWS + 1]:
        record = {}
        for i, value in enumerate(row):
            if value in (None, ""):
                continue
            key = header[i] if i < len(header) else f"column_{i + 1}"
            record[key] = _cell(value)
        if record:
            records.append(record)
    return records


class SpreadsheetExtractor(BaseExtractor):
    family = "spreadsheet"
    extensions = (".xlsx", ".xls", ".csv")

    def extract(self, path: Path, extension: str) -> tuple[str, dict[str, Any]]:
        ext = extension.lower()
        if ext == ".xlsx":
            sheet_name, rows = self._read_xlsx(path)
        elif ext == ".csv":
            sheet_name, rows = None, self._read_csv(path)
        else:
            raise PermanentExternalError(f"unsupported legacy format: {ext}")

        records = _rows_to_records(rows)
        content = json.dumps(records, indent=2, ensure_ascii=False, default=str)
        return content, {"sheet": sheet_name, "rows": len(records)}

    @staticmethod
    def _read_xlsx(path: Path) -> tuple[str, list[list[Any]]]:
        wb = openpyxl.load_workbook(path, read_only=True, data_only=True)
        try:
            sheet = wb.worksheets[0]
            rows = [list(r) for r in sheet.iter_rows(values_only=True, max_row=MAX_ROWS + 1)]
            return sheet.title, rows
        finally:
            wb.close()

    @staticmethod
    def _read_csv(path: Path) -> list[list[Any]]:
        text = path.read_bytes().decode("utf-8-sig", errors="replace")
        try:
            dialect = csv.Sniffer().sniff(text[:4096], delimiters=",;\t")
        except csv.Error:
            dialect = csv.excel
        return [row for row in csv.reader(text.splitlines(), dialect)]
