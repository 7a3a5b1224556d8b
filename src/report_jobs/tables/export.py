from __future__ import annotations

import io
from typing import Protocol

from openpyxl import Workbook
from openpyxl.styles import Font

from report_jobs.tables.base import TableStore


class BlobExporter(Protocol):
    """Protocol for exporting a table as a spreadsheet file."""

    def export(self, table_name: str) -> bytes: ...


class XlsxExporter:
    """Renders a table store table into an .xlsx workbook."""

    def __init__(self, tables: TableStore, sheet_title: str = "Violations"):
        self.tables = tables
        self.sheet_title = sheet_title

    def export(self, table_name: str) -> bytes:
        table = self.tables.read_all(table_name)

        wb = Workbook()
        ws = wb.active
        ws.title = self.sheet_title[:31]
        ws.append(list(table.header))
        for cell in ws[1]:
            cell.font = Font(bold=True)
        for row in table.rows:
            ws.append(list(row))
        ws.freeze_panes = "A2"

        buf = io.BytesIO()
        wb.save(buf)
        return buf.getvalue()
