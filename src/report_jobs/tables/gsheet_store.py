from __future__ import annotations

from typing import Any, Dict, List, Optional

import gspread
from google.oauth2.service_account import Credentials

from report_jobs.core.errors import TransientStoreError
from report_jobs.tables.base import Table, TableNotFound
from report_jobs.utils.logging import get_logger

_SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
]


class GoogleSheetsTableStore:
    """
    Table store over the tabs of one Google Sheets spreadsheet.

    Worksheet handles are opened lazily and kept for the life of the store, so one
    invocation pays the lookup cost once per tab. API errors are surfaced as
    TransientStoreError so callers can retry them with backoff.
    """

    def __init__(self, sheet_id: str, credentials_path: str, client: Optional[gspread.Client] = None):
        self.sheet_id = sheet_id
        self.credentials_path = credentials_path
        self._client = client
        self._spreadsheet = None
        self._worksheets: Dict[str, Any] = {}
        self.log = get_logger("report_jobs.tables.gsheet")

    def exists(self, name: str) -> bool:
        try:
            self._worksheet(name)
            return True
        except TableNotFound:
            return False

    def read_all(self, name: str) -> Table:
        ws = self._worksheet(name)
        values = self._api(lambda: ws.get_all_values(), f"read {name}")
        if not values:
            return Table(header=[], rows=[])
        return Table(header=values[0], rows=[r for r in values[1:] if any(str(c).strip() for c in r)])

    def overwrite(self, name: str, header: List[str], rows: List[List[Any]]) -> None:
        ws = self._worksheet(name, create=True)
        self._api(lambda: ws.clear(), f"clear {name}")
        self._api(
            lambda: ws.update(values=[header] + [list(r) for r in rows], range_name="A1", value_input_option="RAW"),
            f"overwrite {name}",
        )
        self.log.info("Sheet overwrite: tab=%s rows=%d", name, len(rows))

    def append(self, name: str, rows: List[List[Any]]) -> None:
        if not rows:
            return
        ws = self._worksheet(name)
        self._api(lambda: ws.append_rows([list(r) for r in rows], value_input_option="RAW"), f"append {name}")
        self.log.info("Sheet append: tab=%s rows=%d", name, len(rows))

    def _open_spreadsheet(self):
        """Open the spreadsheet once per store instance."""
        if self._spreadsheet is None:
            if self._client is None:
                creds = Credentials.from_service_account_file(self.credentials_path, scopes=_SCOPES)
                self._client = gspread.authorize(creds)
            client = self._client
            self._spreadsheet = self._api(lambda: client.open_by_key(self.sheet_id), "open spreadsheet")
        return self._spreadsheet

    def _worksheet(self, name: str, create: bool = False):
        if name in self._worksheets:
            return self._worksheets[name]

        sh = self._open_spreadsheet()
        try:
            ws = sh.worksheet(name)
        except gspread.exceptions.WorksheetNotFound:
            if not create:
                raise TableNotFound(name)
            ws = self._api(lambda: sh.add_worksheet(title=name, rows=100, cols=26), f"create {name}")
            self.log.info("Sheet tab created: %s", name)

        self._worksheets[name] = ws
        return ws

    def _api(self, fn, label: str):
        try:
            return fn()
        except gspread.exceptions.APIError as e:
            raise TransientStoreError(f"Google Sheets {label}: {e}") from e
