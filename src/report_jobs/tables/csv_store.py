from __future__ import annotations

import csv
import os
import re
from pathlib import Path
from typing import Any, List

from report_jobs.tables.base import Table, TableNotFound
from report_jobs.utils.logging import get_logger

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._ -]+")


class CsvTableStore:
    """Table store backed by a directory holding one CSV file per table."""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.log = get_logger("report_jobs.tables.csv")

    def path_for(self, name: str) -> Path:
        safe = _UNSAFE_RE.sub("_", str(name).strip()) or "table"
        return self.directory / f"{safe}.csv"

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def read_all(self, name: str) -> Table:
        path = self.path_for(name)
        if not path.exists():
            raise TableNotFound(name)

        with open(path, "r", newline="", encoding="utf-8") as f:
            rows = [row for row in csv.reader(f)]

        if not rows:
            return Table(header=[], rows=[])
        return Table(header=rows[0], rows=[r for r in rows[1:] if any(str(c).strip() for c in r)])

    def overwrite(self, name: str, header: List[str], rows: List[List[Any]]) -> None:
        path = self.path_for(name)
        tmp_path = path.with_suffix(".csv.tmp")
        with open(tmp_path, "w", newline="", encoding="utf-8") as f:
            w = csv.writer(f)
            w.writerow(header)
            w.writerows(rows)
        os.replace(tmp_path, path)
        self.log.info("CSV overwrite: table=%s rows=%d", name, len(rows))

    def append(self, name: str, rows: List[List[Any]]) -> None:
        path = self.path_for(name)
        if not path.exists():
            raise TableNotFound(name)
        if not rows:
            return

        with open(path, "a", newline="", encoding="utf-8") as f:
            csv.writer(f).writerows(rows)
        self.log.info("CSV append: table=%s rows=%d", name, len(rows))
