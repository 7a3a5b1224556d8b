from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol, Sequence


class TableNotFound(KeyError):
    """Raised when a named table does not exist in the store."""


@dataclass
class Table:
    """A header row plus data rows read from a table store."""

    header: List[str]
    rows: List[List[Any]] = field(default_factory=list)

    def header_map(self) -> Dict[str, int]:
        """Map trimmed column names to their index; the first occurrence wins."""
        mapping: Dict[str, int] = {}
        for idx, name in enumerate(self.header):
            key = str(name or "").strip()
            if key and key not in mapping:
                mapping[key] = idx
        return mapping

    def missing_columns(self, required: Sequence[str]) -> List[str]:
        present = self.header_map()
        return [c for c in required if c not in present]

    def records(self) -> List[Dict[str, Any]]:
        """Rows as dicts keyed by header name (first occurrence wins); short rows are padded with ''."""
        columns = self.header_map()
        out: List[Dict[str, Any]] = []
        for row in self.rows:
            out.append({name: row[i] if i < len(row) else "" for name, i in columns.items()})
        return out


class TableStore(Protocol):
    """Protocol for tabular storage backends (spreadsheets, CSV directories)."""

    def exists(self, name: str) -> bool: ...

    def read_all(self, name: str) -> Table: ...

    def overwrite(self, name: str, header: List[str], rows: List[List[Any]]) -> None: ...

    def append(self, name: str, rows: List[List[Any]]) -> None: ...
