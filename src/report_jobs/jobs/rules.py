from __future__ import annotations

import operator
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from report_jobs.tables.base import TableNotFound, TableStore
from report_jobs.utils.logging import get_logger

_NUM_RE = re.compile(r"-?\d+(?:\.\d+)?")

_OPS: Dict[str, Callable[[float, float], bool]] = {
    "gt": operator.gt,
    "ge": operator.ge,
    "lt": operator.lt,
    "le": operator.le,
    "eq": operator.eq,
    "ne": operator.ne,
}


def to_float(value: Any, default: float = 0.0) -> float:
    """Parse numbers out of report cells such as '1,234', '$12.50' or '95.00%'."""
    if value is None:
        return default
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)

    s = str(value).strip().replace(",", "")
    if not s:
        return default

    m = _NUM_RE.search(s)
    if not m:
        return default
    try:
        return float(m.group(0))
    except ValueError:
        return default


@dataclass(frozen=True)
class Issue:
    """One rule hit on a row."""

    label: str
    detail: str = ""


class RowEvaluator(Protocol):
    """Evaluates one input row; None means the row is filtered out entirely."""

    def evaluate(self, row: Dict[str, Any]) -> Optional[List[Issue]]: ...


@dataclass(frozen=True)
class ThresholdRule:
    """
    Compares a numeric column against a constant or another column.

    Example: label='BILLING: clicks exceed impressions', column='Clicks', op='gt',
    other_column='Impressions'.
    """

    label: str
    column: str
    op: str = "gt"
    threshold: float = 0.0
    other_column: Optional[str] = None

    def check(self, row: Dict[str, Any]) -> Optional[Issue]:
        fn = _OPS.get(self.op)
        if fn is None:
            raise ValueError(f"Unsupported rule op '{self.op}' for rule '{self.label}'")
        left = to_float(row.get(self.column))
        right = to_float(row.get(self.other_column)) if self.other_column else float(self.threshold)
        if not fn(left, right):
            return None
        rhs = self.other_column if self.other_column else f"{self.threshold:g}"
        return Issue(label=self.label, detail=f"{self.column}={left:g} {self.op} {rhs}={right:g}")


@dataclass(frozen=True)
class SkipFilter:
    """Drops rows whose column contains (case-insensitive) any of the given fragments."""

    column: str
    contains: Sequence[str] = field(default_factory=tuple)

    def matches(self, row: Dict[str, Any]) -> bool:
        text = str(row.get(self.column) or "").strip().lower()
        if not text:
            return False
        return any(frag.lower() in text for frag in self.contains if frag)


class ConfiguredRuleEvaluator:
    """Rule evaluator built from configuration: skip filters, zero-activity filter, threshold rules."""

    def __init__(
        self,
        rules: Sequence[ThresholdRule],
        skip_filters: Sequence[SkipFilter] = (),
        activity_columns: Sequence[str] = (),
    ):
        self.rules = list(rules)
        self.skip_filters = list(skip_filters)
        self.activity_columns = list(activity_columns)

    def evaluate(self, row: Dict[str, Any]) -> Optional[List[Issue]]:
        if any(f.matches(row) for f in self.skip_filters):
            return None
        if self.activity_columns and all(to_float(row.get(c)) == 0 for c in self.activity_columns):
            return None
        return [issue for issue in (rule.check(row) for rule in self.rules) if issue]


class OwnerDirectory:
    """Resolves the owner of a row from a lookup table keyed by one column."""

    def __init__(self, mapping: Optional[Dict[str, str]] = None, key_column: str = "", default: str = "Unassigned"):
        self.mapping = {str(k).strip().lower(): v for k, v in (mapping or {}).items()}
        self.key_column = key_column
        self.default = default

    @classmethod
    def from_table(
        cls,
        tables: TableStore,
        table_name: str,
        key_column: str,
        owner_column: str,
        default: str = "Unassigned",
    ) -> "OwnerDirectory":
        log = get_logger("report_jobs.owners")
        try:
            table = tables.read_all(table_name)
        except TableNotFound:
            log.info("Owner table %s not found; every row resolves to %s", table_name, default)
            return cls({}, key_column, default)

        mapping: Dict[str, str] = {}
        for rec in table.records():
            key = str(rec.get(key_column) or "").strip()
            owner = str(rec.get(owner_column) or "").strip()
            if key and owner:
                mapping[key] = owner
        return cls(mapping, key_column, default)

    def resolve(self, row: Dict[str, Any]) -> str:
        key = str(row.get(self.key_column) or "").strip().lower()
        return self.mapping.get(key, self.default) if key else self.default
