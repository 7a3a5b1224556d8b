from __future__ import annotations

import html
from collections import Counter, OrderedDict
from typing import Any, Dict, Iterable, List, Sequence

_TABLE = '<table border="1" cellpadding="4" cellspacing="0" style="border-collapse:collapse;font-size:12px;">'
_TH = '<th style="background:#f0f0f0;text-align:left;">'


def _cell(value: Any) -> str:
    return f"<td>{html.escape(str(value if value is not None else ''))}</td>"


def html_table(header: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    head = "".join(f"{_TH}{html.escape(str(h))}</th>" for h in header)
    body = "".join("<tr>" + "".join(_cell(v) for v in row) + "</tr>" for row in rows)
    return f"{_TABLE}<tr>{head}</tr>{body}</table>"


def split_issues(value: Any) -> List[str]:
    return [p.strip() for p in str(value or "").split(",") if p.strip()]


def network_summary(records: List[Dict[str, Any]], network_column: str) -> str:
    counts = Counter(str(r.get(network_column) or "(none)").strip() or "(none)" for r in records)
    rows = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return f"<h3>Violations by network</h3>{html_table([network_column, 'Violations'], rows)}"


def grouped_summary(records: List[Dict[str, Any]], issue_column: str) -> str:
    counts: Counter = Counter()
    for r in records:
        counts.update(split_issues(r.get(issue_column)))
    rows = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return f"<h3>Violations by issue type</h3>{html_table(['Issue', 'Count'], rows)}"


def stale_summary(records: List[Dict[str, Any]], days_columns: Sequence[str], stale_days: int) -> str:
    """Rows where every days-since column is at least stale_days."""

    def stale(r: Dict[str, Any]) -> bool:
        vals = []
        for c in days_columns:
            try:
                vals.append(int(str(r.get(c)).strip()))
            except (TypeError, ValueError):
                return False
        return bool(vals) and all(v >= stale_days for v in vals)

    count = sum(1 for r in records if stale(r))
    return f"<p>{count} flagged rows show no change for {stale_days}+ days.</p>"


def group_by(records: List[Dict[str, Any]], column: str, default: str = "Unassigned") -> "OrderedDict[str, List[Dict[str, Any]]]":
    grouped: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
    for r in records:
        key = str(r.get(column) or "").strip() or default
        grouped.setdefault(key, []).append(r)
    return grouped


def owner_section(owner: str, rows: List[List[Any]], columns: Sequence[str]) -> str:
    return f"<h4>{html.escape(owner)} ({len(rows)})</h4>{html_table(columns, rows)}"


def trim_html(body: str, limit: int) -> str:
    if len(body) <= limit:
        return body
    note = "<p><i>Summary truncated; see the attached export for all rows.</i></p></body></html>"
    return (body[: max(0, limit - len(note))] + note)[: max(0, limit)]
