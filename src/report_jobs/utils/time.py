from datetime import date, datetime, timezone
from typing import Any, Optional


def utc_now_iso() -> str:
    """Get current UTC time in ISO format."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def parse_date(value: Any) -> Optional[date]:
    """Parse a report cell into a date. Blank or unparseable values give None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None
    for fmt in ("%Y-%m-%d", "%Y/%m/%d", "%m/%d/%Y", "%m/%d/%y"):
        try:
            return datetime.strptime(text[:10] if fmt == "%Y-%m-%d" else text, fmt).date()
        except ValueError:
            continue
    return None


def iso_date(value: Optional[date]) -> str:
    return value.isoformat() if value else ""


def format_duration(seconds: float) -> str:
    """Format a duration as '<m>m <s>s'."""
    total = max(0, int(seconds))
    return f"{total // 60}m {total % 60}s"
