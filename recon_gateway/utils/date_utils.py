"""Date manipulation utilities"""

import re
from datetime import date, datetime, timedelta
from typing import Tuple

_DMY_SLASH = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_DMY_COMPACT = re.compile(r"^(\d{2})(\d{2})(\d{4})$")


def parse_date(value) -> date:
    """
    Parse a source date.

    Accepts date/datetime objects, ISO-8601 strings (date or datetime, with
    optional trailing Z), DD/MM/YYYY and compact DDMMYYYY.

    Raises:
        ValueError: On any other shape or an impossible calendar date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValueError(f"unsupported date value: {value!r}")

    text = value.strip()
    match = _DMY_SLASH.match(text)
    if match:
        day, month, year = (int(g) for g in match.groups())
        return date(year, month, day)

    match = _DMY_COMPACT.match(text)
    if match:
        day, month, year = (int(g) for g in match.groups())
        return date(year, month, day)

    if len(text) == 10:
        return date.fromisoformat(text)
    # datetime.fromisoformat only accepts "Z" from Python 3.11
    return datetime.fromisoformat(text.replace("Z", "+00:00")).date()


def days_between(a: date, b: date) -> int:
    return abs((a - b).days)


def date_window(center: date, days: int) -> Tuple[date, date]:
    """Inclusive window of +/- days around a date"""
    return center - timedelta(days=days), center + timedelta(days=days)
