"""
Sprint date parsing.

Sprint names on the board carry their dates in free text, e.g.
"Sprint 68 oct 13 - oct 26", "10/13 - 10/26" or "2024-10-13 to 2024-10-26".
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date

logger: logging.Logger = logging.getLogger(__name__)

MONTHS: dict[str, int] = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}  # fmt: skip

_MONTH_NAME_RANGE = re.compile(r"(\w+)\s+(\d+)\s*-\s*(\w+)\s+(\d+)", re.IGNORECASE)
_NUMERIC_RANGE = re.compile(r"(\d+)/(\d+)\s*-\s*(\d+)/(\d+)")
_ISO_RANGE = re.compile(r"(\d{4})-(\d{2})-(\d{2})\s+to\s+(\d{4})-(\d{2})-(\d{2})", re.IGNORECASE)


@dataclass(frozen=True)
class SprintDates:
    start: date
    end: date
    month_fallback: bool = False  # an unknown month name was read as January


def _month(token: str) -> tuple[int, bool]:
    """Return (month number, fell_back)."""
    if token.isdecimal():
        return int(token), False
    month = MONTHS.get(token.lower())
    if month is None:
        logger.warning(f"Unknown month name '{token}' in sprint name, assuming January")
        return 1, True
    return month, False


def _make_range(year: int, start_month: int, start_day: int, end_month: int, end_day: int) -> tuple[date, date] | None:
    try:
        start = date(year, start_month, start_day)
        end = date(year, end_month, end_day)
    except ValueError:
        return None
    if end < start:
        # "dec 22 - jan 4" crosses the year boundary
        try:
            end = date(year + 1, end_month, end_day)
        except ValueError:
            return None
    return start, end


def parse_sprint_dates(text: str | None, year: int | None = None) -> SprintDates | None:
    """Parse a start/end date pair out of a sprint name.

    Grammars are tried in order and the first match wins:
    month-name ranges ("oct 13 - oct 26"), numeric month/day ranges
    ("10/13 - 10/26") and ISO ranges ("2024-10-13 to 2024-10-26").

    Args:
        text: The sprint name.
        year: Year for grammars without one; defaults to the current year.

    Returns:
        The parsed dates, or None when nothing matches or a date is impossible.
    """
    if not text:
        return None
    year = year or date.today().year

    if match := _MONTH_NAME_RANGE.search(text):
        start_token, start_day, end_token, end_day = match.groups()
        start_month, start_fell_back = _month(start_token)
        end_month, end_fell_back = _month(end_token)
        dates = _make_range(year, start_month, int(start_day), end_month, int(end_day))
        if dates is None:
            return None
        return SprintDates(*dates, month_fallback=start_fell_back or end_fell_back)

    if match := _NUMERIC_RANGE.search(text):
        start_month, start_day, end_month, end_day = (int(group) for group in match.groups())
        dates = _make_range(year, start_month, start_day, end_month, end_day)
        return SprintDates(*dates) if dates else None

    if match := _ISO_RANGE.search(text):
        parts = [int(group) for group in match.groups()]
        try:
            return SprintDates(start=date(*parts[:3]), end=date(*parts[3:]))
        except ValueError:
            return None

    return None
