"""Natural-language date ranges.

``resolve_date_range`` turns expressions such as ``"last month"``,
``"2024-01-01 to 2024-01-31"``, ``"FY2024"`` or ``"summer 2023"`` into a
``DateRange`` whose bounds are the start of the first day and the end of the
last day in the requested timezone. Resolvers are tried in a fixed priority
order and the first match wins; nothing matching raises ``DateParseFailure``.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from functools import lru_cache
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from config import get_settings


logger = logging.getLogger(__name__)

END_OF_DAY = time(23, 59, 59, 999000)

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%d/%m/%Y", "%Y/%m/%d")

MONTHS = {
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
}
MONTH_ABBREVIATIONS = {name[:3]: number for name, number in MONTHS.items()}
MONTH_ABBREVIATIONS["sept"] = 9

# (start month, start day, end month, end day); winter starts in the prior year.
SEASONS = {
    "spring": (3, 20, 6, 20),
    "summer": (6, 21, 9, 22),
    "fall": (9, 23, 12, 20),
    "autumn": (9, 23, 12, 20),
    "winter": (12, 21, 3, 19),
}

RANGE_SEPARATORS = (",", " to ", " through ", " - ", " – ", " — ", "–", "—")

DAYS_AGO_RE = re.compile(r"^(\d+)\s+days?\s+ago$")
TRAILING_DAYS_RE = re.compile(r"^(?:last|past)\s+(\d+)\s+days?$")
MONTH_YEAR_RE = re.compile(r"^([a-z]+)\.?\s+(\d{4})$")
YEAR_RE = re.compile(r"^(\d{4})$")
FISCAL_YEAR_RE = re.compile(r"^fy\s*-?\s*(\d{4})$")
SEASON_RE = re.compile(r"^(spring|summer|fall|autumn|winter)\s+(\d{4})$")
YEAR_MONTH_RE = re.compile(r"^(\d{4})-(\d{1,2})$")


class DateParseFailure(ValueError):
    def __init__(self, expression: str, reason: str = "unrecognized date expression"):
        super().__init__(f"Could not parse date range '{expression}': {reason}")
        self.expression = expression
        self.reason = reason


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    @property
    def start_date(self) -> date:
        return self.start.date()

    @property
    def end_date(self) -> date:
        return self.end.date()

    def naive(self, tz_name: Optional[str] = None) -> tuple[datetime, datetime]:
        """Bounds as naive datetimes in ``tz_name`` (default: the range's own zone)."""
        if tz_name:
            zone = ZoneInfo(tz_name)
            start, end = self.start.astimezone(zone), self.end.astimezone(zone)
            return start.replace(tzinfo=None), end.replace(tzinfo=None)
        return self.start.replace(tzinfo=None), self.end.replace(tzinfo=None)


@lru_cache(maxsize=4096)
def start_of_day(day: date, tz_name: str) -> datetime:
    return datetime.combine(day, time.min, tzinfo=ZoneInfo(tz_name))


@lru_cache(maxsize=4096)
def end_of_day(day: date, tz_name: str) -> datetime:
    return datetime.combine(day, END_OF_DAY, tzinfo=ZoneInfo(tz_name))


def local_today(tz_name: Optional[str] = None) -> date:
    tz_name = tz_name or get_settings().timezone
    return datetime.now(ZoneInfo(tz_name)).date()


def month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def add_months(day: date, months: int) -> date:
    total = day.month - 1 + months
    year = day.year + total // 12
    month = total % 12 + 1
    return date(year, month, min(day.day, month_end(year, month).day))


def _week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def _quarter_bounds(year: int, quarter: int) -> tuple[date, date]:
    first_month = quarter * 3 + 1
    return date(year, first_month, 1), month_end(year, first_month + 2)


Bounds = tuple[date, date]


def _yesterday(today: date) -> Bounds:
    day = today - timedelta(days=1)
    return day, day


def _this_week(today: date) -> Bounds:
    start = _week_start(today)
    return start, start + timedelta(days=6)


def _last_week(today: date) -> Bounds:
    start = _week_start(today - timedelta(days=7))
    return start, start + timedelta(days=6)


def _this_month(today: date) -> Bounds:
    return today.replace(day=1), month_end(today.year, today.month)


def _last_month(today: date) -> Bounds:
    last = today.replace(day=1) - date.resolution
    return last.replace(day=1), last


def _this_year(today: date) -> Bounds:
    return date(today.year, 1, 1), date(today.year, 12, 31)


def _last_year(today: date) -> Bounds:
    return date(today.year - 1, 1, 1), date(today.year - 1, 12, 31)


def _this_quarter(today: date) -> Bounds:
    return _quarter_bounds(today.year, (today.month - 1) // 3)


def _last_quarter(today: date) -> Bounds:
    quarter = (today.month - 1) // 3 - 1
    year = today.year
    if quarter < 0:
        quarter = 3
        year -= 1
    return _quarter_bounds(year, quarter)


KEYWORDS: dict[str, Callable[[date], Bounds]] = {
    "today": lambda today: (today, today),
    "yesterday": _yesterday,
    "last 7 days": lambda today: (today - timedelta(days=6), today),
    "past 7 days": lambda today: (today - timedelta(days=6), today),
    "last 30 days": lambda today: (today - timedelta(days=29), today),
    "past 30 days": lambda today: (today - timedelta(days=29), today),
    "this week": _this_week,
    "current week": _this_week,
    "last week": _last_week,
    "previous week": _last_week,
    "this month": _this_month,
    "current month": _this_month,
    "last month": _last_month,
    "previous month": _last_month,
    "this year": _this_year,
    "current year": _this_year,
    "last year": _last_year,
    "previous year": _last_year,
}

QUARTER_KEYWORDS: dict[str, Callable[[date], Bounds]] = {
    "this quarter": _this_quarter,
    "current quarter": _this_quarter,
    "last quarter": _last_quarter,
    "previous quarter": _last_quarter,
}


def parse_explicit(text: str) -> Optional[Bounds]:
    """Parse one explicit date (or ``yyyy-MM`` month) into its day bounds."""
    text = text.strip()
    for fmt in DATE_FORMATS:
        try:
            day = datetime.strptime(text, fmt).date()
        except ValueError:
            continue
        return day, day
    match = YEAR_MONTH_RE.match(text)
    if match:
        year, month = int(match.group(1)), int(match.group(2))
        if 1 <= month <= 12:
            return date(year, month, 1), month_end(year, month)
    return None


def _join(left: Bounds, right: Bounds) -> Bounds:
    # Reversed inputs resolve to the same range.
    return min(left[0], right[0]), max(left[1], right[1])


def _keyword(text: str, today: date) -> Optional[Bounds]:
    handler = KEYWORDS.get(text)
    return handler(today) if handler else None


def _explicit_range(text: str, today: date) -> Optional[Bounds]:
    for separator in RANGE_SEPARATORS:
        if separator not in text:
            continue
        left, _, right = text.partition(separator)
        left_bounds, right_bounds = parse_explicit(left), parse_explicit(right)
        if left_bounds and right_bounds:
            return _join(left_bounds, right_bounds)
    # A bare hyphen also appears inside ISO dates, so try every split point.
    for index, char in enumerate(text):
        if char != "-":
            continue
        left_bounds = parse_explicit(text[:index])
        right_bounds = parse_explicit(text[index + 1 :])
        if left_bounds and right_bounds:
            return _join(left_bounds, right_bounds)
    return None


def _single_date(text: str, today: date) -> Optional[Bounds]:
    return parse_explicit(text)


def _quarter(text: str, today: date) -> Optional[Bounds]:
    handler = QUARTER_KEYWORDS.get(text)
    return handler(today) if handler else None


def _relative_days(text: str, today: date) -> Optional[Bounds]:
    match = DAYS_AGO_RE.match(text)
    if match:
        day = today - timedelta(days=int(match.group(1)))
        return day, day
    match = TRAILING_DAYS_RE.match(text)
    if match:
        count = int(match.group(1))
        if count < 1:
            return None
        return today - timedelta(days=count - 1), today
    return None


def _month_year(text: str, today: date) -> Optional[Bounds]:
    match = MONTH_YEAR_RE.match(text)
    if not match:
        return None
    name, year = match.group(1), int(match.group(2))
    month = MONTHS.get(name) or MONTH_ABBREVIATIONS.get(name)
    if not month:
        return None
    return date(year, month, 1), month_end(year, month)


def _year(text: str, today: date) -> Optional[Bounds]:
    match = YEAR_RE.match(text)
    if not match:
        return None
    year = int(match.group(1))
    return date(year, 1, 1), date(year, 12, 31)


def _fiscal_year(text: str, today: date) -> Optional[Bounds]:
    match = FISCAL_YEAR_RE.match(text)
    if not match:
        return None
    year = int(match.group(1))
    return date(year - 1, 4, 1), date(year, 3, 31)


def _season(text: str, today: date) -> Optional[Bounds]:
    match = SEASON_RE.match(text)
    if not match:
        return None
    start_month, start_day, end_month, end_day = SEASONS[match.group(1)]
    year = int(match.group(2))
    start_year = year - 1 if start_month > end_month else year
    return date(start_year, start_month, start_day), date(year, end_month, end_day)


RESOLVERS: list[tuple[str, Callable[[str, date], Optional[Bounds]]]] = [
    ("keyword", _keyword),
    ("explicit_range", _explicit_range),
    ("single_date", _single_date),
    ("quarter", _quarter),
    ("relative_days", _relative_days),
    ("month_year", _month_year),
    ("year", _year),
    ("fiscal_year", _fiscal_year),
    ("season", _season),
]


def to_range(start: date, end: date, tz_name: str) -> DateRange:
    if start > end:
        start, end = end, start
    return DateRange(start_of_day(start, tz_name), end_of_day(end, tz_name))


def resolve_date_range(
    expression: Optional[str],
    timezone: Optional[str] = None,
    *,
    today: Optional[date] = None,
) -> DateRange:
    tz_name = timezone or get_settings().timezone
    text = " ".join((expression or "").split()).lower()
    if not text:
        raise DateParseFailure(expression or "", "empty expression")
    try:
        ZoneInfo(tz_name)
    except (KeyError, ValueError) as exc:
        raise DateParseFailure(expression or "", f"unknown timezone {tz_name}") from exc

    today = today or local_today(tz_name)
    for name, resolver in RESOLVERS:
        try:
            bounds = resolver(text, today)
        except (ValueError, OverflowError) as exc:
            # Matched the shape but not the calendar, e.g. "fy0000" or a huge N.
            raise DateParseFailure(expression or "", str(exc)) from exc
        if bounds:
            logger.debug(f"date_range: expression={text!r} matched={name}")
            return to_range(bounds[0], bounds[1], tz_name)
    raise DateParseFailure(expression or "")


def _whole_months(start: date, end: date) -> int:
    """Number of calendar months spanned, or 0 when not month-aligned."""
    if start.day != 1 or end != month_end(end.year, end.month):
        return 0
    return (end.year - start.year) * 12 + end.month - start.month + 1


def previous_interval(current: DateRange) -> DateRange:
    """The interval immediately preceding ``current``, for period-over-period views.

    Month-aligned spans (a month, a quarter, a year) step back by the same
    number of calendar months; any other span steps back by its own length
    in days, so the two windows never overlap or leave a gap.
    """
    tz_name = getattr(current.start.tzinfo, "key", None) or get_settings().timezone
    start, end = current.start_date, current.end_date
    prev_end = start - timedelta(days=1)
    months = _whole_months(start, end)
    if months:
        prev_start = add_months(start, -months)
    else:
        prev_start = prev_end - (end - start)
    return to_range(prev_start, prev_end, tz_name)
