"""
Calendar period resolution for statistics and budget usage.

Turns a symbolic period selector (week, month, year, custom, all) plus optional
numbers into a concrete date range and a display label. Malformed or missing
input never raises: the resolver falls back to the current period and marks
the result as defaulted.
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Optional, Tuple

from utils import parse_int

logger = logging.getLogger(__name__)

PERIOD_WEEK = "week"
PERIOD_MONTH = "month"
PERIOD_YEAR = "year"
PERIOD_CUSTOM = "custom"
PERIOD_ALL = "all"
PERIOD_TYPES = (PERIOD_WEEK, PERIOD_MONTH, PERIOD_YEAR, PERIOD_CUSTOM, PERIOD_ALL)

MIN_YEAR = 2020
MAX_YEARS_AHEAD = 5
LEDGER_EPOCH = date(MIN_YEAR, 1, 1)

DATE_FORMAT = "%Y-%m-%d"
END_OF_DAY = time(23, 59, 59)


@dataclass(frozen=True)
class PeriodSelection:
    """
    A resolved reporting period.

    Attributes:
        start_date: First day, YYYY-MM-DD
        end_date: Last day, YYYY-MM-DD
        label: Human readable label
        defaulted: True when the requested selector could not be honored
            and the current period was substituted
        period_type: The period shape that was actually produced
    """
    start_date: str
    end_date: str
    label: str
    defaulted: bool = False
    period_type: str = PERIOD_MONTH

    def to_dict(self) -> dict:
        return {
            "start_date": self.start_date,
            "end_date": self.end_date,
            "label": self.label,
            "defaulted": self.defaulted,
            "period_type": self.period_type,
        }


def _month_day(d: date) -> str:
    return f"{d.month}월 {d.day}일"


def _full_date(d: date) -> str:
    return f"{d.year}년 {d.month}월 {d.day}일"


def _last_day(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def _months_before(d: date, months: int) -> date:
    """Shift a date back by whole calendar months, clamping the day."""
    total = d.year * 12 + (d.month - 1) - months
    year, month = divmod(total, 12)
    month += 1
    return date(year, month, min(d.day, _last_day(year, month)))


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), DATE_FORMAT).date()
    except ValueError:
        return None


def month_window(reference: datetime) -> Tuple[datetime, datetime]:
    """
    Return the first and last instants of the reference date's month.

    The end bound is 23:59:59 on the last day, inclusive.
    """
    start = datetime(reference.year, reference.month, 1)
    last = _last_day(reference.year, reference.month)
    end = datetime.combine(date(reference.year, reference.month, last), END_OF_DAY)
    return start, end


def year_window(reference: datetime) -> Tuple[datetime, datetime]:
    """Return Jan 1 00:00:00 through Dec 31 23:59:59 of the reference year."""
    start = datetime(reference.year, 1, 1)
    end = datetime.combine(date(reference.year, 12, 31), END_OF_DAY)
    return start, end


def _selection(start: date, end: date, label: str, period_type: str, defaulted: bool = False) -> PeriodSelection:
    return PeriodSelection(
        start_date=start.strftime(DATE_FORMAT),
        end_date=end.strftime(DATE_FORMAT),
        label=label,
        defaulted=defaulted,
        period_type=period_type,
    )


def current_week(today: date, defaulted: bool = False) -> PeriodSelection:
    """Monday on or before today through the following Sunday."""
    start = today - timedelta(days=today.weekday())
    end = start + timedelta(days=6)
    label = f"{_full_date(start)} ~ {_month_day(end)}"
    return _selection(start, end, label, PERIOD_WEEK, defaulted)


def current_month(today: date, defaulted: bool = False) -> PeriodSelection:
    start = date(today.year, today.month, 1)
    end = date(today.year, today.month, _last_day(today.year, today.month))
    return _selection(start, end, f"{today.year}년 {today.month}월", PERIOD_MONTH, defaulted)


def current_year(today: date, defaulted: bool = False) -> PeriodSelection:
    start = date(today.year, 1, 1)
    end = date(today.year, 12, 31)
    return _selection(start, end, f"{today.year}년", PERIOD_YEAR, defaulted)


def _resolve_week(year: Optional[int], week: Optional[int], today: date) -> PeriodSelection:
    if year is None or week is None or not (1 <= week <= 53) or not (1 <= year <= 9999):
        return current_week(today, defaulted=True)

    jan_first = date(year, 1, 1)
    weekday = jan_first.isoweekday()
    days_to_monday = 0 if weekday == 1 else 8 - weekday
    try:
        start = jan_first + timedelta(days=days_to_monday + (week - 1) * 7)
        end = start + timedelta(days=6)
    except OverflowError:
        return current_week(today, defaulted=True)
    label = f"{year}년 {week}주차 ({_month_day(start)} ~ {_month_day(end)})"
    return _selection(start, end, label, PERIOD_WEEK)


def _resolve_month(year: Optional[int], month: Optional[int], today: date) -> PeriodSelection:
    if year is None or month is None or not (1 <= month <= 12) or not (1 <= year <= 9999):
        return current_month(today, defaulted=True)

    start = date(year, month, 1)
    end = date(year, month, _last_day(year, month))
    return _selection(start, end, f"{year}년 {month}월", PERIOD_MONTH)


def _resolve_year(year: Optional[int], today: date) -> PeriodSelection:
    if year is None or not (MIN_YEAR <= year <= today.year + MAX_YEARS_AHEAD):
        return current_year(today, defaulted=True)
    return _selection(date(year, 1, 1), date(year, 12, 31), f"{year}년", PERIOD_YEAR)


def _resolve_custom(start_text: Optional[str], end_text: Optional[str], today: date) -> PeriodSelection:
    if start_text and end_text:
        start = _parse_date(start_text)
        end = _parse_date(end_text)
        defaulted = start is None or end is None
        if start is None:
            start = _months_before(today, 1)
        if end is None:
            end = today
        label = f"{_full_date(start)} ~ {_month_day(end)}"
        return _selection(start, end, label, PERIOD_CUSTOM, defaulted)

    return _selection(_months_before(today, 1), today, "지난 한 달", PERIOD_CUSTOM, defaulted=True)


def resolve_period(
    period_type: Optional[str],
    year: Any = None,
    month: Any = None,
    week: Any = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PeriodSelection:
    """
    Resolve a symbolic period into a concrete date range.

    Args:
        period_type: One of week, month, year, custom, all. Anything else
            resolves to the current month.
        year: Year number (int or numeric string)
        month: Month number 1-12 (int or numeric string)
        week: Week number 1-53 (int or numeric string)
        start_date: Custom range start, YYYY-MM-DD
        end_date: Custom range end, YYYY-MM-DD
        now: Reference "now"; defaults to the host clock

    Returns:
        PeriodSelection; never raises for bad input
    """
    today = (now or datetime.now()).date()
    kind = (period_type or "").strip().lower()
    year_num = parse_int(year)

    if kind == PERIOD_WEEK:
        selection = _resolve_week(year_num, parse_int(week), today)
    elif kind == PERIOD_MONTH:
        selection = _resolve_month(year_num, parse_int(month), today)
    elif kind == PERIOD_YEAR:
        selection = _resolve_year(year_num, today)
    elif kind == PERIOD_CUSTOM:
        selection = _resolve_custom(start_date, end_date, today)
    elif kind == PERIOD_ALL:
        selection = _selection(LEDGER_EPOCH, today, "전체 기간", PERIOD_ALL)
    else:
        selection = current_month(today, defaulted=True)

    if selection.defaulted:
        logger.debug(
            "Period selector fell back: type=%r year=%r month=%r week=%r start=%r end=%r -> %s",
            period_type, year, month, week, start_date, end_date, selection.label
        )
    return selection
