"""Chinese lunar calendar conversion helpers (via ``lunardate``)."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import date

from lunardate import LunarDate

logger = logging.getLogger(__name__)

# lunardate ships tables for these lunar years.
MIN_LUNAR_YEAR = 1900
MAX_LUNAR_YEAR = 2099


def lunar_to_solar(year: int, month: int, day: int, *, leap: bool = False) -> date | None:
    """Gregorian date for a lunar date, or ``None`` if it does not exist.

    Day 30 of a 29-day month, a leap month the year does not have, or a
    year outside the supported table all yield ``None``.
    """
    if not MIN_LUNAR_YEAR <= year <= MAX_LUNAR_YEAR:
        return None
    try:
        return LunarDate(year, month, day, leap).to_solar_date()
    except (ValueError, IndexError):
        return None


def solar_to_lunar(day: date) -> tuple[int, int, int, bool]:
    lunar = LunarDate.from_solar_date(day.year, day.month, day.day)
    return lunar.year, lunar.month, lunar.day, bool(lunar.is_leap_month)


def occurrences(month: int, day: int, first_year: int, *, leap: bool = False) -> Iterator[date]:
    """Yield the Gregorian dates of ``month/day`` for successive lunar years."""
    for year in range(max(first_year, MIN_LUNAR_YEAR), MAX_LUNAR_YEAR + 1):
        solar = lunar_to_solar(year, month, day, leap=leap)
        if solar is not None:
            yield solar
