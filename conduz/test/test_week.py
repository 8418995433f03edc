from datetime import date, datetime

import pytest

from conduz.utils.errors import DataIntegrityError
from conduz.utils.week import WeekIdentifier


def test_parse_and_range():
    week = WeekIdentifier.parse("2024-W05")
    assert week.start == date(2024, 1, 29)
    assert week.end == date(2024, 2, 4)
    assert str(week) == "2024-W05"


def test_iso_year_differs_from_calendar_year():
    assert str(WeekIdentifier.from_date(date(2024, 12, 30))) == "2025-W01"
    assert str(WeekIdentifier.from_date(date(2021, 1, 3))) == "2020-W53"


def test_contains_accepts_datetimes():
    week = WeekIdentifier.parse("2024-W05")
    assert week.contains(datetime(2024, 2, 4, 23, 59))
    assert not week.contains(datetime(2024, 2, 5, 0, 0))


def test_next_and_previous_cross_year():
    week = WeekIdentifier.parse("2020-W53")
    assert str(week.next()) == "2021-W01"
    assert str(week.next().previous()) == "2020-W53"
    assert WeekIdentifier.parse("2024-W05") < WeekIdentifier.parse("2024-W06")


@pytest.mark.parametrize("value", ["2024-5", "2024W05", "24-W05", "", None, "2023-W53"])
def test_invalid_week_raises(value):
    with pytest.raises(DataIntegrityError):
        WeekIdentifier.parse(value)
