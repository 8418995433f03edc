import re
from datetime import date, datetime, timedelta
from typing import Union

from conduz.utils.errors import DataIntegrityError

WEEK_PATTERN = re.compile(r"^(\d{4})-W(\d{2})$")


class WeekIdentifier:
    """
    Semana ISO-8601 (YYYY-Www) con su rango lunes-domingo.

    El año ISO no coincide siempre con el año calendario: el 2024-12-30 es
    2025-W01 y el 2021-01-03 es 2020-W53 (regla del jueves).
    """

    __slots__ = ("year", "week")

    def __init__(self, year: int, week: int):
        try:
            date.fromisocalendar(year, week, 1)
        except ValueError:
            raise DataIntegrityError(f"Semana ISO inválida: {year}-W{week:02d}")
        self.year = year
        self.week = week

    @classmethod
    def parse(cls, value: Union[str, "WeekIdentifier"]) -> "WeekIdentifier":
        if isinstance(value, WeekIdentifier):
            return value
        match = WEEK_PATTERN.match(str(value).strip()) if value is not None else None
        if not match:
            raise DataIntegrityError(f"Identificador de semana mal formado: {value!r}")
        return cls(int(match.group(1)), int(match.group(2)))

    @classmethod
    def from_date(cls, value: Union[date, datetime]) -> "WeekIdentifier":
        if isinstance(value, datetime):
            value = value.date()
        iso_year, iso_week, _ = value.isocalendar()
        return cls(iso_year, iso_week)

    @property
    def start(self) -> date:
        return date.fromisocalendar(self.year, self.week, 1)

    @property
    def end(self) -> date:
        return date.fromisocalendar(self.year, self.week, 7)

    def contains(self, value: Union[date, datetime]) -> bool:
        if isinstance(value, datetime):
            value = value.date()
        return self.start <= value <= self.end

    def next(self) -> "WeekIdentifier":
        return WeekIdentifier.from_date(self.start + timedelta(days=7))

    def previous(self) -> "WeekIdentifier":
        return WeekIdentifier.from_date(self.start - timedelta(days=7))

    def __str__(self) -> str:
        return f"{self.year}-W{self.week:02d}"

    def __repr__(self) -> str:
        return f"WeekIdentifier({str(self)!r})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, WeekIdentifier):
            return NotImplemented
        return (self.year, self.week) == (other.year, other.week)

    def __lt__(self, other: "WeekIdentifier") -> bool:
        return (self.year, self.week) < (other.year, other.week)

    def __hash__(self) -> int:
        return hash((self.year, self.week))
