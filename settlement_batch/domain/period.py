"""
Settlement periods -- pure period-code parsing and boundaries.

Period codes:
    ``2024-01``     monthly
    ``2024-W03``    ISO week
    ``2024-01-15``  single day

Contract:
    Boundaries are the half-open UTC interval ``[start, end)``.  Nothing here
    reads the clock; ``closed_period_before`` takes ``now`` from the caller.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from settlement_config.schema import PayoutFrequency
from settlement_kernel.exceptions import InvalidPeriodError

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")
_WEEK_RE = re.compile(r"^(\d{4})-W(\d{2})$")
_DAY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


def _utc(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


@dataclass(frozen=True)
class SettlementPeriod:
    """A revenue-aggregation window."""

    code: str
    frequency: PayoutFrequency
    start: datetime
    end: datetime

    @classmethod
    def parse(cls, code: str) -> SettlementPeriod:
        """
        Parse a period code.

        Raises:
            InvalidPeriodError: If the code matches no known format or names
                a date that does not exist.
        """
        code = (code or "").strip()

        m = _MONTH_RE.match(code)
        if m:
            year, month = int(m.group(1)), int(m.group(2))
            if not 1 <= month <= 12:
                raise InvalidPeriodError(code, "month must be 01-12")
            return cls.monthly(year, month)

        m = _WEEK_RE.match(code)
        if m:
            year, week = int(m.group(1)), int(m.group(2))
            try:
                monday = date.fromisocalendar(year, week, 1)
            except ValueError as exc:
                raise InvalidPeriodError(code, str(exc)) from None
            return cls.weekly(monday)

        m = _DAY_RE.match(code)
        if m:
            try:
                day = date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
            except ValueError as exc:
                raise InvalidPeriodError(code, str(exc)) from None
            return cls.daily(day)

        raise InvalidPeriodError(code, "expected YYYY-MM, YYYY-Www or YYYY-MM-DD")

    @classmethod
    def monthly(cls, year: int, month: int) -> SettlementPeriod:
        start = date(year, month, 1)
        end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
        return cls(
            code=f"{year:04d}-{month:02d}",
            frequency=PayoutFrequency.MONTHLY,
            start=_utc(start),
            end=_utc(end),
        )

    @classmethod
    def weekly(cls, any_day: date) -> SettlementPeriod:
        iso_year, iso_week, weekday = any_day.isocalendar()
        monday = any_day - timedelta(days=weekday - 1)
        return cls(
            code=f"{iso_year:04d}-W{iso_week:02d}",
            frequency=PayoutFrequency.WEEKLY,
            start=_utc(monday),
            end=_utc(monday + timedelta(days=7)),
        )

    @classmethod
    def daily(cls, day: date) -> SettlementPeriod:
        return cls(
            code=day.isoformat(),
            frequency=PayoutFrequency.DAILY,
            start=_utc(day),
            end=_utc(day + timedelta(days=1)),
        )

    def contains(self, moment: datetime) -> bool:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return self.start <= moment < self.end

    def is_closed(self, now: datetime) -> bool:
        return now >= self.end

    def previous(self) -> SettlementPeriod:
        return period_containing(self.start - timedelta(microseconds=1), self.frequency)

    def __str__(self) -> str:
        return self.code


def period_containing(moment: datetime, frequency: PayoutFrequency) -> SettlementPeriod:
    """
    Period of ``frequency`` that contains ``moment``.

    Raises:
        ValueError: For ``PayoutFrequency.MANUAL``, which has no calendar.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    day = moment.astimezone(timezone.utc).date()
    if frequency == PayoutFrequency.MONTHLY:
        return SettlementPeriod.monthly(day.year, day.month)
    if frequency == PayoutFrequency.WEEKLY:
        return SettlementPeriod.weekly(day)
    if frequency == PayoutFrequency.DAILY:
        return SettlementPeriod.daily(day)
    raise ValueError(f"No period calendar for payout frequency {frequency.value!r}")


def closed_period_before(now: datetime, frequency: PayoutFrequency) -> SettlementPeriod | None:
    """Most recently closed period at ``now``; None for manual payouts."""
    if frequency == PayoutFrequency.MANUAL:
        return None
    return period_containing(now, frequency).previous()


def coerce_period(period: SettlementPeriod | str) -> SettlementPeriod:
    if isinstance(period, SettlementPeriod):
        return period
    return SettlementPeriod.parse(period)
