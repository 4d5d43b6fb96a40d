"""Parsing and evaluation of seven-field cron expressions in UTC."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterator, Mapping, Optional

from .core import CronParseError

_MONTHS = {
    name: number
    for number, names in enumerate(
        [
            ("jan", "january"),
            ("feb", "february"),
            ("mar", "march"),
            ("apr", "april"),
            ("may",),
            ("jun", "june"),
            ("jul", "july"),
            ("aug", "august"),
            ("sep", "september"),
            ("oct", "october"),
            ("nov", "november"),
            ("dec", "december"),
        ],
        start=1,
    )
    for name in names
}

# Day of week numbering: 1 is Sunday, 7 is Saturday.
_DAYS = {
    name: number
    for number, names in enumerate(
        [
            ("sun", "sunday"),
            ("mon", "monday"),
            ("tue", "tues", "tuesday"),
            ("wed", "wednesday"),
            ("thu", "thurs", "thursday"),
            ("fri", "friday"),
            ("sat", "saturday"),
        ],
        start=1,
    )
    for name in names
}

_MIN_YEAR = 1970
_MAX_YEAR = 2100


@dataclass(frozen=True)
class _FieldSpec:
    name: str
    low: int
    high: int
    names: Mapping[str, int]


_FIELD_SPECS = (
    _FieldSpec("seconds", 0, 59, {}),
    _FieldSpec("minutes", 0, 59, {}),
    _FieldSpec("hours", 0, 23, {}),
    _FieldSpec("days of month", 1, 31, {}),
    _FieldSpec("months", 1, 12, _MONTHS),
    _FieldSpec("days of week", 1, 7, _DAYS),
    _FieldSpec("years", _MIN_YEAR, _MAX_YEAR, {}),
)

_SHORTHANDS = {
    "@yearly": "0 0 0 1 1 * *",
    "@annually": "0 0 0 1 1 * *",
    "@monthly": "0 0 0 1 * * *",
    "@weekly": "0 0 0 * * 1 *",
    "@daily": "0 0 0 * * * *",
    "@hourly": "0 0 * * * * *",
}


def _parse_value(text: str, spec: _FieldSpec) -> int:
    lowered = text.strip().lower()
    if lowered in spec.names:
        return spec.names[lowered]
    try:
        value = int(lowered)
    except ValueError:
        raise CronParseError(f"invalid value {text!r} for {spec.name}") from None
    if not spec.low <= value <= spec.high:
        raise CronParseError(
            f"value {value} for {spec.name} is outside {spec.low}-{spec.high}"
        )
    return value


def _parse_field(text: str, spec: _FieldSpec) -> frozenset[int]:
    values: set[int] = set()
    for part in text.split(","):
        if not part:
            raise CronParseError(f"empty item in {spec.name} field {text!r}")
        base, has_step, step_text = part.partition("/")
        step = 1
        if has_step:
            if not step_text.isdigit() or int(step_text) == 0:
                raise CronParseError(f"invalid step {step_text!r} for {spec.name}")
            step = int(step_text)
        if base in ("*", "?"):
            low, high = spec.low, spec.high
        elif "-" in base:
            start_text, _, end_text = base.partition("-")
            low, high = _parse_value(start_text, spec), _parse_value(end_text, spec)
            if low > high:
                raise CronParseError(f"range {base!r} for {spec.name} is reversed")
        else:
            low = _parse_value(base, spec)
            high = spec.high if has_step else low
        values.update(range(low, high + 1, step))
    return frozenset(values)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _cron_weekday(moment: datetime) -> int:
    return moment.isoweekday() % 7 + 1


@dataclass(frozen=True)
class CronSchedule:
    """A parsed cron schedule: the sets of matching values per field."""

    expression: str
    seconds: frozenset[int]
    minutes: frozenset[int]
    hours: frozenset[int]
    days_of_month: frozenset[int]
    months: frozenset[int]
    days_of_week: frozenset[int]
    years: frozenset[int]

    def next_after(self, moment: datetime) -> Optional[datetime]:
        """Return the first matching UTC moment strictly after ``moment``, or None."""
        current = _as_utc(moment).replace(microsecond=0) + timedelta(seconds=1)
        while current.year <= _MAX_YEAR:
            if current.year not in self.years:
                later = min((y for y in self.years if y > current.year), default=None)
                if later is None:
                    return None
                current = datetime(later, 1, 1, tzinfo=timezone.utc)
            elif current.month not in self.months:
                if current.month == 12:
                    current = datetime(current.year + 1, 1, 1, tzinfo=timezone.utc)
                else:
                    current = datetime(
                        current.year, current.month + 1, 1, tzinfo=timezone.utc
                    )
            elif (
                current.day not in self.days_of_month
                or _cron_weekday(current) not in self.days_of_week
            ):
                current = datetime(
                    current.year, current.month, current.day, tzinfo=timezone.utc
                ) + timedelta(days=1)
            elif current.hour not in self.hours:
                current = current.replace(minute=0, second=0) + timedelta(hours=1)
            elif current.minute not in self.minutes:
                current = current.replace(second=0) + timedelta(minutes=1)
            elif current.second not in self.seconds:
                current += timedelta(seconds=1)
            else:
                return current
        return None

    def upcoming(self, start: datetime) -> Iterator[datetime]:
        """Yield matching moments after ``start`` in increasing order."""
        current = self.next_after(start)
        while current is not None:
            yield current
            current = self.next_after(current)


def parse_schedule(expression: str) -> CronSchedule:
    """Parse a six- or seven-field cron expression (seconds first, optional year)."""
    text = expression.strip()
    text = _SHORTHANDS.get(text.lower(), text)
    fields = text.split()
    if len(fields) == 6:
        fields.append("*")
    if len(fields) != 7:
        raise CronParseError(
            f"expected 6 or 7 fields in cron expression, got {len(fields)}: {expression!r}"
        )
    parsed = [_parse_field(part, spec) for part, spec in zip(fields, _FIELD_SPECS)]
    return CronSchedule(expression, *parsed)