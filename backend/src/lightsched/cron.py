"""Five-field cron expression validation and next-fire evaluation.

Matching is delegated to croniter, run over naive local wall times in the
schedule's IANA timezone; each candidate is then pinned to an absolute UTC
instant.  Day-of-month and day-of-week must both match when both are
restricted.  Daylight saving transitions follow a fixed policy:

* spring forward: local times inside the gap do not occur and are skipped;
* fall back: an ambiguous local time fires once, at its first occurrence.

Nothing in this module reads the current time; callers pass the reference
instant explicitly.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterBadDateError, CroniterError, croniter  # type: ignore[import-untyped]

from .errors import InvalidExpressionError, InvalidTimezoneError

MONTH_NAMES = {
    name: index
    for index, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}
DAY_NAMES = {
    name: index
    for index, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])
}

# Longest day count per month, February included as a leap month.
MONTH_LENGTHS = {1: 31, 2: 29, 3: 31, 4: 30, 5: 31, 6: 30, 7: 31, 8: 31, 9: 30, 10: 31, 11: 30, 12: 31}

# Upper bound on the search for a matching day.
SEARCH_HORIZON_YEARS = 5


@dataclass(frozen=True)
class _FieldSpec:
    name: str
    minimum: int
    maximum: int
    aliases: dict[str, int] | None = None


_FIELDS = (
    _FieldSpec("minute", 0, 59),
    _FieldSpec("hour", 0, 23),
    _FieldSpec("day_of_month", 1, 31),
    _FieldSpec("month", 1, 12, MONTH_NAMES),
    # 7 is accepted as an alias for Sunday.
    _FieldSpec("day_of_week", 0, 7, DAY_NAMES),
)


@dataclass(frozen=True)
class CronSchedule:
    """A validated cron expression."""

    expression: str
    day_of_month_restricted: bool
    day_of_week_restricted: bool

    def iterate_from(self, local_base: datetime) -> croniter:
        """Return a croniter walking naive local wall times after ``local_base``."""
        return croniter(
            self.expression,
            local_base,
            day_or=False,
            max_years_between_matches=SEARCH_HORIZON_YEARS,
        )


def _field_value(token: str, spec: _FieldSpec, expression: str) -> int:
    lowered = token.lower()
    if spec.aliases and lowered in spec.aliases:
        return spec.aliases[lowered]
    if not (token.isascii() and token.isdigit()):
        raise InvalidExpressionError(
            expression, f"{token!r} is not a number", field=spec.name
        )
    value = int(token)
    if value < spec.minimum or value > spec.maximum:
        raise InvalidExpressionError(
            expression,
            f"{value} is outside {spec.minimum}-{spec.maximum}",
            field=spec.name,
        )
    return value


def _check_field(raw: str, spec: _FieldSpec, expression: str) -> set[int]:
    """Range-check one field and return the values it selects."""
    values: set[int] = set()
    for item in raw.split(","):
        if not item:
            raise InvalidExpressionError(expression, "empty list element", field=spec.name)
        base, slash, step_token = item.partition("/")
        step = 1
        if slash:
            if not (step_token.isascii() and step_token.isdigit()) or int(step_token) == 0:
                raise InvalidExpressionError(
                    expression, f"invalid step {step_token!r}", field=spec.name
                )
            step = int(step_token)

        if base == "*":
            start, end = spec.minimum, spec.maximum
        elif "-" in base:
            low, _, high = base.partition("-")
            start = _field_value(low, spec, expression)
            end = _field_value(high, spec, expression)
            if start > end:
                raise InvalidExpressionError(
                    expression, f"range {base!r} is reversed", field=spec.name
                )
        else:
            start = _field_value(base, spec, expression)
            end = spec.maximum if slash else start
        values.update(range(start, end + 1, step))
    return values


@lru_cache(maxsize=512)
def parse_cron(expression: str) -> CronSchedule:
    """Validate a five-field cron expression.

    Raises:
        InvalidExpressionError: naming the offending field.
    """
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidExpressionError(str(expression), "expression is empty", field="expression")

    parts = expression.split()
    if len(parts) != len(_FIELDS):
        raise InvalidExpressionError(
            expression,
            f"expected {len(_FIELDS)} fields, got {len(parts)}",
            field="expression",
        )

    _, _, days, months, _ = (
        _check_field(raw, spec, expression) for raw, spec in zip(parts, _FIELDS, strict=True)
    )
    day_of_month_restricted = not parts[2].startswith("*")
    if day_of_month_restricted and not any(
        day <= MONTH_LENGTHS[month] for day in days for month in months
    ):
        raise InvalidExpressionError(
            expression, "no selected month has the selected day", field="day_of_month"
        )

    normalized = " ".join(parts).lower()
    try:
        croniter(normalized, datetime(2000, 1, 1), day_or=False)
    except CroniterError as exc:
        raise InvalidExpressionError(expression, str(exc), field="expression") from exc

    return CronSchedule(
        expression=normalized,
        day_of_month_restricted=day_of_month_restricted,
        day_of_week_restricted=not parts[4].startswith("*"),
    )


@lru_cache(maxsize=128)
def resolve_timezone(name: str) -> ZoneInfo:
    """Return the ZoneInfo for an IANA name or raise InvalidTimezoneError."""
    if not name or not isinstance(name, str):
        raise InvalidTimezoneError(str(name))
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise InvalidTimezoneError(name) from exc


def _resolve_local(naive: datetime, zone: ZoneInfo) -> datetime | None:
    """Return the first concrete instant for a local wall time, or None inside a gap."""
    candidate = naive.replace(tzinfo=zone, fold=0)
    round_trip = candidate.astimezone(UTC).astimezone(zone).replace(tzinfo=None)
    if round_trip != naive:
        return None
    return candidate


def _never_matches(schedule: CronSchedule) -> InvalidExpressionError:
    return InvalidExpressionError(
        schedule.expression,
        f"expression matches no date within {SEARCH_HORIZON_YEARS} years",
        field="day_of_month" if schedule.day_of_month_restricted else "month",
    )


def _next_after(schedule: CronSchedule, zone: ZoneInfo, after: datetime) -> datetime:
    local_after = after.astimezone(zone).replace(tzinfo=None)
    horizon = local_after + timedelta(days=366 * SEARCH_HORIZON_YEARS)
    iterator = schedule.iterate_from(local_after)
    while True:
        try:
            wall_time = iterator.get_next(datetime)
        except CroniterBadDateError as exc:
            raise _never_matches(schedule) from exc
        if wall_time > horizon:
            raise _never_matches(schedule)
        local = _resolve_local(wall_time, zone)
        if local is None:
            continue
        instant = local.astimezone(UTC)
        # A wall time repeated after a fall-back can sort before ``after``.
        if instant > after:
            return instant


def next_fire_at(cron_expression: str, timezone: str, after: datetime) -> datetime:
    """Return the first fire instant strictly after ``after``, in UTC.

    Args:
        cron_expression: Five-field cron expression.
        timezone: IANA timezone the expression is evaluated in.
        after: Timezone-aware reference instant.

    Raises:
        InvalidExpressionError: If the expression is malformed or never matches.
        InvalidTimezoneError: If the timezone is unknown.
    """
    if after.tzinfo is None:
        raise ValueError("after must be a timezone-aware datetime")
    schedule = parse_cron(cron_expression)
    zone = resolve_timezone(timezone)
    return _next_after(schedule, zone, after.astimezone(UTC))


def iter_fire_times(
    cron_expression: str, timezone: str, after: datetime, count: int
) -> Iterator[datetime]:
    """Yield the next ``count`` fire instants after ``after``."""
    current = after
    for _ in range(count):
        current = next_fire_at(cron_expression, timezone, current)
        yield current


__all__ = [
    "CronSchedule",
    "parse_cron",
    "resolve_timezone",
    "next_fire_at",
    "iter_fire_times",
]
