# adflow/infra/rules/time_window.py
"""
Time window compilation for automation rules.

A rule's window is resolved in the project's timezone into a disjunction of
date ranges and single-day hour ranges, rendered as SQLAlchemy clauses over
the ``date`` and ``hour`` columns of the metrics table.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple, Union

from sqlalchemy import Table, and_, or_
from sqlalchemy.sql.elements import ColumnElement

from adflow.infra.errors import RuleCompileError
from adflow.infra.rules.models import AutomationRule, TimeGranularity, TimeType


def timezone_name(utc_offset: int) -> str:
    """IANA name of a whole-hour UTC offset (``Etc/GMT`` signs are inverted)."""
    if utc_offset == 0:
        return "UTC"
    if utc_offset > 0:
        return f"Etc/GMT-{utc_offset}"
    return f"Etc/GMT+{abs(utc_offset)}"


def local_now(utc_offset: int, now: Optional[datetime] = None) -> datetime:
    """``now`` (default: current time, naive values taken as UTC) in the project's offset."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone(timedelta(hours=utc_offset)))


# ============================================================
#                   WINDOW CLAUSES
# ============================================================
@dataclass(frozen=True)
class DateRange:
    """Inclusive range of whole days."""
    start: date
    end: date

    def to_clause(self, table: Table) -> ColumnElement:
        if self.start == self.end:
            return table.c.date == self.start
        return and_(table.c.date >= self.start, table.c.date <= self.end)


@dataclass(frozen=True)
class DateHourRange:
    """Hours of one day; a missing bound leaves that side open."""
    day: date
    start_hour: Optional[int] = None
    end_hour: Optional[int] = None

    def to_clause(self, table: Table) -> ColumnElement:
        parts = [table.c.date == self.day]
        if self.start_hour is not None:
            parts.append(table.c.hour >= self.start_hour)
        if self.end_hour is not None:
            parts.append(table.c.hour <= self.end_hour)
        return and_(*parts)


@dataclass(frozen=True)
class TimeWindow:
    clauses: Tuple[Union[DateRange, DateHourRange], ...]

    def to_clause(self, table: Table) -> ColumnElement:
        rendered = [clause.to_clause(table) for clause in self.clauses]
        return rendered[0] if len(rendered) == 1 else or_(*rendered)


# ============================================================
#                   COMPILATION
# ============================================================
def compile_time_window(rule: AutomationRule, now: Optional[datetime] = None) -> TimeWindow:
    """
    Resolve a rule's time window at ``now``.

    Recent windows count back ``time_range`` units: days give
    ``[today - N, today]``, hours give the N most recent hour buckets
    including the current one. Range windows resolve both endpoints of
    ``time_range_config`` to dates.

    Raises:
        RuleCompileError: On an unsupported granularity or time type, or a malformed range
    """
    local = local_now(rule.utc_offset, now)

    if rule.time_type == TimeType.RANGE:
        return _range_window(rule, local)
    if rule.time_type != TimeType.RECENT:
        raise RuleCompileError(f"Unsupported time_type: {rule.time_type}")

    units = rule.time_range
    if not isinstance(units, int) or isinstance(units, bool) or units < 0:
        raise RuleCompileError(f"time_range must be a non-negative integer, got {units!r}")

    if rule.time_granularity == TimeGranularity.DAY:
        today = local.date()
        return TimeWindow((DateRange(today - timedelta(days=units), today),))
    if rule.time_granularity == TimeGranularity.HOUR:
        if units < 1:
            raise RuleCompileError("An hourly window needs at least one hour")
        return _hour_window(local, units)
    raise RuleCompileError(f"Unsupported time_granularity: {rule.time_granularity}")


def _hour_window(local: datetime, hours: int) -> TimeWindow:
    end = local.replace(minute=0, second=0, microsecond=0)
    start = end - timedelta(hours=hours - 1)

    if start.date() == end.date():
        return TimeWindow((DateHourRange(end.date(), start.hour, end.hour),))

    clauses = [DateHourRange(start.date(), start_hour=start.hour)]
    first_full, last_full = start.date() + timedelta(days=1), end.date() - timedelta(days=1)
    if first_full <= last_full:
        clauses.append(DateRange(first_full, last_full))
    clauses.append(DateHourRange(end.date(), end_hour=end.hour))
    return TimeWindow(tuple(clauses))


def _range_window(rule: AutomationRule, local: datetime) -> TimeWindow:
    config = rule.time_range_config
    if not isinstance(config, dict):
        raise RuleCompileError("A range window needs a time_range_config with start_date and end_date")

    start = _resolve_endpoint(config.get("start_date"), "start_date", rule.time_granularity, local)
    end = _resolve_endpoint(config.get("end_date"), "end_date", rule.time_granularity, local)
    if start > end:
        raise RuleCompileError(f"Range start {start} is after its end {end}")
    return TimeWindow((DateRange(start, end),))


def _resolve_endpoint(endpoint: Any, name: str, granularity: str, local: datetime) -> date:
    if not isinstance(endpoint, dict):
        raise RuleCompileError(f"Range {name} must be an object with 'type' and 'date'")

    kind, value = endpoint.get("type"), endpoint.get("date")
    if kind == "absolute":
        try:
            return date.fromisoformat(str(value))
        except ValueError as e:
            raise RuleCompileError(f"Range {name} has an invalid date: {value!r}") from e
    if kind == "relative":
        try:
            offset = abs(int(value))
        except (TypeError, ValueError) as e:
            raise RuleCompileError(f"Range {name} needs an integer offset, got {value!r}") from e
        if granularity == TimeGranularity.HOUR:
            return (local - timedelta(hours=offset)).date()
        return local.date() - timedelta(days=offset)
    raise RuleCompileError(f"Range {name} type must be 'absolute' or 'relative', got {kind!r}")


def describe(window: TimeWindow) -> Dict[str, Any]:
    """Serializable description of a window for audit records."""
    described = []
    for clause in window.clauses:
        if isinstance(clause, DateRange):
            described.append({"start": clause.start.isoformat(), "end": clause.end.isoformat()})
        else:
            described.append({"date": clause.day.isoformat(), "start_hour": clause.start_hour, "end_hour": clause.end_hour})
    return {"clauses": described}
