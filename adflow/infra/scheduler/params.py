# adflow/infra/scheduler/params.py
"""
Data-time keys and the system parameters derived from them.
"""
from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import Any, Dict

DAY_FORMAT = "%Y-%m-%d"
HOUR_FORMAT = "%Y-%m-%d %H"


def data_time_for(moment: datetime, hourly: bool) -> str:
    """Data-time key of a firing instant: ``YYYY-MM-DD HH`` for hourly tasks, ``YYYY-MM-DD`` otherwise."""
    return moment.strftime(HOUR_FORMAT if hourly else DAY_FORMAT)


def system_params(data_time: str, hourly: bool) -> Dict[str, Any]:
    """
    Parameters every run receives, derived from its data-time.

    Args:
        data_time: ``YYYY-MM-DD`` or ``YYYY-MM-DD HH``
        hourly: Whether the owning task runs hourly; only then is ``hour`` set

    Returns:
        Mapping with today, yesterday, tomorrow, hour, month, year,
        beginning_of_month and end_of_month

    Raises:
        ValueError: If the data-time does not start with a valid date, or an
            hourly data-time carries no hour
    """
    day = datetime.strptime(data_time[:10], DAY_FORMAT).date()

    hour = None
    if hourly:
        raw_hour = data_time[11:13]
        if not raw_hour.isdigit() or not 0 <= int(raw_hour) <= 23:
            raise ValueError(f"Hourly data time must look like YYYY-MM-DD HH, got '{data_time}'")
        hour = int(raw_hour)

    last_day = calendar.monthrange(day.year, day.month)[1]
    return {
        "today": day.isoformat(),
        "yesterday": (day - timedelta(days=1)).isoformat(),
        "tomorrow": (day + timedelta(days=1)).isoformat(),
        "hour": hour,
        "month": day.strftime("%Y-%m"),
        "year": str(day.year),
        "beginning_of_month": date(day.year, day.month, 1).isoformat(),
        "end_of_month": date(day.year, day.month, last_day).isoformat(),
    }
