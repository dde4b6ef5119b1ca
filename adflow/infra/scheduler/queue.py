# adflow/infra/scheduler/queue.py
"""
Job queue and timer backends.

The task scheduler talks to a ``JobQueue``: it places payloads to run now or
at an instant, and installs recurring schedules keyed by task id. Payloads are
plain dicts handed back to the bound handler when the job fires.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.util import astimezone, convert_to_datetime

logger = logging.getLogger(__name__)

Payload = Dict[str, Any]
JobHandler = Callable[[Payload], Awaitable[Any]]


def build_cron_trigger(
        cron_spec: str,
        timezone: str = "UTC",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
) -> CronTrigger:
    """
    Build a CronTrigger from a cron spec.

    Args:
        cron_spec: 6-field (second minute hour day month weekday)
                   or 5-field (minute hour day month weekday) expression
        timezone: Timezone the fields are interpreted in
        start: Optional first instant the trigger may fire
        end: Optional last instant the trigger may fire

    Raises:
        ValueError: If the spec has fewer than 5 fields or a field is invalid
    """
    parts = cron_spec.split()
    if len(parts) < 5:
        raise ValueError(f"Cron expression needs 5 or 6 fields, got '{cron_spec}'")

    if len(parts) >= 6:
        second, minute, hour, day, month, day_of_week = parts[:6]
    else:
        second = "0"
        minute, hour, day, month, day_of_week = parts

    return CronTrigger(
        second=second,
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=day_of_week,
        start_date=start,
        end_date=end,
        timezone=timezone,
    )


class JobQueue(Protocol):
    """Collaborator placing scheduler payloads on a queue or a timer."""

    def bind(self, handler: JobHandler) -> None:
        """Set the coroutine function receiving every payload when its job fires."""
        ...

    def enqueue_now(self, payload: Payload) -> None:
        ...

    def enqueue_at(self, payload: Payload, when: datetime, key: Optional[str] = None) -> None:
        """Run the payload once at ``when``; ``key`` lets ``remove_schedule`` cancel it."""
        ...

    def install_recurring(
            self,
            key: str,
            cron_spec: str,
            payload: Payload,
            start: Optional[datetime] = None,
            end: Optional[datetime] = None,
    ) -> None:
        """Install (or replace) the recurring schedule named ``key``."""
        ...

    def remove_schedule(self, key: str) -> bool:
        """Remove a schedule; False when none was installed under ``key``."""
        ...


# ============================================================
#                   APSCHEDULER BACKEND
# ============================================================

class APSchedulerQueue:
    """
    JobQueue on an in-process AsyncIOScheduler.

    Jobs run as coroutines on the scheduler's event loop; the scheduler has to
    be started from inside a running loop.
    """

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None, timezone: str = "UTC"):
        self.timezone = timezone
        self.tz = astimezone(timezone)
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone)
        self._handler: Optional[JobHandler] = None

    def bind(self, handler: JobHandler) -> None:
        self._handler = handler

    def start(self) -> None:
        """Start the scheduler if not already running."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("[Scheduler] Started")

    def shutdown(self) -> None:
        """Shutdown the scheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("[Scheduler] Shutdown")

    async def _dispatch(self, payload: Payload) -> None:
        if self._handler is None:
            raise RuntimeError("bind() must be called before jobs can run")
        await self._handler(payload)

    async def _dispatch_recurring(self, payload: Payload) -> None:
        await self._dispatch({**payload, "fired_at": datetime.now(self.tz)})

    def enqueue_now(self, payload: Payload) -> None:
        job = self.scheduler.add_job(
            self._dispatch, id=str(uuid.uuid4()), misfire_grace_time=None, kwargs={"payload": payload}
        )
        logger.debug(f"[Scheduler] Enqueued job={job.id} payload={payload}")

    def enqueue_at(self, payload: Payload, when: datetime, key: Optional[str] = None) -> None:
        """Run the payload at ``when``; an instant already past runs right away."""
        when = convert_to_datetime(when, self.tz, "when")
        job_id = key or str(uuid.uuid4())
        if when <= datetime.now(self.tz):
            self.scheduler.add_job(
                self._dispatch, id=job_id, replace_existing=True, misfire_grace_time=None, kwargs={"payload": payload}
            )
            logger.info(f"[Scheduler] Enqueued past-due job={job_id} at={when.isoformat()}")
            return
        self.scheduler.add_job(
            self._dispatch,
            trigger=DateTrigger(run_date=when, timezone=self.timezone),
            id=job_id,
            replace_existing=True,
            misfire_grace_time=None,
            kwargs={"payload": payload},
        )
        logger.info(f"[Scheduler] Scheduled job={job_id} at={when.isoformat()}")

    def install_recurring(
            self,
            key: str,
            cron_spec: str,
            payload: Payload,
            start: Optional[datetime] = None,
            end: Optional[datetime] = None,
    ) -> None:
        trigger = build_cron_trigger(cron_spec, self.timezone, start, end)
        self.scheduler.add_job(
            self._dispatch_recurring,
            trigger=trigger,
            id=key,
            replace_existing=True,
            coalesce=True,
            kwargs={"payload": payload},
        )
        logger.info(f"[Scheduler] Registered cron job: {key} with expression: {cron_spec}")

    def remove_schedule(self, key: str) -> bool:
        try:
            self.scheduler.remove_job(key)
            logger.info(f"[Scheduler] Removed job: {key}")
            return True
        except JobLookupError:
            logger.warning(f"[Scheduler] Job not found: {key}")
            return False


# ============================================================
#                   IN-MEMORY BACKEND
# ============================================================

@dataclass
class RecurringSchedule:
    cron_spec: str
    payload: Payload
    trigger: CronTrigger
    cursor: datetime


class InMemoryQueue:
    """
    JobQueue recording every call, driven explicitly by the caller.

    ``drain()`` runs queued payloads in FIFO order (including payloads queued
    while draining); ``advance(until)`` fires every installed schedule and every
    delayed payload due up to ``until``.
    """

    def __init__(self, timezone: str = "UTC"):
        self.timezone = timezone
        self.tz = astimezone(timezone)
        self.immediate: List[Payload] = []
        self.delayed: List[Tuple[datetime, Optional[str], Payload]] = []
        self.schedules: Dict[str, RecurringSchedule] = {}
        self.removed: List[str] = []
        self._handler: Optional[JobHandler] = None

    def bind(self, handler: JobHandler) -> None:
        self._handler = handler

    def enqueue_now(self, payload: Payload) -> None:
        self.immediate.append(payload)

    def enqueue_at(self, payload: Payload, when: datetime, key: Optional[str] = None) -> None:
        self.delayed.append((when, key, payload))

    def install_recurring(
            self,
            key: str,
            cron_spec: str,
            payload: Payload,
            start: Optional[datetime] = None,
            end: Optional[datetime] = None,
    ) -> None:
        trigger = build_cron_trigger(cron_spec, self.timezone, start, end)
        cursor = trigger.start_date or datetime.now(self.tz)
        self.schedules[key] = RecurringSchedule(cron_spec=cron_spec, payload=payload, trigger=trigger, cursor=cursor)

    def remove_schedule(self, key: str) -> bool:
        self.removed.append(key)
        found = self.schedules.pop(key, None) is not None
        kept = [entry for entry in self.delayed if entry[1] != key]
        found = found or len(kept) != len(self.delayed)
        self.delayed = kept
        return found

    async def drain(self) -> List[Any]:
        """Run every immediate payload through the handler, returning the handler results."""
        results = []
        while self.immediate:
            results.append(await self._handle(self.immediate.pop(0)))
        return results

    async def advance(self, until: datetime) -> List[Any]:
        """
        Fire everything due up to ``until``, in time order per schedule.

        Recurring firings receive the fire instant as ``fired_at`` in their payload.
        """
        until = self._aware(until)
        results = []

        due = [entry for entry in self.delayed if self._aware(entry[0]) <= until]
        self.delayed = [entry for entry in self.delayed if self._aware(entry[0]) > until]
        for _, _, payload in sorted(due, key=lambda entry: self._aware(entry[0])):
            results.append(await self._handle(payload))

        for schedule in list(self.schedules.values()):
            while True:
                fire_time = schedule.trigger.get_next_fire_time(None, schedule.cursor)
                if fire_time is None or fire_time > until:
                    break
                schedule.cursor = fire_time + timedelta(microseconds=1)
                results.append(await self._handle({**schedule.payload, "fired_at": fire_time}))
        return results

    def _aware(self, moment: datetime) -> datetime:
        return convert_to_datetime(moment, self.tz, "moment")

    async def _handle(self, payload: Payload) -> Any:
        if self._handler is None:
            raise RuntimeError("bind() must be called before jobs can run")
        return await self._handler(payload)
