# adflow/infra/scheduler/models.py
"""
Data models for tasks and task executions.

A task is a schedulable trigger for a flow; every run attempt of a task is
recorded as a task execution with its own state machine:
``pending -> running -> {completed | failed | cancelled}``.
"""
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from adflow.infra.errors import InvalidTransition


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
#                   TASK ENUMS
# ============================================================
class TaskType(enum.StrEnum):
    ONE_OFF = "one_off"
    PERIODIC = "periodic"
    DEPENDENT = "dependent"


class PeriodType(enum.StrEnum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CRON = "cron"


class TaskStatus(enum.StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    DISCARDED = "discarded"


# ============================================================
#                   EXECUTION STATES
# ============================================================
class ExecutionStatus:
    """
    Possible states of a task execution.
    """
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ALL = (PENDING, RUNNING, COMPLETED, FAILED, CANCELLED)

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        """
        Check if the given status represents a terminal (final) state.

        Args:
            status: The status to check

        Returns:
            True if the status is COMPLETED, FAILED or CANCELLED
        """
        return status in {cls.COMPLETED, cls.FAILED, cls.CANCELLED}


class ExecutionKind(enum.StrEnum):
    """Who triggered an execution."""
    SYSTEM = "system"
    MANUAL = "manual"


# status -> statuses it may move to
_TRANSITIONS = {
    ExecutionStatus.PENDING: {ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED, ExecutionStatus.FAILED},
    ExecutionStatus.RUNNING: {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED},
}


# ============================================================
#                   TASK
# ============================================================
@dataclass
class Task:
    """
    Schedulable trigger for a flow.

    Attributes:
        task_id: Unique identifier of the task
        flow_id: Flow run by every execution of the task
        name: Display name
        task_type: One-off, periodic or dependent
        period_type: Period of a periodic task
        cron_expression: Cron spec, only for the ``cron`` period
        effective_time: First firing (one-off) or schedule start (periodic)
        effective_until: Optional end of a periodic schedule
        params: Custom parameters merged over the system parameters of each run
        queue: Queue name executions are placed on
        priority: Queue priority
        status: Active, paused (default) or discarded
        dependents: For dependent tasks, the task ids whose completion may trigger this one
    """
    flow_id: str
    name: str
    task_type: str = TaskType.ONE_OFF
    period_type: Optional[str] = None
    cron_expression: Optional[str] = None
    effective_time: Optional[datetime] = None
    effective_until: Optional[datetime] = None
    params: Dict[str, Any] = field(default_factory=dict)
    queue: str = "default"
    priority: int = 0
    status: str = TaskStatus.PAUSED
    dependents: List[str] = field(default_factory=list)
    description: Optional[str] = None
    task_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        self.task_type = TaskType(self.task_type)
        self.status = TaskStatus(self.status)
        if self.period_type is not None:
            self.period_type = PeriodType(self.period_type)

        if self.task_type == TaskType.DEPENDENT:
            scheduled = [
                name for name in ("period_type", "cron_expression", "effective_time", "effective_until")
                if getattr(self, name) is not None
            ]
            if scheduled:
                raise ValueError(f"Dependent task '{self.task_id}' cannot carry schedule fields: {', '.join(scheduled)}")
        elif self.dependents:
            raise ValueError(f"Only dependent tasks list dependencies, task '{self.task_id}' is {self.task_type}")

        if self.task_type == TaskType.PERIODIC:
            if self.period_type is None:
                raise ValueError(f"Periodic task '{self.task_id}' needs a period_type")
            if self.period_type == PeriodType.CRON and not self.cron_expression:
                raise ValueError(f"Periodic task '{self.task_id}' with a cron period needs a cron_expression")

    @property
    def is_hourly(self) -> bool:
        return self.period_type == PeriodType.HOURLY

    @property
    def is_active(self) -> bool:
        return self.status == TaskStatus.ACTIVE


# ============================================================
#                   TASK EXECUTION
# ============================================================
@dataclass
class TaskExecution:
    """
    One run attempt of a task.

    Attributes:
        task_id: Owning task
        data_time: Logical data-time key (``YYYY-MM-DD`` or ``YYYY-MM-DD HH``)
        status: Current ExecutionStatus
        execution_kind: System (scheduled/dependency) or manual
        system_params: Parameters derived from the data-time
        custom_params: Parameters copied from the task
        queue: Queue the execution is placed on
        run_dependents: Whether completion should trigger dependent tasks
        retry_count: Number of times this execution was retried
        result: Snapshot of the flow report
        error_message: Error of a failed execution
    """
    task_id: str
    data_time: str
    status: str = ExecutionStatus.PENDING
    execution_kind: str = ExecutionKind.SYSTEM
    system_params: Dict[str, Any] = field(default_factory=dict)
    custom_params: Dict[str, Any] = field(default_factory=dict)
    queue: str = "default"
    run_dependents: bool = True
    retry_count: int = 0
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    created_at: datetime = field(default_factory=utc_now)
    execution_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def params(self) -> Dict[str, Any]:
        """Parameters handed to the flow run; custom values win on collision."""
        return {**self.system_params, **self.custom_params}

    @property
    def idempotency_key(self) -> Optional[str]:
        """Key unique among active executions, None once the execution is terminal."""
        if ExecutionStatus.is_terminal(self.status):
            return None
        return f"{self.task_id}@{self.data_time}"

    # ---------- State machine ----------

    def _transition(self, status: str) -> None:
        if status not in _TRANSITIONS.get(self.status, set()):
            raise InvalidTransition(
                f"Execution '{self.execution_id}' cannot move from {self.status} to {status}"
            )
        self.status = status

    def _finish(self, now: Optional[datetime]) -> None:
        self.finished_at = now or utc_now()
        if self.started_at:
            self.duration_seconds = round((self.finished_at - self.started_at).total_seconds(), 3)
        else:
            self.duration_seconds = 0.0

    def mark_running(self, now: Optional[datetime] = None) -> None:
        self._transition(ExecutionStatus.RUNNING)
        self.started_at = now or utc_now()

    def mark_completed(self, result: Optional[Dict[str, Any]] = None, now: Optional[datetime] = None) -> None:
        self._transition(ExecutionStatus.COMPLETED)
        self.result = result
        self._finish(now)

    def mark_failed(self, error_message: str, result: Optional[Dict[str, Any]] = None, now: Optional[datetime] = None) -> None:
        self._transition(ExecutionStatus.FAILED)
        self.error_message = error_message
        if result is not None:
            self.result = result
        self._finish(now)

    def mark_cancelled(self, now: Optional[datetime] = None) -> None:
        self._transition(ExecutionStatus.CANCELLED)
        self._finish(now)
