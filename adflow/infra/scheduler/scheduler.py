# adflow/infra/scheduler/scheduler.py
"""
Task scheduler: turns task firings into executions and runs them.

Firings come from a JobQueue (one-off timers, cron schedules, manual and
dependency-triggered enqueues). Each firing creates a TaskExecution carrying
the system parameters of its data-time; running it executes the task's
current flow version and, on success, re-evaluates dependent tasks.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from apscheduler.util import astimezone

from adflow.infra.errors import DuplicateExecutionError, InvalidTransition
from adflow.infra.flow import DagExecutor, LogSink
from adflow.infra.scheduler.models import (
    ExecutionKind,
    ExecutionStatus,
    PeriodType,
    Task,
    TaskExecution,
    TaskStatus,
    TaskType,
)
from adflow.infra.scheduler.params import data_time_for, system_params
from adflow.infra.scheduler.queue import JobQueue, Payload
from adflow.infra.store.base import Store

logger = logging.getLogger(__name__)

PERIOD_CRON = {
    PeriodType.HOURLY: "0 * * * *",
    PeriodType.DAILY: "0 0 * * *",
    PeriodType.WEEKLY: "0 0 * * 1",
    PeriodType.MONTHLY: "0 0 1 * *",
}


def cron_spec_for(task: Task) -> str:
    """Cron spec of a periodic task: fixed per period, or the task's own expression."""
    if task.period_type == PeriodType.CRON:
        return task.cron_expression
    return PERIOD_CRON[task.period_type]


class TaskScheduler:
    """
    Schedules tasks and drives their executions through the state machine.

    Args:
        store: Persistence for tasks, flows and executions
        queue: JobQueue receiving payloads; it is bound to ``handle``
        executor: Runs flow versions
        timezone: Timezone firing instants are turned into data-times in
    """

    def __init__(
            self,
            store: Store,
            queue: JobQueue,
            executor: Optional[DagExecutor] = None,
            timezone: str = "UTC",
    ):
        self.store = store
        self.tz = astimezone(timezone)
        self.queue = queue
        self.executor = executor or DagExecutor()
        self.queue.bind(self.handle)

    # ============================================================
    #                   SCHEDULE MANAGEMENT
    # ============================================================

    @staticmethod
    def _fire_payload(task: Task) -> Payload:
        return {"task_id": task.task_id, "kind": str(ExecutionKind.SYSTEM), "run_dependents": True}

    def activate(self, task: Task) -> Task:
        """
        Activate a task and install its timer.

        One-off tasks fire once at ``effective_time`` (immediately when unset
        or already past); periodic tasks get a recurring schedule bounded by
        ``effective_time``/``effective_until``. The task is saved as active
        only once its timer is installed.

        Raises:
            InvalidTransition: For dependent tasks, which only run when their dependencies complete
            ValueError: If the cron expression is invalid (the task keeps its status)
        """
        if task.task_type == TaskType.DEPENDENT:
            raise InvalidTransition(f"Dependent task '{task.task_id}' cannot be activated, it runs on its dependencies")

        self._install(task)

        previous = task.status
        task.status = TaskStatus.ACTIVE
        try:
            self.store.save_task(task)
        except Exception:
            task.status = previous
            self.queue.remove_schedule(task.task_id)
            raise

        logger.info(f"Task activated: task_id={task.task_id}, type={task.task_type}")
        return task

    def _install(self, task: Task) -> None:
        payload = self._fire_payload(task)
        if task.task_type == TaskType.ONE_OFF:
            if task.effective_time is None:
                self.queue.enqueue_now(payload)
            else:
                self.queue.enqueue_at(payload, task.effective_time, key=task.task_id)
        else:
            self.queue.install_recurring(
                task.task_id,
                cron_spec_for(task),
                payload,
                start=task.effective_time,
                end=task.effective_until,
            )

    def restore_schedules(self) -> List[Task]:
        """
        Reinstall the timers of active tasks, after a restart.

        One-off tasks that already have an execution are not fired again. A
        task whose timer cannot be installed is logged and skipped.

        Returns:
            The tasks whose timers were installed
        """
        restored = []
        for task in self.store.list_active_tasks():
            if task.task_type == TaskType.DEPENDENT:
                continue
            if task.task_type == TaskType.ONE_OFF and self.store.list_executions(task.task_id):
                logger.debug(f"One-off task already fired: task_id={task.task_id}")
                continue
            try:
                self._install(task)
            except ValueError as e:
                logger.error(f"Schedule not restored: task_id={task.task_id}, error={e}")
                continue
            restored.append(task)
        logger.info(f"Schedules restored: count={len(restored)}")
        return restored

    def deactivate(self, task: Task) -> Task:
        """Pause a task and remove its timer; running executions are left alone."""
        return self._unschedule(task, TaskStatus.PAUSED)

    def discard(self, task: Task) -> Task:
        return self._unschedule(task, TaskStatus.DISCARDED)

    def _unschedule(self, task: Task, status: TaskStatus) -> Task:
        task.status = status
        self.store.save_task(task)
        self.queue.remove_schedule(task.task_id)
        logger.info(f"Task {status}: task_id={task.task_id}")
        return task

    # ============================================================
    #                   ENQUEUE / FIRE
    # ============================================================

    def create_execution(
            self,
            task: Task,
            data_time: str,
            kind: str = ExecutionKind.SYSTEM,
            run_dependents: bool = True,
    ) -> TaskExecution:
        """
        Create a pending execution of a task at a data-time.

        Raises:
            ValueError: If the data-time is malformed
            DuplicateExecutionError: If the same task and data-time is already pending or running
        """
        execution = TaskExecution(
            task_id=task.task_id,
            data_time=data_time,
            execution_kind=ExecutionKind(kind),
            system_params=system_params(data_time, task.is_hourly),
            custom_params=dict(task.params or {}),
            queue=task.queue,
            run_dependents=run_dependents,
        )
        self.store.create_execution(execution)
        logger.info(
            f"Execution created: execution_id={execution.execution_id}, task_id={task.task_id}, "
            f"data_time={data_time}, kind={execution.execution_kind}"
        )
        return execution

    def enqueue_now(
            self,
            task: Task,
            data_time: Optional[str] = None,
            kind: str = ExecutionKind.MANUAL,
            run_dependents: bool = True,
    ) -> TaskExecution:
        """Create an execution and queue it for immediate processing."""
        data_time = data_time or data_time_for(datetime.now(self.tz), task.is_hourly)
        execution = self.create_execution(task, data_time, kind=kind, run_dependents=run_dependents)
        self.queue.enqueue_now({"execution_id": execution.execution_id})
        return execution

    def enqueue_at(
            self,
            task: Task,
            data_time: str,
            when: datetime,
            kind: str = ExecutionKind.SYSTEM,
    ) -> TaskExecution:
        """Create an execution now and queue it to run at ``when``."""
        execution = self.create_execution(task, data_time, kind=kind)
        self.queue.enqueue_at({"execution_id": execution.execution_id}, when)
        return execution

    async def fire(
            self,
            task_id: str,
            data_time: Optional[str] = None,
            kind: str = ExecutionKind.SYSTEM,
            run_dependents: bool = True,
            fired_at: Optional[datetime] = None,
    ) -> Optional[TaskExecution]:
        """
        Handle a scheduled firing: create the execution and run it.

        The data-time defaults to the firing instant, taken in the scheduler
        timezone (naive instants are already local). A firing that clashes
        with an active execution of the same data-time is skipped.

        Returns:
            The finished execution, or None when the firing was skipped
        """
        task = self.store.load_task(task_id)
        if data_time is None:
            data_time = data_time_for(self._local(fired_at), task.is_hourly)

        try:
            execution = self.create_execution(task, data_time, kind=kind, run_dependents=run_dependents)
        except DuplicateExecutionError as e:
            logger.warning(f"Firing skipped: {e}")
            return None
        return await self.run_execution(execution.execution_id)

    def _local(self, moment: Optional[datetime]) -> datetime:
        if moment is None:
            return datetime.now(self.tz)
        if moment.tzinfo is None:
            return moment
        return moment.astimezone(self.tz)

    async def handle(self, payload: Payload) -> Optional[TaskExecution]:
        """Queue callback: run a queued execution or fire a task."""
        if "execution_id" in payload:
            return await self.run_execution(payload["execution_id"])
        return await self.fire(
            payload["task_id"],
            data_time=payload.get("data_time"),
            kind=payload.get("kind", ExecutionKind.SYSTEM),
            run_dependents=payload.get("run_dependents", True),
            fired_at=payload.get("fired_at"),
        )

    # ============================================================
    #                   EXECUTION
    # ============================================================

    async def run_execution(self, execution_id: str) -> TaskExecution:
        """
        Run a pending execution to a terminal state.

        Cancelled executions are returned untouched. A missing task, flow or
        flow version, or a flow that cannot start (cycle, unknown node kind),
        fails the execution and the error is re-raised.

        Raises:
            ExecutionNotFound: If the execution does not exist
            InvalidTransition: If the execution is not pending
        """
        execution = self.store.load_execution(execution_id)
        if execution.status == ExecutionStatus.CANCELLED:
            logger.info(f"Execution skipped, cancelled: execution_id={execution_id}")
            return execution

        execution.mark_running()
        self.store.update_execution(execution)

        try:
            task = self.store.load_task(execution.task_id)
            flow = self.store.load_flow(task.flow_id)
            flow_version = self.store.load_flow_version(flow.flow_id)
            log_sink = LogSink(name=f"adflow.run.{execution.execution_id}")
            report = await self.executor.execute(flow_version, execution.params, log_sink=log_sink)
        except Exception as e:
            execution.mark_failed(str(e) or e.__class__.__name__)
            self.store.update_execution(execution)
            logger.error(f"Execution failed before running: execution_id={execution_id}, error={e}")
            raise

        if report.succeeded:
            execution.mark_completed(report.to_dict())
        else:
            execution.mark_failed(report.error, report.to_dict())
        self.store.update_execution(execution)
        logger.info(
            f"Execution finished: execution_id={execution_id}, status={execution.status}, "
            f"duration={execution.duration_seconds}s"
        )

        if execution.status == ExecutionStatus.COMPLETED:
            self.on_execution_completed(execution)
        return execution

    def cancel(self, execution_id: str) -> TaskExecution:
        """
        Cancel a pending execution.

        Raises:
            InvalidTransition: If the execution is not pending
        """
        execution = self.store.load_execution(execution_id)
        if execution.status != ExecutionStatus.PENDING:
            raise InvalidTransition(
                f"Only pending executions can be cancelled, execution '{execution_id}' is {execution.status}"
            )
        execution.mark_cancelled()
        self.store.update_execution(execution)
        logger.info(f"Execution cancelled: execution_id={execution_id}")
        return execution

    def retry(self, execution_id: str) -> TaskExecution:
        """
        Retry a failed execution as a new pending execution.

        The original keeps its failed status and gets its ``retry_count``
        incremented; the new execution copies its task, data-time, parameters,
        kind and queue.

        Raises:
            InvalidTransition: If the execution is not failed
            DuplicateExecutionError: If the same task and data-time is already pending or running
                (the original is left unchanged)
        """
        original = self.store.load_execution(execution_id)
        if original.status != ExecutionStatus.FAILED:
            raise InvalidTransition(
                f"Only failed executions can be retried, execution '{execution_id}' is {original.status}"
            )

        retried = TaskExecution(
            task_id=original.task_id,
            data_time=original.data_time,
            execution_kind=original.execution_kind,
            system_params=dict(original.system_params),
            custom_params=dict(original.custom_params),
            queue=original.queue,
            run_dependents=original.run_dependents,
            retry_count=original.retry_count + 1,
        )
        self.store.create_execution(retried)
        original.retry_count = retried.retry_count
        self.store.update_execution(original)
        self.queue.enqueue_now({"execution_id": retried.execution_id})
        logger.info(f"Execution retried: execution_id={execution_id}, new_execution_id={retried.execution_id}")
        return retried

    # ============================================================
    #                   DEPENDENCIES
    # ============================================================

    def dependencies_satisfied(self, task: Task, data_time: str) -> bool:
        """True when every dependency of ``task`` has a completed execution at ``data_time``."""
        if not task.dependents:
            return False
        return all(self.store.has_completed_execution(dep, data_time) for dep in task.dependents)

    def on_execution_completed(self, execution: TaskExecution) -> List[TaskExecution]:
        """
        Enqueue the dependent tasks a completed execution unblocks.

        Each dependent is checked on its own: an error while checking or
        enqueuing one dependent is logged and the others are still processed.

        Returns:
            The executions enqueued
        """
        if execution.status != ExecutionStatus.COMPLETED or not execution.run_dependents:
            return []

        enqueued = []
        for dependent in self.store.list_dependent_tasks(execution.task_id):
            try:
                if not self.dependencies_satisfied(dependent, execution.data_time):
                    logger.debug(
                        f"Dependencies pending: task_id={dependent.task_id}, data_time={execution.data_time}"
                    )
                    continue
                enqueued.append(self.enqueue_now(
                    dependent,
                    execution.data_time,
                    kind=execution.execution_kind,
                    run_dependents=True,
                ))
            except Exception:
                logger.exception(
                    f"Dependent task not enqueued: task_id={dependent.task_id}, "
                    f"trigger={execution.task_id}, data_time={execution.data_time}"
                )
        return enqueued

    # ============================================================
    #                   STATISTICS
    # ============================================================

    def execution_stats(self, task_id: str) -> Dict[str, Any]:
        """
        Execution statistics of a task.

        Returns:
            ``{"total": 0}`` without executions, otherwise total, by_status,
            average_duration_seconds, success_rate_percent and last_execution_id
        """
        executions = self.store.list_executions(task_id)
        total = len(executions)
        if total == 0:
            return {"total": 0}

        by_status = Counter(str(e.status) for e in executions)
        durations = [e.duration_seconds for e in executions if e.duration_seconds is not None]
        average = round(sum(durations) / len(durations), 2) if durations else None
        return {
            "total": total,
            "by_status": dict(by_status),
            "average_duration_seconds": average,
            "success_rate_percent": round(by_status[ExecutionStatus.COMPLETED] / total * 100, 2),
            "last_execution_id": executions[-1].execution_id,
        }
