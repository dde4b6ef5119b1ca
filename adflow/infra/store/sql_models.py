"""
SQLModel models and mappers for engine persistence.

This module contains SQLModel table definitions and mapper functions
to convert between SQLModel instances and domain dataclasses.
"""
import json
from datetime import datetime, timezone
from typing import Any, Optional, TypeVar

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from adflow.infra.flow.models import Flow, FlowVersion
from adflow.infra.rules.models import AutomationLog, AutomationRule
from adflow.infra.scheduler.models import Task, TaskExecution, utc_now

# Type variable for generic model update
T = TypeVar('T', bound=SQLModel)


# ============================================================
#                   SQLMODEL TABLE DEFINITIONS
# ============================================================

class FlowModel(SQLModel, table=True):
    """
    Flow identity and pointer to its current version.

    Table: flow
    """
    __tablename__ = "flow"

    flow_id: str = Field(primary_key=True)
    name: str
    description: Optional[str] = Field(default=None)
    current_version: Optional[int] = Field(default=None)


class FlowVersionModel(SQLModel, table=True):
    """
    Append-only flow graph versions.

    Table: flow_version
    Primary Key: (flow_id, version)
    """
    __tablename__ = "flow_version"

    flow_id: str = Field(foreign_key="flow.flow_id", primary_key=True)
    version: int = Field(primary_key=True)
    config_json: str = Field(default="{}")
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


class TaskModel(SQLModel, table=True):
    """
    Table: task
    """
    __tablename__ = "task"

    task_id: str = Field(primary_key=True)
    flow_id: str = Field(index=True)
    name: str
    description: Optional[str] = Field(default=None)
    task_type: str = Field(index=True)
    period_type: Optional[str] = Field(default=None)
    cron_expression: Optional[str] = Field(default=None)
    effective_time: Optional[datetime] = Field(default=None)
    effective_until: Optional[datetime] = Field(default=None)
    params_json: str = Field(default="{}")
    queue: str = Field(default="default")
    priority: int = Field(default=0)
    status: str = Field(default="paused", index=True)
    dependents_json: str = Field(default="[]")


class TaskExecutionModel(SQLModel, table=True):
    """
    One run attempt of a task.

    Table: task_execution
    ``idempotency_key`` is set only while the execution is pending or running,
    its UNIQUE constraint blocks a second active run of the same (task, data-time).
    """
    __tablename__ = "task_execution"

    execution_id: str = Field(primary_key=True)
    task_id: str = Field(index=True)
    data_time: str = Field(index=True)
    status: str = Field(index=True)
    execution_kind: str = Field(default="system")
    system_params_json: str = Field(default="{}")
    custom_params_json: str = Field(default="{}")
    queue: str = Field(default="default")
    run_dependents: bool = Field(default=True)
    retry_count: int = Field(default=0)
    result_json: Optional[str] = Field(default=None)
    error_message: Optional[str] = Field(default=None)
    started_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    finished_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    duration_seconds: Optional[float] = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True), index=True)
    idempotency_key: Optional[str] = Field(default=None, unique=True)


class AutomationRuleModel(SQLModel, table=True):
    """
    Table: automation_rule
    """
    __tablename__ = "automation_rule"

    rule_id: str = Field(primary_key=True)
    project_id: int = Field(index=True)
    name: str
    time_granularity: str
    time_type: str
    time_range: Optional[int] = Field(default=None)
    time_range_config_json: Optional[str] = Field(default=None)
    condition_group_json: str = Field(default="{}")
    action: str
    action_value: Optional[float] = Field(default=None)
    utc_offset: int = Field(default=0)
    enabled: bool = Field(default=True, index=True)


class AutomationLogModel(SQLModel, table=True):
    """
    Append-only audit log.

    Table: automation_log
    """
    __tablename__ = "automation_log"

    log_id: str = Field(primary_key=True)
    rule_id: str = Field(index=True)
    project_id: int = Field(index=True)
    status: str
    dimensions_json: str = Field(default="{}")
    remark_json: str = Field(default="{}")
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True), index=True)


# ============================================================
#                   UTILITY FUNCTIONS
# ============================================================

def copy_model_fields(target: T, source: T, exclude_keys: Optional[set] = None) -> T:
    """
    Copy all fields from source model to target model.

    Args:
        target: The SQLModel instance to update
        source: The SQLModel instance to copy from
        exclude_keys: Optional set of field names to skip during copy

    Returns:
        The updated target model
    """
    exclude_keys = exclude_keys or set()

    for key, value in source.model_dump(exclude=exclude_keys).items():
        if hasattr(target, key):
            setattr(target, key, value)

    return target


def dump_json(value: Any) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


def load_json(raw: Optional[str], default: Any = None) -> Any:
    return json.loads(raw) if raw else default


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a timestamp to UTC.

    SQLite drops the offset of stored values, so naive values read back are
    taken as UTC; they were converted to UTC before being written.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ============================================================
#                   MAPPER FUNCTIONS
# ============================================================

def flow_to_model(flow: Flow) -> FlowModel:
    return FlowModel(
        flow_id=flow.flow_id,
        name=flow.name,
        description=flow.description,
        current_version=flow.current_version,
    )


def model_to_flow(model: FlowModel) -> Flow:
    return Flow(
        flow_id=model.flow_id,
        name=model.name,
        description=model.description,
        current_version=model.current_version,
    )


def model_to_flow_version(model: FlowVersionModel) -> FlowVersion:
    version = FlowVersion.from_config(model.flow_id, model.version, load_json(model.config_json, {}))
    version.created_at = as_utc(model.created_at)
    return version


def task_to_model(task: Task) -> TaskModel:
    """
    Convert a Task dataclass to a TaskModel SQLModel instance.

    Args:
        task: The Task dataclass instance

    Returns:
        TaskModel instance ready for database persistence
    """
    return TaskModel(
        task_id=task.task_id,
        flow_id=task.flow_id,
        name=task.name,
        description=task.description,
        task_type=str(task.task_type),
        period_type=str(task.period_type) if task.period_type else None,
        cron_expression=task.cron_expression,
        effective_time=task.effective_time,
        effective_until=task.effective_until,
        params_json=dump_json(task.params or {}),
        queue=task.queue,
        priority=task.priority,
        status=str(task.status),
        dependents_json=dump_json(list(task.dependents or [])),
    )


def model_to_task(model: TaskModel) -> Task:
    return Task(
        task_id=model.task_id,
        flow_id=model.flow_id,
        name=model.name,
        description=model.description,
        task_type=model.task_type,
        period_type=model.period_type,
        cron_expression=model.cron_expression,
        effective_time=model.effective_time,
        effective_until=model.effective_until,
        params=load_json(model.params_json, {}),
        queue=model.queue,
        priority=model.priority,
        status=model.status,
        dependents=load_json(model.dependents_json, []),
    )


def execution_to_model(execution: TaskExecution) -> TaskExecutionModel:
    """
    Convert a TaskExecution dataclass to a TaskExecutionModel SQLModel instance.

    The idempotency key is derived from the execution status.
    """
    return TaskExecutionModel(
        execution_id=execution.execution_id,
        task_id=execution.task_id,
        data_time=execution.data_time,
        status=str(execution.status),
        execution_kind=str(execution.execution_kind),
        system_params_json=dump_json(execution.system_params or {}),
        custom_params_json=dump_json(execution.custom_params or {}),
        queue=execution.queue,
        run_dependents=execution.run_dependents,
        retry_count=execution.retry_count,
        result_json=dump_json(execution.result) if execution.result is not None else None,
        error_message=execution.error_message,
        started_at=as_utc(execution.started_at),
        finished_at=as_utc(execution.finished_at),
        duration_seconds=execution.duration_seconds,
        created_at=as_utc(execution.created_at),
        idempotency_key=execution.idempotency_key,
    )


def model_to_execution(model: TaskExecutionModel) -> TaskExecution:
    return TaskExecution(
        execution_id=model.execution_id,
        task_id=model.task_id,
        data_time=model.data_time,
        status=model.status,
        execution_kind=model.execution_kind,
        system_params=load_json(model.system_params_json, {}),
        custom_params=load_json(model.custom_params_json, {}),
        queue=model.queue,
        run_dependents=model.run_dependents,
        retry_count=model.retry_count,
        result=load_json(model.result_json),
        error_message=model.error_message,
        started_at=as_utc(model.started_at),
        finished_at=as_utc(model.finished_at),
        duration_seconds=model.duration_seconds,
        created_at=as_utc(model.created_at),
    )


def rule_to_model(rule: AutomationRule) -> AutomationRuleModel:
    return AutomationRuleModel(
        rule_id=rule.rule_id,
        project_id=rule.project_id,
        name=rule.name,
        time_granularity=str(rule.time_granularity),
        time_type=str(rule.time_type),
        time_range=rule.time_range,
        time_range_config_json=dump_json(rule.time_range_config) if rule.time_range_config is not None else None,
        condition_group_json=dump_json(rule.condition_group or {}),
        action=str(rule.action),
        action_value=rule.action_value,
        utc_offset=rule.utc_offset,
        enabled=rule.enabled,
    )


def model_to_rule(model: AutomationRuleModel) -> AutomationRule:
    return AutomationRule(
        rule_id=model.rule_id,
        project_id=model.project_id,
        name=model.name,
        time_granularity=model.time_granularity,
        time_type=model.time_type,
        time_range=model.time_range,
        time_range_config=load_json(model.time_range_config_json),
        condition_group=load_json(model.condition_group_json, {}),
        action=model.action,
        action_value=model.action_value,
        utc_offset=model.utc_offset,
        enabled=model.enabled,
    )


def log_to_model(log: AutomationLog) -> AutomationLogModel:
    return AutomationLogModel(
        log_id=log.log_id,
        rule_id=log.rule_id,
        project_id=log.project_id,
        status=str(log.status),
        dimensions_json=dump_json(log.dimensions or {}),
        remark_json=dump_json(log.remark or {}),
        created_at=as_utc(log.created_at),
    )


def model_to_log(model: AutomationLogModel) -> AutomationLog:
    return AutomationLog(
        log_id=model.log_id,
        rule_id=model.rule_id,
        project_id=model.project_id,
        status=model.status,
        dimensions=load_json(model.dimensions_json, {}),
        remark=load_json(model.remark_json, {}),
        created_at=as_utc(model.created_at),
    )
