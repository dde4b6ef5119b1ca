# adflow/api/schemas.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from adflow.domain.models import AdEntity
from adflow.infra.scheduler.models import Task, TaskExecution


class ExecuteRequest(BaseModel):
    """Request schema for a manual run of a task."""
    data_time: Optional[str] = Field(
        default=None,
        description="Data-time to run for ('YYYY-MM-DD' or 'YYYY-MM-DD HH'); the current one when omitted",
    )
    run_dependents: bool = Field(default=True, description="Whether completion should trigger dependent tasks")


class TaskResponse(BaseModel):
    task_id: str
    flow_id: str
    name: str
    task_type: str
    period_type: Optional[str] = None
    status: str

    @classmethod
    def from_task(cls, task: Task) -> TaskResponse:
        return cls(
            task_id=task.task_id,
            flow_id=task.flow_id,
            name=task.name,
            task_type=str(task.task_type),
            period_type=str(task.period_type) if task.period_type else None,
            status=str(task.status),
        )


class ExecutionResponse(BaseModel):
    execution_id: str
    task_id: str
    data_time: str
    status: str
    execution_kind: str
    run_dependents: bool
    retry_count: int
    params: Dict[str, Any]
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    @classmethod
    def from_execution(cls, execution: TaskExecution) -> ExecutionResponse:
        return cls(
            execution_id=execution.execution_id,
            task_id=execution.task_id,
            data_time=execution.data_time,
            status=str(execution.status),
            execution_kind=str(execution.execution_kind),
            run_dependents=execution.run_dependents,
            retry_count=execution.retry_count,
            params=execution.params,
            result=execution.result,
            error_message=execution.error_message,
            created_at=execution.created_at,
            started_at=execution.started_at,
            finished_at=execution.finished_at,
            duration_seconds=execution.duration_seconds,
        )


class RuleCheckResponse(BaseModel):
    rule_id: str
    matched: int = Field(..., description="Number of ads matching the rule")
    ads: List[Dict[str, Any]] = Field(default_factory=list, description="Dimension tuples of the matched ads")

    @classmethod
    def from_matches(cls, rule_id: str, matches: List[AdEntity]) -> RuleCheckResponse:
        return cls(rule_id=rule_id, matched=len(matches), ads=[m.to_dict() for m in matches])
