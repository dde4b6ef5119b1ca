# adflow/api/tasks_api.py
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from adflow.api.dependencies import get_runtime, http_error
from adflow.api.schemas import ExecuteRequest, ExecutionResponse, TaskResponse
from adflow.application.runtime import Runtime
from adflow.infra.errors import NotFoundError
from adflow.infra.scheduler.models import ExecutionKind

task_router = APIRouter(prefix="/tasks", tags=["Tasks"])


@task_router.post("/{task_id}/activate", summary="Activate a task", response_model=TaskResponse)
async def activate(task_id: str, runtime: Runtime = Depends(get_runtime)):
    """
    Activate a task and install its timer.

    One-off tasks are queued for their effective time (or right away),
    periodic tasks get a recurring schedule. Dependent tasks cannot be
    activated, they run when their dependencies complete.
    """
    try:
        task = runtime.store.load_task(task_id)
        return TaskResponse.from_task(runtime.scheduler.activate(task))
    except (NotFoundError, ValueError) as e:
        raise http_error(e) from e


@task_router.post("/{task_id}/deactivate", summary="Deactivate a task", response_model=TaskResponse)
async def deactivate(task_id: str, runtime: Runtime = Depends(get_runtime)):
    try:
        task = runtime.store.load_task(task_id)
    except NotFoundError as e:
        raise http_error(e) from e
    return TaskResponse.from_task(runtime.scheduler.deactivate(task))


@task_router.post("/{task_id}/execute", summary="Run a task now", response_model=ExecutionResponse)
async def execute(task_id: str, request: Optional[ExecuteRequest] = None, runtime: Runtime = Depends(get_runtime)):
    """
    Create a manual execution of a task and queue it for immediate processing.

    Raises:
        HTTPException: 404 for an unknown task, 409 when an execution for the
            same data-time is already pending or running, 400 for a malformed data-time
    """
    request = request or ExecuteRequest()
    try:
        task = runtime.store.load_task(task_id)
        execution = runtime.scheduler.enqueue_now(
            task,
            data_time=request.data_time,
            kind=ExecutionKind.MANUAL,
            run_dependents=request.run_dependents,
        )
    except (NotFoundError, ValueError) as e:
        raise http_error(e) from e
    return ExecutionResponse.from_execution(execution)


@task_router.get("/{task_id}/stats", summary="Execution statistics of a task")
async def stats(task_id: str, runtime: Runtime = Depends(get_runtime)) -> Dict[str, Any]:
    try:
        runtime.store.load_task(task_id)
    except NotFoundError as e:
        raise http_error(e) from e
    return runtime.scheduler.execution_stats(task_id)
