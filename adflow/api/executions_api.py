# adflow/api/executions_api.py
from fastapi import APIRouter, Depends

from adflow.api.dependencies import get_runtime, http_error
from adflow.api.schemas import ExecutionResponse
from adflow.application.runtime import Runtime
from adflow.infra.errors import InvalidTransition, NotFoundError

execution_router = APIRouter(prefix="/executions", tags=["Executions"])


@execution_router.get("/{execution_id}", summary="Get an execution", response_model=ExecutionResponse)
async def get_execution(execution_id: str, runtime: Runtime = Depends(get_runtime)):
    try:
        return ExecutionResponse.from_execution(runtime.store.load_execution(execution_id))
    except NotFoundError as e:
        raise http_error(e) from e


@execution_router.post("/{execution_id}/cancel", summary="Cancel a pending execution", response_model=ExecutionResponse)
async def cancel(execution_id: str, runtime: Runtime = Depends(get_runtime)):
    try:
        return ExecutionResponse.from_execution(runtime.scheduler.cancel(execution_id))
    except (NotFoundError, InvalidTransition) as e:
        raise http_error(e) from e


@execution_router.post("/{execution_id}/retry", summary="Retry a failed execution", response_model=ExecutionResponse)
async def retry(execution_id: str, runtime: Runtime = Depends(get_runtime)):
    """
    Retry a failed execution.

    The failed execution is kept and a new pending execution with the same
    task, data-time and parameters is queued; the response describes the new one.
    """
    try:
        return ExecutionResponse.from_execution(runtime.scheduler.retry(execution_id))
    except (NotFoundError, ValueError) as e:
        raise http_error(e) from e
