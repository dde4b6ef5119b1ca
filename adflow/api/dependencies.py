# adflow/api/dependencies.py
from fastapi import HTTPException, Request

from adflow.application.runtime import Runtime
from adflow.infra.errors import DuplicateExecutionError, InvalidTransition, NotFoundError


def get_runtime(request: Request) -> Runtime:
    """Runtime attached to the application by its lifespan."""
    return request.app.state.runtime


def http_error(e: Exception) -> HTTPException:
    """
    Map an engine error to an HTTP error.

    Missing rows are 404, state-machine violations and idempotency clashes
    are 409, any other ValueError (bad cron, malformed data-time, rule that
    does not compile) is 400.
    """
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (InvalidTransition, DuplicateExecutionError)):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))
