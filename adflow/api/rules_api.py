# adflow/api/rules_api.py
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError

from adflow.api.dependencies import get_runtime, http_error
from adflow.api.schemas import RuleCheckResponse
from adflow.application.runtime import Runtime
from adflow.infra.errors import NotFoundError, RuleCompileError

rule_router = APIRouter(prefix="/rules", tags=["Rules"])


@rule_router.post("/{rule_id}/check", summary="Check a rule now", response_model=RuleCheckResponse)
def check(rule_id: str, runtime: Runtime = Depends(get_runtime)):
    """
    Evaluate a rule against the metrics table and dispatch its action to every match.

    Runs in the threadpool since the metrics query is blocking.
    """
    try:
        rule = runtime.store.load_rule(rule_id)
        matches = runtime.evaluator.check(rule)
    except (NotFoundError, RuleCompileError) as e:
        raise http_error(e) from e
    except SQLAlchemyError as e:
        raise HTTPException(status_code=502, detail=f"Metrics query failed: {e}") from e
    return RuleCheckResponse.from_matches(rule_id, matches)
