from fastapi import APIRouter

from adflow.api.executions_api import execution_router
from adflow.api.rules_api import rule_router
from adflow.api.tasks_api import task_router

api_router = APIRouter(prefix="/api")

api_router.include_router(task_router)
api_router.include_router(execution_router)
api_router.include_router(rule_router)
