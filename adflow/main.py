# adflow/main.py
"""
FastAPI application exposing the task, execution and rule operations.

Run with ``uvicorn adflow.main:app``.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from adflow.api import api_router
from adflow.application.runtime import Runtime, build_runtime
from adflow.config import configure_logging, get_settings

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """
    Build the application around a runtime (assembled from settings by default).

    The lifespan opens the store and starts the scheduler on startup and
    shuts both down on exit.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.runtime = runtime or build_runtime()
        app.state.runtime.start()
        try:
            yield
        finally:
            app.state.runtime.stop()

    app = FastAPI(
        title="adflow",
        description="Flow execution, task scheduling and ad automation rules",
        lifespan=lifespan,
    )
    app.include_router(api_router)
    return app


configure_logging(get_settings())
logging.getLogger("apscheduler").setLevel(logging.WARNING)

app = create_app()
