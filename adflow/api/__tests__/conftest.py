"""
Pytest configuration for API tests.

The application runs on a runtime built from settings pointing at temporary
SQLite databases, with the in-memory queue standing in for APScheduler.
"""
import pytest
from fastapi.testclient import TestClient

from adflow.application.runtime import build_runtime
from adflow.config import Settings
from adflow.infra.rules.metrics import ADS_MERGE_DATA
from adflow.infra.scheduler.queue import InMemoryQueue
from adflow.main import create_app


@pytest.fixture
def runtime(tmp_path):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'test_api.db'}",
        metrics_database_url=f"sqlite:///{tmp_path / 'test_api_metrics.db'}",
    )
    runtime = build_runtime(settings, queue=InMemoryQueue())
    ADS_MERGE_DATA.metadata.create_all(runtime.metrics_engine)
    return runtime


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as client:
        yield client
