"""
Pytest configuration for rule tests.

Provides a temporary SQLite metrics database holding the wide metrics
table, a row writer filling unspecified columns, and the engine store.
"""
from datetime import date
from typing import Any, Dict, List

import pytest
from sqlalchemy import Float, create_engine, insert

from adflow.domain.models import ActionCommand, ActionOutcome
from adflow.infra.rules.metrics import ADS_MERGE_DATA
from adflow.infra.store import SQLStore

BASE_ROW = {
    "date": date(2024, 5, 1),
    "hour": 0,
    "platform": "facebook",
    "project_id": 1,
    "ads_account_id": "act-1",
    "campaign_id": "c-1",
    "campaign_name": "spring sale",
    "adset_id": "s-1",
    "adset_name": "lookalike",
    "os_name": "ios",
}


class RecordingDispatcher:
    def __init__(self, fail_ads=()):
        self.commands: List[ActionCommand] = []
        self.fail_ads = set(fail_ads)

    def apply_action(self, command: ActionCommand) -> ActionOutcome:
        self.commands.append(command)
        if command.entity.ad_id in self.fail_ads:
            return ActionOutcome(success=False, message="rejected by platform")
        return ActionOutcome(success=True)


@pytest.fixture
def store(tmp_path):
    store = SQLStore(f"sqlite:///{tmp_path / 'test_rules_store.db'}")
    store.open()
    yield store
    store.close()


@pytest.fixture
def metrics_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'metrics.db'}")
    ADS_MERGE_DATA.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def add_rows(metrics_engine):
    """Insert metric rows; each row is BASE_ROW overridden by the given values."""

    def _add(*rows: Dict[str, Any]) -> None:
        blank = {
            column.name: 0.0 if isinstance(column.type, Float) else None
            for column in ADS_MERGE_DATA.columns
        }
        with metrics_engine.begin() as connection:
            connection.execute(insert(ADS_MERGE_DATA), [{**blank, **BASE_ROW, **row} for row in rows])

    return _add


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()
