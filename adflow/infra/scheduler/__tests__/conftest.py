"""
Pytest configuration for scheduler tests.

Flows run on the real DAG executor with a recording node registered for the
SQL kind, and the job queue is the in-memory backend driven by the tests.
"""
from typing import Any, Dict, List

import pytest

from adflow.infra.flow import DagExecutor, Flow, NodeKind, NodeRegistry
from adflow.infra.flow.nodes.base import BaseNode
from adflow.infra.scheduler.queue import InMemoryQueue
from adflow.infra.scheduler.scheduler import TaskScheduler
from adflow.infra.store import SQLStore


class RecordingNode(BaseNode):
    """Records the run parameters it sees; fails when its config says so."""

    def perform(self, config: Dict[str, Any], merged_inputs: Dict[str, Any]) -> Dict[str, Any]:
        self.context.services["runs"].append(dict(self.context.params))
        if config.get("raise"):
            raise RuntimeError(config["raise"])
        return {"ok": True}


@pytest.fixture
def store(tmp_path):
    store = SQLStore(f"sqlite:///{tmp_path / 'test_scheduler.db'}")
    store.open()
    yield store
    store.close()


@pytest.fixture
def runs() -> List[Dict[str, Any]]:
    """Parameters of every node run, in order."""
    return []


@pytest.fixture
def queue() -> InMemoryQueue:
    return InMemoryQueue()


@pytest.fixture
def scheduler(store, queue, runs) -> TaskScheduler:
    registry = NodeRegistry()
    registry.register(NodeKind.EXECUTE_SQL, RecordingNode)
    return TaskScheduler(store, queue, DagExecutor(registry=registry, services={"runs": runs}))


@pytest.fixture
def make_flow(store):
    """Create a one-node flow; ``fail`` makes its node raise that message."""

    def _make(flow_id: str = "flow-1", fail: str = None) -> str:
        store.save_flow(Flow(flow_id=flow_id, name=flow_id))
        config = {"raise": fail} if fail else {}
        store.add_flow_version(flow_id, {
            "nodes": [{"id": "work", "data": {"node_type": "execute_sql", "config": config}}],
            "edges": [],
        })
        return flow_id

    return _make
