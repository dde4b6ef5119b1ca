"""
Pytest configuration and DRY test utilities for the flow engine.

This module provides a registry of scripted nodes, flow version builders
and assertion helpers for declarative executor testing.
"""
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from adflow.infra.flow import DagExecutor, FlowReport, FlowVersion, NodeKind, NodeRegistry, NodeState
from adflow.infra.flow.nodes.base import BaseNode


# ============================================================
#                   SCRIPTED NODE
# ============================================================

class ScriptedNode(BaseNode):
    """
    Node whose behaviour is driven by its config.

    Config keys:
        emit: Mapping returned as the node output
        raise: Error message to raise instead
        echo: When true, return the merged inputs
        returns: Value returned unchanged, mapping or not
    """

    def perform(self, config: Dict[str, Any], merged_inputs: Dict[str, Any]) -> Dict[str, Any]:
        self.context.services["calls"].append((self.node_id, dict(merged_inputs)))
        if config.get("raise"):
            raise ValueError(config["raise"])
        if config.get("echo"):
            return dict(merged_inputs)
        if "returns" in config:
            return config["returns"]
        return dict(config.get("emit") or {})


class AsyncScriptedNode(ScriptedNode):
    async def perform(self, config: Dict[str, Any], merged_inputs: Dict[str, Any]) -> Dict[str, Any]:
        return super().perform(config, merged_inputs)


# ============================================================
#                   FIXTURES
# ============================================================

@pytest.fixture
def calls() -> List[Tuple[str, Dict[str, Any]]]:
    """Ordered record of (node_id, merged_inputs) for every perform call."""
    return []


@pytest.fixture
def registry() -> NodeRegistry:
    """Registry mapping the built-in kinds to scripted nodes."""
    registry = NodeRegistry()
    registry.register(NodeKind.EXECUTE_SQL, ScriptedNode)
    registry.register(NodeKind.FILE_TRANSFER, AsyncScriptedNode)
    return registry


@pytest.fixture
def executor(registry, calls) -> DagExecutor:
    return DagExecutor(registry, services={"calls": calls})


# ============================================================
#                   BUILDERS (DRY)
# ============================================================

def node(node_id: str, kind: str = NodeKind.EXECUTE_SQL, **config: Any) -> Dict[str, Any]:
    """
    Factory: Raw node entry in editor configuration shape.

    Example:
        node("a", emit={"x": 1})
        node("b", raise_="boom")
    """
    if "raise_" in config:
        config["raise"] = config.pop("raise_")
    return {"id": node_id, "data": {"node_type": str(kind), "label": node_id.upper(), "config": config}}


def build_version(
    nodes: Sequence[Dict[str, Any]],
    edges: Sequence[Tuple[str, str]] = (),
    flow_id: str = "flow-test",
    version: int = 1,
) -> FlowVersion:
    """Build a FlowVersion from raw nodes and (source, target) pairs."""
    return FlowVersion.from_config(
        flow_id,
        version,
        {"nodes": list(nodes), "edges": [{"source": s, "target": t} for s, t in edges]},
    )


# ============================================================
#                   ASSERTIONS
# ============================================================

def assert_node_completed(report: FlowReport, node_id: str, expected: Optional[Dict[str, Any]] = None) -> None:
    run = report.nodes[node_id]
    assert run.state == NodeState.COMPLETED, f"{node_id} should be completed, got {run.state} ({run.error})"
    assert "duration" in run.result
    if expected is not None:
        result = {k: v for k, v in run.result.items() if k != "duration"}
        assert result == expected


def assert_node_failed(report: FlowReport, node_id: str, error: Optional[str] = None) -> None:
    run = report.nodes[node_id]
    assert run.state == NodeState.FAILED, f"{node_id} should be failed, got {run.state}"
    if error is not None:
        assert run.error == error


def called_ids(calls: List[Tuple[str, Dict[str, Any]]]) -> List[str]:
    return [node_id for node_id, _ in calls]
