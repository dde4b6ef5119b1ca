"""
Flow engine: runs a flow version as a dependency graph of typed nodes.

Main exports:
- DagExecutor: Runs a flow version and returns a FlowReport
- NodeRegistry / default_registry: Node kind -> factory mapping
- FlowVersion, NodeSpec, Edge: Flow definitions
- LogSink: Structured per-run log sink
"""

from adflow.infra.flow.executor import DagExecutor
from adflow.infra.flow.log_sink import LogSink
from adflow.infra.flow.models import (
    Edge,
    Flow,
    FlowReport,
    FlowVersion,
    NodeKind,
    NodeRun,
    NodeSpec,
    NodeState,
    RunStatus,
)
from adflow.infra.flow.registry import NodeRegistry, default_registry

__all__ = [
    # Engine
    "DagExecutor",
    "NodeRegistry",
    "default_registry",
    "LogSink",
    # Definitions
    "Flow",
    "FlowVersion",
    "NodeSpec",
    "Edge",
    "NodeKind",
    # Run state
    "NodeState",
    "RunStatus",
    "NodeRun",
    "FlowReport",
]
