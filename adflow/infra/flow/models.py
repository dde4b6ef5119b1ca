# adflow/infra/flow/models.py
"""
Core data models and types for the flow engine.

This module contains the dataclasses and enums describing flow definitions
(flows, versions, nodes, edges), node lifecycle states and the report a
flow run produces.
"""
from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from adflow.infra.flow.log_sink import LogSink


# ============================================================
#                   NODE KINDS & STATES
# ============================================================
class NodeKind(enum.StrEnum):
    """Closed set of node kinds a flow version may reference."""
    FLOW_PARAMS = "flow_params"
    EXECUTE_SQL = "execute_sql"
    FILE_TRANSFER = "file_transfer"


class NodeState(enum.StrEnum):
    """Lifecycle states of a node inside one flow run."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def is_terminal(cls, state: str) -> bool:
        return state in {cls.COMPLETED, cls.FAILED}


class RunStatus(enum.StrEnum):
    """Overall outcome of a flow run."""
    COMPLETED = "completed"
    FAILED = "failed"


PREDECESSOR_FAILED = "predecessor execution failed"


# ============================================================
#                   FLOW DEFINITIONS
# ============================================================
@dataclass
class NodeSpec:
    """
    One node of a flow version.

    Attributes:
        id: Identifier, unique within the flow version
        kind: Node kind string as stored in the flow configuration
        config: Kind-specific configuration
        label: Free-form display label
    """
    id: str
    kind: str
    config: Dict[str, Any] = field(default_factory=dict)
    label: Optional[str] = None

    @property
    def is_parameter_declaration(self) -> bool:
        return self.kind == NodeKind.FLOW_PARAMS


@dataclass(frozen=True)
class Edge:
    """Directed dependency: ``target`` runs after ``source``."""
    source: str
    target: str


@dataclass
class FlowVersion:
    """
    Immutable snapshot of a flow's graph.

    Versions are append-only: editing a flow creates a new version and
    moves the flow's current pointer, older versions stay readable.
    """
    flow_id: str
    version: int
    nodes: List[NodeSpec] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    created_at: Optional[datetime] = None

    @classmethod
    def from_config(cls, flow_id: str, version: int, config: Dict[str, Any]) -> FlowVersion:
        """
        Build a version from the stored editor configuration.

        The configuration has the shape
        ``{"nodes": [{"id", "data": {"node_type", "label", "config"}}], "edges": [{"source", "target"}]}``.
        """
        nodes = []
        for raw in config.get("nodes") or []:
            data = raw.get("data") or {}
            nodes.append(NodeSpec(
                id=str(raw["id"]),
                kind=str(data.get("node_type") or raw.get("kind") or ""),
                config=dict(data.get("config") or {}),
                label=data.get("label"),
            ))
        edges = [
            Edge(source=str(raw["source"]), target=str(raw["target"]))
            for raw in config.get("edges") or []
            if raw.get("source") and raw.get("target")
        ]
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError(f"Duplicate node id in flow '{flow_id}' version {version}")
        return cls(flow_id=flow_id, version=version, nodes=nodes, edges=edges)

    def to_config(self) -> Dict[str, Any]:
        """Serialize back to the editor configuration shape."""
        return {
            "nodes": [
                {
                    "id": node.id,
                    "data": {
                        "node_type": node.kind,
                        "label": node.label,
                        "config": copy.deepcopy(node.config),
                    },
                }
                for node in self.nodes
            ],
            "edges": [{"source": e.source, "target": e.target} for e in self.edges],
        }


@dataclass
class Flow:
    """A named pipeline with a pointer to its current version."""
    flow_id: str
    name: str
    description: Optional[str] = None
    current_version: Optional[int] = None


# ============================================================
#                   RUN CONTEXT
# ============================================================
@dataclass
class NodeContext:
    """
    Per-run context handed to every node.

    Attributes:
        params: Merged system and custom parameters of the run
        log_sink: Structured log sink of the run
        services: Collaborators available to nodes (resolvers, client factories, settings)
    """
    params: Dict[str, Any]
    log_sink: LogSink
    services: Dict[str, Any] = field(default_factory=dict)


# ============================================================
#                   RUN REPORT
# ============================================================
@dataclass
class NodeRun:
    """Terminal (or last reached) state of one node in a flow run."""
    node_id: str
    kind: str
    label: Optional[str] = None
    state: str = NodeState.PENDING
    inputs: Dict[str, Any] = field(default_factory=dict)
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "perform_status": str(self.state),
            "perform_result": self.result,
            "perform_error": self.error,
            "begin_time": self.start_date.isoformat() if self.start_date else None,
            "end_time": self.end_date.isoformat() if self.end_date else None,
        }


@dataclass
class FlowReport:
    """
    Outcome of one flow run.

    Attributes:
        status: RunStatus.COMPLETED or RunStatus.FAILED
        nodes: Map of node id to its run state
        snapshot: Flow version configuration with node states merged in
        logs: Flat list of structured log entries collected during the run
        error: Message of the error that aborted the run, if any
    """
    status: str
    nodes: Dict[str, NodeRun] = field(default_factory=dict)
    snapshot: Dict[str, Any] = field(default_factory=dict)
    logs: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": str(self.status),
            "error": self.error,
            "flow_config": self.snapshot,
            "logs": self.logs,
        }
