# adflow/infra/flow/executor.py
"""
Execution engine for flow versions.

Builds node instances through the node registry, orders them by their
dependencies and runs them one after another, recording every node's
state in the returned report.
"""
from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Optional

from adflow.infra.flow.graph import FlowGraph
from adflow.infra.flow.log_sink import LogSink
from adflow.infra.flow.models import (
    PREDECESSOR_FAILED,
    FlowReport,
    FlowVersion,
    NodeContext,
    NodeState,
    RunStatus,
)
from adflow.infra.flow.nodes.base import BaseNode
from adflow.infra.flow.registry import NodeRegistry, default_registry

logger = logging.getLogger(__name__)


class DagExecutor:
    """
    Runs a flow version as a dependency graph.

    Nodes run strictly sequentially in topological order. A failing node
    makes the run fail: every node reachable from it is marked failed
    without running, nodes on unrelated branches still run.
    """

    def __init__(self, registry: Optional[NodeRegistry] = None, services: Optional[Dict[str, Any]] = None):
        """
        Initialize the executor.

        Args:
            registry: Node registry used to build node instances
            services: Collaborators exposed to nodes through their context
        """
        self.registry = registry or default_registry()
        self.services = services or {}

    async def execute(
        self,
        flow_version: FlowVersion,
        global_params: Optional[Dict[str, Any]] = None,
        log_sink: Optional[LogSink] = None,
    ) -> FlowReport:
        """
        Run every executable node of ``flow_version``.

        Args:
            flow_version: The flow version to run
            global_params: Parameters of the run, visible to every node
            log_sink: Sink collecting the run's log entries

        Returns:
            The run report

        Raises:
            NodeKindNotFound: If a node references an unknown kind (before any node runs)
            CycleDetectedError: If the graph has a cycle (before any node runs)
        """
        sink = log_sink or LogSink()
        context = NodeContext(params=dict(global_params or {}), log_sink=sink, services=self.services)
        flow_ref = f"flow_id={flow_version.flow_id}, version={flow_version.version}"

        executable = [spec for spec in flow_version.nodes if not spec.is_parameter_declaration]
        sink.info(
            f"Starting flow: {flow_ref}, nodes={len(flow_version.nodes)}, "
            f"executable={len(executable)}, edges={len(flow_version.edges)}"
        )
        if not executable:
            sink.info(f"Flow has no executable nodes: {flow_ref}")
            return FlowReport(
                status=RunStatus.COMPLETED,
                snapshot=flow_version.to_config(),
                logs=sink.to_list(),
            )

        nodes: Dict[str, BaseNode] = {}
        for spec in executable:
            factory = self.registry.resolve(spec.kind)
            nodes[spec.id] = factory(spec, context)

        graph = FlowGraph.build(executable, flow_version.edges)
        order = graph.run_order()
        logger.debug(f"Run order: {flow_ref}, order={order}")

        first_error: Optional[str] = None
        for node_id in order:
            node = nodes[node_id]
            # already failed by an upstream node
            if NodeState.is_terminal(node.state):
                continue

            for predecessor_id in graph.predecessors[node_id]:
                node.add_input(predecessor_id, nodes[predecessor_id].output)

            sink.info(f"Running node: node_id={node_id}, kind={node.spec.kind}, label={node.label}")
            try:
                await node.process()
            except Exception as e:
                sink.error(f"Node failed: node_id={node_id}, error={e.__class__.__name__}: {node.error}")
                if first_error is None:
                    first_error = node.error
                for downstream_id in graph.downstream_of(node_id):
                    downstream = nodes[downstream_id]
                    if not NodeState.is_terminal(downstream.state):
                        downstream.mark_failed(PREDECESSOR_FAILED)
                        sink.warning(f"Skipping node after failed predecessor: node_id={downstream_id}")
                continue
            sink.info(f"Node completed: node_id={node_id}, duration={node.result.get('duration')}s")

        status = RunStatus.FAILED if first_error is not None else RunStatus.COMPLETED
        if status == RunStatus.FAILED:
            sink.error(f"Flow failed: {flow_ref}, error={first_error}")
        else:
            sink.info(f"Flow completed: {flow_ref}")

        runs = {node_id: node.to_run() for node_id, node in nodes.items()}
        return FlowReport(
            status=status,
            nodes=runs,
            snapshot=self._snapshot(flow_version, runs),
            logs=sink.to_list(),
            error=first_error,
        )

    @staticmethod
    def _snapshot(flow_version: FlowVersion, runs: Dict[str, Any]) -> Dict[str, Any]:
        """Serialize the flow version with each node's run state merged into its data."""
        config = flow_version.to_config()
        raw_nodes: List[Dict[str, Any]] = config["nodes"]
        for raw in raw_nodes:
            run = runs.get(raw["id"])
            if run is not None:
                raw["data"].update(copy.deepcopy(run.to_dict()))
        return config
