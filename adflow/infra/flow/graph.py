# adflow/infra/flow/graph.py
"""
Dependency graph of a flow version.

Builds predecessor/successor lists from the edge list, detects cycles and
computes the sequential run order.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from adflow.infra.errors import CycleDetectedError
from adflow.infra.flow.models import Edge, NodeSpec

logger = logging.getLogger(__name__)

_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass
class FlowGraph:
    """
    Adjacency of the executable nodes of a flow version.

    Attributes:
        node_ids: Node ids in declaration order
        predecessors: Map of node id to its direct predecessors, in edge declaration order
        successors: Map of node id to its direct successors, in edge declaration order
    """
    node_ids: List[str]
    predecessors: Dict[str, List[str]] = field(default_factory=dict)
    successors: Dict[str, List[str]] = field(default_factory=dict)

    @classmethod
    def build(cls, nodes: Iterable[NodeSpec], edges: Iterable[Edge]) -> FlowGraph:
        """
        Build the graph, ignoring edges whose endpoints are not among ``nodes``.

        Args:
            nodes: Executable nodes of the flow version
            edges: Edges of the flow version

        Returns:
            The dependency graph
        """
        node_ids = [node.id for node in nodes]
        graph = cls(
            node_ids=node_ids,
            predecessors={node_id: [] for node_id in node_ids},
            successors={node_id: [] for node_id in node_ids},
        )
        for edge in edges:
            if edge.source not in graph.predecessors or edge.target not in graph.predecessors:
                logger.debug(f"Ignoring edge with unknown endpoint: {edge.source} -> {edge.target}")
                continue
            if edge.source in graph.predecessors[edge.target]:
                continue
            graph.predecessors[edge.target].append(edge.source)
            graph.successors[edge.source].append(edge.target)
        return graph

    @property
    def has_edges(self) -> bool:
        return any(self.predecessors.values())

    def find_cycle(self) -> Optional[List[str]]:
        """
        Look for a cycle with white/gray/black depth-first colouring.

        Returns:
            The node ids forming the cycle (first node repeated at the end), or None
        """
        color = {node_id: _WHITE for node_id in self.node_ids}
        stack: List[str] = []

        def visit(node_id: str) -> Optional[List[str]]:
            color[node_id] = _GRAY
            stack.append(node_id)
            for dep in self.predecessors[node_id]:
                if color[dep] == _GRAY:
                    cycle = stack[stack.index(dep):] + [dep]
                    # stack follows dependencies backwards, report in edge direction
                    return list(reversed(cycle))
                if color[dep] == _WHITE:
                    found = visit(dep)
                    if found:
                        return found
            stack.pop()
            color[node_id] = _BLACK
            return None

        for node_id in self.node_ids:
            if color[node_id] == _WHITE:
                found = visit(node_id)
                if found:
                    return found
        return None

    def run_order(self) -> List[str]:
        """
        Compute the sequential run order.

        Depth-first postorder over dependencies, starting from nodes in
        declaration order: a node is appended only after all of its
        transitive dependencies. Without edges this is declaration order.

        Raises:
            CycleDetectedError: If the graph is not acyclic
        """
        cycle = self.find_cycle()
        if cycle:
            raise CycleDetectedError(cycle)

        if not self.has_edges:
            return list(self.node_ids)

        visited: Set[str] = set()
        order: List[str] = []

        def visit(node_id: str) -> None:
            if node_id in visited:
                return
            visited.add(node_id)
            for dep in self.predecessors[node_id]:
                visit(dep)
            order.append(node_id)

        for node_id in self.node_ids:
            visit(node_id)
        return order

    def downstream_of(self, root_id: str) -> List[str]:
        """
        Return every node transitively reachable from ``root_id``.

        Args:
            root_id: ID of the root node

        Returns:
            Reachable node ids in breadth-first order, excluding the root
        """
        downstream = []
        visited = {root_id}
        queue = [root_id]

        while queue:
            current = queue.pop(0)
            for child in self.successors.get(current, []):
                if child not in visited:
                    visited.add(child)
                    downstream.append(child)
                    queue.append(child)

        return downstream
