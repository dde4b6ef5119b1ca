# adflow/infra/flow/registry.py
"""
Registry of node factories keyed by ``NodeKind``.

Kind strings read from stored flow configuration are validated against the
``NodeKind`` enum before lookup; they are never used to locate code.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, Iterator

from adflow.infra.errors import NodeKindNotFound
from adflow.infra.flow.models import NodeContext, NodeKind, NodeSpec
from adflow.infra.flow.nodes.base import BaseNode

logger = logging.getLogger(__name__)

NodeFactory = Callable[[NodeSpec, NodeContext], BaseNode]


class NodeRegistry:
    """Maps node kinds to the factories building their nodes."""

    def __init__(self) -> None:
        self._factories: Dict[NodeKind, NodeFactory] = {}

    def register(self, kind: NodeKind | str, factory: NodeFactory) -> None:
        """
        Register (or replace) the factory for a node kind.

        Raises:
            NodeKindNotFound: If ``kind`` is not a known node kind
            ValueError: If ``kind`` is the parameter declaration kind, which never runs
        """
        node_kind = self._validate(kind)
        if node_kind == NodeKind.FLOW_PARAMS:
            raise ValueError(f"Node kind '{node_kind}' is a parameter declaration and cannot be executed")
        if node_kind in self._factories:
            logger.debug(f"Replacing node factory: kind={node_kind}")
        self._factories[node_kind] = factory

    def resolve(self, kind: NodeKind | str) -> NodeFactory:
        """
        Return the factory registered for ``kind``.

        Raises:
            NodeKindNotFound: If the kind is unknown or has no factory
        """
        node_kind = self._validate(kind)
        try:
            return self._factories[node_kind]
        except KeyError:
            raise NodeKindNotFound(f"No node factory registered for kind '{node_kind}'") from None

    def __contains__(self, kind: object) -> bool:
        try:
            return self._validate(kind) in self._factories
        except NodeKindNotFound:
            return False

    def __iter__(self) -> Iterator[NodeKind]:
        return iter(self._factories)

    @staticmethod
    def _validate(kind: object) -> NodeKind:
        try:
            return NodeKind(kind)
        except ValueError:
            raise NodeKindNotFound(f"Unknown node kind '{kind}'") from None


def default_registry() -> NodeRegistry:
    """Build a registry with the built-in node kinds."""
    from adflow.infra.flow.nodes.execute_sql import ExecuteSqlNode
    from adflow.infra.flow.nodes.file_transfer import FileTransferNode

    registry = NodeRegistry()
    registry.register(NodeKind.EXECUTE_SQL, ExecuteSqlNode)
    registry.register(NodeKind.FILE_TRANSFER, FileTransferNode)
    return registry
