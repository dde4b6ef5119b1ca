# adflow/infra/flow/nodes/base.py
"""
Node contract shared by every node kind.

A node owns its lifecycle state (pending -> processing -> completed|failed),
the outputs it received from its direct predecessors and the result or
error it produced.
"""
from __future__ import annotations

import inspect
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from adflow.infra.flow.models import NodeContext, NodeRun, NodeSpec, NodeState

logger = logging.getLogger(__name__)


class BaseNode(ABC):
    """
    Base class for node kinds.

    Subclasses implement ``perform``; it may be a plain function or a
    coroutine function and returns the node's output mapping.
    """

    def __init__(self, spec: NodeSpec, context: NodeContext):
        """
        Initialize the node.

        Args:
            spec: Node definition from the flow version
            context: Run context shared by all nodes of the run
        """
        self.spec = spec
        self.context = context
        self.log = context.log_sink.child(spec.id)
        self.state: str = NodeState.PENDING
        self.inputs: Dict[str, Any] = {}
        self.output: Dict[str, Any] = {}
        self.result: Dict[str, Any] = {}
        self.error: Optional[str] = None
        self.start_date: Optional[datetime] = None
        self.end_date: Optional[datetime] = None

    @property
    def node_id(self) -> str:
        return self.spec.id

    @property
    def config(self) -> Dict[str, Any]:
        return self.spec.config

    @property
    def label(self) -> str:
        return self.spec.label or self.spec.id

    @abstractmethod
    def perform(self, config: Dict[str, Any], merged_inputs: Dict[str, Any]) -> Any:
        """
        Do the node's work.

        Args:
            config: Kind-specific node configuration
            merged_inputs: Union of the direct predecessors' outputs

        Returns:
            The node's output mapping (or an awaitable resolving to it)
        """

    # ============================================================
    #                   INPUTS
    # ============================================================
    def add_input(self, source_id: str, output: Any) -> None:
        self.inputs[source_id] = output

    def merged_inputs(self) -> Dict[str, Any]:
        """
        Merge the outputs received from direct predecessors.

        A single predecessor's output is used as is. Several outputs are
        merged shallowly in predecessor order, the later predecessor wins
        on a key collision. Outputs that are not mappings are stored under
        the predecessor id.
        """
        if not self.inputs:
            return {}
        if len(self.inputs) == 1:
            only = next(iter(self.inputs.values()))
            return dict(only) if isinstance(only, dict) else {next(iter(self.inputs)): only}

        merged: Dict[str, Any] = {}
        for source_id, output in self.inputs.items():
            if isinstance(output, dict):
                merged.update(output)
            else:
                merged[source_id] = output
        return merged

    # ============================================================
    #                   LIFECYCLE
    # ============================================================
    async def process(self) -> Dict[str, Any]:
        """
        Run ``perform`` and record the outcome.

        Raises:
            Exception: Whatever ``perform`` raised, after the node is marked failed
        """
        self.start_date = datetime.now(timezone.utc)
        started = time.perf_counter()
        self.state = NodeState.PROCESSING
        try:
            output = self.perform(self.config, self.merged_inputs())
            if inspect.isawaitable(output):
                output = await output
            if output is not None and not isinstance(output, Mapping):
                raise TypeError(f"Node output must be a mapping, got {type(output).__name__}")
            self.output = dict(output or {})
        except Exception as e:
            self.state = NodeState.FAILED
            self.error = str(e) or e.__class__.__name__
            logger.debug(f"Node failed: node_id={self.node_id}", exc_info=True)
            raise
        finally:
            self.end_date = datetime.now(timezone.utc)

        self.result = {**self.output, "duration": round(time.perf_counter() - started, 3)}
        self.state = NodeState.COMPLETED
        return self.output

    def mark_failed(self, error: str) -> None:
        self.state = NodeState.FAILED
        self.error = error

    def to_run(self) -> NodeRun:
        return NodeRun(
            node_id=self.node_id,
            kind=self.spec.kind,
            label=self.spec.label,
            state=self.state,
            inputs=dict(self.inputs),
            result=self.result,
            error=self.error,
            start_date=self.start_date,
            end_date=self.end_date,
        )
