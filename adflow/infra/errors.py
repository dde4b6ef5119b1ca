# adflow/infra/errors.py
"""
Exception hierarchy shared by the flow engine, the scheduler and the rule checker.

Lookups of missing rows raise ``KeyError`` subclasses so stores behave like
mappings; state-machine and configuration problems raise ``ValueError``
subclasses.
"""
from __future__ import annotations


class AdflowError(Exception):
    """Base class for all engine errors."""


# ============================================================
#                   LOOKUP ERRORS
# ============================================================
class NotFoundError(AdflowError, KeyError):
    """A referenced record does not exist."""

    def __str__(self) -> str:
        # KeyError quotes its argument, keep the plain message instead
        return str(self.args[0]) if self.args else ""


class NodeKindNotFound(NotFoundError):
    """No factory is registered for a node kind."""


class FlowNotFound(NotFoundError):
    pass


class FlowVersionNotFound(NotFoundError):
    pass


class TaskNotFound(NotFoundError):
    pass


class ExecutionNotFound(NotFoundError):
    pass


class RuleNotFound(NotFoundError):
    pass


# ============================================================
#                   VALIDATION / STATE ERRORS
# ============================================================
class NodeConfigError(AdflowError, ValueError):
    """A node's configuration is incomplete or invalid."""


class CycleDetectedError(AdflowError, ValueError):
    """The flow graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Cycle detected in flow graph: {' -> '.join(cycle)}")


class InvalidTransition(AdflowError, ValueError):
    """An operation is not allowed in the current state."""


class DuplicateExecutionError(AdflowError, ValueError):
    """An active execution already exists for the same task and data-time."""

    def __init__(self, task_id: str, data_time: str):
        self.task_id = task_id
        self.data_time = data_time
        super().__init__(
            f"An execution for task '{task_id}' at data time '{data_time}' is already pending or running"
        )


class RuleCompileError(AdflowError, ValueError):
    """A rule's time window or condition tree cannot be compiled."""


class RemoteTransferError(AdflowError, RuntimeError):
    """A remote file operation failed."""
