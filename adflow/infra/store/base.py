# adflow/infra/store/base.py
from typing import Any, Dict, List, Optional, Protocol

from adflow.infra.flow.models import Flow, FlowVersion
from adflow.infra.rules.models import AutomationLog, AutomationRule
from adflow.infra.scheduler.models import Task, TaskExecution


class Store(Protocol):
    """
    Protocol defining the storage interface for flows, tasks, executions and rules.

    Lookups of missing records raise the matching ``NotFoundError`` subclass.
    """

    def open(self) -> None:
        """Initialize the storage backend."""
        ...

    def close(self) -> None:
        """Close the storage backend and release resources."""
        ...

    # ---------- Flows ----------

    def save_flow(self, flow: Flow) -> None:
        ...

    def load_flow(self, flow_id: str) -> Flow:
        ...

    def add_flow_version(self, flow_id: str, config: Dict[str, Any]) -> FlowVersion:
        """
        Append a new version of the flow graph and make it current.

        Args:
            flow_id: Owning flow
            config: Graph in the ``{"nodes": [...], "edges": [...]}`` shape

        Returns:
            The stored FlowVersion
        """
        ...

    def load_flow_version(self, flow_id: str, version: Optional[int] = None) -> FlowVersion:
        """Load one version of a flow, the current one when ``version`` is None."""
        ...

    def list_flow_versions(self, flow_id: str) -> List[FlowVersion]:
        ...

    # ---------- Tasks ----------

    def save_task(self, task: Task) -> None:
        ...

    def load_task(self, task_id: str) -> Task:
        ...

    def list_dependent_tasks(self, task_id: str) -> List[Task]:
        """Dependent tasks that list ``task_id`` among their dependencies."""
        ...

    def list_active_tasks(self) -> List[Task]:
        """Tasks whose timers should be installed."""
        ...

    # ---------- Executions ----------

    def create_execution(self, execution: TaskExecution) -> None:
        """
        Insert a new execution.

        Raises:
            DuplicateExecutionError: If an active execution holds the same task and data-time
        """
        ...

    def update_execution(self, execution: TaskExecution) -> None:
        ...

    def load_execution(self, execution_id: str) -> TaskExecution:
        ...

    def list_executions(
            self,
            task_id: str,
            data_time: Optional[str] = None,
            status: Optional[str] = None,
    ) -> List[TaskExecution]:
        ...

    def has_completed_execution(self, task_id: str, data_time: str) -> bool:
        ...

    # ---------- Rules ----------

    def save_rule(self, rule: AutomationRule) -> None:
        ...

    def load_rule(self, rule_id: str) -> AutomationRule:
        ...

    def list_enabled_rules(self, project_id: Optional[int] = None) -> List[AutomationRule]:
        """Enabled rules, optionally restricted to one project."""
        ...

    def append_automation_log(self, log: AutomationLog) -> None:
        ...

    def list_automation_logs(self, rule_id: Optional[str] = None) -> List[AutomationLog]:
        ...
