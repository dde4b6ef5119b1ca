"""
SQLStore implementation using SQLModel for engine persistence.

This module provides a persistent storage backend using SQLModel/SQLAlchemy
for flows and their versions, tasks, task executions, automation rules and
the automation audit log.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import Engine, func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, col, create_engine, select

from adflow.infra.errors import (
    DuplicateExecutionError,
    ExecutionNotFound,
    FlowNotFound,
    FlowVersionNotFound,
    RuleNotFound,
    TaskNotFound,
)
from adflow.infra.flow.models import Flow, FlowVersion
from adflow.infra.rules.models import AutomationLog, AutomationRule
from adflow.infra.scheduler.models import ExecutionStatus, Task, TaskExecution, TaskStatus, TaskType
from adflow.infra.store.base import Store
from adflow.infra.store.sql_models import (
    AutomationLogModel,
    AutomationRuleModel,
    FlowModel,
    FlowVersionModel,
    TaskExecutionModel,
    TaskModel,
    as_utc,
    dump_json,
    copy_model_fields,
    execution_to_model,
    flow_to_model,
    log_to_model,
    model_to_execution,
    model_to_flow,
    model_to_flow_version,
    model_to_log,
    model_to_rule,
    model_to_task,
    rule_to_model,
    task_to_model,
)

logger = logging.getLogger(__name__)


class SQLStore(Store):

    def __init__(self, connection_string: str = "sqlite:///adflow.db", echo: bool = False):
        self.connection_string = connection_string
        self.echo = echo
        self.engine: Optional[Engine] = None

    # ---------- Lifecycle ----------

    def open(self):
        self.engine = create_engine(
            self.connection_string,
            echo=self.echo,
            connect_args={"check_same_thread": False} if "sqlite" in self.connection_string else {}
        )
        SQLModel.metadata.create_all(self.engine)

    def close(self):
        """Close the database engine and release resources."""
        if self.engine:
            self.engine.dispose()
            self.engine = None

    def _require_engine(self, operation: str) -> Engine:
        if not self.engine:
            raise RuntimeError(f"open() must be called before {operation}()")
        return self.engine

    # ---------- Flows ----------

    def save_flow(self, flow: Flow):
        engine = self._require_engine("save_flow")

        with Session(engine) as session:
            flow_model = flow_to_model(flow)
            existing = session.get(FlowModel, flow.flow_id)
            if existing:
                copy_model_fields(existing, flow_model, exclude_keys={'flow_id'})
            else:
                session.add(flow_model)
            session.commit()

    def load_flow(self, flow_id: str) -> Flow:
        engine = self._require_engine("load_flow")

        with Session(engine) as session:
            flow_model = session.get(FlowModel, flow_id)
            if not flow_model:
                raise FlowNotFound(f"Flow not found: {flow_id}")
            return model_to_flow(flow_model)

    def add_flow_version(self, flow_id: str, config: Dict[str, Any]) -> FlowVersion:
        """
        Append a version to a flow and move its current pointer.

        The configuration is validated by parsing it before anything is written.

        Raises:
            FlowNotFound: If the flow does not exist
        """
        engine = self._require_engine("add_flow_version")

        with Session(engine) as session:
            flow_model = session.get(FlowModel, flow_id)
            if not flow_model:
                raise FlowNotFound(f"Flow not found: {flow_id}")

            latest = session.exec(
                select(func.max(FlowVersionModel.version)).where(FlowVersionModel.flow_id == flow_id)
            ).one()
            version = (latest or 0) + 1
            flow_version = FlowVersion.from_config(flow_id, version, config)
            flow_version.created_at = datetime.now(timezone.utc)

            session.add(FlowVersionModel(
                flow_id=flow_id,
                version=version,
                config_json=dump_json(flow_version.to_config()),
                created_at=as_utc(flow_version.created_at),
            ))
            flow_model.current_version = version
            session.add(flow_model)
            session.commit()

        logger.info(f"[Store] flow={flow_id} version={version} added")
        return flow_version

    def load_flow_version(self, flow_id: str, version: Optional[int] = None) -> FlowVersion:
        engine = self._require_engine("load_flow_version")

        with Session(engine) as session:
            if version is None:
                flow_model = session.get(FlowModel, flow_id)
                if not flow_model:
                    raise FlowNotFound(f"Flow not found: {flow_id}")
                version = flow_model.current_version
                if version is None:
                    raise FlowVersionNotFound(f"Flow {flow_id} has no version")

            version_model = session.get(FlowVersionModel, (flow_id, version))
            if not version_model:
                raise FlowVersionNotFound(f"FlowVersion not found: {flow_id} v{version}")
            return model_to_flow_version(version_model)

    def list_flow_versions(self, flow_id: str) -> List[FlowVersion]:
        engine = self._require_engine("list_flow_versions")

        with Session(engine) as session:
            statement = (
                select(FlowVersionModel)
                .where(FlowVersionModel.flow_id == flow_id)
                .order_by(col(FlowVersionModel.version))
            )
            return [model_to_flow_version(m) for m in session.exec(statement).all()]

    # ---------- Tasks ----------

    def save_task(self, task: Task):
        engine = self._require_engine("save_task")

        with Session(engine) as session:
            task_model = task_to_model(task)
            existing = session.get(TaskModel, task.task_id)
            if existing:
                copy_model_fields(existing, task_model, exclude_keys={'task_id'})
            else:
                session.add(task_model)
            session.commit()

    def load_task(self, task_id: str) -> Task:
        engine = self._require_engine("load_task")

        with Session(engine) as session:
            task_model = session.get(TaskModel, task_id)
            if not task_model:
                raise TaskNotFound(f"Task not found: {task_id}")
            return model_to_task(task_model)

    def list_dependent_tasks(self, task_id: str) -> List[Task]:
        """
        Dependent tasks listing ``task_id`` among their dependencies.

        Dependencies are a JSON column, so the membership test runs in Python.
        """
        engine = self._require_engine("list_dependent_tasks")

        with Session(engine) as session:
            statement = (
                select(TaskModel)
                .where(TaskModel.task_type == str(TaskType.DEPENDENT))
                .order_by(col(TaskModel.name))
            )
            tasks = [model_to_task(m) for m in session.exec(statement).all()]
        return [task for task in tasks if task_id in task.dependents]

    def list_active_tasks(self) -> List[Task]:
        engine = self._require_engine("list_active_tasks")

        with Session(engine) as session:
            statement = (
                select(TaskModel)
                .where(TaskModel.status == str(TaskStatus.ACTIVE))
                .order_by(col(TaskModel.name))
            )
            return [model_to_task(m) for m in session.exec(statement).all()]

    # ---------- Executions ----------

    def create_execution(self, execution: TaskExecution):
        engine = self._require_engine("create_execution")

        with Session(engine) as session:
            session.add(execution_to_model(execution))
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise DuplicateExecutionError(execution.task_id, execution.data_time) from e

    def update_execution(self, execution: TaskExecution):
        engine = self._require_engine("update_execution")

        with Session(engine) as session:
            existing = session.get(TaskExecutionModel, execution.execution_id)
            if not existing:
                raise ExecutionNotFound(f"TaskExecution not found: {execution.execution_id}")
            copy_model_fields(existing, execution_to_model(execution), exclude_keys={'execution_id', 'created_at'})
            session.add(existing)
            session.commit()

    def load_execution(self, execution_id: str) -> TaskExecution:
        engine = self._require_engine("load_execution")

        with Session(engine) as session:
            execution_model = session.get(TaskExecutionModel, execution_id)
            if not execution_model:
                raise ExecutionNotFound(f"TaskExecution not found: {execution_id}")
            return model_to_execution(execution_model)

    def list_executions(
            self,
            task_id: str,
            data_time: Optional[str] = None,
            status: Optional[str] = None,
    ) -> List[TaskExecution]:
        """
        Executions of a task, oldest first.

        Args:
            task_id: Owning task
            data_time: Optional data-time filter
            status: Optional ExecutionStatus filter
        """
        engine = self._require_engine("list_executions")

        with Session(engine) as session:
            statement = select(TaskExecutionModel).where(TaskExecutionModel.task_id == task_id)
            if data_time is not None:
                statement = statement.where(TaskExecutionModel.data_time == data_time)
            if status is not None:
                statement = statement.where(TaskExecutionModel.status == str(status))
            statement = statement.order_by(col(TaskExecutionModel.created_at))
            return [model_to_execution(m) for m in session.exec(statement).all()]

    def has_completed_execution(self, task_id: str, data_time: str) -> bool:
        engine = self._require_engine("has_completed_execution")

        with Session(engine) as session:
            statement = (
                select(TaskExecutionModel.execution_id)
                .where(TaskExecutionModel.task_id == task_id)
                .where(TaskExecutionModel.data_time == data_time)
                .where(TaskExecutionModel.status == ExecutionStatus.COMPLETED)
                .limit(1)
            )
            return session.exec(statement).first() is not None

    # ---------- Rules ----------

    def save_rule(self, rule: AutomationRule):
        engine = self._require_engine("save_rule")

        with Session(engine) as session:
            rule_model = rule_to_model(rule)
            existing = session.get(AutomationRuleModel, rule.rule_id)
            if existing:
                copy_model_fields(existing, rule_model, exclude_keys={'rule_id'})
            else:
                session.add(rule_model)
            session.commit()

    def load_rule(self, rule_id: str) -> AutomationRule:
        engine = self._require_engine("load_rule")

        with Session(engine) as session:
            rule_model = session.get(AutomationRuleModel, rule_id)
            if not rule_model:
                raise RuleNotFound(f"AutomationRule not found: {rule_id}")
            return model_to_rule(rule_model)

    def list_enabled_rules(self, project_id: Optional[int] = None) -> List[AutomationRule]:
        engine = self._require_engine("list_enabled_rules")

        with Session(engine) as session:
            statement = select(AutomationRuleModel).where(col(AutomationRuleModel.enabled).is_(True))
            if project_id is not None:
                statement = statement.where(AutomationRuleModel.project_id == project_id)
            statement = statement.order_by(col(AutomationRuleModel.project_id), col(AutomationRuleModel.name))
            return [model_to_rule(m) for m in session.exec(statement).all()]

    def append_automation_log(self, log: AutomationLog):
        engine = self._require_engine("append_automation_log")

        with Session(engine) as session:
            session.add(log_to_model(log))
            session.commit()

    def list_automation_logs(self, rule_id: Optional[str] = None) -> List[AutomationLog]:
        engine = self._require_engine("list_automation_logs")

        with Session(engine) as session:
            statement = select(AutomationLogModel)
            if rule_id is not None:
                statement = statement.where(AutomationLogModel.rule_id == rule_id)
            statement = statement.order_by(col(AutomationLogModel.created_at))
            return [model_to_log(m) for m in session.exec(statement).all()]

