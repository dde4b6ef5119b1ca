# adflow/application/runtime.py
"""
Process-wide wiring of the engine store, the job queue, the flow executor,
the task scheduler and the rule evaluator.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import Engine, create_engine

from adflow.config import Settings, get_settings
from adflow.infra.errors import NodeConfigError
from adflow.infra.flow.executor import DagExecutor
from adflow.infra.flow.nodes.execute_sql import ConnectionSettings
from adflow.infra.flow.nodes.remote import HostSettings
from adflow.infra.rules.evaluator import ActionDispatcher, RuleEvaluator
from adflow.infra.rules.metrics import ADS_MERGE_DATA, DEFAULT_TABLE_NAME, metrics_table
from adflow.infra.scheduler.queue import APSchedulerQueue, JobQueue, build_cron_trigger
from adflow.infra.scheduler.scheduler import TaskScheduler
from adflow.infra.store import SQLStore

logger = logging.getLogger(__name__)

RULE_CHECK_JOB_ID = "automation-rule-check"


class RegisteredDatasources:
    """Datasource resolver backed by the ``datasources`` setting."""

    def __init__(self, datasources: Dict[str, Dict[str, Any]]):
        self._datasources = datasources

    def resolve(self, datasource_id: Any) -> ConnectionSettings:
        raw = self._datasources.get(str(datasource_id))
        if raw is None:
            raise NodeConfigError(f"Unknown datasource '{datasource_id}'")
        return ConnectionSettings(
            db_type=raw["db_type"],
            host=raw.get("host"),
            port=raw.get("port"),
            username=raw.get("username"),
            password=raw.get("password"),
            database=raw.get("database"),
            extra=raw.get("extra") or {},
        )


class RegisteredHosts:
    """Host resolver backed by the ``hosts`` setting."""

    def __init__(self, hosts: Dict[str, Dict[str, Any]]):
        self._hosts = hosts

    def resolve(self, host_id: Any) -> HostSettings:
        raw = self._hosts.get(str(host_id))
        if raw is None:
            raise NodeConfigError(f"Unknown host '{host_id}'")
        return HostSettings.from_dict(raw)


@dataclass
class Runtime:
    settings: Settings
    store: SQLStore
    queue: JobQueue
    scheduler: TaskScheduler
    metrics_engine: Engine
    evaluator: RuleEvaluator

    def start(self) -> None:
        """Open the store and start the queue with the task timers and the periodic rule check."""
        self.store.open()
        if isinstance(self.queue, APSchedulerQueue):
            self.queue.start()
            self.queue.scheduler.add_job(
                self.evaluator.check_all,
                trigger=build_cron_trigger(self.settings.rule_check_cron, self.settings.scheduler_timezone),
                id=RULE_CHECK_JOB_ID,
                replace_existing=True,
                coalesce=True,
            )
            logger.info(f"[Scheduler] Registered cron job: {RULE_CHECK_JOB_ID} with expression: {self.settings.rule_check_cron}")
        self.scheduler.restore_schedules()
        logger.info("Runtime started")

    def stop(self) -> None:
        if isinstance(self.queue, APSchedulerQueue):
            self.queue.shutdown()
        self.store.close()
        self.metrics_engine.dispose()
        logger.info("Runtime stopped")


def build_runtime(
        settings: Optional[Settings] = None,
        queue: Optional[JobQueue] = None,
        executor: Optional[DagExecutor] = None,
        action_dispatcher: Optional[ActionDispatcher] = None,
) -> Runtime:
    """
    Assemble the runtime from settings.

    Args:
        settings: Configuration (the cached settings by default)
        queue: Job queue (an APSchedulerQueue on the scheduler timezone by default)
        executor: Flow executor (one with the registered datasources and hosts by default)
        action_dispatcher: Ad-platform collaborator (logging only by default)
    """
    settings = settings or get_settings()
    store = SQLStore(settings.database_url, echo=settings.database_echo)
    queue = queue or APSchedulerQueue(timezone=settings.scheduler_timezone)
    executor = executor or DagExecutor(services={
        "datasource_resolver": RegisteredDatasources(settings.datasources),
        "host_resolver": RegisteredHosts(settings.hosts),
        "scratch_dir": settings.scratch_dir,
    })

    metrics_engine = create_engine(settings.metrics_database_url)
    table = ADS_MERGE_DATA if settings.metrics_table == DEFAULT_TABLE_NAME else metrics_table(settings.metrics_table)

    return Runtime(
        settings=settings,
        store=store,
        queue=queue,
        scheduler=TaskScheduler(store, queue, executor, timezone=settings.scheduler_timezone),
        metrics_engine=metrics_engine,
        evaluator=RuleEvaluator(store, metrics_engine, action_dispatcher, table),
    )
