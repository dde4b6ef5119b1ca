# adflow/infra/rules/evaluator.py
"""
Rule evaluation: run a rule's aggregate query against the metrics store,
record an audit log entry per matched ad and hand the action to the
ad-platform collaborator.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from sqlalchemy import Engine, Table
from sqlalchemy.exc import SQLAlchemyError

from adflow.domain.models import ActionCommand, ActionOutcome, AdEntity
from adflow.infra.rules.compiler import build_rule_query
from adflow.infra.rules.metrics import ADS_MERGE_DATA
from adflow.infra.rules.models import AutomationLog, AutomationRule, LogStatus
from adflow.infra.rules.time_window import timezone_name
from adflow.infra.store.base import Store

logger = logging.getLogger(__name__)


class ActionDispatcher(Protocol):
    """Ad-platform collaborator applying an action to one ad."""

    def apply_action(self, command: ActionCommand) -> ActionOutcome:
        ...


class LoggingActionDispatcher:
    """Dispatcher that only logs the command; used when no platform client is wired."""

    def apply_action(self, command: ActionCommand) -> ActionOutcome:
        entity = command.entity
        logger.info(
            f"Action requested: action={command.action}, magnitude={command.magnitude}, "
            f"ad_id={entity.ad_id}, platform={entity.platform}, ads_account_id={entity.ads_account_id}"
        )
        return ActionOutcome(success=True, message="logged")


class RuleEvaluator:
    """
    Evaluates automation rules and dispatches their actions.

    Args:
        store: Rule and audit log persistence
        metrics_engine: SQLAlchemy engine of the metrics database
        action_dispatcher: Collaborator applying actions (logging only by default)
        table: Metrics table the rule queries run against
    """

    def __init__(
            self,
            store: Store,
            metrics_engine: Engine,
            action_dispatcher: Optional[ActionDispatcher] = None,
            table: Table = ADS_MERGE_DATA,
    ):
        self.store = store
        self.metrics_engine = metrics_engine
        self.action_dispatcher = action_dispatcher or LoggingActionDispatcher()
        self.table = table

    def evaluate(self, rule: AutomationRule, now: Optional[datetime] = None) -> List[AdEntity]:
        """
        Run the rule query and return the matched ads.

        Raises:
            RuleCompileError: If the rule cannot be compiled (nothing is logged)
            SQLAlchemyError: If the query fails; a failed audit entry is written first
        """
        query = build_rule_query(rule, self.table, now)
        try:
            with self.metrics_engine.connect() as connection:
                rows = connection.execute(query).mappings().all()
        except SQLAlchemyError as e:
            logger.error(f"Rule query failed: rule_id={rule.rule_id}, error={e}")
            self.store.append_automation_log(AutomationLog(
                rule_id=rule.rule_id,
                project_id=rule.project_id,
                status=LogStatus.FAILED,
                remark={"error": str(e), "query": str(query)},
            ))
            raise

        matches = [AdEntity.from_row(row) for row in rows]
        logger.info(f"Rule evaluated: rule_id={rule.rule_id}, matched={len(matches)}")
        return matches

    def dispatch(self, rule: AutomationRule, entity: AdEntity) -> ActionOutcome:
        """Record the match in the audit log, then apply the rule's action to the ad."""
        command = ActionCommand(entity=entity, action=str(rule.action), magnitude=rule.magnitude)
        self.store.append_automation_log(AutomationLog(
            rule_id=rule.rule_id,
            project_id=rule.project_id,
            status=LogStatus.SUCCESS,
            dimensions=entity.to_dict(),
            remark={
                "action": command.action,
                "magnitude": command.magnitude,
                "rule": rule.snapshot(),
                "time_zone": timezone_name(rule.utc_offset),
            },
        ))

        outcome = self.action_dispatcher.apply_action(command)
        if not outcome.success:
            logger.warning(
                f"Action not applied: rule_id={rule.rule_id}, ad_id={entity.ad_id}, message={outcome.message}"
            )
        return outcome

    def check(self, rule: AutomationRule, now: Optional[datetime] = None) -> List[AdEntity]:
        """Evaluate a rule and dispatch every match."""
        matches = self.evaluate(rule, now)
        for entity in matches:
            self.dispatch(rule, entity)
        return matches

    def check_all(self, project_id: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, Optional[int]]:
        """
        Check every enabled rule, one failure not stopping the others.

        Returns:
            Map of rule id to its match count, None for rules that failed
        """
        outcome: Dict[str, Optional[int]] = {}
        for rule in self.store.list_enabled_rules(project_id):
            try:
                outcome[rule.rule_id] = len(self.check(rule, now))
            except Exception:
                logger.exception(f"Rule check failed: rule_id={rule.rule_id}")
                outcome[rule.rule_id] = None
        return outcome
