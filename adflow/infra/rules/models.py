# adflow/infra/rules/models.py
"""
Data models for automation rules and their audit log.
"""
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class TimeGranularity(enum.StrEnum):
    HOUR = "hour"
    DAY = "day"


class TimeType(enum.StrEnum):
    RECENT = "recent"
    RANGE = "range"


class RuleAction(enum.StrEnum):
    PAUSE_AD = "pause_ad"
    ADD_AD = "add_ad"
    INCREASE_BID = "increase_bid"
    DECREASE_BID = "decrease_bid"
    INCREASE_BUDGET = "increase_budget"
    DECREASE_BUDGET = "decrease_budget"

    @property
    def needs_magnitude(self) -> bool:
        return self in {
            RuleAction.INCREASE_BID,
            RuleAction.DECREASE_BID,
            RuleAction.INCREASE_BUDGET,
            RuleAction.DECREASE_BUDGET,
        }


class LogStatus(enum.StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class AutomationRule:
    """
    A time-windowed condition over aggregated ad metrics and the action it fires.

    Attributes:
        project_id: Project whose metrics are evaluated
        name: Display name
        time_granularity: ``hour`` or ``day``
        time_type: ``recent`` (last ``time_range`` units) or ``range`` (``time_range_config``)
        time_range: Number of units for the recent window
        time_range_config: ``{"start_date": endpoint, "end_date": endpoint}`` for the range window
        condition_group: Root group of the condition tree
        action: RuleAction fired for every matched ad
        action_value: Percentage (0 < v <= 100) for bid and budget actions
        utc_offset: Project timezone as whole hours from UTC
        enabled: Disabled rules are skipped by the periodic check
    """
    project_id: int
    name: str
    action: str
    condition_group: Dict[str, Any] = field(default_factory=dict)
    time_granularity: str = TimeGranularity.DAY
    time_type: str = TimeType.RECENT
    time_range: Optional[int] = 1
    time_range_config: Optional[Dict[str, Any]] = None
    action_value: Optional[float] = None
    utc_offset: int = 0
    enabled: bool = True
    rule_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        self.action = RuleAction(self.action)
        if self.action.needs_magnitude:
            if self.action_value is None or not 0 < self.action_value <= 100:
                raise ValueError(
                    f"Action {self.action} needs an action_value greater than 0 and at most 100, got {self.action_value}"
                )
        if not -12 <= self.utc_offset <= 14:
            raise ValueError(f"utc_offset must be between -12 and 14 hours, got {self.utc_offset}")

    @property
    def magnitude(self) -> Optional[float]:
        return self.action_value if self.action.needs_magnitude else None

    def snapshot(self) -> Dict[str, Any]:
        """Serializable copy of the rule for audit records."""
        return {
            "rule_id": self.rule_id,
            "project_id": self.project_id,
            "name": self.name,
            "time_granularity": str(self.time_granularity),
            "time_type": str(self.time_type),
            "time_range": self.time_range,
            "time_range_config": self.time_range_config,
            "condition_group": self.condition_group,
            "action": str(self.action),
            "action_value": self.action_value,
            "utc_offset": self.utc_offset,
        }


@dataclass
class AutomationLog:
    """Append-only audit row of one rule match (or one failed check)."""
    rule_id: str
    project_id: int
    status: str
    dimensions: Dict[str, Any] = field(default_factory=dict)
    remark: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    log_id: str = field(default_factory=lambda: str(uuid.uuid4()))
