# adflow/infra/rules/compiler.py
"""
Condition tree compiler.

A condition tree is made of groups ``{"type": "group", "logic": "AND"|"OR",
"children": [...]}`` and leaves ``{"type": "condition", "metric", "operator",
"value", "metricType": "numeric"|"string"}``. Compilation walks it depth-first
and produces two filters:

- the row filter, from string leaves, applied before aggregation
- the having filter, from numeric leaves, applied to aggregated metrics

Every value is a bound parameter.
"""
from __future__ import annotations

import logging
import operator
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import Select, Table, and_, or_, select, true
from sqlalchemy.sql.elements import ColumnElement

from adflow.infra.errors import RuleCompileError
from adflow.infra.rules.metrics import ADS_MERGE_DATA, GROUP_BY, STRING_FIELDS, get_metric
from adflow.infra.rules.models import AutomationRule
from adflow.infra.rules.time_window import compile_time_window

logger = logging.getLogger(__name__)

NUMERIC_OPERATORS: Dict[str, Callable[[Any, Any], ColumnElement]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "=": operator.eq,
    "==": operator.eq,
    "!=": operator.ne,
}

STRING_OPERATORS = ("contains", "not_contains", "equals", "not_equals")

LIKE_ESCAPE = "\\"


@dataclass(frozen=True)
class CompiledConditions:
    row_filter: ColumnElement
    having: ColumnElement


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so the value matches literally."""
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


def compile_conditions(group: Optional[Dict[str, Any]], table: Table = ADS_MERGE_DATA) -> CompiledConditions:
    """
    Compile a condition tree into its row filter and having filter.

    A blank tree, or a side without any leaf, compiles to ``true()``.

    Raises:
        RuleCompileError: On a malformed node, an unknown metric, field or operator
    """
    if not group:
        return CompiledConditions(true(), true())
    row_filter, having = _compile_group(group, table, path="root")
    return CompiledConditions(
        row_filter if row_filter is not None else true(),
        having if having is not None else true(),
    )


def _compile_group(group: Any, table: Table, path: str) -> Tuple[Optional[ColumnElement], Optional[ColumnElement]]:
    if not isinstance(group, dict) or group.get("type", "group") != "group":
        raise RuleCompileError(f"Condition group expected at {path}")

    logic = str(group.get("logic") or "AND").upper()
    if logic not in ("AND", "OR"):
        raise RuleCompileError(f"Unsupported logic '{group.get('logic')}' at {path}")
    join = and_ if logic == "AND" else or_

    children = group.get("children") or []
    if not isinstance(children, list):
        raise RuleCompileError(f"Children of {path} must be a list")

    rows: List[ColumnElement] = []
    havings: List[ColumnElement] = []
    for index, child in enumerate(children):
        child_path = f"{path}.children[{index}]"
        if not isinstance(child, dict):
            raise RuleCompileError(f"Condition node expected at {child_path}")

        if child.get("type") == "group":
            row, having = _compile_group(child, table, child_path)
            if row is not None:
                rows.append(row.self_group())
            if having is not None:
                havings.append(having.self_group())
        elif child.get("type") == "condition":
            metric_type = child.get("metricType")
            if metric_type == "string":
                rows.append(_string_condition(child, table, child_path))
            elif metric_type == "numeric":
                havings.append(_numeric_condition(child, table, child_path))
            else:
                raise RuleCompileError(f"Unsupported metricType '{metric_type}' at {child_path}")
        else:
            raise RuleCompileError(f"Unknown node type '{child.get('type')}' at {child_path}")

    return (join(*rows) if rows else None, join(*havings) if havings else None)


def _string_condition(leaf: Dict[str, Any], table: Table, path: str) -> ColumnElement:
    field, op, value = leaf.get("metric"), leaf.get("operator"), leaf.get("value")
    if field not in STRING_FIELDS:
        raise RuleCompileError(f"Unknown string field '{field}' at {path}")
    if op not in STRING_OPERATORS:
        raise RuleCompileError(f"Unsupported string operator '{op}' at {path}")
    if value is None:
        raise RuleCompileError(f"String condition at {path} has no value")

    column, text = table.c[field], str(value)
    if op == "contains":
        return column.like(f"%{escape_like(text)}%", escape=LIKE_ESCAPE)
    if op == "not_contains":
        return column.not_like(f"%{escape_like(text)}%", escape=LIKE_ESCAPE)
    if op == "equals":
        return column == text
    return column != text


def _numeric_condition(leaf: Dict[str, Any], table: Table, path: str) -> ColumnElement:
    key, op, value = leaf.get("metric"), leaf.get("operator"), leaf.get("value")
    metric = get_metric(key) if isinstance(key, str) else None
    if metric is None:
        raise RuleCompileError(f"Unknown metric '{key}' at {path}")
    if op not in NUMERIC_OPERATORS:
        raise RuleCompileError(f"Unsupported numeric operator '{op}' at {path}")
    if isinstance(value, bool):
        raise RuleCompileError(f"Numeric condition at {path} needs a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise RuleCompileError(f"Numeric condition at {path} needs a number, got {value!r}") from e

    return NUMERIC_OPERATORS[op](metric.expression(table), number)


def build_rule_query(rule: AutomationRule, table: Table = ADS_MERGE_DATA, now: Optional[datetime] = None) -> Select:
    """
    Build the aggregate query of a rule.

    ``SELECT <dimensions> FROM <table> WHERE <time window> AND project AND
    <row filter> GROUP BY <dimensions> HAVING <having filter>``
    """
    window = compile_time_window(rule, now)
    conditions = compile_conditions(rule.condition_group, table)
    dimensions = [table.c[name] for name in GROUP_BY]

    query = (
        select(*dimensions)
        .where(window.to_clause(table))
        .where(table.c.project_id == rule.project_id)
        .where(conditions.row_filter)
        .group_by(*dimensions)
        .having(conditions.having)
        .order_by(*dimensions)
    )
    logger.debug(f"Rule query built: rule_id={rule.rule_id}, window={window}")
    return query
