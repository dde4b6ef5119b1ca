"""
Tests for the condition compiler and the rule query builder.

Numeric and string filters are checked both on their rendered SQL and by
running them against a SQLite metrics table.
"""
from datetime import date, datetime, timezone

import pytest
from sqlalchemy.sql.elements import True_

from adflow.infra.errors import RuleCompileError
from adflow.infra.rules.compiler import build_rule_query, compile_conditions, escape_like
from adflow.infra.rules.metrics import ADS_MERGE_DATA, METRICS, AggregationStrategy, get_metric
from adflow.infra.rules.models import AutomationRule

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def group(*children, logic="AND"):
    return {"type": "group", "logic": logic, "children": list(children)}


def numeric(metric, operator, value):
    return {"type": "condition", "metric": metric, "operator": operator, "value": value, "metricType": "numeric"}


def string(field, operator, value):
    return {"type": "condition", "metric": field, "operator": operator, "value": value, "metricType": "string"}


def rule(condition_group, **kwargs) -> AutomationRule:
    return AutomationRule(**{
        "project_id": 1,
        "name": "r",
        "action": "pause_ad",
        "condition_group": condition_group,
        "time_granularity": "day",
        "time_range": 0,
        **kwargs,
    })


def matched_ads(metrics_engine, condition_group, **kwargs):
    query = build_rule_query(rule(condition_group, **kwargs), now=NOW)
    with metrics_engine.connect() as connection:
        return [row.ad_id for row in connection.execute(query)]


# ============================================================
#                   CATALOGUE
# ============================================================

def test_catalogue_strategies():
    assert METRICS["spend_p"].strategy == AggregationStrategy.CUMULATIVE
    assert METRICS["ctr_p"].strategy == AggregationStrategy.RATIO
    assert METRICS["ctr_p"].scale == 100
    assert METRICS["cpm_p"].scale == 1000
    assert METRICS["avg_spend_p"].strategy == AggregationStrategy.MEAN
    assert {f"roas_d{day}_a" for day in range(7)} <= METRICS.keys()
    assert get_metric("ctr") is METRICS["ctr_p"]
    assert get_metric("bogus") is None


def test_ratio_expression_guards_division_by_zero():
    sql = str(METRICS["ctr_p"].expression(ADS_MERGE_DATA))

    assert "sum(ads_merge_data.clicks)" in sql
    assert "nullif(sum(ads_merge_data.impressions)" in sql


# ============================================================
#                   COMPILATION
# ============================================================

@pytest.mark.parametrize("condition_group", [None, {}, group()])
def test_blank_group_is_tautology(condition_group):
    compiled = compile_conditions(condition_group)

    assert isinstance(compiled.row_filter, True_)
    assert isinstance(compiled.having, True_)


def test_numeric_and_string_leaves_split():
    compiled = compile_conditions(group(numeric("spend_p", ">", 50), string("ad_name", "contains", "video")))

    assert "LIKE" in str(compiled.row_filter)
    assert "sum(ads_merge_data.spend)" in str(compiled.having)
    assert "LIKE" not in str(compiled.having)


def test_values_are_bound_parameters():
    compiled = compile_conditions(group(
        numeric("spend_p", ">", 50),
        string("campaign_name", "equals", "x' OR '1'='1"),
    ))

    having, row_filter = compiled.having.compile(), compiled.row_filter.compile()
    assert "50" not in str(having)
    assert 50.0 in having.params.values()
    assert "OR '1'" not in str(row_filter)
    assert "x' OR '1'='1" in row_filter.params.values()


def test_like_wildcards_are_escaped():
    assert escape_like("50%_off\\") == "50\\%\\_off\\\\"


@pytest.mark.parametrize(
    "condition_group, message",
    [
        (group(numeric("bogus", ">", 1)), "Unknown metric"),
        (group(numeric("spend_p", "~", 1)), "numeric operator"),
        (group(numeric("spend_p", ">", "lots")), "needs a number"),
        (group(string("region", "equals", "EU")), "string field"),
        (group(string("ad_name", "starts_with", "a")), "string operator"),
        (group(numeric("spend_p", ">", 1), logic="XOR"), "logic"),
        (group({"type": "condition", "metric": "spend_p", "operator": ">", "value": 1}), "metricType"),
        (group({"type": "leaf"}), "node type"),
        (group("spend > 1"), "Condition node"),
        ({"type": "group", "children": "spend > 1"}, "must be a list"),
    ],
)
def test_malformed_trees(condition_group, message):
    with pytest.raises(RuleCompileError, match=message):
        compile_conditions(condition_group)


# ============================================================
#                   QUERY SEMANTICS
# ============================================================

def test_spend_and_ctr_condition(metrics_engine, add_rows):
    add_rows(
        # spend 60 over two hours, ctr 0.5%
        {"ad_id": "ad-1", "ad_name": "a1", "spend": 30, "clicks": 2, "impressions": 400, "hour": 1},
        {"ad_id": "ad-1", "ad_name": "a1", "spend": 30, "clicks": 3, "impressions": 600, "hour": 2},
        # ctr 2%
        {"ad_id": "ad-2", "ad_name": "a2", "spend": 100, "clicks": 20, "impressions": 1000},
        # spend too low
        {"ad_id": "ad-3", "ad_name": "a3", "spend": 40, "clicks": 1, "impressions": 1000},
        # no impressions: ctr is NULL and never matches
        {"ad_id": "ad-4", "ad_name": "a4", "spend": 80},
    )

    condition = group(numeric("spend_p", ">", 50), numeric("ctr_p", "<", 1.0))

    assert matched_ads(metrics_engine, condition) == ["ad-1"]


def test_or_groups(metrics_engine, add_rows):
    add_rows(
        {"ad_id": "ad-1", "ad_name": "a1", "spend": 10, "installs": 1},
        {"ad_id": "ad-2", "ad_name": "a2", "spend": 90, "installs": 1},
        {"ad_id": "ad-3", "ad_name": "a3", "spend": 10, "installs": 0},
    )

    condition = group(
        numeric("spend_p", ">=", 90),
        group(numeric("installs_p", "=", 0), numeric("spend_p", "<", 50)),
        logic="OR",
    )

    assert matched_ads(metrics_engine, condition) == ["ad-2", "ad-3"]


def test_string_filters(metrics_engine, add_rows):
    add_rows(
        {"ad_id": "ad-1", "ad_name": "50%_off video", "spend": 1},
        {"ad_id": "ad-2", "ad_name": "500 offers video", "spend": 1},
        {"ad_id": "ad-3", "ad_name": "static banner", "spend": 1},
    )

    assert matched_ads(metrics_engine, group(string("ad_name", "contains", "50%_off"))) == ["ad-1"]
    assert matched_ads(metrics_engine, group(string("ad_name", "not_contains", "video"))) == ["ad-3"]
    assert matched_ads(metrics_engine, group(string("ad_name", "equals", "static banner"))) == ["ad-3"]
    assert matched_ads(metrics_engine, group(string("ad_name", "not_equals", "static banner"))) == ["ad-1", "ad-2"]


def test_query_scoped_to_project_and_window(metrics_engine, add_rows):
    add_rows(
        {"ad_id": "ad-1", "ad_name": "a1", "spend": 100},
        {"ad_id": "ad-2", "ad_name": "a2", "spend": 100, "project_id": 2},
        {"ad_id": "ad-3", "ad_name": "a3", "spend": 100, "date": date(2024, 4, 30)},
    )

    assert matched_ads(metrics_engine, group(numeric("spend_p", ">", 50))) == ["ad-1"]
    assert matched_ads(metrics_engine, group(numeric("spend_p", ">", 50)), time_range=1) == ["ad-1", "ad-3"]


def test_hour_window_across_midnight_selects_rows(metrics_engine, add_rows):
    add_rows(
        {"ad_id": "ad-1", "ad_name": "a1", "date": date(2024, 4, 30), "hour": 23, "spend": 5},
        {"ad_id": "ad-2", "ad_name": "a2", "date": date(2024, 4, 30), "hour": 22, "spend": 5},
        {"ad_id": "ad-3", "ad_name": "a3", "date": date(2024, 5, 1), "hour": 1, "spend": 5},
        {"ad_id": "ad-4", "ad_name": "a4", "date": date(2024, 5, 1), "hour": 2, "spend": 5},
    )
    rule_obj = rule(group(), time_granularity="hour", time_range=3)

    query = build_rule_query(rule_obj, now=datetime(2024, 5, 1, 1, 30, tzinfo=timezone.utc))
    with metrics_engine.connect() as connection:
        assert [row.ad_id for row in connection.execute(query)] == ["ad-1", "ad-3"]


def test_query_groups_by_dimension_tuple():
    query = build_rule_query(rule(group()), now=NOW)

    assert [c.name for c in query.selected_columns] == [
        "platform", "project_id", "ads_account_id", "campaign_name", "campaign_id",
        "adset_name", "adset_id", "ad_name", "ad_id",
    ]
