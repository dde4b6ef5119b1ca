# adflow/infra/rules/metrics.py
"""
Metric catalogue and the wide ad metrics table rules are evaluated against.

Each numeric metric a rule may test is declared once with the aggregation
strategy that turns it into a post-aggregation expression:

- cumulative: ``SUM(column)``
- ratio: ``SUM(numerator) / NULLIF(SUM(denominator), 0)``, optionally scaled
- mean: ``AVG(column)``
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from sqlalchemy import Column, Date, Float, Integer, MetaData, String, Table, func
from sqlalchemy.sql.elements import ColumnElement

DEFAULT_TABLE_NAME = "ads_merge_data"
COHORT_DAYS = range(7)

# Grouping key of a rule query, also the dimensions recorded for each match
GROUP_BY = (
    "platform",
    "project_id",
    "ads_account_id",
    "campaign_name",
    "campaign_id",
    "adset_name",
    "adset_id",
    "ad_name",
    "ad_id",
)

# Fields string conditions may filter on
STRING_FIELDS = frozenset({
    "platform",
    "ads_account_id",
    "campaign_id",
    "campaign_name",
    "adset_id",
    "adset_name",
    "ad_id",
    "ad_name",
    "os_name",
})

_VOLUME_COLUMNS = (
    "impressions",
    "clicks",
    "installs",
    "conversions",
    "spend",
    "adjust_install",
    "adjust_spend",
    "cohort_all_revenue",
)
_COHORT_COLUMNS = tuple(
    f"{prefix}_d{day}"
    for prefix in ("all_revenue_total", "retained_users", "paying_users")
    for day in COHORT_DAYS
)


def metrics_table(name: str = DEFAULT_TABLE_NAME, metadata: Optional[MetaData] = None) -> Table:
    """
    Declare the wide metrics table: one row per ad and hour.

    Numeric columns are floats so ratios divide as reals on every backend.
    """
    return Table(
        name,
        metadata or MetaData(),
        Column("date", Date, nullable=False),
        Column("hour", Integer),
        Column("platform", String(32)),
        Column("project_id", Integer, nullable=False),
        Column("ads_account_id", String(64)),
        Column("campaign_id", String(64)),
        Column("campaign_name", String(255)),
        Column("adset_id", String(64)),
        Column("adset_name", String(255)),
        Column("ad_id", String(64)),
        Column("ad_name", String(255)),
        Column("os_name", String(32)),
        *(Column(column, Float, default=0) for column in _VOLUME_COLUMNS + _COHORT_COLUMNS),
    )


ADS_MERGE_DATA = metrics_table()


# ============================================================
#                   CATALOGUE
# ============================================================
class AggregationStrategy(enum.StrEnum):
    CUMULATIVE = "cumulative"
    RATIO = "ratio"
    MEAN = "mean"


@dataclass(frozen=True)
class MetricDefinition:
    """
    How a metric key is aggregated.

    Attributes:
        key: Metric identifier used in condition leaves
        strategy: Aggregation strategy
        columns: One column, or (numerator, denominator) for ratios
        scale: Multiplier applied to a ratio (1000 for CPM, 100 for percentages)
    """
    key: str
    strategy: AggregationStrategy
    columns: Tuple[str, ...]
    scale: int = 1

    def expression(self, table: Table) -> ColumnElement:
        if self.strategy == AggregationStrategy.CUMULATIVE:
            return func.sum(table.c[self.columns[0]])
        if self.strategy == AggregationStrategy.MEAN:
            return func.avg(table.c[self.columns[0]])

        numerator, denominator = self.columns
        ratio = func.sum(table.c[numerator]) / func.nullif(func.sum(table.c[denominator]), 0)
        return ratio * self.scale if self.scale != 1 else ratio


def _cumulative(key: str, column: str) -> MetricDefinition:
    return MetricDefinition(key, AggregationStrategy.CUMULATIVE, (column,))


def _ratio(key: str, numerator: str, denominator: str, scale: int = 1) -> MetricDefinition:
    return MetricDefinition(key, AggregationStrategy.RATIO, (numerator, denominator), scale)


def _mean(key: str, column: str) -> MetricDefinition:
    return MetricDefinition(key, AggregationStrategy.MEAN, (column,))


def _build_catalogue() -> Dict[str, MetricDefinition]:
    # _p: platform-reported, _a: attribution-reported
    metrics = [
        _cumulative("impressions_p", "impressions"),
        _cumulative("clicks_p", "clicks"),
        _cumulative("installs_p", "installs"),
        _cumulative("conversions_p", "conversions"),
        _cumulative("spend_p", "spend"),
        _cumulative("installs_a", "adjust_install"),
        _cumulative("spend_a", "adjust_spend"),
        _cumulative("cohort_all_revenue_a", "cohort_all_revenue"),
        _ratio("cpm_p", "spend", "impressions", 1000),
        _ratio("cpc_p", "spend", "clicks"),
        _ratio("cpi_p", "spend", "installs"),
        _ratio("cost_per_conversion_p", "spend", "conversions"),
        _ratio("ctr_p", "clicks", "impressions", 100),
        _ratio("cvr_p", "conversions", "clicks", 100),
        _ratio("cpm_a", "adjust_spend", "impressions", 1000),
        _ratio("cpc_a", "adjust_spend", "clicks"),
        _ratio("cpi_a", "adjust_spend", "adjust_install"),
        _ratio("roas_a", "cohort_all_revenue", "adjust_spend"),
        _mean("avg_spend_p", "spend"),
        _mean("avg_impressions_p", "impressions"),
        _mean("avg_clicks_p", "clicks"),
    ]
    for day in COHORT_DAYS:
        metrics += [
            _cumulative(f"revenue_d{day}_a", f"all_revenue_total_d{day}"),
            _cumulative(f"retained_users_d{day}_a", f"retained_users_d{day}"),
            _cumulative(f"paying_users_d{day}_a", f"paying_users_d{day}"),
            _ratio(f"roas_d{day}_a", f"all_revenue_total_d{day}", "adjust_spend"),
            _ratio(f"ltv_d{day}_a", f"all_revenue_total_d{day}", "adjust_install"),
            _ratio(f"retention_rate_d{day}_a", f"retained_users_d{day}", "adjust_install", 100),
        ]
    return {metric.key: metric for metric in metrics}


METRICS: Dict[str, MetricDefinition] = _build_catalogue()

# Short aliases accepted in condition leaves
METRIC_ALIASES = {
    "impressions": "impressions_p",
    "clicks": "clicks_p",
    "installs": "installs_p",
    "conversions": "conversions_p",
    "spend": "spend_p",
    "cpm": "cpm_p",
    "cpc": "cpc_p",
    "cpi": "cpi_p",
    "ctr": "ctr_p",
    "cvr": "cvr_p",
    "roas": "roas_a",
}


def get_metric(key: str) -> Optional[MetricDefinition]:
    """Catalogue entry of a metric key or alias, None when unknown."""
    return METRICS.get(METRIC_ALIASES.get(key, key))
