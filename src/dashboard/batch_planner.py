"""
Batch Planner -- merge session-attribute charts into one warehouse scan.

Every "visitors by <session attribute>" chart re-scans the same
event ⟕ session join. BigQuery bills by bytes scanned, so N such charts cost
roughly N scans. When two or more of them share a FilterState we instead
fetch (session_id, attr1, attr2, ...) once and aggregate each chart
client-side (see ``aggregator``). That is one scan of the union of the
needed columns, capped at ``batch_row_cap`` rows.

A single batchable chart is never merged since there is nothing to save.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from src.core.config import Settings, get_settings
from src.core.logging import get_logger
from src.dashboard.aggregator import rule_for
from src.dashboard.config_loader import ChartDefinition
from src.templating.date_ranges import resolve_timestamp_bounds
from src.templating.filters import FilterState
from src.templating.literals import quote_string
from src.templating.resolver import has_filter_placeholders, path_condition

logger = get_logger(__name__)

# Session columns that can share a scan.
SESSION_ATTRIBUTES = ("country", "language", "device", "os", "browser", "screen")

_DISTINCT_SESSIONS = re.compile(
    r"COUNT\s*\(\s*DISTINCT\s+base_query\.session_id\s*\)\s+AS\s+unique_visitors\b",
    re.IGNORECASE,
)
_OUTER_QUERY = re.compile(r"\bFROM\s+base_query\b", re.IGNORECASE)
_CLAUSE_END = r"(?=\bGROUP\s+BY\b|\bHAVING\b|\bORDER\s+BY\b|\bLIMIT\b|\Z)"
_WHERE = re.compile(r"\bWHERE\b(.*?)" + _CLAUSE_END, re.IGNORECASE | re.DOTALL)
_GROUP_BY = re.compile(r"\bGROUP\s+BY\b(.*?)" + _CLAUSE_END, re.IGNORECASE | re.DOTALL)
_HAVING = re.compile(r"\bHAVING\b", re.IGNORECASE)
_ORDER_BY = re.compile(r"\bORDER\s+BY\b(.*?)(?=\bLIMIT\b|\Z)", re.IGNORECASE | re.DOTALL)
_LIMIT = re.compile(r"\bLIMIT\s+(\d+)\s*\Z", re.IGNORECASE)


@dataclass
class BatchGroup:
    """Charts that will be answered from one combined scan."""
    charts: list[ChartDefinition]
    filters: FilterState
    attributes: list[str]
    sql: str

    @property
    def chart_ids(self) -> list[str]:
        return [c.id for c in self.charts]


@dataclass
class BatchPlan:
    groups: list[BatchGroup] = field(default_factory=list)
    individual: list[ChartDefinition] = field(default_factory=list)

    @property
    def batched_chart_count(self) -> int:
        return sum(len(g.charts) for g in self.groups)


# ── Compatibility test ───────────────────────────────────

def _normalise(clause: str) -> str:
    return " ".join(clause.split()).lower()


def _outer_query(sql: str) -> str | None:
    """Text from the last ``FROM base_query`` on, or None if there is none."""
    matches = list(_OUTER_QUERY.finditer(sql))
    if not matches:
        return None
    return sql[matches[-1].end():].strip().rstrip(";").strip()


def _grouped_attribute(outer: str) -> str | None:
    group_match = _GROUP_BY.search(outer)
    if not group_match:
        return None
    columns = [c.strip() for c in group_match.group(1).split(",") if c.strip()]
    if len(columns) != 1:
        return None
    col_match = re.fullmatch(r"base_query\.(\w+)", columns[0], re.IGNORECASE)
    if not col_match:
        return None
    attribute = col_match.group(1).lower()
    return attribute if attribute in SESSION_ATTRIBUTES else None


def _outer_clauses_reproducible(outer: str, attribute: str, settings: Settings) -> bool:
    """Every outer clause must be one the aggregator reproduces exactly."""
    # no extra joins between FROM base_query and the first clause
    if not re.match(r"(?:WHERE|GROUP\s+BY)\b", outer, re.IGNORECASE):
        return False
    if _HAVING.search(outer):
        return False

    where_match = _WHERE.search(outer)
    if where_match:
        rule = rule_for(attribute)
        if rule.sql_filter is None:
            return False
        if not re.fullmatch(rule.sql_filter, _normalise(where_match.group(1)), re.IGNORECASE):
            return False

    order_match = _ORDER_BY.search(outer)
    if not order_match or _normalise(order_match.group(1)) != "unique_visitors desc":
        return False

    limit_match = _LIMIT.search(outer)
    return limit_match is not None and int(limit_match.group(1)) == settings.chart_row_cap


def detect_session_attribute(sql: str | None, settings: Settings | None = None) -> str | None:
    """Return the session attribute a template counts visitors by, or None.

    A chart is only reproducible from the combined scan when its template:
      - joins the session table and takes the URL and date placeholders
      - counts ``COUNT(DISTINCT base_query.session_id) AS unique_visitors``
      - groups by exactly one ``base_query.<attr>`` session attribute
      - has no outer WHERE beyond the attribute's rule, and no HAVING
      - orders by ``unique_visitors DESC`` with ``LIMIT <chart_row_cap>``
    """
    if not sql:
        return None
    settings = settings or get_settings()
    if f"{settings.bigquery_dataset}.session`".lower() not in sql.lower():
        return None
    if not _DISTINCT_SESSIONS.search(sql) or not has_filter_placeholders(sql):
        return None

    outer = _outer_query(sql)
    if outer is None:
        return None
    attribute = _grouped_attribute(outer)
    if attribute is None or not _outer_clauses_reproducible(outer, attribute, settings):
        return None
    return attribute


def is_batchable(chart: ChartDefinition, settings: Settings | None = None) -> bool:
    attribute = detect_session_attribute(chart.sql, settings)
    if attribute is None:
        return False
    # A configured dimension must agree with what the template actually does.
    return chart.grouping_dimension is None or chart.grouping_dimension == attribute


# ── SQL builders ─────────────────────────────────────────

def build_combined_query(
    website_id: str,
    filters: FilterState,
    attributes: Iterable[str],
    settings: Settings | None = None,
    now: datetime | None = None,
) -> str:
    """One scan returning session_id (+ visit_id) and every requested attribute."""
    settings = settings or get_settings()
    attributes = list(attributes)
    event, session = settings.event_table, settings.session_table
    from_sql, to_sql = resolve_timestamp_bounds(filters, now=now, tz_name=settings.civil_timezone)

    include_visit_id = filters.metric_type == "visits"
    # pageviews counts events, so every event row must survive
    distinct = "" if filters.metric_type == "pageviews" else " DISTINCT"

    inner_cols = [f"{event}.session_id"]
    outer_cols = ["session_id"]
    if include_visit_id:
        inner_cols.append(f"{event}.visit_id")
        outer_cols.append("visit_id")
    inner_cols += [f"{session}.{a}" for a in attributes]
    outer_cols += attributes

    sql_lines = [
        "WITH base_query AS (",
        "  SELECT",
        "    " + ",\n    ".join(inner_cols),
        f"  FROM {event}",
        f"  LEFT JOIN {session}",
        f"    ON {event}.session_id = {session}.session_id",
        f"  WHERE {event}.website_id = {quote_string(website_id)}",
        f"  AND {event}.event_type = 1",
        f"  AND {path_condition(f'{event}.url_path', filters)}",
        f"  AND {event}.created_at BETWEEN {from_sql} AND {to_sql}",
        f"  AND {session}.created_at BETWEEN {from_sql} AND {to_sql}",
        ")",
        "",
        f"SELECT{distinct}",
        "  " + ",\n  ".join(outer_cols),
        "FROM base_query",
        f"LIMIT {settings.batch_row_cap}",
    ]
    return "\n".join(sql_lines)


def build_total_visitors_query(
    website_id: str,
    filters: FilterState,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> str:
    """Site-wide distinct sessions for the window (no URL filter)."""
    settings = settings or get_settings()
    from_sql, to_sql = resolve_timestamp_bounds(filters, now=now, tz_name=settings.civil_timezone)
    return "\n".join([
        "SELECT COUNT(DISTINCT session_id) AS total",
        f"FROM {settings.event_table}",
        f"WHERE website_id = {quote_string(website_id)}",
        "AND event_type = 1",
        f"AND created_at BETWEEN {from_sql} AND {to_sql}",
    ])


# ── Planning ─────────────────────────────────────────────

def plan_batches(
    charts: Iterable[ChartDefinition],
    filters: FilterState,
    website_id: str,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> BatchPlan:
    """Split *charts* into at most one combined scan plus individual charts.

    All charts here share *filters*, so there is a single candidate group.
    Charts without a query are dropped.
    """
    settings = settings or get_settings()
    charts = list(charts)
    batchable: list[ChartDefinition] = []
    attributes: list[str] = []
    individual: list[ChartDefinition] = []

    for chart in charts:
        if not chart.has_query:
            continue
        if is_batchable(chart, settings):
            batchable.append(chart)
            attribute = detect_session_attribute(chart.sql, settings)
            if attribute not in attributes:
                attributes.append(attribute)
        else:
            individual.append(chart)

    plan = BatchPlan(individual=individual)
    if len(batchable) >= 2:
        plan.groups.append(BatchGroup(
            charts=batchable,
            filters=filters,
            attributes=attributes,
            sql=build_combined_query(website_id, filters, attributes, settings, now=now),
        ))
    else:
        # Nothing to merge: every data chart runs on its own, in dashboard order.
        plan.individual = [c for c in charts if c.has_query]

    logger.info("Batch plan: %d charts in %d combined scan(s) (%s), %d individual",
                plan.batched_chart_count, len(plan.groups), ", ".join(attributes) if plan.groups else "-",
                len(plan.individual))
    return plan
