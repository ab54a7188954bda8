"""
Client-side aggregation of a combined session scan.

Given the raw rows from ``build_combined_query`` (one row per distinct
session x attribute tuple, or per event for pageviews), reproduce what
each chart's own query would have returned:

  SELECT <attr>, COUNT(DISTINCT session_id) AS unique_visitors
  ... WHERE <attr-specific filter> GROUP BY <attr>
  ORDER BY unique_visitors DESC LIMIT 1000

Attribute-specific filtering lives in ``ATTRIBUTE_RULES`` so a new
batchable dimension only needs a table entry, not a change to the loop.
The batch planner only merges a chart whose outer WHERE is exactly the
rule's ``sql_filter``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from src.core.config import get_settings
from src.templating.resolver import METRIC_ALIASES


@dataclass(frozen=True)
class AttributeRule:
    """Client-side stand-in for one attribute's SQL filter."""
    keep: Callable[[Any], bool] | None = None
    sql_filter: str | None = None  # regex for the outer WHERE that ``keep`` reproduces


def _not_resolution(value: Any) -> bool:
    # device NOT LIKE '%x%': drops "1920x1080"-style noise, and NULL like SQL does
    return value is not None and "x" not in str(value)


ATTRIBUTE_RULES: dict[str, AttributeRule] = {
    "device": AttributeRule(
        keep=_not_resolution,
        sql_filter=r"base_query\.device\s+NOT\s+LIKE\s+'%x%'",
    ),
}
_DEFAULT_RULE = AttributeRule()


def rule_for(attribute: str) -> AttributeRule:
    return ATTRIBUTE_RULES.get(attribute, _DEFAULT_RULE)


def _sort_key(item: tuple[Any, float]) -> tuple:
    value, measure = item
    return (-measure, value is None, str(value))


def aggregate_attribute(
    rows: list[dict[str, Any]],
    attribute: str,
    metric_type: str = "visitors",
    total_site_visitors: int | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Aggregate combined-scan *rows* for one chart's *attribute*.

    Output rows look like ``{attribute: value, <metric alias>: measure}``,
    sorted by measure descending, capped at *limit* (default: the chart
    row cap from settings).
    """
    rule = rule_for(attribute)
    alias = METRIC_ALIASES.get(metric_type, METRIC_ALIASES["visitors"])

    sessions: dict[Any, set] = {}
    visits: dict[Any, set] = {}
    events: dict[Any, int] = {}
    all_sessions: set = set()

    for row in rows:
        value = row.get(attribute)
        if rule.keep is not None and not rule.keep(value):
            continue
        sessions.setdefault(value, set()).add(row.get("session_id"))
        events[value] = events.get(value, 0) + 1
        visit_id = row.get("visit_id")
        bucket = visits.setdefault(value, set())
        if visit_id is not None:
            bucket.add(visit_id)
        all_sessions.add(row.get("session_id"))

    if metric_type == "pageviews":
        measures = dict(events)
    elif metric_type == "visits":
        measures = {v: len(ids) for v, ids in visits.items()}
    elif metric_type == "proportion":
        total = total_site_visitors if total_site_visitors is not None else len(all_sessions)
        measures = {
            v: round(len(ids) * 100.0 / total, 1) if total else 0.0
            for v, ids in sessions.items()
        }
    else:
        measures = {v: len(ids) for v, ids in sessions.items()}

    cap = limit or get_settings().chart_row_cap
    ordered = sorted(measures.items(), key=_sort_key)[:cap]
    return [{attribute: value, alias: measure} for value, measure in ordered]


def apportion_bytes(total_bytes: float, chart_count: int) -> float:
    """Split a combined scan's bytes evenly across the charts it served.

    BigQuery reports bytes per job, not per column, so even division is
    the best available approximation.
    """
    if chart_count <= 0:
        return 0.0
    return total_bytes / chart_count
