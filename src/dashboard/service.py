"""
Dashboard service -- plan -> (combined scan | individual queries) -> per-chart results.

Full fetch for one dashboard view:
  1. Batch planner splits charts into a combined scan and individual charts
  2. The combined scan runs once; each batched chart is aggregated client-side
     and gets an even share of the scan's bytes
  3. If the combined scan fails, its charts are fetched individually instead
  4. Individual charts are resolved, annotated, executed and dry-run priced

Groups and individual charts are independent, so they run on a thread pool.
A failing chart is reported on that chart only; the dashboard as a whole
never fails because of one query.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.core.config import get_settings
from src.core.logging import get_logger
from src.core.utils import format_gb, timer
from src.dashboard.aggregator import aggregate_attribute, apportion_bytes
from src.dashboard.batch_planner import (
    BatchGroup,
    build_total_visitors_query,
    detect_session_attribute,
    plan_batches,
)
from src.dashboard.config_loader import ChartDefinition, Dashboard
from src.templating.filters import FilterState
from src.templating.resolver import resolve_template
from src.warehouse.audit import annotate
from src.warehouse.client import BigQueryWarehouse, QueryExecutionError
from src.warehouse.models import QueryRequest
from src.warehouse.service import run_query

logger = get_logger(__name__)

DASHBOARD_ANALYSIS_TYPE = "Dashboard"


@dataclass
class ChartResult:
    chart_id: str
    rows: list[dict[str, Any]] = field(default_factory=list)
    bytes_processed: float = 0.0
    batched: bool = False
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class DashboardData:
    dashboard_id: str
    charts: dict[str, ChartResult] = field(default_factory=dict)
    latency_ms: int = 0

    @property
    def total_bytes_processed(self) -> float:
        return sum(c.bytes_processed for c in self.charts.values())


# ── Batched groups ───────────────────────────────────────

def _total_site_visitors(
    warehouse: BigQueryWarehouse,
    website_id: str,
    filters: FilterState,
    identity: str | None,
    now: datetime | None,
) -> int | None:
    """Site-wide visitor count for proportions; ``None`` if the lookup fails."""
    sql = build_total_visitors_query(website_id, filters, now=now)
    try:
        result = warehouse.execute(annotate(QueryRequest(sql=sql), identity, DASHBOARD_ANALYSIS_TYPE))
    except QueryExecutionError as exc:
        logger.warning("Total site visitors lookup failed -- using scan total: %s", exc)
        return None
    if not result.rows or result.rows[0].get("total") is None:
        return None
    return int(result.rows[0]["total"])


def run_batch_group(
    warehouse: BigQueryWarehouse,
    group: BatchGroup,
    website_id: str,
    identity: str | None,
    now: datetime | None = None,
) -> list[ChartResult]:
    """Execute one combined scan and aggregate every member chart from it.

    Raises
    ------
    QueryExecutionError
        If the combined scan fails; the caller falls back to individual queries.
    """
    logger.info("Executing combined scan for %s (charts: %s)",
                ", ".join(group.attributes), ", ".join(group.chart_ids))
    request = annotate(QueryRequest(sql=group.sql), identity, DASHBOARD_ANALYSIS_TYPE)
    result = warehouse.execute(request)

    total_visitors = None
    if group.filters.metric_type == "proportion":
        total_visitors = _total_site_visitors(warehouse, website_id, group.filters, identity, now)

    per_chart = apportion_bytes(result.total_bytes_processed, len(group.charts))
    chart_results: list[ChartResult] = []
    for chart in group.charts:
        attribute = detect_session_attribute(chart.sql)
        rows = aggregate_attribute(
            result.rows, attribute, group.filters.metric_type, total_site_visitors=total_visitors,
        )
        chart_results.append(ChartResult(chart.id, rows=rows, bytes_processed=per_chart, batched=True))

    logger.info("Combined scan processed %s for %d charts",
                format_gb(result.total_bytes_processed), len(group.charts))
    return chart_results


# ── Individual charts ────────────────────────────────────

def run_chart(
    warehouse: BigQueryWarehouse,
    chart: ChartDefinition,
    website_id: str,
    filters: FilterState,
    identity: str | None,
    now: datetime | None = None,
) -> ChartResult:
    """Resolve and execute one chart's own query; failures land on the result."""
    sql = resolve_template(chart.sql or "", website_id, filters, now=now)
    try:
        response = run_query(warehouse, sql, identity, DASHBOARD_ANALYSIS_TYPE)
    except QueryExecutionError as exc:
        logger.warning("Chart %s failed: %s", chart.id, exc)
        return ChartResult(chart.id, error=str(exc))

    bytes_processed = response.query_stats.total_bytes_processed if response.query_stats else 0.0
    return ChartResult(chart.id, rows=response.data, bytes_processed=bytes_processed)


# ── Public API ───────────────────────────────────────────

def fetch_dashboard(
    warehouse: BigQueryWarehouse,
    dashboard: Dashboard,
    website_id: str,
    filters: FilterState,
    identity: str | None,
    now: datetime | None = None,
) -> DashboardData:
    """Fetch data for every data chart of *dashboard* under *filters*."""
    settings = get_settings()
    logger.info("Dashboard fetch | dashboard=%s | website=%s | metric=%s",
                dashboard.id, website_id, filters.metric_type)

    with timer() as t:
        plan = plan_batches(dashboard.data_charts, filters, website_id, now=now)
        results: dict[str, ChartResult] = {}

        with ThreadPoolExecutor(max_workers=max(1, settings.max_parallel_queries)) as pool:
            group_futures = [
                (group, pool.submit(run_batch_group, warehouse, group, website_id, identity, now))
                for group in plan.groups
            ]
            chart_futures = [
                pool.submit(run_chart, warehouse, chart, website_id, filters, identity, now)
                for chart in plan.individual
            ]

            fallback_futures = []
            for group, future in group_futures:
                try:
                    for chart_result in future.result():
                        results[chart_result.chart_id] = chart_result
                except QueryExecutionError:
                    logger.exception("Combined scan failed -- falling back to individual queries")
                    fallback_futures.extend(
                        pool.submit(run_chart, warehouse, chart, website_id, filters, identity, now)
                        for chart in group.charts
                    )

            for future in chart_futures + fallback_futures:
                chart_result = future.result()
                results[chart_result.chart_id] = chart_result

    # dashboard order, not completion order
    ordered = {c.id: results[c.id] for c in dashboard.data_charts if c.id in results}
    data = DashboardData(dashboard_id=dashboard.id, charts=ordered, latency_ms=t["elapsed_ms"])
    logger.info("Dashboard fetch done | %d charts | %s | %d ms",
                len(ordered), format_gb(data.total_bytes_processed), data.latency_ms)
    return data
