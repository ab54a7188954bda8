"""
Query service -- annotate -> execute -> estimate for a single SQL string.

The real execution and the dry run are independent; the dry run only runs
after the rows are in hand and its failure never affects them. Only a
failed real execution reaches the caller (as ``QueryExecutionError``).
"""
from __future__ import annotations

from typing import Any

from src.core.logging import get_logger
from src.warehouse.audit import annotate
from src.warehouse.client import BigQueryWarehouse
from src.warehouse.cost import estimate_cost
from src.warehouse.models import QueryRequest, QueryResponse, QueryStats

logger = get_logger(__name__)


def run_query(
    warehouse: BigQueryWarehouse,
    sql: str,
    identity: str | None,
    analysis_type: str | None = None,
    params: dict[str, Any] | None = None,
    estimate: bool = True,
) -> QueryResponse:
    """Execute *sql* with audit annotation, then attach dry-run stats."""
    request = QueryRequest(sql=sql, params=dict(params or {}))
    result = warehouse.execute(annotate(request, identity, analysis_type))

    stats = None
    if estimate:
        stats = estimate_cost(
            warehouse, QueryRequest(sql=sql, params=dict(params or {})), identity, analysis_type,
        )

    return QueryResponse(
        data=result.rows,
        row_count=len(result.rows),
        query_stats=stats,
    )


def estimate_query(
    warehouse: BigQueryWarehouse,
    sql: str,
    identity: str | None,
    analysis_type: str | None = None,
    params: dict[str, Any] | None = None,
) -> QueryStats | None:
    """Dry-run only."""
    return estimate_cost(warehouse, QueryRequest(sql=sql, params=dict(params or {})), identity, analysis_type)
