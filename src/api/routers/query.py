"""POST /query -- execute, estimate, inline and resolve ad-hoc SQL."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from src.core.logging import get_logger
from src.templating.filters import FilterState
from src.templating.resolver import resolve_template
from src.warehouse.audit import analysis_type_from_referer
from src.warehouse.client import BigQueryWarehouse, QueryExecutionError, get_warehouse
from src.warehouse.inliner import inline_parameters
from src.warehouse.models import QueryResponse, QueryStats
from src.warehouse.service import estimate_query, run_query

logger = get_logger(__name__)
router = APIRouter()


class QueryBody(BaseModel):
    query: str = Field(..., description="SQL to run (already resolved)")
    analysis_type: str | None = Field(None, description="Analysis category for audit labels")
    params: dict[str, Any] = Field(default_factory=dict, description="Named @parameters")


class EstimateResponse(BaseModel):
    query_stats: QueryStats | None


class InlineBody(BaseModel):
    query: str
    params: dict[str, Any] = Field(default_factory=dict)


class SqlResponse(BaseModel):
    sql: str


class ResolveBody(BaseModel):
    template: str
    website_id: str
    filters: FilterState = Field(default_factory=FilterState)
    variables: dict[str, str] = Field(default_factory=dict, description="Custom {{name}} values")


def _require_sql(sql: str) -> None:
    if not sql or not sql.strip():
        raise HTTPException(status_code=400, detail="Query is required")


@router.post("", response_model=QueryResponse)
def query_endpoint(
    body: QueryBody,
    warehouse: BigQueryWarehouse = Depends(get_warehouse),
    x_user_ident: str | None = Header(None),
    referer: str | None = Header(None),
):
    """Annotate -> execute -> dry-run stats."""
    _require_sql(body.query)
    analysis_type = analysis_type_from_referer(referer, body.analysis_type)
    try:
        return run_query(warehouse, body.query, x_user_ident, analysis_type, params=body.params)
    except QueryExecutionError as exc:
        logger.warning("Query failed for %s: %s", x_user_ident or "UNKNOWN", exc)
        raise HTTPException(status_code=502, detail=str(exc))


@router.post("/estimate", response_model=EstimateResponse)
def estimate_endpoint(
    body: QueryBody,
    warehouse: BigQueryWarehouse = Depends(get_warehouse),
    x_user_ident: str | None = Header(None),
    referer: str | None = Header(None),
):
    """Dry run only; ``query_stats`` is null when the dry run fails."""
    _require_sql(body.query)
    analysis_type = analysis_type_from_referer(referer, body.analysis_type)
    stats = estimate_query(warehouse, body.query, x_user_ident, analysis_type, params=body.params)
    return EstimateResponse(query_stats=stats)


@router.post("/inline", response_model=SqlResponse)
def inline_endpoint(body: InlineBody):
    """Render @parameters as literals, for display and copy/paste."""
    return SqlResponse(sql=inline_parameters(body.query, body.params))


@router.post("/resolve", response_model=SqlResponse)
def resolve_endpoint(body: ResolveBody):
    """Resolve a dashboard template without running it."""
    sql = resolve_template(body.template, body.website_id, body.filters, variables=body.variables)
    return SqlResponse(sql=sql)
