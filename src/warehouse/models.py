"""
Request / response shapes exchanged with the warehouse.
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from src.core.config import get_settings


def _default_location() -> str:
    return get_settings().bigquery_location


class QueryRequest(BaseModel):
    """One submission to BigQuery. Built fresh per call, never reused."""

    sql: str = Field(..., description="Resolved SQL text")
    location: str = Field(default_factory=_default_location, description="Fixed execution region")
    params: dict[str, Any] = Field(default_factory=dict, description="Named @parameters")
    labels: dict[str, str] = Field(default_factory=dict, description="BigQuery job labels")
    dry_run: bool = False


class QueryStats(BaseModel):
    """Byte counts and the derived cost estimate for one query."""

    total_bytes_processed: int
    total_bytes_billed: int
    total_bytes_processed_gb: float
    estimated_cost_usd: float
    cache_hit: bool = False


class QueryResult(BaseModel):
    """Rows from a real execution plus what the job actually scanned."""

    rows: list[dict[str, Any]] = Field(default_factory=list)
    total_bytes_processed: int = 0


class QueryResponse(BaseModel):
    """What the query endpoint hands back to the caller."""

    success: bool = True
    data: list[dict[str, Any]]
    row_count: int
    query_stats: QueryStats | None = None
