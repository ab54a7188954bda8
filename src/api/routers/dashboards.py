"""
GET /dashboards, GET /dashboards/{id}, POST /dashboards/{id}/data.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from src.dashboard.config_loader import Dashboard, get_dashboard, load_dashboards
from src.dashboard.service import fetch_dashboard
from src.templating.filters import FilterState
from src.warehouse.client import BigQueryWarehouse, get_warehouse

router = APIRouter()


class ChartItem(BaseModel):
    id: str
    title: str
    kind: str
    description: str = ""
    width: str | None = None
    grouping_dimension: str | None = None
    has_query: bool


class DashboardItem(BaseModel):
    id: str
    title: str
    description: str = ""
    charts: list[ChartItem] = Field(default_factory=list)


class DashboardDataBody(BaseModel):
    website_id: str = Field(..., min_length=1)
    filters: FilterState = Field(default_factory=FilterState)


class ChartDataItem(BaseModel):
    rows: list[dict[str, Any]]
    bytes_processed: float
    batched: bool
    error: str | None = None


class DashboardDataResponse(BaseModel):
    dashboard_id: str
    charts: dict[str, ChartDataItem]
    total_bytes_processed: float
    latency_ms: int


def _to_item(dashboard: Dashboard) -> DashboardItem:
    return DashboardItem(
        id=dashboard.id,
        title=dashboard.title,
        description=dashboard.description,
        charts=[
            ChartItem(
                id=c.id, title=c.title, kind=c.kind, description=c.description,
                width=c.width, grouping_dimension=c.grouping_dimension, has_query=c.has_query,
            )
            for c in dashboard.charts
        ],
    )


def _lookup(dashboard_id: str) -> Dashboard:
    try:
        return get_dashboard(dashboard_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.get("", response_model=list[DashboardItem])
def list_dashboards() -> list[DashboardItem]:
    """Return every configured dashboard with its chart layout."""
    catalog = load_dashboards()
    return [_to_item(d) for d in catalog.dashboards.values()]


@router.get("/{dashboard_id}", response_model=DashboardItem)
def dashboard_detail(dashboard_id: str) -> DashboardItem:
    return _to_item(_lookup(dashboard_id))


@router.post("/{dashboard_id}/data", response_model=DashboardDataResponse)
def dashboard_data(
    dashboard_id: str,
    body: DashboardDataBody,
    warehouse: BigQueryWarehouse = Depends(get_warehouse),
    x_user_ident: str | None = Header(None),
):
    """Fetch every data chart, batching session-attribute charts into one scan."""
    dashboard = _lookup(dashboard_id)
    data = fetch_dashboard(warehouse, dashboard, body.website_id, body.filters, x_user_ident)
    return DashboardDataResponse(
        dashboard_id=data.dashboard_id,
        charts={
            chart_id: ChartDataItem(
                rows=r.rows, bytes_processed=r.bytes_processed, batched=r.batched, error=r.error,
            )
            for chart_id, r in data.charts.items()
        },
        total_bytes_processed=data.total_bytes_processed,
        latency_ms=data.latency_ms,
    )
