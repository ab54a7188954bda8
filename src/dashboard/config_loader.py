"""
Loads, parses, and caches the dashboard configuration YAML into immutable
chart definitions.

The configuration is the single source of truth for:
  - which dashboards exist and their chart order
  - each chart's kind, title and query template
  - the session attribute a chart groups by (used by the batch planner)

Templates refer to tables as ``$event_table`` / ``$session_table``; these are
expanded once at load time to the fully-qualified names from settings.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from string import Template
from typing import Any

import yaml

from src.core.config import Settings, get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

CHART_KINDS = {"line", "table", "metric", "composite", "title"}


# ── Typed domain objects ─────────────────────────────────

@dataclass(frozen=True)
class ChartDefinition:
    id: str
    title: str
    kind: str  # line | table | metric | composite | title
    sql: str | None = None
    grouping_dimension: str | None = None
    description: str = ""
    width: str | None = None

    @property
    def has_query(self) -> bool:
        return bool(self.sql and self.sql.strip())


@dataclass(frozen=True)
class Dashboard:
    id: str
    title: str
    description: str = ""
    charts: tuple[ChartDefinition, ...] = field(default_factory=tuple)

    @property
    def data_charts(self) -> list[ChartDefinition]:
        return [c for c in self.charts if c.has_query]


@dataclass(frozen=True)
class DashboardCatalog:
    """Every configured dashboard, keyed by id."""

    version: int
    dashboards: dict[str, Dashboard]

    def dashboard(self, dashboard_id: str) -> Dashboard | None:
        return self.dashboards.get(dashboard_id)

    def get_dashboard_ids(self) -> list[str]:
        return list(self.dashboards.keys())


# ── Parsing ──────────────────────────────────────────────

def _expand_tables(sql: str | None, settings: Settings) -> str | None:
    if sql is None:
        return None
    return Template(sql).safe_substitute(
        event_table=settings.event_table,
        session_table=settings.session_table,
    )


def _parse_chart(raw: dict[str, Any], settings: Settings) -> ChartDefinition:
    kind = raw.get("kind", "table")
    if kind not in CHART_KINDS:
        raise ValueError(f"Chart '{raw.get('id')}' has unknown kind '{kind}'")
    return ChartDefinition(
        id=raw["id"],
        title=raw.get("title", raw["id"]),
        kind=kind,
        sql=_expand_tables(raw.get("sql"), settings),
        grouping_dimension=raw.get("grouping_dimension"),
        description=raw.get("description", ""),
        width=str(raw["width"]) if raw.get("width") is not None else None,
    )


def _parse_dashboard(raw: dict[str, Any], settings: Settings) -> Dashboard:
    charts = tuple(_parse_chart(c, settings) for c in raw.get("charts", []))
    ids = [c.id for c in charts]
    if len(ids) != len(set(ids)):
        raise ValueError(f"Dashboard '{raw['id']}' has duplicate chart ids")
    return Dashboard(
        id=raw["id"],
        title=raw.get("title", raw["id"]),
        description=raw.get("description", ""),
        charts=charts,
    )


def parse_catalog(raw_yaml: dict[str, Any], settings: Settings | None = None) -> DashboardCatalog:
    settings = settings or get_settings()
    dashboards = {d["id"]: _parse_dashboard(d, settings) for d in raw_yaml.get("dashboards", [])}
    return DashboardCatalog(version=raw_yaml.get("version", 1), dashboards=dashboards)


# ── Public API ───────────────────────────────────────────

@lru_cache
def load_dashboards() -> DashboardCatalog:
    """Load and cache the dashboard catalog from YAML."""
    settings = get_settings()
    with open(settings.dashboards_file, encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    catalog = parse_catalog(raw, settings)
    logger.info("Loaded %d dashboards from %s", len(catalog.dashboards), settings.dashboards_file)
    return catalog


def get_dashboard(dashboard_id: str) -> Dashboard:
    """Return a dashboard by id.

    Raises
    ------
    ValueError
        If no dashboard has that id.
    """
    catalog = load_dashboards()
    dashboard = catalog.dashboard(dashboard_id)
    if dashboard is None:
        known = ", ".join(catalog.get_dashboard_ids())
        raise ValueError(f"Unknown dashboard '{dashboard_id}' (known: {known})")
    return dashboard
