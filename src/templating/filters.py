"""
FilterState -- the per-request query context that, together with a
template and a website id, fully determines the resolved SQL.
"""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

MetricType = Literal["visitors", "visits", "pageviews", "proportion"]
PathOperator = Literal["equals", "starts-with"]

DEFAULT_PATH = "/"


class FilterState(BaseModel):
    """Caller-supplied filter context. Frozen so it can key a batch group."""

    model_config = ConfigDict(frozen=True)

    url_filters: tuple[str, ...] = Field(
        default=(),
        description="URL paths to filter on; empty means the default path '/'",
    )
    path_operator: PathOperator = Field("equals", description="equals | starts-with")
    date_range: str | None = Field(
        None, description="Named preset (e.g. 'last_7_days') or 'custom'"
    )
    custom_start: datetime | None = None
    custom_end: datetime | None = None
    metric_type: MetricType = Field("visitors", description="visitors | visits | pageviews | proportion")

    @field_validator("url_filters", mode="before")
    @classmethod
    def _split_paths(cls, value):
        if value is None:
            return ()
        if isinstance(value, str):
            value = value.split(",")
        return tuple(p.strip() for p in value if p and p.strip())

    @field_validator("path_operator", mode="before")
    @classmethod
    def _coerce_operator(cls, value):
        return "starts-with" if value == "starts-with" else "equals"

    @property
    def effective_paths(self) -> tuple[str, ...]:
        """Paths the query actually filters on (never empty)."""
        return self.url_filters or (DEFAULT_PATH,)
