"""
Centralised engine settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_PROJECT_ROOT = Path(__file__).resolve().parents[2]
load_dotenv(_PROJECT_ROOT / ".env")


class Settings(BaseSettings):
    # ── BigQuery ─────────────────────────────────────────
    gcp_project_id: str = "analytics-dev-project"
    bigquery_location: str = "europe-north1"
    bigquery_dataset: str = "umami_views"

    # ── Query engine ─────────────────────────────────────
    civil_timezone: str = "Europe/Oslo"
    price_per_tb_usd: float = 6.25
    batch_row_cap: int = 100_000
    chart_row_cap: int = 1000
    max_parallel_queries: int = 4
    dashboards_path: str = "dashboards/dashboards.yml"

    # ── App ──────────────────────────────────────────────
    api_port: int = 8000
    log_level: str = "INFO"

    @property
    def event_table(self) -> str:
        return f"`{self.gcp_project_id}.{self.bigquery_dataset}.event`"

    @property
    def session_table(self) -> str:
        return f"`{self.gcp_project_id}.{self.bigquery_dataset}.session`"

    @property
    def dashboards_file(self) -> Path:
        path = Path(self.dashboards_path)
        return path if path.is_absolute() else _PROJECT_ROOT / path

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()
