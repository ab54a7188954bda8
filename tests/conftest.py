"""
Shared fakes -- an in-memory warehouse that records every request.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable
from zoneinfo import ZoneInfo

import pytest

from src.warehouse.client import QueryExecutionError
from src.warehouse.cost import stats_from_bytes
from src.warehouse.models import QueryRequest, QueryResult, QueryStats

# Wednesday, mid-month, midday in Oslo.
FIXED_NOW = datetime(2024, 5, 15, 12, 0, tzinfo=ZoneInfo("Europe/Oslo"))


class FakeWarehouse:
    """Stands in for ``BigQueryWarehouse``.

    ``responder(sql)`` decides the rows per query; ``fail_when(sql)`` makes
    a real execution raise ``QueryExecutionError``.
    """

    def __init__(
        self,
        rows: list[dict] | None = None,
        bytes_processed: int = 1024 ** 3,
        dry_run_bytes: int = 2 * 1024 ** 3,
        responder: Callable[[str], list[dict]] | None = None,
        fail_when: Callable[[str], bool] | None = None,
        fail_dry_run: bool = False,
    ):
        self.rows = rows or []
        self.bytes_processed = bytes_processed
        self.dry_run_bytes = dry_run_bytes
        self.responder = responder
        self.fail_when = fail_when
        self.fail_dry_run = fail_dry_run
        self.executed: list[QueryRequest] = []
        self.dry_runs: list[QueryRequest] = []

    def execute(self, request: QueryRequest) -> QueryResult:
        self.executed.append(request)
        if self.fail_when is not None and self.fail_when(request.sql):
            raise QueryExecutionError("Syntax error: Unexpected keyword")
        rows = self.responder(request.sql) if self.responder else self.rows
        return QueryResult(rows=rows, total_bytes_processed=self.bytes_processed)

    def dry_run(self, request: QueryRequest) -> QueryStats:
        self.dry_runs.append(request)
        if self.fail_dry_run:
            raise RuntimeError("Access Denied: dry run")
        return stats_from_bytes(self.dry_run_bytes)

    @property
    def executed_sql(self) -> list[str]:
        return [r.sql for r in self.executed]


@pytest.fixture
def make_warehouse() -> type[FakeWarehouse]:
    return FakeWarehouse


@pytest.fixture
def warehouse() -> FakeWarehouse:
    return FakeWarehouse(rows=[{"n": 1}])


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW
