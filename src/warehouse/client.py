"""
BigQuery warehouse client.

Thin wrapper around ``google.cloud.bigquery.Client``:
  1. Converts the named-parameter map into typed query parameters
  2. Attaches job labels and the execution region
  3. Returns rows as JSON-safe dicts plus the bytes the job processed
  4. Wraps any client error of a real execution in ``QueryExecutionError``

Timeouts and retries are left to the BigQuery client library.
"""
from __future__ import annotations

import datetime
import decimal
import threading
from typing import Any

from google.cloud import bigquery

from src.core.config import get_settings
from src.core.logging import get_logger
from src.core.utils import format_gb, timer
from src.warehouse.cost import stats_from_bytes
from src.warehouse.models import QueryRequest, QueryResult, QueryStats

logger = get_logger(__name__)


class QueryExecutionError(RuntimeError):
    """A real (non-dry-run) query failed in the warehouse."""


def _param_type(value: Any) -> str:
    if isinstance(value, bool):
        return "BOOL"
    if isinstance(value, int):
        return "INT64"
    if isinstance(value, float):
        return "FLOAT64"
    if isinstance(value, datetime.datetime):
        return "TIMESTAMP"
    if isinstance(value, datetime.date):
        return "DATE"
    return "STRING"


def build_query_parameters(params: dict[str, Any]) -> list:
    """Map ``{name: value}`` to BigQuery scalar / array query parameters."""
    query_params: list = []
    for name, value in params.items():
        if isinstance(value, (list, tuple)):
            element_type = _param_type(value[0]) if value else "STRING"
            query_params.append(bigquery.ArrayQueryParameter(name, element_type, list(value)))
        else:
            query_params.append(bigquery.ScalarQueryParameter(name, _param_type(value), value))
    return query_params


def _serialise_value(val: Any) -> Any:
    """Convert BigQuery row values to JSON-serialisable Python types."""
    if isinstance(val, decimal.Decimal):
        return float(val)
    if isinstance(val, (datetime.date, datetime.datetime, datetime.time)):
        return val.isoformat()
    if isinstance(val, bytes):
        return val.decode("utf-8", errors="replace")
    return val


class BigQueryWarehouse:
    """Executes and dry-runs ``QueryRequest``s against BigQuery."""

    def __init__(self, client: bigquery.Client | None = None):
        self._client = client
        self._lock = threading.Lock()

    @property
    def client(self) -> bigquery.Client:
        # dashboard fetches reach this from several pool threads at once
        with self._lock:
            if self._client is None:
                settings = get_settings()
                self._client = bigquery.Client(
                    project=settings.gcp_project_id, location=settings.bigquery_location,
                )
                logger.info("BigQuery client created  project=%s  location=%s",
                            settings.gcp_project_id, settings.bigquery_location)
        return self._client

    def _job_config(self, request: QueryRequest) -> bigquery.QueryJobConfig:
        return bigquery.QueryJobConfig(
            query_parameters=build_query_parameters(request.params),
            labels=dict(request.labels),
            dry_run=request.dry_run,
            use_query_cache=not request.dry_run,
        )

    def execute(self, request: QueryRequest) -> QueryResult:
        """Run *request* and return its rows.

        Raises
        ------
        QueryExecutionError
            If the warehouse rejects or fails the query.
        """
        logger.info("Executing query (%d chars, %d params)", len(request.sql), len(request.params))
        try:
            with timer() as t:
                job = self.client.query(
                    request.sql, job_config=self._job_config(request), location=request.location,
                )
                rows = [
                    {key: _serialise_value(val) for key, val in row.items()}
                    for row in job.result()
                ]
        except Exception as exc:
            logger.exception("BigQuery execution failed")
            raise QueryExecutionError(str(exc)) from exc

        bytes_processed = int(job.total_bytes_processed or 0)
        logger.info("Returned %d rows in %d ms, processed %s",
                    len(rows), t["elapsed_ms"], format_gb(bytes_processed))
        return QueryResult(rows=rows, total_bytes_processed=bytes_processed)

    def dry_run(self, request: QueryRequest) -> QueryStats:
        """Submit *request* as a dry run and return its byte statistics."""
        if not request.dry_run:
            request = request.model_copy(update={"dry_run": True})
        job = self.client.query(
            request.sql, job_config=self._job_config(request), location=request.location,
        )
        processed = int(job.total_bytes_processed or 0)
        billed = job.total_bytes_billed
        return stats_from_bytes(
            processed,
            bytes_billed=int(billed) if billed is not None else None,
            cache_hit=bool(job.cache_hit),
        )


# ── Module-level singleton ──────────────────────────────

_warehouse: BigQueryWarehouse | None = None
_warehouse_lock = threading.Lock()


def get_warehouse() -> BigQueryWarehouse:
    """Return the shared warehouse (client is created on first query)."""
    global _warehouse
    with _warehouse_lock:
        if _warehouse is None:
            _warehouse = BigQueryWarehouse()
    return _warehouse
