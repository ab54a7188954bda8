"""
Unit tests -- BigQuery wrapper with an in-memory client (no network).
"""
import datetime
import decimal
from concurrent.futures import ThreadPoolExecutor

import pytest
from google.cloud import bigquery

from src.core.config import get_settings
from src.warehouse.client import BigQueryWarehouse, QueryExecutionError, build_query_parameters
from src.warehouse.models import QueryRequest


class _FakeJob:
    def __init__(self, rows, processed=0, billed=None, cache_hit=False):
        self._rows = rows
        self.total_bytes_processed = processed
        self.total_bytes_billed = billed
        self.cache_hit = cache_hit

    def result(self):
        return self._rows


class _FakeClient:
    def __init__(self, job=None, error=None):
        self.job = job
        self.error = error
        self.calls = []

    def query(self, sql, job_config=None, location=None):
        self.calls.append({"sql": sql, "job_config": job_config, "location": location})
        if self.error is not None:
            raise self.error
        return self.job


# ── parameter typing ─────────────────────────────────────

def test_scalar_parameter_types():
    params = build_query_parameters({
        "flag": True,
        "n": 5,
        "ratio": 0.5,
        "at": datetime.datetime(2024, 5, 1, 8, 0),
        "day": datetime.date(2024, 5, 1),
        "name": "x",
    })
    types = {p.name: p.type_ for p in params}
    assert types == {
        "flag": "BOOL", "n": "INT64", "ratio": "FLOAT64",
        "at": "TIMESTAMP", "day": "DATE", "name": "STRING",
    }


def test_list_becomes_array_parameter():
    [param] = build_query_parameters({"urls": ["/a", "/b"]})
    assert isinstance(param, bigquery.ArrayQueryParameter)
    assert param.array_type == "STRING"
    assert param.values == ["/a", "/b"]


def test_empty_list_is_string_array():
    [param] = build_query_parameters({"ids": []})
    assert param.array_type == "STRING"


# ── execute / dry_run ────────────────────────────────────

def test_execute_serialises_rows():
    rows = [{"n": decimal.Decimal("1.5"), "day": datetime.date(2024, 5, 1), "raw": b"ok"}]
    client = _FakeClient(job=_FakeJob(rows, processed=2048))
    wh = BigQueryWarehouse(client=client)

    result = wh.execute(QueryRequest(sql="SELECT 1", location="EU", labels={"user_type": "internal"}))

    assert result.rows == [{"n": 1.5, "day": "2024-05-01", "raw": "ok"}]
    assert result.total_bytes_processed == 2048
    call = client.calls[0]
    assert call["location"] == "EU"
    assert call["job_config"].labels == {"user_type": "internal"}
    assert call["job_config"].dry_run is False


def test_execute_wraps_errors():
    wh = BigQueryWarehouse(client=_FakeClient(error=RuntimeError("Table not found")))
    with pytest.raises(QueryExecutionError, match="Table not found"):
        wh.execute(QueryRequest(sql="SELECT 1"))


def test_dry_run_reads_job_statistics():
    client = _FakeClient(job=_FakeJob([], processed=1024 ** 3, billed=None))
    wh = BigQueryWarehouse(client=client)

    stats = wh.dry_run(QueryRequest(sql="SELECT 1"))

    assert stats.total_bytes_processed == 1024 ** 3
    assert stats.total_bytes_billed == 1024 ** 3
    assert stats.total_bytes_processed_gb == 1.0
    config = client.calls[0]["job_config"]
    assert config.dry_run is True
    assert config.use_query_cache is False


def test_dry_run_priced_on_processed_bytes():
    # BigQuery reports zero billed bytes for a dry run
    client = _FakeClient(job=_FakeJob([], processed=1024 ** 4, billed=0))
    stats = BigQueryWarehouse(client=client).dry_run(QueryRequest(sql="SELECT 1"))

    assert stats.total_bytes_processed == 1024 ** 4
    assert stats.estimated_cost_usd == round(get_settings().price_per_tb_usd, 3)
    assert stats.estimated_cost_usd > 0


def test_client_created_once_across_threads(monkeypatch):
    created = []

    def _make_client(**kwargs):
        created.append(kwargs)
        return _FakeClient(job=_FakeJob([{"n": 1}]))

    monkeypatch.setattr(bigquery, "Client", _make_client)
    wh = BigQueryWarehouse()
    with ThreadPoolExecutor(max_workers=8) as pool:
        clients = list(pool.map(lambda _: wh.client, range(16)))

    assert len(created) == 1
    assert all(c is clients[0] for c in clients)
