"""
Cost Estimator -- dry-run a query and price the bytes it would scan.

BigQuery on-demand pricing is per TiB scanned. The dry-run byte count is an
estimate; the real job may scan more or less. A failed dry run is logged and
reported as "no estimate", never as an error. Cost is advisory only and must
not get in the way of the real query.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from src.core.config import get_settings
from src.core.logging import get_logger
from src.warehouse.audit import annotate
from src.warehouse.models import QueryRequest, QueryStats

if TYPE_CHECKING:
    from src.warehouse.client import BigQueryWarehouse

logger = get_logger(__name__)

BYTES_PER_GB = 1024 ** 3
BYTES_PER_TB = 1024 ** 4


def stats_from_bytes(
    bytes_processed: int,
    bytes_billed: int | None = None,
    cache_hit: bool = False,
    price_per_tb: float | None = None,
) -> QueryStats:
    """Derive GB and USD figures from a raw byte count.

    Cost is always priced on processed bytes. A dry run reports zero billed
    bytes, so billed is informational only (and falls back to processed).
    """
    if price_per_tb is None:
        price_per_tb = get_settings().price_per_tb_usd
    billed = bytes_billed or bytes_processed
    return QueryStats(
        total_bytes_processed=bytes_processed,
        total_bytes_billed=billed,
        total_bytes_processed_gb=round(bytes_processed / BYTES_PER_GB, 2),
        estimated_cost_usd=round(bytes_processed / BYTES_PER_TB * price_per_tb, 3),
        cache_hit=cache_hit,
    )


def estimate_cost(
    warehouse: "BigQueryWarehouse",
    request: QueryRequest,
    identity: str | None,
    analysis_type: str | None = None,
) -> QueryStats | None:
    """Dry-run an equivalent of *request*; ``None`` if the dry run fails."""
    dry_request = QueryRequest(
        sql=request.sql,
        location=request.location,
        params=dict(request.params),
        dry_run=True,
    )
    annotate(dry_request, identity, analysis_type)
    try:
        stats = warehouse.dry_run(dry_request)
    except Exception as exc:
        logger.warning("Dry run failed -- continuing without cost estimate: %s", exc)
        return None

    logger.info("Dry run: %.2f GB, estimated cost $%.3f",
                stats.total_bytes_processed_gb, stats.estimated_cost_usd)
    return stats
