"""
Audit annotation for every query sent to BigQuery.

Two records of the same facts go out with each job:
  1. job labels  -- machine-queryable, used for cost/usage reports
  2. a SQL comment header -- visible to anyone reading query history

BigQuery label values may only contain lowercase letters, digits,
underscores and dashes (max 63 chars), so every value is sanitised first.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from urllib.parse import urlparse

from src.warehouse.models import QueryRequest

USER_TYPE = "internal"
UNKNOWN_IDENTITY = "UNKNOWN"

_LABEL_INVALID = re.compile(r"[^a-z0-9_-]")
_LABEL_MAX_LEN = 63

# Analysis pages whose referer overrides the client-supplied category.
_REFERER_ANALYSIS_TYPES = {
    "/trafikkanalyse": "trafikkanalyse",
    "/markedsanalyse": "markedsanalyse",
}


def sanitize_label(value: str | None) -> str:
    """Coerce *value* into a valid label value. Idempotent."""
    cleaned = _LABEL_INVALID.sub("_", (value or "").lower())[:_LABEL_MAX_LEN]
    return cleaned or "unknown"


_LINE_BREAK = re.compile(r"[\r\n]+")


def _single_line(value: str) -> str:
    # a line break would end the -- comment and leak the rest into the SQL
    return _LINE_BREAK.sub(" ", value)


def _comment_header(identity: str, analysis_type: str | None, dry_run: bool, now: datetime) -> str:
    lines = [f"-- User: {_single_line(identity)}", f"-- Timestamp: {now.isoformat()}"]
    if dry_run:
        lines.append("-- Mode: Dry Run")
    if analysis_type:
        lines.append(f"-- Analysis: {_single_line(analysis_type)}")
    return "\n".join(lines)


def annotate(
    request: QueryRequest,
    identity: str | None,
    analysis_type: str | None = None,
    *,
    now: datetime | None = None,
) -> QueryRequest:
    """Attach audit labels and the comment header to *request* in place."""
    identity = identity or UNKNOWN_IDENTITY
    labels = dict(request.labels)
    labels.update(
        user_ident=sanitize_label(identity),
        user_type=USER_TYPE,
        job_mode="dry_run" if request.dry_run else "execution",
    )
    if analysis_type:
        labels["analysis_type"] = sanitize_label(analysis_type)
    request.labels = labels

    if request.sql.strip():
        now = now or datetime.now(timezone.utc)
        header = _comment_header(identity, analysis_type, request.dry_run, now)
        request.sql = f"{header}\n{request.sql}"
    return request


def analysis_type_from_referer(referer: str | None, fallback: str | None) -> str | None:
    """Use the analysis page in *referer* as the category when it is a known one."""
    if not referer:
        return fallback
    try:
        path = urlparse(referer).path
    except ValueError:
        return fallback
    return _REFERER_ANALYSIS_TYPES.get(path, fallback)
