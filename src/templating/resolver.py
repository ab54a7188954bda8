"""
Template Resolver -- rewrites dashboard query templates into concrete SQL.

Templates come from the dashboard configuration and use Metabase-style
placeholders:

  {{website_id}}                       -> the website id
  = [[ {{url_sti}} --]] '/'            -> default-able URL comparison
  [[AND {{url_sti}} ]]                 -> optional URL predicate
  [[AND {{created_at}} ]]              -> date window on the event table
  COUNT(DISTINCT x.session_id) AS unique_visitors
                                       -> swapped per metric type
  {{any_other_name}}                   -> custom variable

Resolution is a sequence of regex passes and is deliberately fail-open:
placeholder text that doesn't match a pattern is left exactly as written.
The template set is developer-authored, so this is a substitution pass,
not a validator.
"""
from __future__ import annotations

import re
from datetime import datetime

from src.core.config import Settings, get_settings
from src.core.logging import get_logger
from src.templating.date_ranges import resolve_timestamp_bounds
from src.templating.filters import FilterState
from src.templating.literals import escape_string, quote_string

logger = get_logger(__name__)

# ── Aliases produced by metric substitution ─────────────

VISITORS_ALIAS = "unique_visitors"
PAGEVIEWS_ALIAS = "pageviews"
SHARE_ALIAS = "share"
VISITS_ALIAS = "visits"

METRIC_ALIASES = {
    "visitors": VISITORS_ALIAS,
    "pageviews": PAGEVIEWS_ALIAS,
    "proportion": SHARE_ALIAS,
    "visits": VISITS_ALIAS,
}

# ── Compiled patterns ────────────────────────────────────

_WEBSITE_ID = re.compile(r"\{\{\s*website_id\s*\}\}", re.IGNORECASE)

_URL_MARKER = r"\[\[\s*\{\{\s*url_(?:sti|path)\s*\}\}\s*--\s*\]\]"
_URL_MARKER_RE = re.compile(_URL_MARKER + r"\s*", re.IGNORECASE)
_URL_ASSIGNMENT = re.compile(r"=\s*" + _URL_MARKER + r"\s*('[^']*')", re.IGNORECASE)
_URL_COLUMN_ASSIGNMENT = re.compile(
    r"(\S+)\s*=\s*" + _URL_MARKER + r"\s*('[^']*')", re.IGNORECASE
)

_OPTIONAL_URL = re.compile(r"\[\[\s*AND\s*\{\{\s*url_(?:sti|path)\s*\}\}\s*\]\]", re.IGNORECASE)

_DATE_BLOCK = re.compile(r"\[\[\s*AND\s*\{\{\s*created_at\s*\}\}\s*\]\]", re.IGNORECASE)

_VISITOR_AGGREGATE = re.compile(
    r"COUNT\s*\(\s*DISTINCT\s+(?:([\w.`\-]+)\.)?session_id\s*\)\s+AS\s+"
    + VISITORS_ALIAS
    + r"\b",
    re.IGNORECASE,
)
_VISITOR_ALIAS_REF = re.compile(r"\b" + VISITORS_ALIAS + r"\b")

_NUMERIC = re.compile(r"^-?\d+\.?\d*$")


# ── URL filter ───────────────────────────────────────────

def path_condition(column: str, filters: FilterState) -> str:
    """Render the URL predicate for *column* under the filter's operator.

    Shared with the batch planner so a combined scan filters exactly
    like the per-chart templates do.
    """
    paths = [escape_string(p) for p in filters.effective_paths]
    if filters.path_operator == "starts-with":
        if len(paths) == 1:
            return f"{column} LIKE '{paths[0]}%'"
        return "(" + " OR ".join(f"{column} LIKE '{p}%'" for p in paths) + ")"
    if len(paths) == 1:
        return f"{column} = '{paths[0]}'"
    return f"{column} IN (" + ", ".join(f"'{p}'" for p in paths) + ")"


def _substitute_url_block(sql: str, filters: FilterState) -> str:
    if not filters.url_filters:
        # Drop the marker, keep the template's default comparison.
        return _URL_MARKER_RE.sub("", sql)

    paths = [escape_string(p) for p in filters.url_filters]
    if filters.path_operator == "starts-with":
        if len(paths) == 1:
            return _URL_ASSIGNMENT.sub(lambda m: f"LIKE '{paths[0]}%'", sql)
        return _URL_COLUMN_ASSIGNMENT.sub(
            lambda m: "(" + " OR ".join(f"{m.group(1)} LIKE '{p}%'" for p in paths) + ")",
            sql,
        )
    if len(paths) == 1:
        return _URL_ASSIGNMENT.sub(lambda m: f"= '{paths[0]}'", sql)
    in_list = ", ".join(f"'{p}'" for p in paths)
    return _URL_ASSIGNMENT.sub(lambda m: f"IN ({in_list})", sql)


def _substitute_optional_url(sql: str, filters: FilterState) -> str:
    if not filters.url_filters:
        return _OPTIONAL_URL.sub("", sql)
    first = escape_string(filters.url_filters[0])
    if filters.path_operator == "starts-with":
        clause = f"AND url_path LIKE '{first}%'"
    else:
        clause = f"AND url_path = '{first}'"
    return _OPTIONAL_URL.sub(lambda m: clause, sql)


# ── Date window ──────────────────────────────────────────

def _date_clause(sql: str, from_sql: str, to_sql: str, settings: Settings) -> str:
    clause = f"AND {settings.event_table}.created_at BETWEEN {from_sql} AND {to_sql}"
    session_table = settings.session_table
    joins_session = session_table in sql
    has_session_window = re.search(re.escape(session_table) + r"\.created_at", sql) is not None
    if joins_session and not has_session_window:
        # session is partitioned on created_at; without this it is fully scanned
        clause += f"\n  AND {session_table}.created_at BETWEEN {from_sql} AND {to_sql}"
    return clause


# ── Metric type ──────────────────────────────────────────

def total_visitors_subquery(website_id: str, from_sql: str, to_sql: str, settings: Settings) -> str:
    """Site-wide distinct sessions for the window. Ignores the URL filter."""
    return (
        f"(SELECT COUNT(DISTINCT session_id) FROM {settings.event_table} "
        f"WHERE website_id = {quote_string(website_id)} AND event_type = 1 "
        f"AND created_at BETWEEN {from_sql} AND {to_sql})"
    )


def _substitute_metric(
    sql: str,
    filters: FilterState,
    website_id: str,
    from_sql: str,
    to_sql: str,
    settings: Settings,
) -> str:
    metric = filters.metric_type
    if metric == "visitors":
        return sql

    if metric == "pageviews":
        sql = _VISITOR_AGGREGATE.sub(f"COUNT(*) AS {PAGEVIEWS_ALIAS}", sql)
    elif metric == "visits":
        sql = _VISITOR_AGGREGATE.sub(f"COUNT(DISTINCT visit_id) AS {VISITS_ALIAS}", sql)
    else:
        # Denominator is the whole site, not the URL-filtered subset.
        denominator = total_visitors_subquery(website_id, from_sql, to_sql, settings)

        def _share(m: re.Match) -> str:
            session_ref = f"{m.group(1)}.session_id" if m.group(1) else "session_id"
            return (
                f"ROUND(COUNT(DISTINCT {session_ref}) * 100.0 / {denominator}, 1) "
                f"AS {SHARE_ALIAS}"
            )

        sql = _VISITOR_AGGREGATE.sub(_share, sql)

    new_alias = METRIC_ALIASES[metric]
    return _VISITOR_ALIAS_REF.sub(new_alias, sql)


# ── Custom variables ─────────────────────────────────────

def _substitute_variables(sql: str, variables: dict[str, str]) -> str:
    for name, value in variables.items():
        if value is None or value == "":
            continue
        pattern = re.compile(r"\{\{\s*" + re.escape(name) + r"\s*\}\}", re.IGNORECASE)
        literal = value if _NUMERIC.match(value) else quote_string(value)
        sql = pattern.sub(lambda m: literal, sql)
    return sql


# ── Public API ───────────────────────────────────────────

def has_filter_placeholders(template: str) -> bool:
    """True if *template* takes both the URL filter and the date window."""
    return bool(_URL_MARKER_RE.search(template) and _DATE_BLOCK.search(template))


def resolve_template(
    template: str,
    website_id: str,
    filters: FilterState,
    *,
    variables: dict[str, str] | None = None,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> str:
    """Replace every recognised placeholder in *template*.

    Never raises for a well-formed template; anything unrecognised is
    passed through untouched.
    """
    settings = settings or get_settings()
    from_sql, to_sql = resolve_timestamp_bounds(filters, now=now, tz_name=settings.civil_timezone)

    sql = _WEBSITE_ID.sub(lambda m: escape_string(website_id), template)
    sql = _substitute_url_block(sql, filters)
    sql = _substitute_optional_url(sql, filters)
    if _DATE_BLOCK.search(sql):
        clause = _date_clause(sql, from_sql, to_sql, settings)
        sql = _DATE_BLOCK.sub(lambda m: clause, sql)
    sql = _substitute_metric(sql, filters, website_id, from_sql, to_sql, settings)
    if variables:
        sql = _substitute_variables(sql, variables)

    logger.debug("Resolved template (%d -> %d chars) metric=%s", len(template), len(sql), filters.metric_type)
    return sql
