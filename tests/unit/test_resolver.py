"""
Unit tests -- template resolver: URL, date, metric and variable placeholders.
"""
import re

import pytest

from src.core.config import get_settings
from src.templating.filters import FilterState
from src.templating.resolver import resolve_template

settings = get_settings()
EVENT = settings.event_table
SESSION = settings.session_table

TEMPLATE = f"""WITH base_query AS (
  SELECT {EVENT}.* FROM {EVENT}
  WHERE {EVENT}.website_id = '{{{{website_id}}}}'
  AND {EVENT}.event_type = 1
  AND {EVENT}.url_path = [[ {{{{url_sti}}}} --]] '/'
  [[AND {{{{created_at}}}} ]]
)
SELECT
  base_query.url_path,
  COUNT(DISTINCT base_query.session_id) AS unique_visitors
FROM base_query
GROUP BY base_query.url_path
ORDER BY unique_visitors DESC
LIMIT 1000"""

SESSION_TEMPLATE = f"""WITH base_query AS (
  SELECT {EVENT}.*, {SESSION}.country FROM {EVENT}
  LEFT JOIN {SESSION} ON {EVENT}.session_id = {SESSION}.session_id
  WHERE {EVENT}.website_id = '{{{{website_id}}}}'
  [[AND {{{{created_at}}}} ]]
)
SELECT base_query.country, COUNT(DISTINCT base_query.session_id) AS unique_visitors
FROM base_query GROUP BY base_query.country"""

WINDOW = "BETWEEN TIMESTAMP('2024-04-15', 'Europe/Oslo') AND TIMESTAMP('2024-05-15T23:59:59', 'Europe/Oslo')"


def _resolve(now, template=TEMPLATE, website_id="site-1", **filter_kwargs):
    return resolve_template(template, website_id, FilterState(**filter_kwargs), now=now)


def _no_placeholders(sql):
    return "[[" not in sql and "]]" not in sql and "{{" not in sql


# ── website id ───────────────────────────────────────────

def test_website_id_substituted(now):
    sql = _resolve(now)
    assert f"{EVENT}.website_id = 'site-1'" in sql


def test_website_id_escaped(now):
    sql = _resolve(now, website_id="a'b")
    assert r"website_id = 'a\'b'" in sql


# ── URL filter ───────────────────────────────────────────

def test_no_url_filter_keeps_default(now):
    sql = _resolve(now)
    assert f"{EVENT}.url_path = '/'" in sql
    assert _no_placeholders(sql)


def test_single_url_equals(now):
    sql = _resolve(now, url_filters=["/nyheter"])
    assert f"{EVENT}.url_path = '/nyheter'" in sql
    assert "'/'" not in sql


def test_multiple_urls_equals_in_list(now):
    sql = _resolve(now, url_filters=["/a", "/b"])
    assert f"{EVENT}.url_path IN ('/a', '/b')" in sql


def test_single_url_starts_with(now):
    sql = _resolve(now, url_filters=["/a"], path_operator="starts-with")
    assert f"{EVENT}.url_path LIKE '/a%'" in sql


def test_multiple_urls_starts_with(now):
    sql = _resolve(now, url_filters=["/a", "/b"], path_operator="starts-with")
    assert f"({EVENT}.url_path LIKE '/a%' OR {EVENT}.url_path LIKE '/b%')" in sql


def test_url_value_escaped(now):
    sql = _resolve(now, url_filters=["/o'brien\\x"])
    assert r"url_path = '/o\'brien\\x'" in sql


def test_url_path_alias_accepted(now):
    template = "SELECT 1 FROM t WHERE url_path = [[ {{url_path}} --]] '/'"
    sql = _resolve(now, template=template, url_filters=["/a"])
    assert sql == "SELECT 1 FROM t WHERE url_path = '/a'"


def test_optional_url_block_removed_without_filter(now):
    template = "SELECT 1 FROM t WHERE website_id = 'x' [[AND {{url_sti}} ]]"
    assert _resolve(now, template=template).rstrip() == "SELECT 1 FROM t WHERE website_id = 'x'"


def test_optional_url_block_uses_first_filter(now):
    template = "SELECT 1 FROM t WHERE website_id = 'x' [[AND {{url_sti}} ]]"
    sql = _resolve(now, template=template, url_filters=["/a", "/b"], path_operator="starts-with")
    assert sql.endswith("AND url_path LIKE '/a%'")


# ── date window ──────────────────────────────────────────

def test_date_block_becomes_event_window(now):
    sql = _resolve(now)
    assert f"AND {EVENT}.created_at {WINDOW}" in sql
    assert f"{SESSION}.created_at" not in sql


def test_date_block_mirrored_onto_session_table(now):
    sql = _resolve(now, template=SESSION_TEMPLATE)
    assert f"AND {EVENT}.created_at {WINDOW}" in sql
    assert f"AND {SESSION}.created_at {WINDOW}" in sql


def test_existing_session_window_not_duplicated(now):
    template = SESSION_TEMPLATE.replace(
        "[[AND {{created_at}} ]]",
        f"AND {SESSION}.created_at > TIMESTAMP('2024-01-01')\n  [[AND {{{{created_at}}}} ]]",
    )
    sql = _resolve(now, template=template)
    assert sql.count(f"{SESSION}.created_at") == 1


def test_preset_window(now):
    sql = _resolve(now, date_range="last_7_days")
    assert "TIMESTAMP('2024-05-09', 'Europe/Oslo')" in sql


def test_template_without_date_block_untouched(now):
    template = "SELECT COUNT(*) AS n FROM t"
    assert _resolve(now, template=template) == template


# ── metric type ──────────────────────────────────────────

def test_visitors_unchanged(now):
    sql = _resolve(now)
    assert "COUNT(DISTINCT base_query.session_id) AS unique_visitors" in sql
    assert "ORDER BY unique_visitors DESC" in sql


def test_pageviews(now):
    sql = _resolve(now, metric_type="pageviews")
    assert "COUNT(*) AS pageviews" in sql
    assert "ORDER BY pageviews DESC" in sql
    assert "unique_visitors" not in sql


def test_visits(now):
    sql = _resolve(now, metric_type="visits")
    assert "COUNT(DISTINCT visit_id) AS visits" in sql
    assert "ORDER BY visits DESC" in sql
    assert "unique_visitors" not in sql


def test_proportion_uses_site_wide_denominator(now):
    sql = _resolve(now, url_filters=["/a"], metric_type="proportion")
    assert "ROUND(COUNT(DISTINCT base_query.session_id) * 100.0 / (SELECT COUNT(DISTINCT session_id)" in sql
    assert f"FROM {EVENT} WHERE website_id = 'site-1' AND event_type = 1 AND created_at {WINDOW}), 1) AS share" in sql
    assert "ORDER BY share DESC" in sql
    assert "unique_visitors" not in sql


def test_proportion_without_prefix(now):
    template = "SELECT COUNT(DISTINCT session_id) AS unique_visitors FROM t"
    sql = _resolve(now, template=template, metric_type="proportion")
    assert sql.startswith("SELECT ROUND(COUNT(DISTINCT session_id) * 100.0 / (SELECT")


@pytest.mark.parametrize("metric, expected", [
    ("pageviews", "COUNT(*) AS pageviews"),
    ("visits", "COUNT(DISTINCT visit_id) AS visits"),
    ("proportion", "AS share"),
])
def test_metric_substitutions_are_exclusive(now, metric, expected):
    sql = _resolve(now, metric_type=metric)
    others = {
        "COUNT(*) AS pageviews", "COUNT(DISTINCT visit_id) AS visits", "AS share",
    } - {expected}
    assert expected in sql
    assert not any(o in sql for o in others)


@pytest.mark.parametrize("metric", ["visitors", "pageviews", "visits", "proportion"])
def test_resolution_is_idempotent(now, metric):
    filters = FilterState(metric_type=metric, url_filters=["/a"])
    once = resolve_template(TEMPLATE, "site-1", filters, now=now)
    twice = resolve_template(once, "site-1", filters, now=now)
    assert once == twice


# ── custom variables ─────────────────────────────────────

def test_custom_variables(now):
    template = "SELECT * FROM t WHERE n > {{min_views}} AND name = {{event_name}} AND x = {{missing}}"
    sql = resolve_template(
        template, "site-1", FilterState(), now=now,
        variables={"min_views": "10", "event_name": "click's", "missing": ""},
    )
    assert "n > 10" in sql
    assert r"name = 'click\'s'" in sql
    assert "x = {{missing}}" in sql


def test_unknown_placeholder_passes_through(now):
    template = "SELECT {{something_else}} FROM t"
    assert _resolve(now, template=template) == template


# ── full template ────────────────────────────────────────

def test_full_template_leaves_no_placeholder_syntax(now):
    template = TEMPLATE.replace("LIMIT 1000", "[[AND {{url_sti}} ]]\nLIMIT 1000")
    sql = _resolve(now, template=template, date_range="last_7_days")
    assert _no_placeholders(sql)
    assert re.search(r"\bunique_visitors\b", sql)
