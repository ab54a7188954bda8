"""
BigQuery string-literal helpers shared by the resolver and the inliner.
"""
from __future__ import annotations


def escape_string(value: str) -> str:
    """Backslash-escape a value for use inside a single-quoted literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def quote_string(value: str) -> str:
    return f"'{escape_string(value)}'"
