"""
Parameter Inliner -- renders a parameterised query with its bound values
written in as literals, for display and copy-paste into the BigQuery
console.

The output is a debugging aid. No injection defence is applied here; the
values were already bound safely when the query actually ran.
"""
from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

from src.templating.literals import quote_string


def to_literal(value: Any) -> str:
    """Render one bound value as a BigQuery literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, str):
        return quote_string(value)
    if isinstance(value, (datetime, date)):
        return f"'{value.isoformat()}'"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(to_literal(v) for v in value) + "]"
    return str(value)


def inline_parameters(sql: str, params: dict[str, Any] | None) -> str:
    """Replace each ``@name`` in *sql* with the literal value of ``params[name]``.

    Longest names go first so ``@url1`` never eats the prefix of ``@url10``.
    """
    if not sql or not params:
        return sql

    for name in sorted(params, key=len, reverse=True):
        literal = to_literal(params[name])
        sql = re.sub(rf"@{re.escape(name)}\b", lambda m: literal, sql)
    return sql
