"""
Small shared utilities.
"""
from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Generator

_BYTES_PER_GB = 1024 ** 3


@contextmanager
def timer() -> Generator[dict, None, None]:
    """Context manager that records elapsed wall-clock milliseconds."""
    result: dict = {}
    start = time.perf_counter()
    try:
        yield result
    finally:
        result["elapsed_ms"] = int((time.perf_counter() - start) * 1000)


def format_gb(num_bytes: float) -> str:
    """Human-readable gigabytes for log lines, e.g. ``'12.40 GB'``."""
    return f"{num_bytes / _BYTES_PER_GB:.2f} GB"
