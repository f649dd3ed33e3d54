"""
Small shared utilities.
"""
from __future__ import annotations

import time
import uuid
from contextlib import contextmanager
from typing import Generator


@contextmanager
def timer() -> Generator[dict, None, None]:
    """Records elapsed wall-clock milliseconds into the yielded dict."""
    result: dict = {}
    start = time.perf_counter()
    try:
        yield result
    finally:
        result["elapsed_ms"] = int((time.perf_counter() - start) * 1000)


def short_id() -> str:
    """Eight hex chars, used to correlate the log lines of one query."""
    return uuid.uuid4().hex[:8]


def table_ref(database: str, schema: str, table: str) -> str:
    return f"{database}.{schema}.{table}"
