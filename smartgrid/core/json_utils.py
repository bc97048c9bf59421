"""
Fast JSON utilities for structured logs and persisted state.

Usage:
    from smartgrid.core.json_utils import dumps, loads

    log.info(dumps({"event": "grid_created", "grid_id": grid.id}))
"""

from __future__ import annotations

from typing import Any

import orjson


def dumps(obj: Any) -> str:
    """Fast JSON encode to string."""
    return orjson.dumps(obj, option=orjson.OPT_NON_STR_KEYS).decode("utf-8")


def dumps_bytes(obj: Any, indent: bool = False) -> bytes:
    """JSON encode to bytes (skips the utf-8 decode)."""
    option = orjson.OPT_NON_STR_KEYS
    if indent:
        option |= orjson.OPT_INDENT_2
    return orjson.dumps(obj, option=option)


def loads(s: str | bytes) -> Any:
    """Fast JSON decode."""
    return orjson.loads(s)
