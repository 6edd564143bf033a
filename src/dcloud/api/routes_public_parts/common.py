from __future__ import annotations

from typing import Any, Dict

from fastapi import Request

from dcloud.api.errors import ApiError
from dcloud.runtime.executor import TransactionExecutor

Json = Dict[str, Any]

MAX_PAGE_LIMIT = 500


def _executor(request: Request) -> TransactionExecutor:
    ex = getattr(request.app.state, "executor", None)
    if ex is None:
        raise ApiError.unavailable("not_ready", "executor not attached to app.state", {})
    return ex


def _int_param(v: Any, default: int) -> int:
    """Parse an int-ish query param safely."""
    if v is None:
        return int(default)
    try:
        s = str(v).strip()
        if s == "":
            return int(default)
        return int(s)
    except ValueError:
        return int(default)


def _page(limit: Any, offset: Any) -> tuple[int, int]:
    lim = max(1, min(_int_param(limit, 100), MAX_PAGE_LIMIT))
    off = max(0, _int_param(offset, 0))
    return lim, off
