from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request

from dcloud.api.routes_public_parts.common import _executor

router = APIRouter()

Json = Dict[str, Any]


@router.get("/storage/{owner}")
def storage_info(request: Request, owner: str) -> Json:
    acct = _executor(request).query_storage(owner)
    return {"ok": True, "storage": acct.to_public()}
