from __future__ import annotations

from itertools import islice
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request

from dcloud.api.routes_public_parts.common import _executor, _page

router = APIRouter()

Json = Dict[str, Any]


@router.get("/files/{owner}")
def list_files(request: Request, owner: str, limit: Optional[str] = None, offset: Optional[str] = None) -> Json:
    """Live files of `owner`, oldest upload first."""
    lim, off = _page(limit, offset)
    it = _executor(request).list_files(owner)
    files = [rec.to_public() for rec in islice(it, off, off + lim)]
    return {"ok": True, "owner": owner, "limit": lim, "offset": off, "count": len(files), "files": files}


@router.get("/files/{owner}/{file_hash}")
def file_metadata(request: Request, owner: str, file_hash: str) -> Json:
    """Metadata lookup; does not count as a read."""
    rec = _executor(request).get_file(owner, file_hash)
    return {"ok": True, "file": rec.to_public()}
