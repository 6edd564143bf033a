from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Request

from dcloud.api.errors import ApiError
from dcloud.api.routes_public_parts.common import _executor, _page
from dcloud.api.schemas import TxSubmitRequest
from dcloud.ledger.types import record_from_json
from dcloud.runtime.errors import error_for_code
from dcloud.runtime.tx_admission_types import TxReceipt

router = APIRouter()

Json = Dict[str, Any]


def _public_result(receipt: TxReceipt) -> Optional[Json]:
    if not isinstance(receipt.result, dict):
        return None
    return record_from_json(receipt.result).to_public()


@router.post("/tx/submit")
def tx_submit(request: Request, body: TxSubmitRequest) -> Json:
    """Submit a signed tx envelope and wait for its terminal receipt.

    Returns:
      { ok, tx_id, status: committed, receipt, record }
    Rejections map the receipt code onto an HTTP status and carry the receipt
    under error.details.receipt.
    """
    ex = _executor(request)
    receipt = ex.submit(body.model_dump())

    if receipt.rejected:
        err = error_for_code(receipt.code)(receipt.reason, receipt.details)
        raise ApiError.from_registry_error(err, {"tx_id": receipt.tx_id, "receipt": receipt.to_json()})

    return {
        "ok": True,
        "tx_id": receipt.tx_id,
        "status": receipt.status,
        "receipt": receipt.redacted().to_json(),
        "record": _public_result(receipt),
    }


@router.get("/tx")
def tx_history(request: Request, limit: Optional[str] = None, offset: Optional[str] = None) -> Json:
    ex = _executor(request)
    lim, off = _page(limit, offset)
    items = [r.to_json() for r in ex.history(limit=lim, offset=off)]
    return {"ok": True, "limit": lim, "offset": off, "count": len(items), "items": items}


@router.get("/tx/{tx_id}")
def tx_status(request: Request, tx_id: str) -> Json:
    """Status values: pending | committed | rejected."""
    ex = _executor(request)
    t = str(tx_id or "").strip()

    status = ex.status(t)
    if status is None:
        raise ApiError.not_found("tx_not_found", "unknown tx_id", {"tx_id": t})

    r = ex.receipt(t)
    return {"ok": True, "tx_id": t, "status": status, "receipt": r.to_json() if r is not None else None}
