from __future__ import annotations

import time

from fastapi import APIRouter, Request

router = APIRouter()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _health_payload(request: Request) -> dict[str, object]:
    # health must never crash; executor may be absent in lightweight boots
    ex = getattr(request.app.state, "executor", None)
    cfg = getattr(ex, "config", None)
    return {
        "ok": True,
        "service": "dcloud-registry",
        "version": "v1",
        "ts_ms": _now_ms(),
        "ready": ex is not None,
        "chain_id": getattr(cfg, "chain_id", None),
        "mode": getattr(cfg, "mode", None),
        "backend": getattr(cfg, "backend", None),
    }


@router.get("/health")
def health(request: Request) -> dict[str, object]:
    return _health_payload(request)
