# src/dcloud/api/routes_public.py
from __future__ import annotations

from fastapi import APIRouter

from dcloud.api.routes_public_parts.files import router as files_router
from dcloud.api.routes_public_parts.health import router as health_router
from dcloud.api.routes_public_parts.metrics import router as metrics_router
from dcloud.api.routes_public_parts.storage import router as storage_router
from dcloud.api.routes_public_parts.tx import router as tx_router

public_router = APIRouter()

# Versioned API surface
public_router.include_router(health_router, prefix="/v1", tags=["health"])
public_router.include_router(tx_router, prefix="/v1", tags=["tx"])
public_router.include_router(storage_router, prefix="/v1", tags=["storage"])
public_router.include_router(files_router, prefix="/v1", tags=["files"])

# Ops
public_router.include_router(metrics_router, prefix="/v1", tags=["metrics"])
