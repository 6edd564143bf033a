from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from dcloud.api.errors import ApiError
from dcloud.api.middleware import RequestLogMiddleware, RequestSizeLimitMiddleware
from dcloud.api.routes_public import public_router
from dcloud.runtime.errors import RegistryError
from dcloud.runtime.executor import TransactionExecutor
from dcloud.runtime.executor_boot import build_executor as _build_executor
from dcloud.structured_logging import configure_structured_logging, log_event

logger = logging.getLogger("dcloud.api")


def build_executor() -> TransactionExecutor:
    """Build a TransactionExecutor for the API runtime.

    This wrapper exists so tests can monkeypatch `dcloud.api.app.build_executor`
    without reaching into runtime modules.
    """
    return _build_executor()


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(RegistryError)
    async def registry_error_handler(request: Request, exc: RegistryError):
        err = ApiError.from_registry_error(exc)
        log_event(
            logger,
            "registry_error",
            level=logging.WARNING if exc.retryable else logging.INFO,
            request_id=getattr(request.state, "request_id", None),
            path=str(request.url.path or ""),
            code=exc.code,
            reason=exc.reason,
        )
        return JSONResponse(status_code=err.status_code, content=err.to_body())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        err = ApiError(422, "invalid_input", "The request was malformed.", {"errors": jsonable_encoder(exc.errors())})
        return JSONResponse(status_code=422, content=err.to_body())


def create_app(*, executor: Optional[TransactionExecutor] = None, boot_runtime: bool = True) -> FastAPI:
    """Create the FastAPI application.

    executor:
      - attach this executor instead of building one (tests, embedding)
    boot_runtime:
      - True (default): build an executor from DCLOUD_* config when none is given
      - False: keep lightweight; data routes answer 503 not_ready
    """
    if executor is None and boot_runtime:
        executor = build_executor()

    cfg = getattr(executor, "config", None)
    configure_structured_logging(getattr(cfg, "log_level", None))

    mode = str(getattr(cfg, "mode", None) or os.environ.get("DCLOUD_MODE", "prod")).strip().lower()

    # Disable docs in production.
    if mode == "prod":
        app = FastAPI(title="DCloud Registry API", docs_url=None, redoc_url=None, openapi_url=None)
    else:
        app = FastAPI(title="DCloud Registry API")

    app.state.executor = executor

    # --- Middleware ---
    # Size limiter sits inside the request logger so rejections are still logged.
    app.add_middleware(RequestSizeLimitMiddleware)
    app.add_middleware(RequestLogMiddleware)

    _install_error_handlers(app)

    # --- Routers ---
    app.include_router(public_router)

    return app
