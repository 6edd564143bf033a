from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from dcloud.runtime.errors import RegistryError, describe

# Registry error code -> HTTP status.
_STATUS_BY_CODE: Dict[str, int] = {
    "not_found": 404,
    "unauthorized": 403,
    "not_initialized": 409,
    "already_exists": 409,
    "conflict": 409,
    "invalid_input": 422,
    "overflow": 413,
    "unknown": 503,
}


@dataclass(eq=False)
class ApiError(Exception):
    status_code: int
    code: str
    message: str
    details: Dict[str, Any]

    def to_body(self) -> Dict[str, Any]:
        return {"ok": False, "error": {"code": self.code, "message": self.message, "details": self.details}}

    @staticmethod
    def bad_request(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(400, code, message, details or {})

    @staticmethod
    def not_found(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(404, code, message, details or {})

    @staticmethod
    def unavailable(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(503, code, message, details or {})

    @staticmethod
    def from_registry_error(err: RegistryError, extra: Optional[Dict[str, Any]] = None) -> "ApiError":
        details: Dict[str, Any] = {"reason": err.reason, "context": err.details}
        if extra:
            details.update(extra)
        return ApiError(status_for_code(err.code), err.code, describe(err), details)


def status_for_code(code: str) -> int:
    return _STATUS_BY_CODE.get(str(code or ""), 500)
