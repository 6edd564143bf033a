from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Type


@dataclass(eq=False)
class RegistryError(Exception):
    """Canonical error type for registry validation, apply and commit failures.

    Subclasses fix `code`; `reason` is a short machine-readable tag and
    `details` carries structured context for callers and logs.
    """

    reason: str
    details: Any | None = None

    code: ClassVar[str] = "registry_error"
    retryable: ClassVar[bool] = False

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"

    def to_json(self) -> Dict[str, Any]:
        return {"code": self.code, "reason": self.reason, "details": self.details}


class NotInitialized(RegistryError):
    code = "not_initialized"


class AlreadyExists(RegistryError):
    code = "already_exists"


class NotFound(RegistryError):
    code = "not_found"


class Unauthorized(RegistryError):
    code = "unauthorized"


class InvalidInput(RegistryError):
    code = "invalid_input"


class Overflow(RegistryError):
    code = "overflow"


class Conflict(RegistryError):
    code = "conflict"
    retryable = True


class Unknown(RegistryError):
    """Outcome is ambiguous (timeout, lost lock). Reconcile by querying before any retry."""

    code = "unknown"
    retryable = True


_BY_CODE: Dict[str, Type[RegistryError]] = {
    cls.code: cls
    for cls in (NotInitialized, AlreadyExists, NotFound, Unauthorized, InvalidInput, Overflow, Conflict, Unknown)
}

_MESSAGES: Dict[str, str] = {
    NotInitialized.code: "Storage has not been initialized for this wallet yet.",
    AlreadyExists.code: "This item already exists.",
    NotFound.code: "The requested file does not exist or was deleted.",
    Unauthorized.code: "You are not allowed to perform this action.",
    InvalidInput.code: "The request was malformed.",
    Overflow.code: "Storage quota exceeded.",
    Conflict.code: "Another change touched the same record; refresh and try again.",
    Unknown.code: "The outcome is unknown; refresh before retrying.",
}


def error_for_code(code: str) -> Type[RegistryError]:
    """Map a receipt/HTTP error code back to its exception class (Unknown if unrecognized)."""
    return _BY_CODE.get(str(code or "").strip(), Unknown)


def raise_for_code(code: str, reason: str, details: Any | None = None) -> None:
    raise error_for_code(code)(reason, details)


def describe(err: RegistryError) -> str:
    """User-facing message; distinct per error kind."""
    return _MESSAGES.get(err.code, "Unexpected registry error.")


__all__ = [
    "RegistryError",
    "NotInitialized",
    "AlreadyExists",
    "NotFound",
    "Unauthorized",
    "InvalidInput",
    "Overflow",
    "Conflict",
    "Unknown",
    "error_for_code",
    "raise_for_code",
    "describe",
]
