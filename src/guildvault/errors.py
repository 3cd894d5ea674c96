"""Structured error codes and exception classes for guildvault."""

from __future__ import annotations

__all__ = [
    "ErrorCode",
    "GuildVaultError",
    "ValidationError",
    "ForbiddenError",
    "NotFoundError",
    "InternalError",
    "ErrorResponse",
    "ERROR_STATUS_MAP",
]

from enum import Enum

from pydantic import BaseModel


class ErrorCode(str, Enum):
    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_INVALID = "AUTH_INVALID"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Map ErrorCode → default HTTP status code
ERROR_STATUS_MAP: dict[ErrorCode, int] = {
    ErrorCode.AUTH_REQUIRED: 401,
    ErrorCode.AUTH_INVALID: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.INTERNAL_ERROR: 500,
}


class GuildVaultError(Exception):
    """Structured application error that maps to a JSON error response."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: dict | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details: dict = details or {}
        self.status_code: int = status_code if status_code is not None else ERROR_STATUS_MAP.get(code, 500)


class ValidationError(GuildVaultError):
    """Malformed or out-of-bound input. Raised before any mutation."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrorCode.VALIDATION_ERROR, message, details)


class ForbiddenError(GuildVaultError):
    """Caller lacks membership or capability. Raised before any mutation."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrorCode.FORBIDDEN, message, details)


class NotFoundError(GuildVaultError):
    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(ErrorCode.NOT_FOUND, message, details)


class InternalError(GuildVaultError):
    """Persistence or unexpected failure inside a unit of work (rolled back)."""

    def __init__(self, message: str = "An unexpected error occurred", details: dict | None = None) -> None:
        super().__init__(ErrorCode.INTERNAL_ERROR, message, details)


class ErrorResponse(BaseModel):
    """Serialisable envelope for all error responses."""

    error: dict  # {code: str, message: str, details: dict}

    @classmethod
    def from_guildvault_error(cls, exc: GuildVaultError) -> "ErrorResponse":
        return cls(error={"code": exc.code.value, "message": exc.message, "details": exc.details})

    @classmethod
    def internal(cls, message: str = "An unexpected error occurred") -> "ErrorResponse":
        return cls(error={
            "code": ErrorCode.INTERNAL_ERROR.value,
            "message": message,
            "details": {},
        })
