from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    default_status_code = 400
    default_code = "API_ERROR"

    def __init__(
        self,
        status_code: int | None = None,
        code: str | None = None,
        message: str = "Request failed.",
        *,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code or self.default_status_code
        self.code = code or self.default_code
        self.message = message
        self.details = details


class ValidationError(ApiError):
    default_status_code = 400
    default_code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(code=code, message=message, details=details)


class AuthorizationError(ApiError):
    default_status_code = 403
    default_code = "FORBIDDEN"

    def __init__(self, message: str = "Insufficient permissions.", *, code: str | None = None):
        super().__init__(code=code, message=message)


class InvalidTransitionError(ApiError):
    default_status_code = 400
    default_code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str):
        super().__init__(
            message=f"Invalid status transition from {current} to {target}.",
            details={"from": current, "to": target},
        )
        self.current = current
        self.target = target


class ConflictError(ApiError):
    default_status_code = 409
    default_code = "CONFLICT"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(code=code, message=message, details=details)


class NotFoundError(ApiError):
    default_status_code = 404
    default_code = "NOT_FOUND"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(code=code, message=message)


class PersistenceError(ApiError):
    default_status_code = 500
    default_code = "PERSISTENCE_ERROR"

    def __init__(self, message: str = "Failed to persist changes."):
        super().__init__(message=message)


class ExternalServiceDegraded(Exception):
    """Raised inside collaborator adapters only; callers convert it to a fallback."""

    def __init__(self, service: str, reason: str):
        super().__init__(f"{service}: {reason}")
        self.service = service
        self.reason = reason


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "request_id": get_request_id(request),
    }
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error})
