"""
Standardized Error Handling for Medigate.

Every client-visible failure is a PortalError (or is converted into one's
envelope here). These handlers are the only place that turns failures into
HTTP responses; messages are redacted on the way out and each error gets
an opaque errorId that is logged with the internal detail.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from medigate.core.clock import new_id
from medigate.core.redaction import redact
from medigate.core.responses import envelope, get_request_id, request_now

logger = logging.getLogger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class PortalError(Exception):
    """Base exception for client-visible Medigate errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "portal_error",
        status_code: int = 500,
        errors: list[dict] | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.errors = errors
        self.headers = headers or {}
        super().__init__(message)


class BadRequestError(PortalError):
    """Malformed input."""

    def __init__(self, message: str = "Malformed request", errors: list[dict] | None = None):
        super().__init__(
            message=message,
            error_code="bad_request",
            status_code=400,
            errors=errors,
        )


class AuthenticationError(PortalError):
    """Missing, invalid, expired, revoked or replayed credential."""

    def __init__(self, message: str = "authentication required", code: str = "authentication_required"):
        super().__init__(
            message=message,
            error_code=code,
            status_code=401,
            errors=[{"field": None, "message": message, "code": code}],
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(PortalError):
    """Authenticated but not permitted."""

    def __init__(self, message: str = "access denied", code: str = "permission_denied"):
        super().__init__(
            message=message,
            error_code=code,
            status_code=403,
            errors=[{"field": None, "message": message, "code": code}],
        )


class NotFoundError(PortalError):
    """Resource not found."""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} '{identifier}' not found"
        super().__init__(
            message=message,
            error_code="not_found",
            status_code=404,
        )


class ConflictError(PortalError):
    """Business conflict (duplicate identifier, reused code)."""

    def __init__(self, message: str = "Resource conflict", code: str = "conflict"):
        super().__init__(
            message=message,
            error_code=code,
            status_code=409,
            errors=[{"field": None, "message": message, "code": code}],
        )


class ValidationError(PortalError):
    """Policy or semantic validation failure."""

    def __init__(self, message: str, errors: list[dict] | None = None):
        super().__init__(
            message=message,
            error_code="validation_error",
            status_code=422,
            errors=errors,
        )


class RateLimitError(PortalError):
    """Rate limit exceeded."""

    def __init__(self, retry_after: int, headers: dict[str, str] | None = None):
        merged = dict(headers or {})
        merged["Retry-After"] = str(retry_after)
        super().__init__(
            message=f"Too many requests. Retry after {retry_after} seconds.",
            error_code="rate_limit_exceeded",
            status_code=429,
            errors=[{"field": None, "message": "rate limit exceeded", "code": "rate_limited"}],
            headers=merged,
        )
        self.retry_after = retry_after


class ServiceUnavailableError(PortalError):
    """A dependency needed for this request is degraded."""

    def __init__(self, service: str = "Service", code: str = "service_unavailable"):
        super().__init__(
            message=f"{service} is temporarily unavailable",
            error_code=code,
            status_code=503,
            headers={"Retry-After": "30"},
        )


class UpstreamTimeoutError(ServiceUnavailableError):
    """An outbound call or the request budget ran out of time."""

    def __init__(self, operation: str = "upstream call", audited: bool = False):
        super().__init__(service="Upstream dependency", code="upstream_timeout")
        self.operation = operation
        self.audited = audited


class AuditUnavailableError(ServiceUnavailableError):
    """The audit sink is down and the event is too severe to drop."""

    def __init__(self):
        super().__init__(service="Audit log", code="audit_unavailable")


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_response(
    request: Request,
    status_code: int,
    message: str,
    errors: list[dict] | None = None,
    headers: dict[str, str] | None = None,
    error_id: Optional[str] = None,
) -> JSONResponse:
    cleaned = [
        {
            "field": error.get("field"),
            "message": redact(str(error.get("message", ""))),
            "code": error.get("code", "error"),
        }
        for error in errors or []
    ]
    return JSONResponse(
        status_code=status_code,
        content=envelope(
            status_code=status_code,
            message=redact(message),
            request_id=get_request_id(request),
            timestamp=request_now(request),
            errors=cleaned or None,
            error_id=error_id or new_id(),
        ),
        headers=headers or None,
    )


async def _audit_timeout(request: Request, exc: UpstreamTimeoutError) -> None:
    services = getattr(request.app.state, "services", None)
    if services is None:
        return
    from medigate.core.audit import AuditEventType, Outcome
    await services.audit.record(
        AuditEventType.UPSTREAM_TIMEOUT,
        outcome=Outcome.ERROR,
        remote_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
        request_id=get_request_id(request),
        details={"operation": exc.operation, "path": request.url.path},
    )


async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    """Handle Medigate exceptions."""
    error_id = new_id()
    if isinstance(exc, UpstreamTimeoutError) and not exc.audited:
        await _audit_timeout(request, exc)

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "PortalError: %s - %s",
        exc.error_code,
        exc.message,
        extra={
            "error_code": exc.error_code,
            "error_id": error_id,
            "path": request.url.path,
            "status_code": exc.status_code,
        },
    )
    return _error_response(
        request,
        exc.status_code,
        exc.message,
        errors=exc.errors,
        headers=exc.headers,
        error_id=error_id,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle framework HTTP exceptions (unknown route, wrong method)."""
    error_codes = {
        400: "bad_request",
        401: "authentication_required",
        403: "permission_denied",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        422: "validation_error",
        429: "rate_limit_exceeded",
        500: "internal_error",
        503: "service_unavailable",
    }
    error_code = error_codes.get(exc.status_code, "error")
    message = str(exc.detail) if exc.detail else f"HTTP {exc.status_code}"
    return _error_response(
        request,
        exc.status_code,
        message,
        errors=[{"field": None, "message": message, "code": error_code}],
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic request validation errors."""
    errors = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", []) if part != "body"]
        errors.append({
            "field": ".".join(location) or None,
            "message": error.get("msg", ""),
            "code": error.get("type", "invalid"),
        })

    logger.info(
        "Validation error on %s: %d issues",
        request.url.path,
        len(errors),
    )
    return _error_response(request, 422, "Request validation failed", errors=errors)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions without exposing internals."""
    error_id = new_id()
    logger.error(
        "Unhandled exception on %s (errorId=%s): %s",
        request.url.path,
        error_id,
        type(exc).__name__,
        exc_info=True,
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_id": error_id,
        },
    )
    return _error_response(request, 500, "An unexpected error occurred", error_id=error_id)


# =============================================================================
# Setup Function
# =============================================================================

def setup_exception_handlers(app: FastAPI) -> None:
    """
    Register all exception handlers with the FastAPI app.

    Call during app initialization:
        setup_exception_handlers(app)
    """
    app.add_exception_handler(PortalError, portal_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)


__all__ = [
    "PortalError",
    "BadRequestError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "RateLimitError",
    "ServiceUnavailableError",
    "UpstreamTimeoutError",
    "AuditUnavailableError",
    "setup_exception_handlers",
]
