"""
Response envelope for Medigate.

Success and error responses share one shape:

    {success, statusCode, message, data?, errors?, errorId?, timestamp, requestId}
"""

from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from pydantic import BaseModel

from medigate.core.clock import new_id


class FieldError(BaseModel):
    """A single problem with the request."""
    field: str | None = None
    message: str
    code: str


class Envelope(BaseModel):
    """Standard response body."""
    success: bool
    statusCode: int
    message: str
    data: Any | None = None
    errors: list[FieldError] | None = None
    errorId: str | None = None
    timestamp: str
    requestId: str


def get_request_id(request: Request) -> str:
    """Request id assigned by RequestContextMiddleware, or a fresh one."""
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-ID") or new_id()
        request.state.request_id = request_id
    return request_id


def request_now(request: Request) -> datetime:
    services = getattr(request.app.state, "services", None)
    if services is not None:
        return services.clock.now()
    return datetime.now(timezone.utc)


def envelope(
    *,
    status_code: int,
    message: str,
    request_id: str,
    timestamp: datetime,
    data: Any = None,
    errors: list[dict] | None = None,
    error_id: str | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "success": status_code < 400,
        "statusCode": status_code,
        "message": message,
        "timestamp": timestamp.isoformat(),
        "requestId": request_id,
    }
    if data is not None:
        body["data"] = data
    if errors:
        body["errors"] = errors
    if error_id:
        body["errorId"] = error_id
    return body


def ok(request: Request, data: Any = None, message: str = "OK", status_code: int = 200) -> dict[str, Any]:
    """Success envelope for a route handler."""
    return envelope(
        status_code=status_code,
        message=message,
        request_id=get_request_id(request),
        timestamp=request_now(request),
        data=data,
    )
