"""
Request Timeout Middleware for Medigate.

Enforces the overall request budget. A request that runs past it is
abandoned and answered with 503; the timeout is audited as
UPSTREAM_TIMEOUT. Rate-limit counters already taken by the request stay
counted.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from medigate.core.errors import UpstreamTimeoutError, portal_error_handler

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TimeoutMiddleware(BaseHTTPMiddleware):
    """
    Middleware to enforce the request budget.

    Usage:
        app.add_middleware(TimeoutMiddleware, timeout=5.0)
    """

    # Paths excluded from the budget
    EXCLUDED_PATHS = {
        "/healthz",
    }

    def __init__(self, app, timeout: float = 5.0):
        super().__init__(app)
        self.default_timeout = timeout

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXCLUDED_PATHS:
            return await call_next(request)

        try:
            return await asyncio.wait_for(call_next(request), timeout=self.default_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Request budget exceeded: %s %s (%.1fs)",
                request.method,
                request.url.path,
                self.default_timeout,
                extra={
                    "timeout_seconds": self.default_timeout,
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            return await portal_error_handler(request, UpstreamTimeoutError("request budget"))


async def call_with_timeout(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await an outbound call, raising UpstreamTimeoutError past the timeout."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning("Upstream call timed out: %s (%.1fs)", operation, timeout)
        raise UpstreamTimeoutError(operation) from e
