"""
Request Context Middleware for Medigate.

Assigns the request id, times the request, logs start and completion, and
copies headers collected during the request (rate-limit counters) onto
the response, including error responses.
"""

import logging
import re
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from medigate.core.clock import new_id

logger = logging.getLogger("medigate.requests")

_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Per-request bookkeeping.

    Features:
    - Accepts a well-formed X-Request-ID or generates one, and echoes it
    - X-Response-Time on every response
    - Rate-limit headers recorded by the auth pipeline
    - Structured start/completion logging
    """

    # Paths to exclude from logging (health checks)
    EXCLUDE_PATHS = {
        "/healthz",
        "/readyz",
        "/favicon.ico",
    }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        incoming = request.headers.get("X-Request-ID", "")
        request_id = incoming if _REQUEST_ID.match(incoming) else new_id()
        request.state.request_id = request_id
        request.state.response_headers = {}

        quiet = path in self.EXCLUDE_PATHS
        start_time = time.perf_counter()
        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": path,
            "client_ip": request.client.host if request.client else "unknown",
        }
        if not quiet:
            logger.info("Request started: %s %s", request.method, path, extra=log_data)

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.exception(
                "Request failed: %s %s -> 500 (%.2fms)",
                request.method, path, duration_ms,
                extra={**log_data, "status_code": 500, "duration_ms": round(duration_ms, 2)},
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        for name, value in request.state.response_headers.items():
            if name not in response.headers:
                response.headers[name] = value
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

        if not quiet:
            log_data.update({
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            })
            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logger.log(
                level,
                "Request completed: %s %s -> %d (%.2fms)",
                request.method, path, response.status_code, duration_ms,
                extra=log_data,
            )
        return response
