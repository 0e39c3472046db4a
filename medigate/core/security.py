"""
Security dependencies for Medigate routes.

The HTTP side of the auth pipeline: builds a RequestContext from the
Starlette request, runs the pipeline and turns an AuthFailure into the
matching PortalError.

Usage:
    from medigate.core.pipeline import require_patient_access, require_role
    from medigate.core.security import authorize

    @router.get("/patients/{patientId}/medical-history")
    async def history(principal: Principal = Depends(authorize(
        require_role("patient", "provider", "admin"),
        require_patient_access("patientId"),
    ))):
        ...
"""

import logging
from typing import TYPE_CHECKING, Optional

from fastapi import Request

from medigate.core.errors import ServiceUnavailableError
from medigate.core.pipeline import AuthFailure, Guard, RequestContext
from medigate.core.principals import Principal
from medigate.core.rate_limit import RateLimitClass
from medigate.core.responses import get_request_id

if TYPE_CHECKING:
    from medigate.core.container import AuthServices

logger = logging.getLogger(__name__)


def get_services(request: Request) -> "AuthServices":
    """The AuthServices container attached by create_app()."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        logger.error("No services container on the application")
        raise ServiceUnavailableError("Authentication service")
    return services


def get_client_ip(request: Request) -> Optional[str]:
    """Peer address of the connection. Forwarding headers are not trusted."""
    return request.client.host if request.client else None


def response_headers(request: Request) -> dict[str, str]:
    """Headers RequestContextMiddleware copies onto the response."""
    headers = getattr(request.state, "response_headers", None)
    if headers is None:
        headers = {}
        request.state.response_headers = headers
    return headers


def build_request_context(
    request: Request,
    *,
    optional: bool = False,
    accept_revoked: bool = False,
) -> RequestContext:
    ctx = RequestContext(
        request_id=get_request_id(request),
        method=request.method,
        path=request.url.path,
        remote_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        authorization=request.headers.get("Authorization"),
        cookies=dict(request.cookies),
        headers=dict(request.headers),
        path_params={key: str(value) for key, value in request.path_params.items()},
        optional=optional,
        accept_revoked=accept_revoked,
        response_headers=response_headers(request),
    )
    request.state.auth_context = ctx
    return ctx


def get_request_context(request: Request) -> RequestContext:
    """Context of the current request, built on first use."""
    ctx = getattr(request.state, "auth_context", None)
    return ctx if ctx is not None else build_request_context(request)


def raise_for_failure(result: Principal | AuthFailure | None) -> Principal | None:
    """The single place a pipeline result becomes an HTTP error."""
    if isinstance(result, AuthFailure):
        raise result.to_error()
    return result


def authorize(
    *guards: Guard,
    rate_limit: Optional[RateLimitClass] = RateLimitClass.GENERAL,
    optional: bool = False,
    accept_revoked: bool = False,
):
    """
    Dependency factory: authenticate the request and run the given guards.

    optional=True yields None for anonymous requests instead of a 401.
    accept_revoked=True admits a revoked but otherwise valid access token
    (used by logout so a repeated call still succeeds).
    """
    async def dependency(request: Request) -> Principal | None:
        services = get_services(request)
        ctx = build_request_context(request, optional=optional, accept_revoked=accept_revoked)
        result = await services.pipeline.run(ctx, guards, rate_limit)
        principal = raise_for_failure(result)
        request.state.principal = principal
        request.state.request_metadata = ctx.metadata
        return principal

    return dependency
