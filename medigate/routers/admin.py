"""
Admin Router
Administrative session control under /api/v1/admin.
"""

from fastapi import APIRouter, Depends, Request

from medigate.core.container import AuthServices
from medigate.core.pipeline import require_role
from medigate.core.principals import Principal, Role
from medigate.core.rate_limit import RateLimitClass
from medigate.core.responses import ok
from medigate.core.security import authorize, get_request_context, get_services

router = APIRouter()


@router.post("/users/{subjectId}/revoke-sessions")
async def revoke_sessions(
    subjectId: str,
    request: Request,
    principal: Principal = Depends(authorize(require_role(Role.ADMIN), rate_limit=RateLimitClass.STRICT)),
    services: AuthServices = Depends(get_services),
):
    """
    End every refresh session of a user and invalidate their outstanding
    access tokens. The user has to log in again.
    """
    revoked = await services.credentials.revoke_sessions(get_request_context(request), principal, subjectId)
    return ok(request, data={"sessionsRevoked": revoked}, message="Sessions revoked")
