"""
Health Router
Liveness and readiness endpoints.

Endpoints:
- /healthz - is the process running?
- /readyz  - can it serve traffic? Reports audit sink state and local audit error count.
"""

from fastapi import APIRouter, Depends

from medigate.core.container import AuthServices
from medigate.core.security import get_services

router = APIRouter()


@router.get("/healthz")
async def health_check(services: AuthServices = Depends(get_services)):
    """Liveness probe. Returns 200 while the process is alive."""
    return {"status": "ok", "timestamp": services.clock.now().isoformat()}


@router.get("/readyz")
async def readiness_check(services: AuthServices = Depends(get_services)):
    """
    Readiness probe.
    Degraded when the audit sink is down or the database does not answer;
    high-severity paths fail closed in that state.
    """
    checks = await services.ready()
    healthy = checks["audit"]["available"] and checks.get("database", {}).get("available", True)
    return {
        "status": "ready" if healthy else "degraded",
        "timestamp": services.clock.now().isoformat(),
        "checks": checks,
    }
