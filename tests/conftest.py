"""
Medigate - Test Fixtures

A manual clock, fast Argon2 parameters, a seeded in-memory user store and
an app with a few gated demo routes standing in for the portal's
patient and medical-record endpoints.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from fastapi import APIRouter, Depends, Request
from httpx import ASGITransport, AsyncClient

from medigate.core.audit import AuditEventType, MemoryAuditSink
from medigate.core.clock import Clock
from medigate.core.config import Settings
from medigate.core.container import AuthServices, build_services
from medigate.core.pipeline import (
    require_medical_scope,
    require_patient_access,
    require_permissions,
    require_role,
    require_verified,
)
from medigate.core.principals import (
    InMemoryUserStore,
    Principal,
    Relationship,
    Role,
    UserRecord,
    default_permissions,
)
from medigate.core.responses import ok
from medigate.core.security import authorize
from medigate.core.tokens import AccessClaims, MedicalClaims, RefreshClaims, TokenVariant
from medigate.main import create_app

START = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

PASSWORD = "CorrectHorse9"


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


def make_settings(**overrides) -> Settings:
    values = dict(
        _env_file=None,
        access_token_secret="access-secret-for-tests-0123456789abcdef",
        refresh_token_secret="refresh-secret-for-tests-0123456789abcdef",
        medical_token_secret="medical-secret-for-tests-0123456789abcdef",
        password_kdf_params="t=1,m=8,p=1",
    )
    values.update(overrides)
    return Settings(**values)


# =============================================================================
# Demo routes
# =============================================================================

demo_router = APIRouter()


@demo_router.get("/api/v1/patients/{patientId}/medical-history")
async def medical_history(
    patientId: str,
    request: Request,
    principal: Principal = Depends(authorize(
        require_role(Role.PATIENT, Role.PROVIDER, Role.ADMIN),
        require_patient_access("patientId"),
    )),
):
    return ok(request, data={"patientId": patientId, "entries": []})


@demo_router.get("/api/v1/medical-records/{patientId}/summary")
async def record_summary(
    patientId: str,
    request: Request,
    principal: Principal = Depends(authorize(
        require_role(Role.PROVIDER),
        require_medical_scope("patientId"),
    )),
):
    return ok(request, data={"patientId": patientId, "summary": "stable"})


@demo_router.post("/api/v1/medical-records/{patientId}/lab-notes")
async def lab_note(
    patientId: str,
    request: Request,
    principal: Principal = Depends(authorize(
        require_role(Role.PROVIDER),
        require_medical_scope("patientId", record_type="lab"),
    )),
):
    return ok(request, data={"patientId": patientId})


@demo_router.get("/api/v1/billing/invoices")
async def invoices(request: Request, principal: Principal = Depends(authorize(require_permissions("billing_read")))):
    return ok(request, data=[])


@demo_router.post("/api/v1/prescriptions")
async def prescribe(
    request: Request,
    principal: Principal = Depends(authorize(require_verified("email+phone"))),
):
    return ok(request, data={"created": True})


@demo_router.get("/api/v1/prescriptions")
async def list_prescriptions(
    request: Request,
    principal: Principal = Depends(authorize(require_verified("email+phone"))),
):
    return ok(request, data=[])


@demo_router.get("/api/v1/directory")
async def directory(request: Request, principal: Optional[Principal] = Depends(authorize(optional=True))):
    return ok(request, data={"viewer": principal.subject_id if principal else None})


# =============================================================================
# Seeding
# =============================================================================

SEED_USERS = [
    # subject_id, role, email, phone, email_verified, phone_verified
    ("A", Role.PATIENT, "a@x.io", None, True, False),
    ("P1", Role.PATIENT, "p1@x.io", None, True, False),
    ("P2", Role.PATIENT, "p2@x.io", None, True, False),
    ("P", Role.PATIENT, "p@x.io", None, True, False),
    ("D", Role.PROVIDER, "d@x.io", "+15550100001", True, True),
    ("ADM1", Role.ADMIN, "admin@x.io", None, True, False),
]


async def seed(services: AuthServices) -> None:
    password_hash = await services.hasher.hash(PASSWORD)
    for subject_id, role, email, phone, email_verified, phone_verified in SEED_USERS:
        await services.users.create_user(UserRecord(
            subject_id=subject_id,
            role=role,
            email=email,
            phone=phone,
            permissions=default_permissions(role),
            is_active=True,
            is_email_verified=email_verified,
            is_phone_verified=phone_verified,
            password_hash=password_hash,
            first_name=subject_id,
            last_name="Test",
        ))
    store = services.users.store
    relationship = Relationship(provider_id="D", patient_id="P")
    if isinstance(store, InMemoryUserStore):
        store.add_relationship(relationship)
    else:
        await store.add_relationship(relationship)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
async def services(settings, clock) -> AuthServices:
    services = build_services(settings, clock=clock)
    await seed(services)
    return services


@pytest.fixture
def app(services):
    application = create_app(services=services)
    application.include_router(demo_router)
    return application


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="https://test") as ac:
        yield ac


# =============================================================================
# Helpers
# =============================================================================

def access_token(services: AuthServices, subject_id: str, role: str = "patient", **times) -> str:
    return services.codec.sign(TokenVariant.ACCESS, AccessClaims(subject_id=subject_id, role=role, **times))


def refresh_token(services: AuthServices, subject_id: str, family: str = "fam-1", **times) -> str:
    return services.codec.sign(TokenVariant.REFRESH, RefreshClaims(subject_id=subject_id, family=family, **times))


def medical_token(services: AuthServices, provider_id: str = "D", patient_id: str = "P", **fields) -> str:
    values = dict(record_type="summary", reason="follow-up consultation")
    values.update(fields)
    return services.codec.sign(
        TokenVariant.MEDICAL,
        MedicalClaims(provider_id=provider_id, patient_id=patient_id, **values),
    )


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def audit_events(services: AuthServices, event_type: AuditEventType):
    """Events accepted by the audit log (durable and buffered)."""
    return [event for event in services.audit.recent(1000) if event.event_type is event_type]


def sink(services: AuthServices) -> MemoryAuditSink:
    assert isinstance(services.audit.sink, MemoryAuditSink)
    return services.audit.sink


async def login(client: AsyncClient, email: str = "a@x.io", password: str = PASSWORD):
    return await client.post("/api/v1/users/login", json={"email": email, "password": password})
