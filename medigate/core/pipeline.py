"""
Auth Pipeline for Medigate.

Decorates each inbound request with a Principal or a typed AuthFailure.
The stages always run in this order and stop at the first failure:

    1. extract the bearer token (Authorization header, then accessToken cookie)
    2. verify it as an access token
    3. check the revocation list and the subject's "not before" instant
    4. load the user record (missing -> 401, inactive -> 403)
    5. build the Principal
    6. count the request against its rate-limit class
    7. run the route's guards
    8. attach request metadata

Every denial is written to the audit log before run() returns; success
events are buffered. run() never raises: timeouts, an unreachable counter
store and a fail-closed audit sink all come back as AuthFailure values.
HTTP mapping happens in medigate.core.security.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Mapping, Optional, Sequence, TypeVar

from medigate.core.audit import AuditEventType, AuditLog, Outcome, Severity, invalid_token_severity
from medigate.core.clock import Clock
from medigate.core.errors import (
    AuditUnavailableError,
    AuthenticationError,
    AuthorizationError,
    PortalError,
    RateLimitError,
    ServiceUnavailableError,
    UpstreamTimeoutError,
)
from medigate.core.principals import (
    READ_ONLY_METHODS,
    Principal,
    PrincipalStore,
    Role,
    VerificationLevel,
)
from medigate.core.rate_limit import CounterStoreError, Denied, RateLimitClass, RateLimiter
from medigate.core.redaction import mask_id
from medigate.core.sessions import SessionStore
from medigate.core.tokens import AccessClaims, MedicalClaims, TokenCodec, TokenFailure, TokenVariant

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUTH_REQUIRED = "authentication required"
ACCESS_DENIED = "access denied"
MEDICAL_TOKEN_HEADER = "X-Medical-Access-Token"
ACCESS_TOKEN_COOKIE = "accessToken"


# =============================================================================
# Token Extraction
# =============================================================================

# Authorization = scheme 1*SP token68 (RFC 7235). Scheme match is case-insensitive.
_CREDENTIALS = re.compile(r"^\s*([!#$%&'*+.^_`|~0-9A-Za-z-]+)(?:[ \t]+(.*?))?\s*$")
_TOKEN68 = re.compile(r"^[A-Za-z0-9\-._~+/]+=*$")


@dataclass(frozen=True)
class ExtractedToken:
    token: Optional[str]
    source: Optional[str] = None
    malformed: bool = False


def extract_token(authorization: Optional[str], cookies: Mapping[str, str]) -> ExtractedToken:
    """
    Find the access token for a request.

    - "Bearer <token68>" in Authorization wins.
    - "Bearer" with a missing or ill-formed value is malformed (no cookie fallback).
    - Any other scheme is ignored and the accessToken cookie is used.
    """
    if authorization is not None and authorization.strip():
        match = _CREDENTIALS.match(authorization)
        if match is None:
            return ExtractedToken(None, "header", malformed=True)
        scheme, value = match.group(1), match.group(2)
        if scheme.lower() == "bearer":
            if not value or not _TOKEN68.match(value):
                return ExtractedToken(None, "header", malformed=True)
            return ExtractedToken(value, "header")

    cookie = cookies.get(ACCESS_TOKEN_COOKIE)
    if cookie is not None:
        cookie = cookie.strip()
        if not cookie:
            return ExtractedToken(None)
        if not _TOKEN68.match(cookie):
            return ExtractedToken(None, "cookie", malformed=True)
        return ExtractedToken(cookie, "cookie")
    return ExtractedToken(None)


# =============================================================================
# Request Context & Failures
# =============================================================================

@dataclass
class RequestContext:
    """Everything the pipeline needs to know about one request."""
    request_id: str
    method: str
    path: str
    remote_address: Optional[str] = None
    user_agent: Optional[str] = None
    authorization: Optional[str] = None
    cookies: Mapping[str, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    path_params: Mapping[str, str] = field(default_factory=dict)
    optional: bool = False
    accept_revoked: bool = False
    principal: Optional[Principal] = None
    access_claims: Optional[AccessClaims] = None
    medical_claims: Optional[MedicalClaims] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    response_headers: dict[str, str] = field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def audit_fields(self) -> dict[str, Any]:
        return {
            "remote_address": self.remote_address,
            "user_agent": self.user_agent,
            "request_id": self.request_id,
        }


class DenialKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    INVALID_TOKEN = "invalid_token"
    MISSING_SUBJECT = "missing_subject"
    INACTIVE_SUBJECT = "inactive_subject"
    UNAUTHORIZED_ROLE = "unauthorized_role"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    PATIENT_ACCESS = "patient_access"
    UNVERIFIED = "unverified"
    MEDICAL_SCOPE = "medical_scope"
    RATE_LIMITED = "rate_limited"
    AUDIT_UNAVAILABLE = "audit_unavailable"
    SERVICE_UNAVAILABLE = "service_unavailable"
    UPSTREAM_TIMEOUT = "upstream_timeout"


_STATUS = {
    DenialKind.UNAUTHENTICATED: 401,
    DenialKind.INVALID_TOKEN: 401,
    DenialKind.MISSING_SUBJECT: 401,
    DenialKind.INACTIVE_SUBJECT: 403,
    DenialKind.UNAUTHORIZED_ROLE: 403,
    DenialKind.INSUFFICIENT_PERMISSIONS: 403,
    DenialKind.PATIENT_ACCESS: 403,
    DenialKind.UNVERIFIED: 403,
    DenialKind.MEDICAL_SCOPE: 403,
    DenialKind.RATE_LIMITED: 429,
    DenialKind.AUDIT_UNAVAILABLE: 503,
    DenialKind.SERVICE_UNAVAILABLE: 503,
    DenialKind.UPSTREAM_TIMEOUT: 503,
}


@dataclass(frozen=True)
class AuthFailure:
    """Typed pipeline failure; converted to an HTTP error by to_error()."""
    kind: DenialKind
    code: str
    retry_after: Optional[int] = None
    headers: Mapping[str, str] = field(default_factory=dict)
    operation: Optional[str] = None

    @property
    def status_code(self) -> int:
        return _STATUS[self.kind]

    def to_error(self) -> PortalError:
        status = self.status_code
        if status == 401:
            return AuthenticationError(AUTH_REQUIRED, code=self.code)
        if status == 403:
            return AuthorizationError(ACCESS_DENIED, code=self.code)
        if status == 429:
            return RateLimitError(self.retry_after or 1, headers=dict(self.headers))
        if self.kind is DenialKind.UPSTREAM_TIMEOUT:
            return UpstreamTimeoutError(self.operation or "auth pipeline", audited=True)
        if self.kind is DenialKind.AUDIT_UNAVAILABLE:
            return AuditUnavailableError()
        return ServiceUnavailableError("Authentication service")


# =============================================================================
# Pipeline
# =============================================================================

class AuthPipeline:
    """Ordered composition of token codec, principal store, limiter and audit log."""

    def __init__(
        self,
        codec: TokenCodec,
        principals: PrincipalStore,
        sessions: SessionStore,
        limiter: RateLimiter,
        audit: AuditLog,
        clock: Clock,
        upstream_timeout: float = 2.0,
    ):
        self.codec = codec
        self.principals = principals
        self.sessions = sessions
        self.limiter = limiter
        self.audit = audit
        self.clock = clock
        self.upstream_timeout = upstream_timeout

    async def call(self, awaitable: Awaitable[T], operation: str) -> T:
        """Await a dependency call under the per-call timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.upstream_timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamTimeoutError(operation) from e

    async def run(
        self,
        ctx: RequestContext,
        guards: Sequence["Guard"] = (),
        rate_limit: Optional[RateLimitClass] = RateLimitClass.GENERAL,
    ) -> Principal | AuthFailure | None:
        """
        Run every stage for one request.

        Returns the Principal, None for an anonymous request on an
        optional-auth route, or an AuthFailure.
        """
        try:
            return await self._run(ctx, guards, rate_limit)
        except UpstreamTimeoutError as e:
            return await self._timeout_failure(ctx, e.operation)
        except AuditUnavailableError:
            return AuthFailure(DenialKind.AUDIT_UNAVAILABLE, "audit_unavailable")
        except CounterStoreError:
            logger.error("Rate-limit store unavailable", extra={"request_id": ctx.request_id})
            return AuthFailure(DenialKind.SERVICE_UNAVAILABLE, "rate_limiter_unavailable")

    async def _run(
        self,
        ctx: RequestContext,
        guards: Sequence["Guard"],
        rate_limit: Optional[RateLimitClass],
    ) -> Principal | AuthFailure | None:
        principal = await self.authenticate(ctx)
        if isinstance(principal, AuthFailure):
            return principal

        if principal is None:
            # Anonymous request on an optional-auth route.
            if rate_limit is not None:
                throttled = await self.throttle(ctx, None, rate_limit)
                if throttled is not None:
                    return throttled
            return None

        ctx.principal = principal
        if rate_limit is not None:
            throttled = await self.throttle(ctx, principal, rate_limit)
            if throttled is not None:
                return throttled

        denied = await self.authorize(ctx, principal, guards)
        if denied is not None:
            return denied

        ctx.metadata = self.request_metadata(ctx, principal)
        self.audit.record_later(
            AuditEventType.AUTHENTICATION_SUCCESS,
            subject_id=principal.subject_id,
            details={"method": ctx.method, "path": ctx.path},
            **ctx.audit_fields(),
        )
        return principal

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def authenticate(self, ctx: RequestContext) -> Principal | AuthFailure | None:
        """Stages 1 to 5."""
        extracted = extract_token(ctx.authorization, ctx.cookies)
        if extracted.malformed:
            return await self.deny(
                ctx,
                DenialKind.INVALID_TOKEN,
                AuditEventType.INVALID_TOKEN,
                code="invalid_token",
                details={"variant": "Malformed", "source": extracted.source},
                severity=invalid_token_severity("Malformed"),
            )
        if extracted.token is None:
            if ctx.optional:
                return None
            return await self.deny(
                ctx,
                DenialKind.UNAUTHENTICATED,
                AuditEventType.UNAUTHENTICATED_ATTEMPT,
                code="authentication_required",
                details={"method": ctx.method, "path": ctx.path},
            )

        claims = self.codec.verify(TokenVariant.ACCESS, extracted.token)
        if isinstance(claims, TokenFailure):
            return await self.deny(
                ctx,
                DenialKind.INVALID_TOKEN,
                AuditEventType.INVALID_TOKEN,
                code="invalid_token",
                details={"variant": claims.kind.value, "source": extracted.source},
                severity=invalid_token_severity(claims.kind.value),
            )

        if not ctx.accept_revoked and await self._is_revoked(claims):
            return await self.deny(
                ctx,
                DenialKind.INVALID_TOKEN,
                AuditEventType.INVALID_TOKEN,
                code="invalid_token",
                subject_id=claims.subject_id,
                details={"variant": "Revoked", "source": extracted.source},
                severity=invalid_token_severity("Revoked"),
            )

        user = await self.call(self.principals.load_by_subject(claims.subject_id), "principal lookup")
        if user is None:
            return await self.deny(
                ctx,
                DenialKind.MISSING_SUBJECT,
                AuditEventType.INACTIVE_OR_MISSING_SUBJECT,
                code="authentication_required",
                subject_id=claims.subject_id,
                details={"reason": "missing"},
            )
        if not user.is_active:
            return await self.deny(
                ctx,
                DenialKind.INACTIVE_SUBJECT,
                AuditEventType.INACTIVE_OR_MISSING_SUBJECT,
                code="account_inactive",
                subject_id=claims.subject_id,
                details={"reason": "inactive"},
            )

        ctx.access_claims = claims
        return Principal.from_user(user, claims.token_id, claims.issued_at, claims.expires_at)

    async def _is_revoked(self, claims: AccessClaims) -> bool:
        now = self.clock.now()
        if await self.call(self.sessions.is_access_token_revoked(claims.token_id, now), "revocation lookup"):
            return True
        not_before = await self.call(self.sessions.not_before(claims.subject_id), "revocation lookup")
        return not_before is not None and claims.issued_at < not_before

    async def throttle(
        self,
        ctx: RequestContext,
        principal: Optional[Principal],
        key_class: RateLimitClass,
    ) -> AuthFailure | None:
        """Stage 6. general is keyed by remote address, strict by subject."""
        if key_class is RateLimitClass.STRICT and principal is not None:
            key = principal.subject_id
        else:
            key = ctx.remote_address or "unknown"

        decision = await self.call(self.limiter.check(key_class, key), "rate limiter")
        if isinstance(decision, Denied):
            return await self.deny(
                ctx,
                DenialKind.RATE_LIMITED,
                AuditEventType.RATE_LIMITED,
                code="rate_limited",
                subject_id=principal.subject_id if principal else None,
                details={"class": key_class.value, "retryAfter": decision.retry_after},
                retry_after=decision.retry_after,
                headers=decision.headers(),
            )
        ctx.response_headers.update(decision.headers())
        return None

    async def authorize(
        self,
        ctx: RequestContext,
        principal: Principal,
        guards: Sequence["Guard"],
    ) -> AuthFailure | None:
        """Stage 7: guards in declaration order; the first denial wins."""
        for guard in guards:
            failure = await guard.check(self, principal, ctx)
            if failure is not None:
                return failure
        return None

    def request_metadata(self, ctx: RequestContext, principal: Principal) -> dict[str, Any]:
        metadata = {
            "requestId": ctx.request_id,
            "subjectIdMasked": mask_id(principal.subject_id),
            "role": principal.role.value,
            "tokenIdMasked": mask_id(principal.token_id),
            "authenticatedAt": self.clock.now().isoformat(),
            "method": ctx.method,
            "path": ctx.path,
        }
        if ctx.medical_claims is not None:
            metadata["medicalScope"] = {
                "recordType": ctx.medical_claims.record_type,
                "permissions": list(ctx.medical_claims.permissions),
                "urgency": ctx.medical_claims.urgency,
            }
        return metadata

    # -------------------------------------------------------------------------
    # Failure helpers
    # -------------------------------------------------------------------------

    async def deny(
        self,
        ctx: RequestContext,
        kind: DenialKind,
        event_type: AuditEventType,
        *,
        code: str,
        subject_id: Optional[str] = None,
        target_id: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
        severity: Optional[Severity] = None,
        retry_after: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> AuthFailure:
        """Durably audit a denial, then return it."""
        if subject_id is None and ctx.principal is not None:
            subject_id = ctx.principal.subject_id
        await self.audit.record(
            event_type,
            outcome=Outcome.DENIED,
            subject_id=subject_id,
            target_id=target_id,
            details=details,
            severity=severity,
            **ctx.audit_fields(),
        )
        logger.info(
            "Request denied: %s %s -> %s",
            ctx.method,
            ctx.path,
            kind.value,
            extra={"request_id": ctx.request_id, "error_code": code},
        )
        return AuthFailure(kind, code, retry_after=retry_after, headers=dict(headers or {}))

    async def _timeout_failure(self, ctx: RequestContext, operation: str) -> AuthFailure:
        logger.error(
            "Upstream timeout during %s",
            operation,
            extra={"request_id": ctx.request_id, "path": ctx.path},
        )
        try:
            await self.audit.record(
                AuditEventType.UPSTREAM_TIMEOUT,
                outcome=Outcome.ERROR,
                subject_id=ctx.principal.subject_id if ctx.principal else None,
                details={"operation": operation, "path": ctx.path},
                **ctx.audit_fields(),
            )
        except AuditUnavailableError:
            return AuthFailure(DenialKind.AUDIT_UNAVAILABLE, "audit_unavailable")
        return AuthFailure(DenialKind.UPSTREAM_TIMEOUT, "upstream_timeout", operation=operation)


# =============================================================================
# Guards
# =============================================================================

class Guard(ABC):
    """A per-route authorization check run after authentication."""

    @abstractmethod
    async def check(
        self,
        pipeline: AuthPipeline,
        principal: Principal,
        ctx: RequestContext,
    ) -> AuthFailure | None:
        pass


class RequireRole(Guard):
    def __init__(self, *roles: Role | str):
        self.roles = frozenset(Role(role) for role in roles)

    async def check(self, pipeline, principal, ctx):
        if principal.role in self.roles:
            return None
        return await pipeline.deny(
            ctx,
            DenialKind.UNAUTHORIZED_ROLE,
            AuditEventType.UNAUTHORIZED_ROLE,
            code="unauthorized_role",
            details={"role": principal.role.value, "required": sorted(role.value for role in self.roles)},
        )


class RequirePermissions(Guard):
    def __init__(self, *permissions: str):
        self.permissions = frozenset(permissions)

    async def check(self, pipeline, principal, ctx):
        if principal.has_permissions(*self.permissions):
            return None
        return await pipeline.deny(
            ctx,
            DenialKind.INSUFFICIENT_PERMISSIONS,
            AuditEventType.INSUFFICIENT_PERMISSIONS,
            code="insufficient_permissions",
            details={"missing": sorted(self.permissions - principal.permissions)},
        )


class RequirePatientAccess(Guard):
    """
    Admins may access any patient, patients only themselves, providers only
    patients they hold an active assignment for.
    """

    def __init__(self, param: str = "patientId"):
        self.param = param

    async def check(self, pipeline, principal, ctx):
        patient_id = ctx.path_params.get(self.param)

        if patient_id and principal.role is Role.ADMIN:
            if patient_id != principal.subject_id:
                pipeline.audit.record_later(
                    AuditEventType.ADMIN_ACCESS,
                    subject_id=principal.subject_id,
                    target_id=patient_id,
                    details={"method": ctx.method, "path": ctx.path},
                    **ctx.audit_fields(),
                )
            return None

        if patient_id and principal.role is Role.PATIENT and principal.subject_id == patient_id:
            return None

        if patient_id and principal.role is Role.PROVIDER:
            related = await pipeline.call(
                pipeline.principals.has_provider_patient_relationship(principal.subject_id, patient_id),
                "relationship lookup",
            )
            if related:
                pipeline.audit.record_later(
                    AuditEventType.HEALTHCARE_PROVIDER_ACCESS,
                    subject_id=principal.subject_id,
                    target_id=patient_id,
                    details={"method": ctx.method, "path": ctx.path},
                    **ctx.audit_fields(),
                )
                return None

        return await pipeline.deny(
            ctx,
            DenialKind.PATIENT_ACCESS,
            AuditEventType.UNAUTHORIZED_PATIENT_ACCESS,
            code="patient_access_denied",
            target_id=patient_id,
            details={"role": principal.role.value, "method": ctx.method},
        )


class RequireVerified(Guard):
    def __init__(self, level: VerificationLevel | str = VerificationLevel.EMAIL):
        self.level = VerificationLevel(level)

    async def check(self, pipeline, principal, ctx):
        if principal.is_verified(self.level, ctx.method):
            return None
        return await pipeline.deny(
            ctx,
            DenialKind.UNVERIFIED,
            AuditEventType.UNVERIFIED_ACCOUNT,
            code="verification_required",
            details={"level": self.level.value},
        )


class RequireMedicalScope(Guard):
    """
    Validates the X-Medical-Access-Token header against the principal and the
    route's patient. Each medical token id is accepted once.
    """

    def __init__(self, param: str = "patientId", record_type: Optional[str] = None):
        self.param = param
        self.record_type = record_type

    async def check(self, pipeline, principal, ctx):
        action = "read" if ctx.method.upper() in READ_ONLY_METHODS else "write"
        patient_id = ctx.path_params.get(self.param)
        token = ctx.header(MEDICAL_TOKEN_HEADER)

        async def denied(reason: str, **details: Any) -> AuthFailure:
            return await pipeline.deny(
                ctx,
                DenialKind.MEDICAL_SCOPE,
                AuditEventType.MEDICAL_SCOPE_DENIED,
                code="medical_scope_denied",
                target_id=patient_id,
                details={"reason": reason, "action": action, **details},
            )

        if not token or not token.strip():
            return await denied("missing")

        claims = pipeline.codec.verify(TokenVariant.MEDICAL, token.strip())
        if isinstance(claims, TokenFailure):
            return await denied("invalid", variant=claims.kind.value)
        if claims.provider_id != principal.subject_id:
            return await denied("provider_mismatch")
        if not patient_id or claims.patient_id != patient_id:
            return await denied("patient_mismatch")
        if self.record_type and claims.record_type != self.record_type:
            return await denied("record_type_mismatch", recordType=claims.record_type)
        if not claims.allows(action):
            return await denied("action_not_permitted")

        first_use = await pipeline.call(
            pipeline.sessions.consume_once(
                claims.token_id,
                pipeline.codec.accepted_until(claims),
                pipeline.clock.now(),
            ),
            "medical token registry",
        )
        if not first_use:
            return await denied("invalid", variant="Consumed")

        ctx.medical_claims = claims
        pipeline.audit.record_later(
            AuditEventType.MEDICAL_RECORD_TOKEN_ACCESS,
            subject_id=principal.subject_id,
            target_id=patient_id,
            severity=Severity.EMERGENCY if claims.urgency == "emergency" else None,
            details={
                "recordType": claims.record_type,
                "action": action,
                "urgency": claims.urgency,
                "reason": claims.reason,
            },
            **ctx.audit_fields(),
        )
        return None


def require_role(*roles: Role | str) -> RequireRole:
    return RequireRole(*roles)


def require_permissions(*permissions: str) -> RequirePermissions:
    return RequirePermissions(*permissions)


def require_patient_access(param: str = "patientId") -> RequirePatientAccess:
    return RequirePatientAccess(param)


def require_verified(level: VerificationLevel | str = VerificationLevel.EMAIL) -> RequireVerified:
    return RequireVerified(level)


def require_medical_scope(param: str = "patientId", record_type: Optional[str] = None) -> RequireMedicalScope:
    return RequireMedicalScope(param, record_type)
