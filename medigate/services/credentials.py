"""
Credential Flows for Medigate.

Register, login, refresh, logout, change/forgot/reset password, e-mail and
phone verification, self-deactivation and admin session revocation.

Tokens come from the TokenCodec, every outcome is audited, and each flow
is gated by its rate-limit class. Flows raise PortalError subclasses;
the routers never decide status codes themselves.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Mapping, Optional, TypeVar

from medigate.core.audit import AuditEventType, AuditLog, Outcome, invalid_token_severity
from medigate.core.clock import Clock, new_id, whole_seconds
from medigate.core.errors import (
    AuthenticationError,
    AuthorizationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    RateLimitError,
    ServiceUnavailableError,
    ValidationError,
)
from medigate.core.passwords import PasswordHasher, PasswordPolicy
from medigate.core.pipeline import AUTH_REQUIRED, RequestContext
from medigate.core.principals import (
    SELF_REGISTRATION_ROLES,
    Principal,
    Role,
    UserRecord,
    UserStore,
    default_permissions,
    normalize_identifier,
)
from medigate.core.rate_limit import CounterStoreError, Denied, RateLimitClass, RateLimiter
from medigate.core.sessions import RotationOutcome, SessionStore
from medigate.core.timeout import call_with_timeout
from medigate.core.tokens import (
    AccessClaims,
    RefreshClaims,
    ResetClaims,
    TokenCodec,
    TokenFailure,
    TokenVariant,
)
from medigate.core.verification import CheckOutcome, VerificationChannel, VerificationService
from medigate.services.notifications import Notifier, OutboundMessage

logger = logging.getLogger(__name__)

T = TypeVar("T")

INVALID_CREDENTIALS = "Invalid email/phone or password"
INVALID_CODE = "Invalid or expired verification code"


# =============================================================================
# Value Types
# =============================================================================

@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "tokenType": self.token_type,
            "expiresIn": self.expires_in,
            "accessTokenExpiresAt": self.access_expires_at.isoformat(),
            "refreshTokenExpiresAt": self.refresh_expires_at.isoformat(),
        }


@dataclass(frozen=True)
class Registration:
    first_name: str
    last_name: str
    email: str
    password: str
    role: Role = Role.PATIENT
    phone: Optional[str] = None
    profile: Mapping[str, Any] = field(default_factory=dict)


# =============================================================================
# Service
# =============================================================================

class CredentialService:
    """All flows that create, rotate or revoke credentials."""

    def __init__(
        self,
        *,
        users: UserStore,
        sessions: SessionStore,
        codec: TokenCodec,
        hasher: PasswordHasher,
        verification: VerificationService,
        limiter: RateLimiter,
        audit: AuditLog,
        notifier: Notifier,
        clock: Clock,
        timeout: float = 2.0,
    ):
        self.users = users
        self.sessions = sessions
        self.codec = codec
        self.hasher = hasher
        self.verification = verification
        self.limiter = limiter
        self.audit = audit
        self.notifier = notifier
        self.clock = clock
        self.timeout = timeout

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _call(self, awaitable: Awaitable[T], operation: str) -> T:
        return await call_with_timeout(awaitable, self.timeout, operation)

    async def _throttle(
        self,
        ctx: RequestContext,
        key_class: RateLimitClass,
        key: str,
        *,
        event_type: AuditEventType = AuditEventType.RATE_LIMITED,
        subject_id: Optional[str] = None,
        signals: Optional[Mapping[str, Any]] = None,
    ) -> None:
        try:
            decision = await self._call(self.limiter.check(key_class, key, signals=signals), "rate limiter")
        except CounterStoreError as e:
            raise ServiceUnavailableError("Rate limiter") from e

        if isinstance(decision, Denied):
            await self.audit.record(
                event_type,
                outcome=Outcome.DENIED,
                subject_id=subject_id,
                details={"class": key_class.value, "retryAfter": decision.retry_after, "reason": decision.reason},
                **ctx.audit_fields(),
            )
            raise RateLimitError(decision.retry_after, headers=decision.headers())
        ctx.response_headers.update(decision.headers())

    async def _deny_token(
        self,
        ctx: RequestContext,
        variant: str,
        *,
        token_variant: TokenVariant,
        subject_id: Optional[str] = None,
    ) -> AuthenticationError:
        await self.audit.record(
            AuditEventType.INVALID_TOKEN,
            outcome=Outcome.DENIED,
            subject_id=subject_id,
            severity=invalid_token_severity(variant),
            details={"variant": variant, "tokenType": token_variant.value},
            **ctx.audit_fields(),
        )
        return AuthenticationError(AUTH_REQUIRED, code="invalid_token")

    def _check_password(self, password: str, confirm: Optional[str], user: UserRecord | Registration) -> None:
        errors = []
        if confirm is not None and password != confirm:
            errors.append({"field": "confirmPassword", "message": "Passwords do not match", "code": "mismatch"})
        valid, violations = PasswordPolicy.validate(password, email=user.email, phone=user.phone)
        if not valid:
            errors.extend({"field": "password", "message": message, "code": "password_policy"} for message in violations)
        if errors:
            raise ValidationError("Password does not meet requirements", errors=errors)

    async def _issue_pair(self, user: UserRecord, family: Optional[str] = None) -> tuple[TokenPair, RefreshClaims]:
        access_token, access_claims = self.codec.issue(
            TokenVariant.ACCESS,
            AccessClaims(subject_id=user.subject_id, role=user.role.value),
        )
        refresh_token, refresh_claims = self.codec.issue(
            TokenVariant.REFRESH,
            RefreshClaims(subject_id=user.subject_id, family=family or new_id()),
        )
        pair = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_claims.expires_at,
            refresh_expires_at=refresh_claims.expires_at,
            expires_in=int(self.codec.ttl(TokenVariant.ACCESS).total_seconds()),
        )
        return pair, refresh_claims

    async def _revoke_credentials(self, subject_id: str, presenting: Optional[AccessClaims] = None) -> int:
        """Revoke every refresh session and every access token issued up to now."""
        now = self.clock.now()
        revoked = await self._call(self.sessions.revoke_subject(subject_id, now), "session store")
        await self._call(self.sessions.set_not_before(subject_id, whole_seconds(now)), "session store")
        if presenting is not None:
            await self._call(
                self.sessions.revoke_access_token(presenting.token_id, self.codec.accepted_until(presenting)),
                "session store",
            )
        return revoked

    async def _send_code(self, user: UserRecord, channel: VerificationChannel) -> None:
        recipient = user.email if channel is VerificationChannel.EMAIL else user.phone
        if not recipient:
            return
        code = await self._call(self.verification.issue(user.subject_id, channel), "verification store")
        await self._call(
            self.notifier.send(OutboundMessage(
                channel="email" if channel is VerificationChannel.EMAIL else "sms",
                recipient=recipient,
                template=f"verify-{channel.value}",
                subject_id=user.subject_id,
                payload={"code": code},
            )),
            "notifier",
        )

    # -------------------------------------------------------------------------
    # Registration & verification
    # -------------------------------------------------------------------------

    async def register(
        self,
        ctx: RequestContext,
        registration: Registration,
        signals: Optional[Mapping[str, Any]] = None,
    ) -> UserRecord:
        """
        Create an inactive, unverified account and send verification codes.

        Raises ValidationError (422) for admin self-registration or a weak
        password and ConflictError (409) for a duplicate email or phone.
        """
        await self._throttle(
            ctx,
            RateLimitClass.REGISTRATION,
            ctx.remote_address or "unknown",
            signals=signals,
        )

        role = Role(registration.role)
        if role not in SELF_REGISTRATION_ROLES:
            raise ValidationError(
                "Role is not available for self-registration",
                errors=[{"field": "role", "message": "Role is not available for self-registration", "code": "enum"}],
            )
        self._check_password(registration.password, None, registration)

        email = normalize_identifier(registration.email)
        phone = normalize_identifier(registration.phone) if registration.phone else None
        for identifier in filter(None, (email, phone)):
            if await self._call(self.users.load_by_email_or_phone(identifier), "user store") is not None:
                raise ConflictError("An account with this email or phone already exists", code="duplicate_identifier")

        now = self.clock.now()
        user = await self._call(
            self.users.create_user(UserRecord(
                subject_id=new_id(),
                role=role,
                email=email,
                phone=phone,
                permissions=default_permissions(role),
                is_active=False,
                is_email_verified=False,
                is_phone_verified=False,
                password_hash=await self.hasher.hash(registration.password),
                password_updated_at=now,
                first_name=registration.first_name.strip(),
                last_name=registration.last_name.strip(),
                profile=dict(registration.profile),
                created_at=now,
            )),
            "user store",
        )

        await self._send_code(user, VerificationChannel.EMAIL)
        if user.phone:
            await self._send_code(user, VerificationChannel.PHONE)

        await self.audit.record(
            AuditEventType.USER_REGISTERED,
            subject_id=user.subject_id,
            details={"role": role.value, "hasPhone": bool(user.phone)},
            **ctx.audit_fields(),
        )
        logger.info("Registered new %s account", role.value, extra={"request_id": ctx.request_id})
        return user

    async def verify_code(
        self,
        ctx: RequestContext,
        identifier: str,
        channel: VerificationChannel,
        code: str,
    ) -> UserRecord:
        """Check a verification code. A verified e-mail also activates the account."""
        key = normalize_identifier(identifier)
        await self._throttle(ctx, RateLimitClass.STRICT, key, subject_id=key)

        user = await self._call(self.users.load_by_email_or_phone(key), "user store")
        if user is None:
            raise BadRequestError(INVALID_CODE, errors=[{"field": "code", "message": INVALID_CODE, "code": "invalid_code"}])

        result = await self._call(self.verification.check(user.subject_id, channel, code), "verification store")
        if result.outcome is CheckOutcome.THROTTLED:
            await self.audit.record(
                AuditEventType.VERIFICATION_THROTTLED,
                outcome=Outcome.DENIED,
                subject_id=user.subject_id,
                details={"channel": channel.value, "retryAfter": result.retry_after},
                **ctx.audit_fields(),
            )
            raise RateLimitError(result.retry_after or 1)
        if result.outcome is CheckOutcome.CONSUMED:
            raise ConflictError("Verification code has already been used", code="code_reused")
        if not result.ok:
            raise BadRequestError(INVALID_CODE, errors=[{"field": "code", "message": INVALID_CODE, "code": "invalid_code"}])

        if channel is VerificationChannel.EMAIL:
            updated = await self._call(
                self.users.update_user(user.subject_id, is_email_verified=True, is_active=True),
                "user store",
            )
            event_type = AuditEventType.EMAIL_VERIFIED
        else:
            updated = await self._call(
                self.users.update_user(user.subject_id, is_phone_verified=True),
                "user store",
            )
            event_type = AuditEventType.PHONE_VERIFIED

        await self.audit.record(event_type, subject_id=user.subject_id, **ctx.audit_fields())
        return updated or user

    async def request_verification(self, ctx: RequestContext, identifier: str, channel: VerificationChannel) -> None:
        """Send a fresh code. Answers the same whether or not the account exists."""
        key = normalize_identifier(identifier)
        await self._throttle(ctx, RateLimitClass.STRICT, key, subject_id=key)

        user = await self._call(self.users.load_by_email_or_phone(key), "user store")
        if user is None:
            return
        already = user.is_email_verified if channel is VerificationChannel.EMAIL else user.is_phone_verified
        if already:
            return

        await self._send_code(user, channel)
        await self.audit.record(
            AuditEventType.VERIFICATION_REQUESTED,
            subject_id=user.subject_id,
            details={"channel": channel.value},
            **ctx.audit_fields(),
        )

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def login(self, ctx: RequestContext, identifier: str, password: str) -> tuple[UserRecord, TokenPair]:
        """
        Authenticate by email or phone and open a new refresh family.

        Unknown identifiers and wrong passwords get the same answer and cost
        the same hash verification.
        """
        key = normalize_identifier(identifier) if identifier and identifier.strip() else (ctx.remote_address or "unknown")
        await self._throttle(
            ctx,
            RateLimitClass.LOGIN,
            key,
            event_type=AuditEventType.LOGIN_THROTTLED,
            subject_id=key,
        )

        user = await self._call(self.users.load_by_email_or_phone(key), "user store")
        valid = await self.hasher.verify(user.password_hash if user else None, password)
        if user is None or not valid:
            await self.audit.record(
                AuditEventType.LOGIN_FAILED,
                outcome=Outcome.DENIED,
                subject_id=key,
                details={"reason": "invalid_credentials"},
                **ctx.audit_fields(),
            )
            raise AuthenticationError(INVALID_CREDENTIALS, code="invalid_credentials")

        if not user.is_active:
            await self.audit.record(
                AuditEventType.INACTIVE_OR_MISSING_SUBJECT,
                outcome=Outcome.DENIED,
                subject_id=user.subject_id,
                details={"reason": "inactive", "flow": "login"},
                **ctx.audit_fields(),
            )
            raise AuthorizationError("Account is not active", code="account_inactive")

        if self.hasher.needs_rehash(user.password_hash):
            await self._call(
                self.users.update_user(user.subject_id, password_hash=await self.hasher.hash(password)),
                "user store",
            )
            logger.info("Upgraded password hash parameters", extra={"request_id": ctx.request_id})

        pair, refresh_claims = await self._issue_pair(user)
        await self._call(
            self.sessions.start_family(
                user.subject_id,
                refresh_claims.token_id,
                refresh_claims.family,
                refresh_claims.issued_at,
                refresh_claims.expires_at,
            ),
            "session store",
        )
        await self.audit.record(
            AuditEventType.LOGIN_SUCCESS,
            subject_id=user.subject_id,
            details={"role": user.role.value},
            **ctx.audit_fields(),
        )
        return user, pair

    async def refresh(self, ctx: RequestContext, refresh_token: Optional[str]) -> tuple[UserRecord, TokenPair]:
        """
        Exchange a refresh token for a new pair, retiring the old token id.

        A retired token presented again is a replay: the whole family is
        revoked. Any failure other than expiry also revokes the family.
        """
        await self._throttle(ctx, RateLimitClass.GENERAL, ctx.remote_address or "unknown")

        if not refresh_token or not refresh_token.strip():
            await self.audit.record(
                AuditEventType.UNAUTHENTICATED_ATTEMPT,
                outcome=Outcome.DENIED,
                details={"flow": "refresh"},
                **ctx.audit_fields(),
            )
            raise AuthenticationError(AUTH_REQUIRED)

        claims = self.codec.verify(TokenVariant.REFRESH, refresh_token.strip())
        if isinstance(claims, TokenFailure):
            raise await self._deny_token(ctx, claims.kind.value, token_variant=TokenVariant.REFRESH)

        now = self.clock.now()
        user = await self._call(self.users.load_by_subject(claims.subject_id), "user store")
        if user is None or not user.is_active:
            await self._call(self.sessions.revoke_family(claims.family, now), "session store")
            await self.audit.record(
                AuditEventType.INACTIVE_OR_MISSING_SUBJECT,
                outcome=Outcome.DENIED,
                subject_id=claims.subject_id,
                details={"reason": "missing" if user is None else "inactive", "flow": "refresh"},
                **ctx.audit_fields(),
            )
            if user is None:
                raise AuthenticationError(AUTH_REQUIRED)
            raise AuthorizationError("Account is not active", code="account_inactive")

        pair, new_claims = await self._issue_pair(user, family=claims.family)
        result = await self._call(
            self.sessions.rotate(
                claims.token_id,
                claims.subject_id,
                new_claims.token_id,
                new_claims.issued_at,
                new_claims.expires_at,
            ),
            "session store",
        )

        if result.outcome is RotationOutcome.ROTATED:
            await self.audit.record(
                AuditEventType.TOKEN_REFRESHED,
                subject_id=user.subject_id,
                **ctx.audit_fields(),
            )
            return user, pair

        family = result.session.family if result.session else claims.family
        revoked = await self._call(self.sessions.revoke_family(family, now), "session store")

        if result.outcome is RotationOutcome.REPLAYED:
            logger.warning(
                "Refresh token replay detected; revoked %d sessions",
                revoked,
                extra={"request_id": ctx.request_id},
            )
            await self.audit.record(
                AuditEventType.REFRESH_REPLAY,
                outcome=Outcome.DENIED,
                subject_id=user.subject_id,
                details={"familyRevoked": revoked},
                **ctx.audit_fields(),
            )
            raise AuthenticationError(AUTH_REQUIRED, code="refresh_replay")

        variant = "Revoked" if result.outcome is RotationOutcome.REVOKED else "Unknown"
        raise await self._deny_token(ctx, variant, token_variant=TokenVariant.REFRESH, subject_id=user.subject_id)

    async def logout(self, ctx: RequestContext, principal: Principal) -> int:
        """Revoke the presenting access token and the subject's refresh family. Idempotent."""
        if ctx.access_claims is not None:
            await self._call(
                self.sessions.revoke_access_token(
                    ctx.access_claims.token_id,
                    self.codec.accepted_until(ctx.access_claims),
                ),
                "session store",
            )
        revoked = await self._call(self.sessions.revoke_subject(principal.subject_id, self.clock.now()), "session store")
        await self.audit.record(
            AuditEventType.LOGOUT,
            subject_id=principal.subject_id,
            details={"sessionsRevoked": revoked},
            **ctx.audit_fields(),
        )
        return revoked

    # -------------------------------------------------------------------------
    # Passwords
    # -------------------------------------------------------------------------

    async def _reauthenticate(self, ctx: RequestContext, principal: Principal, password: str, flow: str) -> UserRecord:
        user = await self._call(self.users.load_by_subject(principal.subject_id), "user store")
        if user is None or not await self.hasher.verify(user.password_hash, password):
            await self.audit.record(
                AuditEventType.REAUTHENTICATION_FAILED,
                outcome=Outcome.DENIED,
                subject_id=principal.subject_id,
                details={"flow": flow},
                **ctx.audit_fields(),
            )
            raise AuthorizationError("Current password is incorrect", code="reauthentication_failed")
        return user

    async def change_password(
        self,
        ctx: RequestContext,
        principal: Principal,
        old_password: str,
        new_password: str,
        confirm_password: Optional[str] = None,
    ) -> None:
        """Replace the password and revoke every session of the subject."""
        user = await self._reauthenticate(ctx, principal, old_password, "change-password")
        self._check_password(new_password, confirm_password, user)

        await self._call(
            self.users.update_user(
                user.subject_id,
                password_hash=await self.hasher.hash(new_password),
                password_updated_at=self.clock.now(),
            ),
            "user store",
        )
        revoked = await self._revoke_credentials(user.subject_id, ctx.access_claims)
        await self.audit.record(
            AuditEventType.PASSWORD_CHANGED,
            subject_id=user.subject_id,
            details={"sessionsRevoked": revoked},
            **ctx.audit_fields(),
        )

    async def forgot_password(self, ctx: RequestContext, identifier: str) -> None:
        """Mail a single-use reset token if the account exists. Same answer either way."""
        key = normalize_identifier(identifier)
        await self._throttle(ctx, RateLimitClass.STRICT, key, subject_id=key)

        user = await self._call(self.users.load_by_email_or_phone(key), "user store")
        if user is not None and user.email:
            token, _ = self.codec.issue(TokenVariant.RESET, ResetClaims(subject_id=user.subject_id))
            await self._call(
                self.notifier.send(OutboundMessage(
                    channel="email",
                    recipient=user.email,
                    template="password-reset",
                    subject_id=user.subject_id,
                    payload={"token": token},
                )),
                "notifier",
            )

        await self.audit.record(
            AuditEventType.PASSWORD_RESET_REQUESTED,
            subject_id=user.subject_id if user else key,
            details={"accountFound": user is not None},
            **ctx.audit_fields(),
        )

    async def reset_password(
        self,
        ctx: RequestContext,
        token: str,
        new_password: str,
        confirm_password: Optional[str] = None,
    ) -> None:
        """Set a new password with a reset token. The token id is consumed on success."""
        await self._throttle(ctx, RateLimitClass.STRICT, ctx.remote_address or "unknown")

        claims = self.codec.verify(TokenVariant.RESET, (token or "").strip())
        if isinstance(claims, TokenFailure):
            raise await self._deny_token(ctx, claims.kind.value, token_variant=TokenVariant.RESET)

        user = await self._call(self.users.load_by_subject(claims.subject_id), "user store")
        if user is None:
            await self.audit.record(
                AuditEventType.INACTIVE_OR_MISSING_SUBJECT,
                outcome=Outcome.DENIED,
                subject_id=claims.subject_id,
                details={"reason": "missing", "flow": "reset-password"},
                **ctx.audit_fields(),
            )
            raise AuthenticationError(AUTH_REQUIRED)

        self._check_password(new_password, confirm_password, user)

        first_use = await self._call(
            self.sessions.consume_once(claims.token_id, self.codec.accepted_until(claims), self.clock.now()),
            "session store",
        )
        if not first_use:
            raise await self._deny_token(ctx, "Consumed", token_variant=TokenVariant.RESET, subject_id=user.subject_id)

        await self._call(
            self.users.update_user(
                user.subject_id,
                password_hash=await self.hasher.hash(new_password),
                password_updated_at=self.clock.now(),
            ),
            "user store",
        )
        revoked = await self._revoke_credentials(user.subject_id)
        await self.audit.record(
            AuditEventType.PASSWORD_RESET_COMPLETED,
            subject_id=user.subject_id,
            details={"sessionsRevoked": revoked},
            **ctx.audit_fields(),
        )

    # -------------------------------------------------------------------------
    # Account administration
    # -------------------------------------------------------------------------

    async def deactivate_account(
        self,
        ctx: RequestContext,
        principal: Principal,
        password: str,
        reason: Optional[str] = None,
    ) -> None:
        """Deactivate the caller's own account after re-checking the password."""
        user = await self._reauthenticate(ctx, principal, password, "deactivate-account")
        await self._call(self.users.update_user(user.subject_id, is_active=False), "user store")
        revoked = await self._revoke_credentials(user.subject_id, ctx.access_claims)
        await self.audit.record(
            AuditEventType.ACCOUNT_DEACTIVATED,
            subject_id=user.subject_id,
            details={"reason": reason or "", "sessionsRevoked": revoked},
            **ctx.audit_fields(),
        )

    async def revoke_sessions(self, ctx: RequestContext, admin: Principal, subject_id: str) -> int:
        """Admin: end every session and access token of another subject."""
        target = await self._call(self.users.load_by_subject(subject_id), "user store")
        if target is None:
            raise NotFoundError("User")
        revoked = await self._revoke_credentials(subject_id)
        await self.audit.record(
            AuditEventType.SESSIONS_REVOKED,
            subject_id=admin.subject_id,
            target_id=subject_id,
            details={"sessionsRevoked": revoked},
            **ctx.audit_fields(),
        )
        return revoked
