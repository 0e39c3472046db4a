"""
Users Router
Account and session endpoints under /api/v1/users.

Endpoints:
- POST   /register             - create an inactive account, send verification codes (201)
- POST   /login                - email/phone + password, returns tokens and sets cookies
- POST   /refresh-token        - rotate the refresh token (body first, then cookie)
- POST   /logout               - revoke the current tokens, clear cookies (204)
- GET    /current              - profile of the authenticated user
- POST   /change-password      - requires a verified e-mail; revokes all sessions
- POST   /forgot-password      - always 200
- POST   /reset-password       - single-use reset token
- POST   /verify-email         - 6-digit code; activates the account
- POST   /verify-phone         - 6-digit code
- POST   /resend-verification  - always 200
- DELETE /account              - deactivate own account
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from medigate.core.container import AuthServices
from medigate.core.errors import NotFoundError
from medigate.core.pipeline import ACCESS_TOKEN_COOKIE, require_verified
from medigate.core.principals import Principal, Role, VerificationLevel
from medigate.core.rate_limit import RateLimitClass
from medigate.core.responses import ok
from medigate.core.security import authorize, get_request_context, get_services
from medigate.core.timeout import call_with_timeout
from medigate.core.verification import VerificationChannel
from medigate.services.credentials import Registration, TokenPair

logger = logging.getLogger(__name__)

router = APIRouter()

REFRESH_TOKEN_COOKIE = "refreshToken"

PHONE_PATTERN = r"^\+?[0-9 ()\-]{7,20}$"


# =============================================================================
# Schemas
# =============================================================================

class CamelModel(BaseModel):
    """Request bodies use camelCase keys on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class ProfileFields(CamelModel):
    """Role-specific registration fields."""
    date_of_birth: Optional[str] = Field(None, description="ISO date")
    gender: Optional[str] = Field(None, max_length=20)
    address: Optional[str] = Field(None, max_length=255)
    specialization: Optional[str] = Field(None, max_length=100)
    license_number: Optional[str] = Field(None, max_length=50)
    qualification: Optional[str] = Field(None, max_length=100)
    department: Optional[str] = Field(None, max_length=100)
    experience: Optional[int] = Field(None, ge=0, le=80)
    consultation_fee: Optional[float] = Field(None, ge=0)


class RegisterRequest(CamelModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    password: str = Field(..., max_length=256)
    role: Role = Role.PATIENT
    profile: ProfileFields = Field(default_factory=ProfileFields)
    # Bot heuristics: the honeypot field is hidden in the form and should stay empty.
    honeypot: Optional[str] = None
    form_elapsed_ms: Optional[int] = None


class LoginRequest(CamelModel):
    email: Optional[str] = None
    phone_number: Optional[str] = None
    password: str = Field(..., max_length=256)

    @property
    def identifier(self) -> str:
        return self.email or self.phone_number or ""


class RefreshRequest(CamelModel):
    refresh_token: Optional[str] = None


class ChangePasswordRequest(CamelModel):
    old_password: str
    new_password: str = Field(..., max_length=256)
    confirm_password: Optional[str] = None


class ForgotPasswordRequest(CamelModel):
    email: Optional[str] = None
    phone_number: Optional[str] = None


class ResetPasswordRequest(CamelModel):
    token: str
    new_password: str = Field(..., max_length=256)
    confirm_password: Optional[str] = None


class VerifyCodeRequest(CamelModel):
    identifier: str = Field(..., min_length=1, max_length=255, description="E-mail or phone number")
    code: str = Field(..., min_length=1, max_length=16)


class ResendVerificationRequest(CamelModel):
    identifier: str = Field(..., min_length=1, max_length=255)
    channel: VerificationChannel = VerificationChannel.EMAIL


class DeleteAccountRequest(CamelModel):
    password: str
    reason: Optional[str] = Field(None, max_length=500)


# =============================================================================
# Cookies
# =============================================================================

def _set_auth_cookies(response: Response, pair: TokenPair, services: AuthServices) -> None:
    settings = services.settings
    for name, value, max_age in (
        (ACCESS_TOKEN_COOKIE, pair.access_token, settings.access_ttl_seconds),
        (REFRESH_TOKEN_COOKIE, pair.refresh_token, settings.refresh_ttl_seconds),
    ):
        response.set_cookie(
            name,
            value,
            max_age=max_age,
            path="/",
            secure=True,
            httponly=True,
            samesite="strict",
        )


def _clear_auth_cookies(response: Response) -> None:
    for name in (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE):
        response.delete_cookie(name, path="/", secure=True, httponly=True, samesite="strict")


def _session_payload(user, pair: TokenPair) -> dict:
    return {"user": user.public_profile(), **pair.to_dict()}


# =============================================================================
# Registration & verification
# =============================================================================

@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    body: RegisterRequest,
    request: Request,
    services: AuthServices = Depends(get_services),
):
    """Create an account. It stays inactive until the e-mail address is verified."""
    ctx = get_request_context(request)
    user = await services.credentials.register(
        ctx,
        Registration(
            first_name=body.first_name,
            last_name=body.last_name,
            email=str(body.email),
            phone=body.phone_number,
            password=body.password,
            role=body.role,
            profile=body.profile.model_dump(by_alias=True, exclude_none=True),
        ),
        signals={"honeypot": body.honeypot, "form_elapsed_ms": body.form_elapsed_ms},
    )
    return ok(
        request,
        data=user.public_profile(),
        message="Registered. Check your e-mail for a verification code.",
        status_code=status.HTTP_201_CREATED,
    )


async def _verify(request: Request, body: VerifyCodeRequest, channel: VerificationChannel, services: AuthServices):
    ctx = get_request_context(request)
    user = await services.credentials.verify_code(ctx, body.identifier, channel, body.code)
    return ok(request, data=user.public_profile(), message=f"{channel.value.capitalize()} verified")


@router.post("/verify-email")
async def verify_email(body: VerifyCodeRequest, request: Request, services: AuthServices = Depends(get_services)):
    return await _verify(request, body, VerificationChannel.EMAIL, services)


@router.post("/verify-phone")
async def verify_phone(body: VerifyCodeRequest, request: Request, services: AuthServices = Depends(get_services)):
    return await _verify(request, body, VerificationChannel.PHONE, services)


@router.post("/resend-verification")
async def resend_verification(
    body: ResendVerificationRequest,
    request: Request,
    services: AuthServices = Depends(get_services),
):
    await services.credentials.request_verification(get_request_context(request), body.identifier, body.channel)
    return ok(request, message="If the account exists, a new code has been sent.")


# =============================================================================
# Sessions
# =============================================================================

@router.post("/login")
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    services: AuthServices = Depends(get_services),
):
    ctx = get_request_context(request)
    user, pair = await services.credentials.login(ctx, body.identifier, body.password)
    _set_auth_cookies(response, pair, services)
    return ok(request, data=_session_payload(user, pair), message="Logged in")


@router.post("/refresh-token")
async def refresh_token(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    services: AuthServices = Depends(get_services),
):
    """Rotate the refresh token. The body wins over the cookie."""
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_TOKEN_COOKIE)
    user, pair = await services.credentials.refresh(get_request_context(request), token)
    _set_auth_cookies(response, pair, services)
    return ok(request, data=_session_payload(user, pair), message="Token refreshed")


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    request: Request,
    principal: Principal = Depends(authorize(accept_revoked=True)),
    services: AuthServices = Depends(get_services),
):
    await services.credentials.logout(get_request_context(request), principal)
    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    _clear_auth_cookies(response)
    return response


@router.get("/current")
async def current_user(
    request: Request,
    principal: Principal = Depends(authorize()),
    services: AuthServices = Depends(get_services),
):
    user = await call_with_timeout(
        services.users.load_by_subject(principal.subject_id),
        services.settings.upstream_timeout_seconds,
        "user store",
    )
    if user is None:
        raise NotFoundError("User")
    return ok(request, data={**user.public_profile(), "requestMetadata": request.state.request_metadata})


# =============================================================================
# Passwords
# =============================================================================

@router.post("/change-password")
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    principal: Principal = Depends(authorize(
        require_verified(VerificationLevel.EMAIL),
        rate_limit=RateLimitClass.STRICT,
    )),
    services: AuthServices = Depends(get_services),
):
    await services.credentials.change_password(
        get_request_context(request),
        principal,
        body.old_password,
        body.new_password,
        body.confirm_password,
    )
    return ok(request, message="Password changed. Please log in again.")


@router.post("/forgot-password")
async def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    services: AuthServices = Depends(get_services),
):
    identifier = body.email or body.phone_number or ""
    if identifier:
        await services.credentials.forgot_password(get_request_context(request), identifier)
    return ok(request, message="If the account exists, a reset link has been sent.")


@router.post("/reset-password")
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    services: AuthServices = Depends(get_services),
):
    await services.credentials.reset_password(
        get_request_context(request),
        body.token,
        body.new_password,
        body.confirm_password,
    )
    return ok(request, message="Password has been reset. Please log in.")


# =============================================================================
# Account
# =============================================================================

@router.delete("/account")
async def delete_account(
    body: DeleteAccountRequest,
    request: Request,
    principal: Principal = Depends(authorize(rate_limit=RateLimitClass.STRICT)),
    services: AuthServices = Depends(get_services),
):
    """Deactivate the caller's account. Data is kept; the account can no longer log in."""
    await services.credentials.deactivate_account(get_request_context(request), principal, body.password, body.reason)
    return ok(request, message="Account deactivated")
