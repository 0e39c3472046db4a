"""
Token Codec for Medigate.

Signs and verifies the four token variants (access, refresh, medical-scope,
password-reset) as HS256 JWTs. Each variant has its own key ring.

verify() never raises: it returns the decoded claims or a TokenFailure.
Checks run in a fixed order so an expired-but-authentic token can be told
apart from a forged one:

    structure -> signature -> variant -> expiry -> claim shape

Usage:
    codec = TokenCodec(keys, clock, settings)
    token = codec.sign(TokenVariant.ACCESS, AccessClaims(subject_id="u1", role="patient"))
    result = codec.verify(TokenVariant.ACCESS, token)
    if isinstance(result, TokenFailure):
        ...
"""

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Union

import jwt

from medigate.core.clock import Clock, from_timestamp, new_id, whole_seconds
from medigate.core.config import Settings
from medigate.core.keys import KeyProvider, KeyRing

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

MEDICAL_ACTIONS = frozenset({"read", "write"})
URGENCY_LEVELS = frozenset({"routine", "urgent", "emergency"})


class TokenVariant(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    MEDICAL = "medical"
    RESET = "reset"


class FailureKind(str, Enum):
    MALFORMED = "Malformed"
    BAD_SIGNATURE = "BadSignature"
    EXPIRED = "Expired"
    WRONG_VARIANT = "WrongVariant"
    MISSING_CLAIM = "MissingClaim"


@dataclass(frozen=True)
class TokenFailure:
    """Typed verification failure. Carries no claim data."""
    kind: FailureKind
    detail: str = ""


class TokenClaimError(ValueError):
    """A claim set handed to sign() is incomplete or inconsistent."""


# =============================================================================
# Claim Sets
# =============================================================================

@dataclass(frozen=True)
class AccessClaims:
    subject_id: str
    role: str
    token_id: str | None = None
    issued_at: datetime | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class RefreshClaims:
    subject_id: str
    family: str
    token_id: str | None = None
    issued_at: datetime | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class MedicalClaims:
    provider_id: str
    patient_id: str
    record_type: str
    reason: str
    permissions: tuple[str, ...] = ("read",)
    urgency: str = "routine"
    token_id: str | None = None
    issued_at: datetime | None = None
    expires_at: datetime | None = None

    def allows(self, action: str) -> bool:
        return action in self.permissions


@dataclass(frozen=True)
class ResetClaims:
    subject_id: str
    token_id: str | None = None
    issued_at: datetime | None = None
    expires_at: datetime | None = None


Claims = Union[AccessClaims, RefreshClaims, MedicalClaims, ResetClaims]


# Attribute name -> JWT claim name, per variant. Registered claims (jti, iat,
# exp) and the variant marker (typ) are handled separately.
_CLAIM_MAP: dict[TokenVariant, tuple[type, dict[str, str]]] = {
    TokenVariant.ACCESS: (AccessClaims, {"subject_id": "sub", "role": "role"}),
    TokenVariant.REFRESH: (RefreshClaims, {"subject_id": "sub", "family": "fam"}),
    TokenVariant.MEDICAL: (MedicalClaims, {
        "provider_id": "providerId",
        "patient_id": "patientId",
        "record_type": "recordType",
        "reason": "reason",
        "permissions": "permissions",
        "urgency": "urgency",
    }),
    TokenVariant.RESET: (ResetClaims, {"subject_id": "sub"}),
}

_OPTIONAL_CLAIMS = {"urgency"}


# =============================================================================
# Codec
# =============================================================================

class TokenCodec:
    """Signs and verifies tokens against the per-variant key rings."""

    def __init__(self, keys: KeyProvider, clock: Clock, settings: Settings):
        self._keys = keys
        self._clock = clock
        self._skew = timedelta(seconds=settings.clock_skew_seconds)
        self._ttl = {
            TokenVariant.ACCESS: timedelta(seconds=settings.access_ttl_seconds),
            TokenVariant.REFRESH: timedelta(seconds=settings.refresh_ttl_seconds),
            TokenVariant.MEDICAL: timedelta(seconds=settings.medical_ttl_seconds),
            TokenVariant.RESET: timedelta(seconds=settings.reset_ttl_seconds),
        }

    def ttl(self, variant: TokenVariant) -> timedelta:
        return self._ttl[variant]

    @property
    def skew(self) -> timedelta:
        return self._skew

    def accepted_until(self, claims: Claims) -> datetime:
        """Last instant at which verify() could still accept these claims."""
        return claims.expires_at + self._skew

    def _ring(self, variant: TokenVariant) -> KeyRing:
        if variant is TokenVariant.ACCESS:
            return self._keys.access_secret()
        if variant is TokenVariant.REFRESH:
            return self._keys.refresh_secret()
        if variant is TokenVariant.MEDICAL:
            return self._keys.medical_secret()
        return self._keys.reset_secret()

    # -------------------------------------------------------------------------
    # Signing
    # -------------------------------------------------------------------------

    def complete(self, variant: TokenVariant, claims: Claims) -> Claims:
        """Fill token_id, issued_at and expires_at, and validate the claim set."""
        claim_type, mapping = _CLAIM_MAP[variant]
        if not isinstance(claims, claim_type):
            raise TokenClaimError(f"{variant.value} tokens take {claim_type.__name__}")

        for attribute in mapping:
            value = getattr(claims, attribute)
            if attribute == "permissions":
                if not value or not set(value) <= MEDICAL_ACTIONS:
                    raise TokenClaimError("permissions must be a non-empty subset of read/write")
            elif not isinstance(value, str) or not value:
                raise TokenClaimError(f"missing required claim {attribute}")
        if variant is TokenVariant.MEDICAL and claims.urgency not in URGENCY_LEVELS:
            raise TokenClaimError(f"unknown urgency {claims.urgency}")

        issued_at = whole_seconds(claims.issued_at or self._clock.now())
        ttl = self._ttl[variant]
        expires_at = whole_seconds(claims.expires_at) if claims.expires_at else issued_at + ttl
        if expires_at <= issued_at:
            raise TokenClaimError("expires_at must be after issued_at")
        if expires_at - issued_at > ttl:
            raise TokenClaimError(f"{variant.value} token lifetime exceeds {int(ttl.total_seconds())}s")

        extra: dict[str, Any] = {}
        if variant is TokenVariant.MEDICAL:
            extra["permissions"] = tuple(dict.fromkeys(claims.permissions))
        return dataclasses.replace(
            claims,
            token_id=claims.token_id or new_id(),
            issued_at=issued_at,
            expires_at=expires_at,
            **extra,
        )

    def sign(self, variant: TokenVariant, claims: Claims) -> str:
        """
        Sign a claim set.

        Raises ConfigError if the variant has no signing secret and
        TokenClaimError if required claims are missing.
        """
        key = self._ring(variant).primary
        completed = self.complete(variant, claims)
        _, mapping = _CLAIM_MAP[variant]

        payload: dict[str, Any] = {
            "typ": variant.value,
            "jti": completed.token_id,
            "iat": int(completed.issued_at.timestamp()),
            "exp": int(completed.expires_at.timestamp()),
        }
        for attribute, claim in mapping.items():
            value = getattr(completed, attribute)
            payload[claim] = list(value) if isinstance(value, tuple) else value

        return jwt.encode(payload, key, algorithm=ALGORITHM)

    def issue(self, variant: TokenVariant, claims: Claims) -> tuple[str, Claims]:
        """Sign and also return the completed claims (ids and timestamps filled)."""
        completed = self.complete(variant, claims)
        return self.sign(variant, completed), completed

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def verify(self, variant: TokenVariant, token: str) -> Claims | TokenFailure:
        """Decode a token of the expected variant. Never raises."""
        try:
            return self._verify(variant, token)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Unexpected token verification error: %s", type(exc).__name__)
            return TokenFailure(FailureKind.MALFORMED, "undecodable token")

    def _verify(self, variant: TokenVariant, token: str) -> Claims | TokenFailure:
        if not token or not isinstance(token, str):
            return TokenFailure(FailureKind.MALFORMED, "empty token")

        try:
            header = jwt.get_unverified_header(token)
            unverified = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            return TokenFailure(FailureKind.MALFORMED, "not a signed token")
        if header.get("alg") != ALGORITHM or not isinstance(unverified, dict):
            return TokenFailure(FailureKind.MALFORMED, "unsupported token format")

        payload = self._check_signature(self._ring(variant), token)
        if isinstance(payload, TokenFailure):
            # Signature failed against this variant's keys. If the token says it
            # is another variant, report that instead of a forgery.
            if payload.kind is FailureKind.BAD_SIGNATURE and unverified.get("typ") != variant.value:
                return TokenFailure(FailureKind.WRONG_VARIANT, str(unverified.get("typ") or "untyped"))
            return payload

        if payload.get("typ") is None:
            return TokenFailure(FailureKind.MISSING_CLAIM, "typ")
        if payload.get("typ") != variant.value:
            return TokenFailure(FailureKind.WRONG_VARIANT, str(payload.get("typ")))

        timing = self._check_times(payload)
        if isinstance(timing, TokenFailure):
            return timing
        issued_at, expires_at = timing

        return self._build_claims(variant, payload, issued_at, expires_at)

    def _check_signature(self, ring: KeyRing, token: str) -> dict | TokenFailure:
        if not ring.configured:
            return TokenFailure(FailureKind.BAD_SIGNATURE, "no verification key")
        for key in ring.verification_keys:
            try:
                return jwt.decode(
                    token,
                    key,
                    algorithms=[ALGORITHM],
                    options={
                        "verify_exp": False,
                        "verify_iat": False,
                        "verify_nbf": False,
                        "verify_aud": False,
                        "verify_iss": False,
                        "verify_sub": False,
                        "verify_jti": False,
                    },
                )
            except jwt.InvalidSignatureError:
                continue
            except jwt.InvalidTokenError:
                return TokenFailure(FailureKind.MALFORMED, "undecodable payload")
        return TokenFailure(FailureKind.BAD_SIGNATURE, "signature mismatch")

    def _check_times(self, payload: dict) -> tuple[datetime, datetime] | TokenFailure:
        exp = payload.get("exp")
        if exp is None:
            return TokenFailure(FailureKind.MISSING_CLAIM, "exp")
        if not isinstance(exp, int) or isinstance(exp, bool):
            return TokenFailure(FailureKind.MALFORMED, "exp is not an integer")

        now = self._clock.now()
        expires_at = from_timestamp(exp)
        # At exactly expires_at (zero skew) the token is already dead.
        if now >= expires_at + self._skew:
            return TokenFailure(FailureKind.EXPIRED, "expired")

        iat = payload.get("iat")
        if iat is None:
            return TokenFailure(FailureKind.MISSING_CLAIM, "iat")
        if not isinstance(iat, int) or isinstance(iat, bool):
            return TokenFailure(FailureKind.MALFORMED, "iat is not an integer")
        issued_at = from_timestamp(iat)
        if issued_at > now + self._skew:
            return TokenFailure(FailureKind.MALFORMED, "issued in the future")
        if expires_at <= issued_at:
            return TokenFailure(FailureKind.MALFORMED, "inconsistent time bounds")
        return issued_at, expires_at

    def _build_claims(
        self,
        variant: TokenVariant,
        payload: dict,
        issued_at: datetime,
        expires_at: datetime,
    ) -> Claims | TokenFailure:
        claim_type, mapping = _CLAIM_MAP[variant]

        token_id = payload.get("jti")
        if not isinstance(token_id, str) or not token_id:
            return TokenFailure(FailureKind.MISSING_CLAIM, "jti")

        values: dict[str, Any] = {}
        for attribute, claim in mapping.items():
            value = payload.get(claim)
            if value is None:
                if claim in _OPTIONAL_CLAIMS:
                    continue
                return TokenFailure(FailureKind.MISSING_CLAIM, claim)
            if attribute == "permissions":
                if (
                    not isinstance(value, list)
                    or not value
                    or not all(isinstance(item, str) for item in value)
                    or not set(value) <= MEDICAL_ACTIONS
                ):
                    return TokenFailure(FailureKind.MISSING_CLAIM, claim)
                value = tuple(value)
            elif not isinstance(value, str) or not value:
                return TokenFailure(FailureKind.MISSING_CLAIM, claim)
            values[attribute] = value

        if variant is TokenVariant.MEDICAL and values.get("urgency", "routine") not in URGENCY_LEVELS:
            return TokenFailure(FailureKind.MALFORMED, "unknown urgency")

        return claim_type(
            token_id=token_id,
            issued_at=issued_at,
            expires_at=expires_at,
            **values,
        )
