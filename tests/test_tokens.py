"""
Medigate - Token Codec Tests
Signing, verification order, expiry boundaries and key rotation.
"""

from datetime import timedelta

import jwt
import pytest

from medigate.core.config import ConfigError
from medigate.core.keys import KeyProvider
from medigate.core.tokens import (
    AccessClaims,
    FailureKind,
    MedicalClaims,
    RefreshClaims,
    ResetClaims,
    TokenClaimError,
    TokenCodec,
    TokenFailure,
    TokenVariant,
)

from conftest import START, ManualClock, make_settings


def make_codec(clock=None, **overrides) -> TokenCodec:
    settings = make_settings(**overrides)
    return TokenCodec(KeyProvider(settings), clock or ManualClock(), settings)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def codec(clock):
    return make_codec(clock)


# =============================================================================
# Round trips
# =============================================================================

@pytest.mark.parametrize("variant, claims", [
    (TokenVariant.ACCESS, AccessClaims(subject_id="u1", role="patient")),
    (TokenVariant.REFRESH, RefreshClaims(subject_id="u1", family="f1")),
    (TokenVariant.MEDICAL, MedicalClaims(
        provider_id="D", patient_id="P", record_type="lab", reason="review",
        permissions=("read", "write"), urgency="urgent",
    )),
    (TokenVariant.RESET, ResetClaims(subject_id="u1")),
])
def test_verify_returns_signed_claims(codec, variant, claims):
    token, completed = codec.issue(variant, claims)
    assert codec.verify(variant, token) == completed


def test_completed_lifetime_matches_ttl(codec):
    for variant, claims in [
        (TokenVariant.ACCESS, AccessClaims(subject_id="u1", role="patient")),
        (TokenVariant.REFRESH, RefreshClaims(subject_id="u1", family="f1")),
        (TokenVariant.MEDICAL, MedicalClaims(provider_id="D", patient_id="P", record_type="x", reason="r")),
    ]:
        _, completed = codec.issue(variant, claims)
        assert completed.expires_at - completed.issued_at == codec.ttl(variant)
        assert completed.issued_at == START


def test_token_ids_are_unique(codec):
    _, first = codec.issue(TokenVariant.ACCESS, AccessClaims(subject_id="u1", role="patient"))
    _, second = codec.issue(TokenVariant.ACCESS, AccessClaims(subject_id="u1", role="patient"))
    assert first.token_id != second.token_id


def test_lifetime_longer_than_ttl_is_refused(codec):
    with pytest.raises(TokenClaimError):
        codec.sign(
            TokenVariant.ACCESS,
            AccessClaims(subject_id="u1", role="patient", issued_at=START, expires_at=START + timedelta(hours=1)),
        )


def test_missing_claim_is_refused(codec):
    with pytest.raises(TokenClaimError):
        codec.sign(TokenVariant.ACCESS, AccessClaims(subject_id="", role="patient"))
    with pytest.raises(TokenClaimError):
        codec.sign(TokenVariant.MEDICAL, MedicalClaims("D", "P", "lab", "r", permissions=("delete",)))


def test_sign_without_secret_raises_config_error(clock):
    codec = make_codec(clock, medical_token_secret="")
    with pytest.raises(ConfigError):
        codec.sign(TokenVariant.MEDICAL, MedicalClaims("D", "P", "lab", "r"))


def test_verify_without_secret_is_bad_signature(clock):
    signer = make_codec(clock)
    token = signer.sign(TokenVariant.MEDICAL, MedicalClaims("D", "P", "lab", "r"))
    result = make_codec(clock, medical_token_secret="").verify(TokenVariant.MEDICAL, token)
    assert result == TokenFailure(FailureKind.BAD_SIGNATURE, "no verification key")


# =============================================================================
# Failures
# =============================================================================

@pytest.mark.parametrize("token", ["", "abc", "a.b.c", "Bearer x"])
def test_garbage_is_malformed(codec, token):
    result = codec.verify(TokenVariant.ACCESS, token)
    assert isinstance(result, TokenFailure)
    assert result.kind is FailureKind.MALFORMED


def test_foreign_key_is_bad_signature(codec, clock):
    other = make_codec(clock, access_token_secret="someone-elses-key-0123456789abcdefgh")
    token = other.sign(TokenVariant.ACCESS, AccessClaims(subject_id="u1", role="patient"))
    assert codec.verify(TokenVariant.ACCESS, token).kind is FailureKind.BAD_SIGNATURE


def test_refresh_token_as_access_is_wrong_variant(codec):
    token = codec.sign(TokenVariant.REFRESH, RefreshClaims(subject_id="u1", family="f1"))
    assert codec.verify(TokenVariant.ACCESS, token).kind is FailureKind.WRONG_VARIANT


def test_same_key_wrong_typ_is_wrong_variant(clock):
    shared = "shared-key-0123456789abcdef0123456789"
    codec = make_codec(clock, access_token_secret=shared, refresh_token_secret=shared)
    token = codec.sign(TokenVariant.REFRESH, RefreshClaims(subject_id="u1", family="f1"))
    assert codec.verify(TokenVariant.ACCESS, token).kind is FailureKind.WRONG_VARIANT


def test_missing_subject_claim(codec):
    key = KeyProvider(make_settings()).access_secret().primary
    now = int(START.timestamp())
    token = jwt.encode(
        {"typ": "access", "jti": "t1", "iat": now, "exp": now + 900, "role": "patient"},
        key,
        algorithm="HS256",
    )
    assert codec.verify(TokenVariant.ACCESS, token) == TokenFailure(FailureKind.MISSING_CLAIM, "sub")


def test_other_algorithm_is_malformed(codec):
    now = int(START.timestamp())
    token = jwt.encode(
        {"typ": "access", "jti": "t1", "iat": now, "exp": now + 900, "sub": "u1", "role": "patient"},
        "access-secret-for-tests-0123456789abcdef" * 2,
        algorithm="HS512",
    )
    assert codec.verify(TokenVariant.ACCESS, token).kind is FailureKind.MALFORMED


def test_expired_but_forged_is_bad_signature(codec, clock):
    other = make_codec(clock, access_token_secret="someone-elses-key-0123456789abcdefgh")
    token = other.sign(TokenVariant.ACCESS, AccessClaims(subject_id="u1", role="patient"))
    clock.advance(3600)
    assert codec.verify(TokenVariant.ACCESS, token).kind is FailureKind.BAD_SIGNATURE


# =============================================================================
# Expiry boundaries
# =============================================================================

def test_exactly_at_expiry_with_zero_skew_is_rejected():
    clock = ManualClock()
    codec = make_codec(clock, clock_skew_seconds=0)
    token = codec.sign(TokenVariant.ACCESS, AccessClaims(subject_id="u1", role="patient"))
    clock.advance(899)
    assert isinstance(codec.verify(TokenVariant.ACCESS, token), AccessClaims)
    clock.advance(1)
    assert codec.verify(TokenVariant.ACCESS, token).kind is FailureKind.EXPIRED


def test_within_skew_is_accepted_beyond_is_rejected(codec, clock):
    token = codec.sign(TokenVariant.ACCESS, AccessClaims(subject_id="u1", role="patient"))
    clock.advance(900 + 59)
    assert isinstance(codec.verify(TokenVariant.ACCESS, token), AccessClaims)
    clock.advance(1)
    assert codec.verify(TokenVariant.ACCESS, token).kind is FailureKind.EXPIRED


def test_issued_in_the_future_is_malformed(codec, clock):
    token = codec.sign(
        TokenVariant.ACCESS,
        AccessClaims(subject_id="u1", role="patient", issued_at=START + timedelta(minutes=5)),
    )
    assert codec.verify(TokenVariant.ACCESS, token).kind is FailureKind.MALFORMED


def test_accepted_until_includes_skew(codec):
    _, claims = codec.issue(TokenVariant.ACCESS, AccessClaims(subject_id="u1", role="patient"))
    assert codec.accepted_until(claims) == claims.expires_at + timedelta(seconds=60)


# =============================================================================
# Rotation
# =============================================================================

def test_secondary_key_still_verifies(clock):
    old = make_codec(clock, access_token_secret="old-key-0123456789abcdef0123456789")
    token = old.sign(TokenVariant.ACCESS, AccessClaims(subject_id="u1", role="patient"))
    rotated = make_codec(clock, access_token_secret="new-key-0123456789abcdef0123456789,old-key-0123456789abcdef0123456789")
    assert isinstance(rotated.verify(TokenVariant.ACCESS, token), AccessClaims)

    fresh = rotated.sign(TokenVariant.ACCESS, AccessClaims(subject_id="u1", role="patient"))
    assert old.verify(TokenVariant.ACCESS, fresh).kind is FailureKind.BAD_SIGNATURE
