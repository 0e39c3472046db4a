"""
Medigate - Configuration Tests
Settings parsing, startup errors and key rings.
"""

import pytest

from medigate.core.config import ConfigError, KdfParams, Settings, load_settings, split_secrets
from medigate.core.keys import KeyProvider

from conftest import make_settings


# =============================================================================
# Settings
# =============================================================================

def test_defaults():
    settings = Settings(_env_file=None)
    assert settings.access_ttl_seconds == 900
    assert settings.refresh_ttl_seconds == 1_209_600
    assert settings.medical_ttl_seconds == 1_800
    assert settings.reset_ttl_seconds == 1_800
    assert settings.clock_skew_seconds == 60
    assert settings.rate_limit_store == "memory"
    assert settings.audit_sink == "memory"
    assert settings.kdf_params == KdfParams(3, 65536, 4)


def test_unknown_key_is_a_startup_error():
    with pytest.raises(ConfigError):
        load_settings(_env_file=None, session_secret="nope")


def test_unknown_key_in_env_file_is_a_startup_error(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("ACCESS_TTL_SECONDS=600\nFEATURE_FLAGS=all\n")
    with pytest.raises(ConfigError):
        load_settings(_env_file=str(env_file))


def test_env_file_values_are_read(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("ACCESS_TTL_SECONDS=600\nAUDIT_SINK=log\n")
    settings = load_settings(_env_file=str(env_file))
    assert settings.access_ttl_seconds == 600
    assert settings.audit_sink == "log"


@pytest.mark.parametrize("overrides", [
    {"password_kdf_params": "argon2id"},
    {"password_kdf_params": "t=1,m=4,p=1"},
    {"audit_sink": "syslog"},
    {"audit_sink": "database"},
    {"rate_limit_store": "external"},
    {"rate_limit_store": "memcached"},
    {"access_ttl_seconds": 0},
])
def test_invalid_values_are_startup_errors(overrides):
    with pytest.raises(ConfigError):
        load_settings(_env_file=None, **overrides)


def test_external_store_with_url():
    settings = load_settings(
        _env_file=None,
        rate_limit_store="external",
        rate_limit_redis_url="redis://localhost:6379/0",
    )
    assert settings.rate_limit_store == "external"


def test_kdf_params_parse():
    assert KdfParams.parse("t=2, m=1024, p=2") == KdfParams(2, 1024, 2)


def test_split_secrets():
    assert split_secrets(" new , old,,") == ("new", "old")
    assert split_secrets("") == ()


# =============================================================================
# Keys
# =============================================================================

def test_each_variant_has_its_own_ring():
    keys = KeyProvider(make_settings())
    primaries = {
        keys.access_secret().primary,
        keys.refresh_secret().primary,
        keys.medical_secret().primary,
        keys.reset_secret().primary,
    }
    assert len(primaries) == 4


def test_reset_key_is_derived_not_shared():
    keys = KeyProvider(make_settings())
    assert keys.reset_secret().primary != keys.access_secret().primary
    assert KeyProvider(make_settings()).reset_secret().primary == keys.reset_secret().primary


def test_explicit_reset_secret_wins():
    keys = KeyProvider(make_settings(reset_token_secret="reset-secret-0123456789"))
    assert keys.reset_secret().primary == "reset-secret-0123456789"


def test_missing_secret_fails_on_use():
    keys = KeyProvider(make_settings(medical_token_secret=""))
    assert not keys.medical_secret().configured
    with pytest.raises(ConfigError):
        keys.medical_secret().primary


def test_secondary_keys_verify_only():
    keys = KeyProvider(make_settings(access_token_secret="primary-key-0001,retired-key-0002"))
    ring = keys.access_secret()
    assert ring.primary == "primary-key-0001"
    assert ring.verification_keys == ("primary-key-0001", "retired-key-0002")
