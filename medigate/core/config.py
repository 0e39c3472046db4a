"""
Configuration for Medigate.

Settings are read from the environment and an optional .env file.
The fields below are the complete configuration surface: an unknown key
in .env, or passed explicitly, fails at startup.

Usage:
    from medigate.core.config import get_settings

    settings = get_settings()
    ttl = settings.access_ttl_seconds
"""

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Configuration is missing or malformed."""


# =============================================================================
# Parsed Values
# =============================================================================

_KDF_PATTERN = re.compile(r"^\s*t=(\d+)\s*,\s*m=(\d+)\s*,\s*p=(\d+)\s*$")
_SINK_PATTERN = re.compile(r"^(memory|log|database|file:.+|webhook:https?://.+)$")


@dataclass(frozen=True)
class KdfParams:
    """Argon2id cost parameters."""
    time_cost: int
    memory_cost: int  # KiB
    parallelism: int

    @classmethod
    def parse(cls, value: str) -> "KdfParams":
        match = _KDF_PATTERN.match(value)
        if not match:
            raise ValueError("expected 't=<time>,m=<memory_kib>,p=<parallelism>'")
        time_cost, memory_cost, parallelism = (int(part) for part in match.groups())
        if time_cost < 1 or parallelism < 1:
            raise ValueError("time cost and parallelism must be at least 1")
        if memory_cost < 8 * parallelism:
            raise ValueError("memory must be at least 8 KiB per lane")
        return cls(time_cost, memory_cost, parallelism)


def split_secrets(value: str) -> tuple[str, ...]:
    """Split a comma-separated secret list; the first entry is the primary."""
    return tuple(part.strip() for part in value.split(",") if part.strip())


# =============================================================================
# Settings
# =============================================================================

class Settings(BaseSettings):
    """Environment-recognized configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="forbid",
    )

    # Signing keys (comma-separated: primary first, then verify-only secondaries)
    access_token_secret: str = ""
    refresh_token_secret: str = ""
    medical_token_secret: str = ""
    reset_token_secret: str = ""

    # Token lifetimes
    access_ttl_seconds: int = Field(default=900, gt=0)
    refresh_ttl_seconds: int = Field(default=1_209_600, gt=0)
    medical_ttl_seconds: int = Field(default=1_800, gt=0)
    reset_ttl_seconds: int = Field(default=1_800, gt=0)
    clock_skew_seconds: int = Field(default=60, ge=0)

    # Password hashing
    password_kdf_params: str = "t=3,m=65536,p=4"

    # Rate limiting
    rate_limit_store: Literal["memory", "external"] = "memory"
    rate_limit_redis_url: str | None = None

    # Audit
    audit_sink: str = "memory"
    audit_sink_outage_seconds: float = Field(default=30.0, ge=0)
    audit_buffer_size: int = Field(default=1000, gt=0)

    # Timeouts
    upstream_timeout_seconds: float = Field(default=2.0, gt=0)
    request_budget_seconds: float = Field(default=5.0, gt=0)

    # Persistence
    database_url: str | None = None

    # Bootstrap only
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("password_kdf_params")
    @classmethod
    def _check_kdf_params(cls, value: str) -> str:
        KdfParams.parse(value)
        return value

    @field_validator("audit_sink")
    @classmethod
    def _check_audit_sink(cls, value: str) -> str:
        value = value.strip()
        if not _SINK_PATTERN.match(value):
            raise ValueError("audit sink must be memory, log, database, file:<dir> or webhook:<url>")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value}")
        return value

    @model_validator(mode="after")
    def _check_dependencies(self) -> "Settings":
        if self.rate_limit_store == "external" and not self.rate_limit_redis_url:
            raise ValueError("RATE_LIMIT_STORE=external requires RATE_LIMIT_REDIS_URL")
        if self.audit_sink == "database" and not self.database_url:
            raise ValueError("AUDIT_SINK=database requires DATABASE_URL")
        return self

    @property
    def kdf_params(self) -> KdfParams:
        return KdfParams.parse(self.password_kdf_params)


def load_settings(**overrides) -> Settings:
    """
    Build settings, converting validation failures into ConfigError.

    Unknown keys (in .env or in overrides) are reported here, at startup.
    """
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(loc) for loc in error['loc']) or 'settings'}: {error['msg']}"
            for error in exc.errors()
        )
        logger.error("Invalid configuration: %s", problems)
        raise ConfigError(f"invalid configuration: {problems}") from exc


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return load_settings()
