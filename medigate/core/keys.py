"""
Signing keys for each token variant.

Every variant has its own key ring. The first key in a ring is the primary:
it signs and verifies. Any further keys are accepted for verification only,
which gives a grace window while keys are being rotated.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass

from medigate.core.config import ConfigError, Settings, split_secrets

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyRing:
    """Primary signing key plus verify-only secondaries."""
    name: str
    keys: tuple[str, ...] = ()

    @property
    def primary(self) -> str:
        if not self.keys:
            raise ConfigError(f"{self.name} signing secret is not configured")
        return self.keys[0]

    @property
    def verification_keys(self) -> tuple[str, ...]:
        return self.keys

    @property
    def configured(self) -> bool:
        return bool(self.keys)


def _derive(key: str, label: str) -> str:
    return hmac.new(key.encode("utf-8"), label.encode("utf-8"), hashlib.sha256).hexdigest()


class KeyProvider:
    """
    Supplies independent key rings for the access, refresh, medical and
    reset variants, plus the key used to hash verification codes.

    When no explicit reset secret is configured, the reset ring is derived
    from the access ring with a fixed label so the two never share raw keys.
    """

    RESET_LABEL = "password-reset"
    CODE_LABEL = "verification-code"

    def __init__(self, settings: Settings):
        self._access = KeyRing("access", split_secrets(settings.access_token_secret))
        self._refresh = KeyRing("refresh", split_secrets(settings.refresh_token_secret))
        self._medical = KeyRing("medical", split_secrets(settings.medical_token_secret))

        reset_keys = split_secrets(settings.reset_token_secret)
        if not reset_keys:
            reset_keys = tuple(_derive(key, self.RESET_LABEL) for key in self._access.keys)
        self._reset = KeyRing("reset", reset_keys)

        for ring in (self._access, self._refresh, self._medical):
            if not ring.configured:
                logger.warning("No %s token secret configured; signing will fail", ring.name)

    def access_secret(self) -> KeyRing:
        return self._access

    def refresh_secret(self) -> KeyRing:
        return self._refresh

    def medical_secret(self) -> KeyRing:
        return self._medical

    def reset_secret(self) -> KeyRing:
        return self._reset

    def code_hash_key(self) -> bytes:
        """Key for HMAC-hashing verification codes at rest."""
        return _derive(self._access.primary, self.CODE_LABEL).encode("utf-8")
