"""
Principals and the Principal Store.

A Principal is the authenticated actor for one request, derived from a
verified access token plus the current user record. The store is a read
view over user records and provider-patient assignments; the only writes
the core performs are registration, password/verification updates and
deactivation, and every write invalidates the cached record.

Design Principles:
- Role and permissions always come from the user record, never the token
- Identifiers (email/phone) are normalized before lookup
- Cached records live at most 60 seconds
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from medigate.core.clock import Clock
from medigate.core.errors import ConflictError

logger = logging.getLogger(__name__)


# =============================================================================
# Roles & Permissions
# =============================================================================

class Role(str, Enum):
    """Portal roles."""
    PATIENT = "patient"
    PROVIDER = "provider"
    ADMIN = "admin"
    TECHNICIAN = "technician"
    STAFF = "staff"
    NURSE = "nurse"


SELF_REGISTRATION_ROLES = frozenset({
    Role.PATIENT,
    Role.PROVIDER,
    Role.NURSE,
    Role.TECHNICIAN,
    Role.STAFF,
})

ROLE_PERMISSIONS: dict[Role, frozenset[str]] = {
    Role.PATIENT: frozenset({
        "profile_read",
        "profile_write",
        "appointments_read",
        "appointments_write",
        "records_read_own",
        "prescriptions_read_own",
    }),
    Role.PROVIDER: frozenset({
        "profile_read",
        "profile_write",
        "appointments_read",
        "appointments_write",
        "patients_read",
        "records_read",
        "records_write",
        "prescriptions_write",
    }),
    Role.NURSE: frozenset({
        "profile_read",
        "appointments_read",
        "patients_read",
        "records_read",
        "vitals_write",
    }),
    Role.TECHNICIAN: frozenset({
        "profile_read",
        "equipment_read",
        "equipment_write",
        "lab_results_write",
    }),
    Role.STAFF: frozenset({
        "profile_read",
        "appointments_read",
        "appointments_write",
        "billing_read",
        "billing_write",
    }),
}


def default_permissions(role: Role) -> frozenset[str]:
    """Permissions granted at registration. Admin gets the union of all roles."""
    if role is Role.ADMIN:
        return frozenset().union(*ROLE_PERMISSIONS.values()) | {"users_manage", "sessions_revoke"}
    return ROLE_PERMISSIONS.get(role, frozenset())


class VerificationLevel(str, Enum):
    EMAIL = "email"
    EMAIL_AND_PHONE = "email+phone"


READ_ONLY_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


# =============================================================================
# Identifiers
# =============================================================================

def normalize_identifier(identifier: str) -> str:
    """Lower-case e-mail addresses; reduce phone numbers to digits (and a leading +)."""
    value = identifier.strip()
    if "@" in value:
        return value.lower()
    digits = re.sub(r"\D", "", value)
    return f"+{digits}" if value.startswith("+") else digits


# =============================================================================
# Records
# =============================================================================

@dataclass
class UserRecord:
    """The slice of a user account the core reads."""
    subject_id: str
    role: Role
    email: Optional[str] = None
    phone: Optional[str] = None
    permissions: frozenset[str] = field(default_factory=frozenset)
    is_active: bool = True
    is_email_verified: bool = False
    is_phone_verified: bool = False
    password_hash: Optional[str] = None
    password_updated_at: Optional[datetime] = None
    first_name: str = ""
    last_name: str = ""
    profile: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def public_profile(self) -> dict[str, Any]:
        """Profile fields safe to return to the account owner."""
        return {
            "subjectId": self.subject_id,
            "role": self.role.value,
            "email": self.email,
            "phone": self.phone,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "permissions": sorted(self.permissions),
            "isActive": self.is_active,
            "isEmailVerified": self.is_email_verified,
            "isPhoneVerified": self.is_phone_verified,
            "profile": dict(self.profile),
        }


@dataclass(frozen=True)
class Relationship:
    """Provider-patient assignment, optionally bounded in time."""
    provider_id: str
    patient_id: str
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None

    def active_at(self, instant: datetime) -> bool:
        if self.starts_at and instant < self.starts_at:
            return False
        if self.ends_at and instant >= self.ends_at:
            return False
        return True


@dataclass(frozen=True)
class PrincipalFlags:
    active: bool
    email_verified: bool
    phone_verified: bool


@dataclass(frozen=True)
class Principal:
    """
    Authenticated actor for a single request.
    Never persisted; built from a verified access token and a live user record.
    """
    subject_id: str
    role: Role
    permissions: frozenset[str]
    flags: PrincipalFlags
    token_id: str
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def from_user(cls, user: UserRecord, token_id: str, issued_at: datetime, expires_at: datetime) -> "Principal":
        return cls(
            subject_id=user.subject_id,
            role=user.role,
            permissions=frozenset(user.permissions),
            flags=PrincipalFlags(
                active=user.is_active,
                email_verified=user.is_email_verified,
                phone_verified=user.is_phone_verified,
            ),
            token_id=token_id,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def has_permissions(self, *permissions: str) -> bool:
        return set(permissions) <= self.permissions

    def is_verified(self, level: VerificationLevel, method: str = "GET") -> bool:
        """
        email: e-mail verified.
        email+phone: e-mail verified, and phone verified for state-changing methods.
        """
        if not self.flags.email_verified:
            return False
        if level is VerificationLevel.EMAIL_AND_PHONE and method.upper() not in READ_ONLY_METHODS:
            return self.flags.phone_verified
        return True


# =============================================================================
# Store Interfaces
# =============================================================================

class PrincipalStore(ABC):
    """Read-only view over user records and relationships."""

    @abstractmethod
    async def load_by_subject(self, subject_id: str) -> Optional[UserRecord]:
        pass

    @abstractmethod
    async def load_by_email_or_phone(self, identifier: str) -> Optional[UserRecord]:
        pass

    @abstractmethod
    async def has_provider_patient_relationship(self, provider_id: str, patient_id: str) -> bool:
        pass


class UserStore(PrincipalStore):
    """Principal store plus the user writes the credential flows perform."""

    @abstractmethod
    async def create_user(self, user: UserRecord) -> UserRecord:
        """Insert a user. Raises ConflictError on a duplicate email or phone."""
        pass

    @abstractmethod
    async def update_user(self, subject_id: str, **changes: Any) -> Optional[UserRecord]:
        pass


class InMemoryUserStore(UserStore):
    """
    In-process user store for development and tests.
    NOT suitable for production (data lost on restart, no horizontal scaling).
    """

    def __init__(self, clock: Clock):
        self._clock = clock
        self._users: dict[str, UserRecord] = {}
        self._by_identifier: dict[str, str] = {}
        self._relationships: list[Relationship] = []
        self._lock = asyncio.Lock()

    def _index(self, user: UserRecord) -> None:
        for identifier in (user.email, user.phone):
            if identifier:
                self._by_identifier[normalize_identifier(identifier)] = user.subject_id

    def _unindex(self, user: UserRecord) -> None:
        for identifier in (user.email, user.phone):
            if identifier:
                self._by_identifier.pop(normalize_identifier(identifier), None)

    async def load_by_subject(self, subject_id: str) -> Optional[UserRecord]:
        user = self._users.get(subject_id)
        return replace(user) if user else None

    async def load_by_email_or_phone(self, identifier: str) -> Optional[UserRecord]:
        subject_id = self._by_identifier.get(normalize_identifier(identifier))
        return await self.load_by_subject(subject_id) if subject_id else None

    async def has_provider_patient_relationship(self, provider_id: str, patient_id: str) -> bool:
        now = self._clock.now()
        return any(
            rel.provider_id == provider_id and rel.patient_id == patient_id and rel.active_at(now)
            for rel in self._relationships
        )

    async def create_user(self, user: UserRecord) -> UserRecord:
        async with self._lock:
            if user.subject_id in self._users:
                raise ConflictError("An account with this identifier already exists")
            for identifier in (user.email, user.phone):
                if identifier and normalize_identifier(identifier) in self._by_identifier:
                    raise ConflictError("An account with this email or phone already exists")
            stored = replace(user, created_at=user.created_at or self._clock.now())
            self._users[stored.subject_id] = stored
            self._index(stored)
            return replace(stored)

    async def update_user(self, subject_id: str, **changes: Any) -> Optional[UserRecord]:
        async with self._lock:
            current = self._users.get(subject_id)
            if current is None:
                return None
            updated = replace(current, **changes)
            self._unindex(current)
            self._users[subject_id] = updated
            self._index(updated)
            return replace(updated)

    def add_relationship(self, relationship: Relationship) -> None:
        self._relationships.append(relationship)


# =============================================================================
# Cache
# =============================================================================

class CachedPrincipalStore(UserStore):
    """
    Short-TTL cache over load_by_subject.

    Identifier lookups are not cached (login needs the current hash).
    Every write made through this store invalidates the subject; external
    writers call invalidate() after changing role, permissions or isActive.
    """

    MAX_TTL_SECONDS = 60

    def __init__(self, store: UserStore, clock: Clock, ttl_seconds: int = 30):
        self.store = store
        self._clock = clock
        self._ttl = timedelta(seconds=min(ttl_seconds, self.MAX_TTL_SECONDS))
        self._cache: dict[str, tuple[UserRecord, datetime]] = {}
        self._generation: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def load_by_subject(self, subject_id: str) -> Optional[UserRecord]:
        now = self._clock.now()
        async with self._lock:
            cached = self._cache.get(subject_id)
            if cached and now < cached[1]:
                return replace(cached[0])
            generation = self._generation.get(subject_id, 0)
        user = await self.store.load_by_subject(subject_id)
        if user is not None:
            async with self._lock:
                # An invalidation during the load means the record may be stale.
                if self._generation.get(subject_id, 0) == generation:
                    self._cache[subject_id] = (replace(user), now + self._ttl)
        return user

    async def load_by_email_or_phone(self, identifier: str) -> Optional[UserRecord]:
        return await self.store.load_by_email_or_phone(identifier)

    async def has_provider_patient_relationship(self, provider_id: str, patient_id: str) -> bool:
        return await self.store.has_provider_patient_relationship(provider_id, patient_id)

    async def create_user(self, user: UserRecord) -> UserRecord:
        created = await self.store.create_user(user)
        await self.invalidate(created.subject_id)
        return created

    async def update_user(self, subject_id: str, **changes: Any) -> Optional[UserRecord]:
        updated = await self.store.update_user(subject_id, **changes)
        await self.invalidate(subject_id)
        return updated

    async def invalidate(self, subject_id: str) -> None:
        async with self._lock:
            self._cache.pop(subject_id, None)
            self._generation[subject_id] = self._generation.get(subject_id, 0) + 1

    async def clear(self) -> None:
        async with self._lock:
            self._cache.clear()
