"""
SQLAlchemy-backed stores for Medigate.

Same interfaces as the in-process stores, for multi-instance deployments.
Refresh rotation and single-use consumption are single conditional
statements, so the database provides the compare-and-set.
"""

import logging
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from medigate.core.audit import AuditEvent, AuditSink, AuditSinkError
from medigate.core.clock import Clock, ensure_aware
from medigate.core.database import Database
from medigate.core.errors import ConflictError
from medigate.core.principals import Relationship, Role, UserRecord, UserStore, normalize_identifier
from medigate.core.sessions import RefreshSession, RotationOutcome, RotationResult, SessionStore
from medigate.core.verification import VerificationChannel, VerificationCode, VerificationStore
from medigate.models.models import (
    AuditLogRow,
    AuthSession,
    ProviderPatientAssignment,
    SubjectRevocation,
    TokenRevocation,
    UserRow,
    VerificationCodeRow,
)

logger = logging.getLogger(__name__)

ACCESS_KIND = "access"
SINGLE_USE_KIND = "single_use"


# =============================================================================
# Users
# =============================================================================

def _user_from_row(row: UserRow) -> UserRecord:
    return UserRecord(
        subject_id=row.subject_id,
        role=Role(row.role),
        email=row.email,
        phone=row.phone,
        permissions=frozenset(row.permissions or ()),
        is_active=row.is_active,
        is_email_verified=row.is_email_verified,
        is_phone_verified=row.is_phone_verified,
        password_hash=row.password_hash,
        password_updated_at=ensure_aware(row.password_updated_at),
        first_name=row.first_name or "",
        last_name=row.last_name or "",
        profile=dict(row.profile or {}),
        created_at=ensure_aware(row.created_at),
    )


def _column_values(changes: dict[str, Any]) -> dict[str, Any]:
    values = dict(changes)
    if "role" in values:
        values["role"] = Role(values["role"]).value
    if "permissions" in values:
        values["permissions"] = sorted(values["permissions"])
    if values.get("email"):
        values["email"] = normalize_identifier(values["email"])
    if values.get("phone"):
        values["phone"] = normalize_identifier(values["phone"])
    return values


class SqlUserStore(UserStore):
    """User records and provider-patient assignments in SQL."""

    def __init__(self, db: Database, clock: Clock):
        self.db = db
        self._clock = clock

    async def load_by_subject(self, subject_id: str) -> Optional[UserRecord]:
        async with self.db.session() as session:
            row = await session.get(UserRow, subject_id)
            return _user_from_row(row) if row else None

    async def load_by_email_or_phone(self, identifier: str) -> Optional[UserRecord]:
        normalized = normalize_identifier(identifier)
        async with self.db.session() as session:
            result = await session.execute(
                select(UserRow).where(or_(UserRow.email == normalized, UserRow.phone == normalized))
            )
            row = result.scalars().first()
            return _user_from_row(row) if row else None

    async def has_provider_patient_relationship(self, provider_id: str, patient_id: str) -> bool:
        now = self._clock.now()
        async with self.db.session() as session:
            result = await session.execute(
                select(ProviderPatientAssignment).where(
                    ProviderPatientAssignment.provider_id == provider_id,
                    ProviderPatientAssignment.patient_id == patient_id,
                )
            )
            for row in result.scalars():
                relationship = Relationship(
                    provider_id=row.provider_id,
                    patient_id=row.patient_id,
                    starts_at=ensure_aware(row.starts_at),
                    ends_at=ensure_aware(row.ends_at),
                )
                if relationship.active_at(now):
                    return True
        return False

    async def create_user(self, user: UserRecord) -> UserRecord:
        values = _column_values({
            "subject_id": user.subject_id,
            "role": user.role,
            "email": user.email,
            "phone": user.phone,
            "permissions": user.permissions,
            "is_active": user.is_active,
            "is_email_verified": user.is_email_verified,
            "is_phone_verified": user.is_phone_verified,
            "password_hash": user.password_hash,
            "password_updated_at": user.password_updated_at,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "profile": dict(user.profile),
            "created_at": user.created_at or self._clock.now(),
        })
        try:
            async with self.db.session() as session:
                session.add(UserRow(**values))
        except IntegrityError as e:
            raise ConflictError("An account with this email or phone already exists") from e
        created = await self.load_by_subject(user.subject_id)
        if created is None:
            raise SQLAlchemyError("user row vanished after insert")
        return created

    async def update_user(self, subject_id: str, **changes: Any) -> Optional[UserRecord]:
        if changes:
            try:
                async with self.db.session() as session:
                    await session.execute(
                        update(UserRow).where(UserRow.subject_id == subject_id).values(**_column_values(changes))
                    )
            except IntegrityError as e:
                raise ConflictError("An account with this email or phone already exists") from e
        return await self.load_by_subject(subject_id)

    async def add_relationship(self, relationship: Relationship) -> None:
        async with self.db.session() as session:
            session.add(ProviderPatientAssignment(
                provider_id=relationship.provider_id,
                patient_id=relationship.patient_id,
                starts_at=relationship.starts_at,
                ends_at=relationship.ends_at,
            ))


# =============================================================================
# Sessions
# =============================================================================

def _session_from_row(row: AuthSession) -> RefreshSession:
    return RefreshSession(
        token_id=row.token_id,
        subject_id=row.subject_id,
        family=row.family,
        issued_at=ensure_aware(row.issued_at),
        expires_at=ensure_aware(row.expires_at),
        last_seen_at=ensure_aware(row.last_seen_at),
        rotated_at=ensure_aware(row.rotated_at),
        revoked_at=ensure_aware(row.revoked_at),
        replaced_by=row.replaced_by,
    )


class SqlSessionStore(SessionStore):
    """Refresh families and revocation lists in SQL."""

    def __init__(self, db: Database):
        self.db = db

    async def start_family(
        self,
        subject_id: str,
        token_id: str,
        family: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> RefreshSession:
        """
        Revoke the subject's live sessions and open a new family.

        The user row is locked first so concurrent logins for one subject
        run one after the other. The partial unique index on live sessions
        rejects an interleaving that slips past the lock; that attempt is
        retried once.
        """
        try:
            return await self._start_family(subject_id, token_id, family, issued_at, expires_at)
        except IntegrityError:
            logger.warning("Concurrent login for one subject; retrying family start")
            return await self._start_family(subject_id, token_id, family, issued_at, expires_at)

    async def _start_family(
        self,
        subject_id: str,
        token_id: str,
        family: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> RefreshSession:
        row = AuthSession(
            token_id=token_id,
            subject_id=subject_id,
            family=family,
            issued_at=issued_at,
            expires_at=expires_at,
            last_seen_at=issued_at,
        )
        async with self.db.session() as session:
            await session.execute(
                select(UserRow.subject_id).where(UserRow.subject_id == subject_id).with_for_update()
            )
            await session.execute(
                update(AuthSession)
                .where(
                    AuthSession.subject_id == subject_id,
                    AuthSession.rotated_at.is_(None),
                    AuthSession.revoked_at.is_(None),
                )
                .values(revoked_at=issued_at)
            )
            session.add(row)
        return _session_from_row(row)

    async def rotate(
        self,
        token_id: str,
        subject_id: str,
        new_token_id: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> RotationResult:
        async with self.db.session() as session:
            result = await session.execute(
                update(AuthSession)
                .where(
                    AuthSession.token_id == token_id,
                    AuthSession.subject_id == subject_id,
                    AuthSession.rotated_at.is_(None),
                    AuthSession.revoked_at.is_(None),
                )
                .values(rotated_at=issued_at, last_seen_at=issued_at, replaced_by=new_token_id)
            )
            current = await session.get(AuthSession, token_id)
            if result.rowcount == 1 and current is not None:
                successor = AuthSession(
                    token_id=new_token_id,
                    subject_id=subject_id,
                    family=current.family,
                    issued_at=issued_at,
                    expires_at=expires_at,
                    last_seen_at=issued_at,
                )
                session.add(successor)
                return RotationResult(RotationOutcome.ROTATED, _session_from_row(successor))

            if current is None or current.subject_id != subject_id:
                return RotationResult(RotationOutcome.UNKNOWN)
            if current.rotated_at is not None:
                return RotationResult(RotationOutcome.REPLAYED, _session_from_row(current))
            return RotationResult(RotationOutcome.REVOKED, _session_from_row(current))

    async def get(self, token_id: str) -> Optional[RefreshSession]:
        async with self.db.session() as session:
            row = await session.get(AuthSession, token_id)
            return _session_from_row(row) if row else None

    async def active_sessions(self, subject_id: str, now: datetime) -> list[RefreshSession]:
        async with self.db.session() as session:
            result = await session.execute(
                select(AuthSession).where(
                    AuthSession.subject_id == subject_id,
                    AuthSession.rotated_at.is_(None),
                    AuthSession.revoked_at.is_(None),
                )
            )
            sessions = [_session_from_row(row) for row in result.scalars()]
        return [item for item in sessions if item.is_active(now)]

    async def revoke_family(self, family: str, now: datetime) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                update(AuthSession)
                .where(AuthSession.family == family, AuthSession.revoked_at.is_(None))
                .values(revoked_at=now)
            )
            return result.rowcount

    async def revoke_subject(self, subject_id: str, now: datetime) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                update(AuthSession)
                .where(AuthSession.subject_id == subject_id, AuthSession.revoked_at.is_(None))
                .values(revoked_at=now)
            )
            return result.rowcount

    async def revoke_token(self, token_id: str, now: datetime) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                update(AuthSession)
                .where(AuthSession.token_id == token_id, AuthSession.revoked_at.is_(None))
                .values(revoked_at=now)
            )
            return result.rowcount == 1

    async def revoke_access_token(self, token_id: str, expires_at: datetime) -> None:
        async with self.db.session() as session:
            await session.merge(TokenRevocation(token_id=token_id, kind=ACCESS_KIND, expires_at=expires_at))

    async def is_access_token_revoked(self, token_id: str, now: datetime) -> bool:
        async with self.db.session() as session:
            row = await session.get(TokenRevocation, (token_id, ACCESS_KIND))
            return row is not None and ensure_aware(row.expires_at) > now

    async def set_not_before(self, subject_id: str, instant: datetime) -> None:
        async with self.db.session() as session:
            row = await session.get(SubjectRevocation, subject_id)
            if row is None:
                session.add(SubjectRevocation(subject_id=subject_id, not_before=instant))
            elif instant > ensure_aware(row.not_before):
                row.not_before = instant

    async def not_before(self, subject_id: str) -> Optional[datetime]:
        async with self.db.session() as session:
            row = await session.get(SubjectRevocation, subject_id)
            return ensure_aware(row.not_before) if row else None

    async def consume_once(self, token_id: str, expires_at: datetime, now: datetime) -> bool:
        try:
            async with self.db.session() as session:
                session.add(TokenRevocation(token_id=token_id, kind=SINGLE_USE_KIND, expires_at=expires_at))
        except IntegrityError:
            return False
        return True

    async def purge_expired(self, now: datetime) -> int:
        """Delete revocation rows that can no longer match a live token."""
        async with self.db.session() as session:
            result = await session.execute(delete(TokenRevocation).where(TokenRevocation.expires_at <= now))
            return result.rowcount


# =============================================================================
# Verification Codes
# =============================================================================

class SqlVerificationStore(VerificationStore):
    """Hashed verification codes in SQL."""

    def __init__(self, db: Database):
        self.db = db

    async def get(self, subject_id: str, channel: VerificationChannel) -> Optional[VerificationCode]:
        async with self.db.session() as session:
            row = await session.get(VerificationCodeRow, (subject_id, channel.value))
            if row is None:
                return None
            return VerificationCode(
                subject_id=row.subject_id,
                channel=VerificationChannel(row.channel),
                code_hash=row.code_hash,
                expires_at=ensure_aware(row.expires_at),
                created_at=ensure_aware(row.created_at),
                attempts=row.attempts,
                window_started_at=ensure_aware(row.window_started_at),
                locked_until=ensure_aware(row.locked_until),
                consumed_at=ensure_aware(row.consumed_at),
            )

    async def save(self, code: VerificationCode) -> None:
        async with self.db.session() as session:
            await session.merge(VerificationCodeRow(
                subject_id=code.subject_id,
                channel=code.channel.value,
                code_hash=code.code_hash,
                expires_at=code.expires_at,
                created_at=code.created_at,
                attempts=code.attempts,
                window_started_at=code.window_started_at,
                locked_until=code.locked_until,
                consumed_at=code.consumed_at,
            ))

    async def consume(self, subject_id: str, channel: VerificationChannel, now: datetime) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                update(VerificationCodeRow)
                .where(
                    VerificationCodeRow.subject_id == subject_id,
                    VerificationCodeRow.channel == channel.value,
                    VerificationCodeRow.consumed_at.is_(None),
                )
                .values(consumed_at=now)
            )
            return result.rowcount == 1


# =============================================================================
# Audit
# =============================================================================

class SqlAuditSink(AuditSink):
    """Appends audit events to the audit_log table."""

    name = "database"

    def __init__(self, db: Database):
        self.db = db

    async def write(self, events: Sequence[AuditEvent]) -> None:
        try:
            async with self.db.session() as session:
                session.add_all([
                    AuditLogRow(
                        event_id=event.event_id,
                        timestamp=event.timestamp,
                        event_type=event.event_type.value,
                        severity=event.severity.value,
                        outcome=event.outcome.value,
                        retention_class=event.retention.value,
                        subject_id_masked=event.subject_id_masked,
                        target_id_masked=event.target_id_masked,
                        remote_address=event.remote_address,
                        user_agent=event.user_agent,
                        request_id=event.request_id,
                        details=event.details,
                    )
                    for event in events
                ])
        except SQLAlchemyError as e:
            raise AuditSinkError(f"audit insert failed: {type(e).__name__}") from e
