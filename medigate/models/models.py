"""
Medigate Database Models
SQLAlchemy ORM tables for the auth core.

User data (users, assignments) is owned by the portal's CRUD side; the core
writes sessions, revocations, verification codes and the audit log.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from medigate.core.database import Base


# =============================================================================
# Users & Assignments
# =============================================================================

class UserRow(Base):
    """User account as read by the principal store."""
    __tablename__ = "users"

    subject_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    role: Mapped[str] = mapped_column(String(20), index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), unique=True, nullable=True)
    permissions: Mapped[list[str]] = mapped_column(JSON, default=list)

    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    is_email_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    is_phone_verified: Mapped[bool] = mapped_column(Boolean, default=False)

    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    password_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    first_name: Mapped[str] = mapped_column(String(100), default="")
    last_name: Mapped[str] = mapped_column(String(100), default="")
    profile: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)  # role-specific fields

    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class ProviderPatientAssignment(Base):
    """Provider to patient assignment, optionally time-bounded."""
    __tablename__ = "provider_patient_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.subject_id"))
    patient_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.subject_id"))
    starts_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_assignment_provider_patient", "provider_id", "patient_id"),
    )


# =============================================================================
# Sessions & Revocation
# =============================================================================

class AuthSession(Base):
    """One refresh token id; rows sharing a family form the rotation chain."""
    __tablename__ = "auth_sessions"

    token_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(64), index=True)
    family: Mapped[str] = mapped_column(String(64), index=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    rotated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    replaced_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # At most one live refresh token id per subject.
    __table_args__ = (
        Index(
            "ux_auth_sessions_live_subject",
            "subject_id",
            unique=True,
            sqlite_where=text("rotated_at IS NULL AND revoked_at IS NULL"),
            postgresql_where=text("rotated_at IS NULL AND revoked_at IS NULL"),
        ),
    )


class TokenRevocation(Base):
    """
    Token ids that must no longer be accepted.
    kind: "access" (logout denylist) or "single_use" (consumed medical/reset ids).
    """
    __tablename__ = "token_revocations"

    token_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(20), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class SubjectRevocation(Base):
    """Access tokens issued before not_before are revoked for the subject."""
    __tablename__ = "subject_revocations"

    subject_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    not_before: Mapped[datetime] = mapped_column(DateTime(timezone=True))


# =============================================================================
# Verification Codes
# =============================================================================

class VerificationCodeRow(Base):
    """Pending verification code, hashed; one per subject and channel."""
    __tablename__ = "verification_codes"

    subject_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    channel: Mapped[str] = mapped_column(String(10), primary_key=True)  # email, phone
    code_hash: Mapped[str] = mapped_column(String(128))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    window_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    consumed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


# =============================================================================
# Audit Log
# =============================================================================

class AuditLogRow(Base):
    """Append-only audit record. Ids are stored masked, details pre-redacted."""
    __tablename__ = "audit_log"

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    event_type: Mapped[str] = mapped_column(String(40), index=True)
    severity: Mapped[str] = mapped_column(String(10))
    outcome: Mapped[str] = mapped_column(String(10))
    retention_class: Mapped[str] = mapped_column(String(10), index=True)
    subject_id_masked: Mapped[str] = mapped_column(String(16))
    target_id_masked: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    remote_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    request_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
