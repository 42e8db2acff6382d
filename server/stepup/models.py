import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from .db import Base


class AppUser(Base):
    """User row doubling as the 2FA credential record."""

    __tablename__ = "app_users"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    username = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, nullable=True, index=True)
    password_hash = Column(String, nullable=False)
    role = Column(String, nullable=False, default="creator", index=True)  # admin|brand|creator|viewer
    is_active = Column(Boolean, nullable=False, default=True)

    # TOTP
    totp_enabled = Column(Boolean, nullable=False, default=False)
    totp_secret_enc = Column(Text)  # Fernet-encrypted base32 secret
    totp_secret_pending_enc = Column(Text)  # pending enrollment secret
    totp_enrolled_at = Column(DateTime(timezone=True))
    totp_pending_at = Column(DateTime(timezone=True))

    # SMS
    phone_number = Column(String)
    phone_pending = Column(String)  # number awaiting confirmation
    phone_verified = Column(Boolean, nullable=False, default=False)

    preferred_method = Column(String)  # totp|sms|NULL
    two_factor_verified_at = Column(DateTime(timezone=True))
    two_factor_last_reset_at = Column(DateTime(timezone=True))
    two_factor_last_reset_by = Column(UUID(as_uuid=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def two_factor_enabled(self) -> bool:
        return bool(self.totp_enabled) or bool(self.phone_verified)


class AppSession(Base):
    __tablename__ = "app_sessions"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_sha256 = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    # Set when the session was minted after a completed 2FA challenge.
    mfa_verified_at = Column(DateTime(timezone=True))
    mfa_method = Column(String)


class MfaChallenge(Base):
    """Pending second factor for one login attempt.

    Only the SHA-256 of the opaque token is stored.
    """

    __tablename__ = "mfa_challenges"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    token_sha256 = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False, index=True)
    method = Column(String, nullable=False)  # totp|sms
    status = Column(String, nullable=False, default="issued", index=True)  # issued|consumed|locked|expired|replaced
    attempts_remaining = Column(Integer, nullable=False)
    emergency_only = Column(Boolean, nullable=False, default=False)
    method_switches = Column(Integer, nullable=False, default=0)
    ip_address = Column(String)
    user_agent = Column(String)
    issued_at = Column(DateTime(timezone=True), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    closed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_mfa_challenges_user_issued", "user_id", "issued_at"),
    )


class BackupCode(Base):
    __tablename__ = "mfa_backup_codes"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False, index=True)
    code_hash = Column(String, nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_mfa_backup_codes_user_hash", "user_id", "code_hash"),
    )


class EmergencyCode(Base):
    """Short-lived recovery code issued by an admin."""

    __tablename__ = "mfa_emergency_codes"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False, index=True)
    code_hash = Column(String, nullable=False)
    generated_by = Column(UUID(as_uuid=True), nullable=False)
    reason = Column(Text, nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime(timezone=True))
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_mfa_emergency_codes_user_hash", "user_id", "code_hash"),
    )


class SmsVerificationCode(Base):
    __tablename__ = "sms_verification_codes"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False, index=True)
    phone_number = Column(String, nullable=False)
    purpose = Column(String, nullable=False, default="login")  # login|setup
    code_hash = Column(String, nullable=False)  # "<salt>$<sha256 hex>"
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    delivery_id = Column(String)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    verified_at = Column(DateTime(timezone=True))
    superseded = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_sms_codes_user_purpose_created", "user_id", "purpose", "created_at"),
    )


class LockoutRecord(Base):
    __tablename__ = "auth_lockouts"
    identifier = Column(String, primary_key=True)  # e.g. "user:<uuid>", "ip:<addr>"
    failed_count = Column(Integer, nullable=False, default=0)
    window_start = Column(DateTime(timezone=True))
    last_failed_at = Column(DateTime(timezone=True))
    locked_until = Column(DateTime(timezone=True), index=True)
    updated_at = Column(DateTime(timezone=True))


class AuditEntryMixin:
    # Shared by the live table and the archive so archived rows keep every hashed field.
    sequence = Column(Integer, nullable=False, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    actor_user_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    action = Column(String, nullable=False, index=True)
    success = Column(Boolean, nullable=False, default=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    meta = Column(JSON, nullable=False, default=dict)
    previous_hash = Column(String, nullable=True)
    entry_hash = Column(String, nullable=False)


class AuditEvent(AuditEntryMixin, Base):
    """Append-only, hash-chained security event."""

    __tablename__ = "audit_events"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    __table_args__ = (
        Index("ix_audit_events_user_created", "user_id", "created_at"),
        Index("ix_audit_events_action_created", "action", "created_at"),
    )


class AuditEventArchive(AuditEntryMixin, Base):
    __tablename__ = "audit_events_archive"
    id = Column(UUID(as_uuid=True), primary_key=True)
    archived_at = Column(DateTime(timezone=True), nullable=False)


class AuditChainHead(Base):
    """Single row holding the tip of the global audit chain (compare-and-swap target)."""

    __tablename__ = "audit_chain_head"
    id = Column(Integer, primary_key=True, default=1)
    sequence = Column(Integer, nullable=False, default=0)
    last_hash = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True))
