"""Baseline: users, sessions, 2FA credentials, challenges, lockouts, audit chain

Revision ID: 20261017_00
Revises:
Create Date: 2026-10-17

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261017_00"
down_revision = None
branch_labels = None
depends_on = None

UUID = postgresql.UUID(as_uuid=True)
TS = sa.DateTime(timezone=True)


def _audit_columns() -> list[sa.Column]:
    return [
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("created_at", TS, nullable=False),
        sa.Column("user_id", UUID, nullable=True),
        sa.Column("actor_user_id", UUID, nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("previous_hash", sa.String(), nullable=True),
        sa.Column("entry_hash", sa.String(), nullable=False),
    ]


def upgrade() -> None:
    # In dev-style deployments DB_AUTO_CREATE_TABLES=true, Base.metadata.create_all()
    # may have already created the schema. Make the migration idempotent.
    bind = op.get_bind()
    if sa.inspect(bind).has_table("app_users"):
        return

    op.create_table(
        "app_users",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("username", sa.String(), nullable=False, unique=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("password_hash", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="creator"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("totp_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("totp_secret_enc", sa.Text(), nullable=True),
        sa.Column("totp_secret_pending_enc", sa.Text(), nullable=True),
        sa.Column("totp_enrolled_at", TS, nullable=True),
        sa.Column("totp_pending_at", TS, nullable=True),
        sa.Column("phone_number", sa.String(), nullable=True),
        sa.Column("phone_pending", sa.String(), nullable=True),
        sa.Column("phone_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("preferred_method", sa.String(), nullable=True),
        sa.Column("two_factor_verified_at", TS, nullable=True),
        sa.Column("two_factor_last_reset_at", TS, nullable=True),
        sa.Column("two_factor_last_reset_by", UUID, nullable=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_app_users_username", "app_users", ["username"])
    op.create_index("ix_app_users_email", "app_users", ["email"])
    op.create_index("ix_app_users_role", "app_users", ["role"])

    op.create_table(
        "app_sessions",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("token_sha256", sa.String(), nullable=False, unique=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("expires_at", TS, nullable=False),
        sa.Column("mfa_verified_at", TS, nullable=True),
        sa.Column("mfa_method", sa.String(), nullable=True),
    )
    op.create_index("ix_app_sessions_user_id", "app_sessions", ["user_id"])
    op.create_index("ix_app_sessions_expires_at", "app_sessions", ["expires_at"])

    op.create_table(
        "mfa_challenges",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("token_sha256", sa.String(), nullable=False, unique=True),
        sa.Column("user_id", UUID, sa.ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="issued"),
        sa.Column("attempts_remaining", sa.Integer(), nullable=False),
        sa.Column("emergency_only", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("method_switches", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("issued_at", TS, nullable=False),
        sa.Column("expires_at", TS, nullable=False),
        sa.Column("closed_at", TS, nullable=True),
    )
    op.create_index("ix_mfa_challenges_user_issued", "mfa_challenges", ["user_id", "issued_at"])
    op.create_index("ix_mfa_challenges_status", "mfa_challenges", ["status"])
    op.create_index("ix_mfa_challenges_expires_at", "mfa_challenges", ["expires_at"])

    op.create_table(
        "mfa_backup_codes",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("code_hash", sa.String(), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("used_at", TS, nullable=True),
        sa.Column("created_at", TS, nullable=False),
    )
    op.create_index("ix_mfa_backup_codes_user_hash", "mfa_backup_codes", ["user_id", "code_hash"])

    op.create_table(
        "mfa_emergency_codes",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("code_hash", sa.String(), nullable=False),
        sa.Column("generated_by", UUID, nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("used_at", TS, nullable=True),
        sa.Column("expires_at", TS, nullable=False),
        sa.Column("created_at", TS, nullable=False),
    )
    op.create_index("ix_mfa_emergency_codes_user_hash", "mfa_emergency_codes", ["user_id", "code_hash"])
    op.create_index("ix_mfa_emergency_codes_expires_at", "mfa_emergency_codes", ["expires_at"])

    op.create_table(
        "sms_verification_codes",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("phone_number", sa.String(), nullable=False),
        sa.Column("purpose", sa.String(), nullable=False, server_default="login"),
        sa.Column("code_hash", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("delivery_id", sa.String(), nullable=True),
        sa.Column("created_at", TS, nullable=False),
        sa.Column("expires_at", TS, nullable=False),
        sa.Column("verified_at", TS, nullable=True),
        sa.Column("superseded", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_sms_codes_user_purpose_created", "sms_verification_codes", ["user_id", "purpose", "created_at"])
    op.create_index("ix_sms_verification_codes_expires_at", "sms_verification_codes", ["expires_at"])

    op.create_table(
        "auth_lockouts",
        sa.Column("identifier", sa.String(), primary_key=True, nullable=False),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("window_start", TS, nullable=True),
        sa.Column("last_failed_at", TS, nullable=True),
        sa.Column("locked_until", TS, nullable=True),
        sa.Column("updated_at", TS, nullable=True),
    )
    op.create_index("ix_auth_lockouts_locked_until", "auth_lockouts", ["locked_until"])

    op.create_table(
        "audit_events",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        *_audit_columns(),
        sa.UniqueConstraint("sequence", name="uq_audit_events_sequence"),
    )
    op.create_index("ix_audit_events_user_created", "audit_events", ["user_id", "created_at"])
    op.create_index("ix_audit_events_action_created", "audit_events", ["action", "created_at"])
    op.create_index("ix_audit_events_created_at", "audit_events", ["created_at"])

    op.create_table(
        "audit_events_archive",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        *_audit_columns(),
        sa.Column("archived_at", TS, nullable=False),
        sa.UniqueConstraint("sequence", name="uq_audit_events_archive_sequence"),
    )
    op.create_index("ix_audit_events_archive_created_at", "audit_events_archive", ["created_at"])

    op.create_table(
        "audit_chain_head",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_hash", sa.String(), nullable=True),
        sa.Column("updated_at", TS, nullable=True),
    )


def downgrade() -> None:
    for table in (
        "audit_chain_head",
        "audit_events_archive",
        "audit_events",
        "auth_lockouts",
        "sms_verification_codes",
        "mfa_emergency_codes",
        "mfa_backup_codes",
        "mfa_challenges",
        "app_sessions",
        "app_users",
    ):
        op.drop_table(table)
