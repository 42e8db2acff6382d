from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..errors import ForbiddenError, InvalidInputError, NotEnabledError, NotFoundError
from ..models import AppUser
from ..schemas import AuditAction, AuditMetadata
from .audit import RequestContext
from .components import TwoFactorComponents, available_methods, load_user
from .db_utils import transaction
from .enrollment import clear_credentials
from .lockout import user_key
from .rbac import require_admin
from .sessions import SessionIssuer

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 1000


@dataclass
class EmergencyCodes:
    codes: list[str]
    expires_at: datetime


class AdminOverrideService:
    """Privileged operations that bypass the challenge flow.

    Every precondition (reason, privilege, self-targeting, target existence) is
    checked before anything is written.
    """

    def __init__(self, components: TwoFactorComponents):
        self.c = components
        self.db = components.db
        self.clock = components.clock

    def _reason(self, reason: str | None) -> str:
        r = (reason or "").strip()
        if not r:
            raise InvalidInputError("A reason is required")
        if len(r) > MAX_REASON_LENGTH:
            raise InvalidInputError(f"Reason must be at most {MAX_REASON_LENGTH} characters")
        return r

    def _admin_and_target(self, target_user_id: uuid.UUID, admin_id: uuid.UUID) -> tuple[AppUser, AppUser]:
        admin = require_admin(load_user(self.db, admin_id))
        target = load_user(self.db, target_user_id)
        if target is None:
            raise NotFoundError("User not found")
        return admin, target

    def _blocked(self, action: AuditAction, target_user_id: uuid.UUID, admin_id: uuid.UUID, reason: str | None, context) -> None:
        reason = (reason or "").strip()[:MAX_REASON_LENGTH] or None
        with transaction(self.db):
            self.c.audit.append(
                action,
                user_id=target_user_id,
                actor_user_id=admin_id,
                success=False,
                context=context,
                metadata=AuditMetadata(reason=reason, failure_reason="self_target_blocked"),
            )
        logger.warning("admin %s attempted %s on own account", admin_id, action.value)

    def reset_user_2fa(
        self, target_user_id: uuid.UUID, admin_id: uuid.UUID, reason: str, context: RequestContext | None = None
    ) -> None:
        if target_user_id == admin_id:
            self._blocked(AuditAction.ADMIN_RESET, target_user_id, admin_id, reason, context)
            raise ForbiddenError("Administrators cannot reset their own two-factor authentication")
        reason = self._reason(reason)
        admin, target = self._admin_and_target(target_user_id, admin_id)

        now = self.clock()
        with transaction(self.db):
            previous = [m.value for m in available_methods(target)]
            clear_credentials(self.c, target)
            self.c.lockout.record_success(user_key(target.id))
            revoked = SessionIssuer(self.db, clock=self.clock).revoke_all(target.id)
            target.two_factor_last_reset_at = now
            target.two_factor_last_reset_by = admin.id
            self.c.audit.append(
                AuditAction.ADMIN_RESET,
                user_id=target.id,
                actor_user_id=admin.id,
                context=context,
                metadata=AuditMetadata(reason=reason, extra={"previous_methods": previous, "sessions_revoked": revoked}),
            )
        logger.info("admin %s reset 2fa for user %s (%s sessions revoked)", admin_id, target_user_id, revoked)

    def generate_emergency_codes(
        self, target_user_id: uuid.UUID, admin_id: uuid.UUID, reason: str, context: RequestContext | None = None
    ) -> EmergencyCodes:
        if target_user_id == admin_id:
            self._blocked(AuditAction.EMERGENCY_CODE_GENERATED, target_user_id, admin_id, reason, context)
            raise ForbiddenError("Administrators cannot issue emergency codes to themselves")
        reason = self._reason(reason)
        admin, target = self._admin_and_target(target_user_id, admin_id)
        if not available_methods(target):
            raise NotEnabledError("User does not have two-factor authentication enabled")

        with transaction(self.db):
            codes, expires_at = self.c.emergency_codes.generate(target.id, admin_id=admin.id, reason=reason)
            self.c.audit.append(
                AuditAction.EMERGENCY_CODE_GENERATED,
                user_id=target.id,
                actor_user_id=admin.id,
                context=context,
                metadata=AuditMetadata(reason=reason, extra={"count": len(codes), "expires_at": expires_at.isoformat()}),
            )
        logger.info("admin %s issued %s emergency codes for user %s", admin_id, len(codes), target_user_id)
        return EmergencyCodes(codes=codes, expires_at=expires_at)

    def unlock_account(
        self, target_user_id: uuid.UUID, admin_id: uuid.UUID, reason: str, context: RequestContext | None = None
    ) -> bool:
        reason = self._reason(reason)
        admin, target = self._admin_and_target(target_user_id, admin_id)

        with transaction(self.db):
            was_locked = self.c.lockout.unlock(user_key(target.id))
            self.c.audit.append(
                AuditAction.ACCOUNT_UNLOCKED,
                user_id=target.id,
                actor_user_id=admin.id,
                context=context,
                metadata=AuditMetadata(reason=reason, extra={"was_locked": was_locked}),
            )
        return was_locked

    def get_user_2fa_status(self, target_user_id: uuid.UUID, *, recent_events: int = 20) -> dict[str, Any]:
        target = load_user(self.db, target_user_id)
        if target is None:
            raise NotFoundError("User not found")

        lock = self.c.lockout.status(user_key(target.id))
        events = self.c.audit.list_events(user_id=target.id, limit=recent_events)
        return {
            "user_id": str(target.id),
            "username": target.username,
            "role": target.role,
            "two_factor_enabled": target.two_factor_enabled,
            "methods": [m.value for m in available_methods(target)],
            "preferred_method": target.preferred_method,
            "totp_enrolled_at": target.totp_enrolled_at.isoformat() if target.totp_enrolled_at else None,
            "phone_verified": bool(target.phone_verified),
            "backup_codes_remaining": self.c.backup_codes.remaining(target.id),
            "emergency_codes_active": self.c.emergency_codes.active_count(target.id),
            "locked": lock.locked,
            "locked_until": lock.locked_until.isoformat() if lock.locked_until else None,
            "recent_failed_attempts": lock.failed_count,
            "two_factor_verified_at": target.two_factor_verified_at.isoformat() if target.two_factor_verified_at else None,
            "last_reset_at": target.two_factor_last_reset_at.isoformat() if target.two_factor_last_reset_at else None,
            "last_reset_by": str(target.two_factor_last_reset_by) if target.two_factor_last_reset_by else None,
            "recent_events": [
                {
                    "sequence": ev.sequence,
                    "action": ev.action,
                    "success": ev.success,
                    "at": ev.created_at.isoformat() if ev.created_at else None,
                    "ip_address": ev.ip_address,
                }
                for ev in events
            ],
        }
