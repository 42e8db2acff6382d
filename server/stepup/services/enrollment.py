from __future__ import annotations

import logging
import uuid

from ..errors import AccountLockedError, InvalidCodeError, InvalidInputError, NotEnabledError, NotFoundError
from ..models import AppUser
from ..schemas import AuditAction, AuditMetadata, TwoFactorMethod
from .audit import RequestContext
from .backup_codes import is_backup_format
from .components import TwoFactorComponents, available_methods, load_user
from .db_utils import transaction
from .lockout import user_key
from .mfa import TotpProvisioning, normalize_code
from .sms import SmsSendResult, normalize_phone

logger = logging.getLogger(__name__)

SETUP_PURPOSE = "setup"
MANAGE_PURPOSE = "manage"


def clear_credentials(c: TwoFactorComponents, user: AppUser) -> None:
    """Null out every 2FA field and invalidate outstanding recovery codes."""
    user.totp_enabled = False
    user.totp_secret_enc = None
    user.totp_secret_pending_enc = None
    user.totp_enrolled_at = None
    user.totp_pending_at = None
    user.phone_verified = False
    user.phone_number = None
    user.phone_pending = None
    user.preferred_method = None
    user.two_factor_verified_at = None
    c.backup_codes.invalidate_unused(user.id)
    c.emergency_codes.invalidate_unused(user.id)


class EnrollmentService:
    """Self-service configuration of a user's second factors.

    Keeps the credential invariant: ``preferred_method`` only ever names a
    method that is currently enabled.
    """

    def __init__(self, components: TwoFactorComponents):
        self.c = components
        self.db = components.db
        self.policy = components.policy
        self.clock = components.clock

    def _user(self, user_id: uuid.UUID) -> AppUser:
        user = load_user(self.db, user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found")
        return user

    def _first_method_codes(self, user: AppUser, had_methods: bool) -> list[str] | None:
        if had_methods:
            return None
        return self.c.backup_codes.generate(user.id)

    # Code checks for management operations

    def _check_code(self, user: AppUser, method: TwoFactorMethod, code: str) -> bool:
        code = normalize_code(code)
        if method == TwoFactorMethod.TOTP:
            if not (user.totp_enabled and user.totp_secret_enc):
                return False
            return self.c.totp.validate_code(self.c.secret_box.decrypt(user.totp_secret_enc), code)
        return self.c.sms.verify_code(user.id, code, purpose=MANAGE_PURPOSE).success

    def _check_any_factor(self, user: AppUser, code: str, *, allow_backup: bool = True) -> bool:
        normalized = normalize_code(code)
        if allow_backup and is_backup_format(normalized):
            return self.c.backup_codes.consume(user.id, normalized)
        return any(self._check_code(user, m, normalized) for m in available_methods(user))

    def _require_factor(self, user: AppUser, ok, *, operation: str, context: RequestContext | None) -> None:
        """Run ``ok()`` under the user's lockout; failures count towards it."""
        lock = self.c.lockout.status(user_key(user.id))
        if lock.locked:
            raise AccountLockedError(locked_until=lock.locked_until)
        if ok():
            return

        # Spent SMS attempts commit together with the failure record.
        with transaction(self.db):
            status = self.c.lockout.record_failure(user_key(user.id))
            self.c.audit.append(
                AuditAction.FAILED_ATTEMPT,
                user_id=user.id,
                success=False,
                context=context,
                metadata=AuditMetadata(failure_reason="invalid_code", extra={"operation": operation}),
            )
            if status.locked:
                self.c.audit.append(
                    AuditAction.LOCKOUT,
                    user_id=user.id,
                    success=False,
                    context=context,
                    metadata=AuditMetadata(locked_until=status.locked_until.isoformat() if status.locked_until else None),
                )
        raise InvalidCodeError()

    def send_verification_code(self, user_id: uuid.UUID) -> SmsSendResult:
        """SMS a code that authorizes a management operation for SMS-only users."""
        user = self._user(user_id)
        if TwoFactorMethod.SMS not in available_methods(user):
            raise NotEnabledError("SMS verification is not enabled")
        with transaction(self.db):
            return self.c.sms.submit(user.id, user.phone_number, purpose=MANAGE_PURPOSE)

    # TOTP

    def enable_totp(self, user_id: uuid.UUID) -> TotpProvisioning:
        user = self._user(user_id)
        if user.totp_enabled:
            raise InvalidInputError("Authenticator app is already enabled")

        prov = self.c.totp.provision(user.username, issuer=self.policy.totp_issuer)
        with transaction(self.db):
            user.totp_secret_pending_enc = self.c.secret_box.encrypt(prov.secret)
            user.totp_pending_at = self.clock()
        return prov

    def confirm_totp_setup(self, user_id: uuid.UUID, code: str, context: RequestContext | None = None) -> list[str] | None:
        """Activate the pending secret. Returns backup codes when this is the first method."""
        user = self._user(user_id)
        if not user.totp_secret_pending_enc:
            raise InvalidInputError("No pending authenticator enrollment")

        secret = self.c.secret_box.decrypt(user.totp_secret_pending_enc)
        if not self.c.totp.validate_code(secret, code):
            raise InvalidCodeError()

        with transaction(self.db):
            had_methods = bool(available_methods(user))
            user.totp_secret_enc = user.totp_secret_pending_enc
            user.totp_secret_pending_enc = None
            user.totp_pending_at = None
            user.totp_enabled = True
            user.totp_enrolled_at = self.clock()
            if not user.preferred_method:
                user.preferred_method = TwoFactorMethod.TOTP.value
            codes = self._first_method_codes(user, had_methods)
            self.c.audit.append(
                AuditAction.SETUP,
                user_id=user.id,
                context=context,
                metadata=AuditMetadata(method=TwoFactorMethod.TOTP.value),
            )

        logger.info("totp enabled for user %s", user.id)
        return codes

    # SMS

    def enable_sms(self, user_id: uuid.UUID, phone_number: str) -> SmsSendResult:
        user = self._user(user_id)
        phone = normalize_phone(phone_number)
        if user.phone_verified and user.phone_number == phone:
            raise InvalidInputError("This phone number is already verified")

        with transaction(self.db):
            user.phone_pending = phone
            sent = self.c.sms.submit(user.id, phone, purpose=SETUP_PURPOSE)
        return sent

    def confirm_sms_setup(self, user_id: uuid.UUID, code: str, context: RequestContext | None = None) -> list[str] | None:
        user = self._user(user_id)
        if not user.phone_pending:
            raise InvalidInputError("No pending phone verification")

        res = self.c.sms.verify_code(user.id, code, purpose=SETUP_PURPOSE)
        if not res.success:
            # Keep the spent attempt.
            self.db.commit()
            raise InvalidCodeError(attempts_remaining=res.attempts_remaining, failure_reason=res.reason)

        with transaction(self.db):
            had_methods = bool(available_methods(user))
            user.phone_number = user.phone_pending
            user.phone_pending = None
            user.phone_verified = True
            if not user.preferred_method:
                user.preferred_method = TwoFactorMethod.SMS.value
            codes = self._first_method_codes(user, had_methods)
            self.c.audit.append(
                AuditAction.SETUP,
                user_id=user.id,
                context=context,
                metadata=AuditMetadata(method=TwoFactorMethod.SMS.value),
            )

        logger.info("sms 2fa enabled for user %s", user.id)
        return codes

    # Disable / change

    def disable_2fa(self, user_id: uuid.UUID, code: str, context: RequestContext | None = None) -> None:
        user = self._user(user_id)
        if not user.two_factor_enabled:
            raise NotEnabledError()
        self._require_factor(user, lambda: self._check_any_factor(user, code), operation="disable", context=context)

        with transaction(self.db):
            previous = [m.value for m in available_methods(user)]
            clear_credentials(self.c, user)
            self.c.audit.append(
                AuditAction.DISABLE,
                user_id=user.id,
                context=context,
                metadata=AuditMetadata(extra={"methods": previous}),
            )
        logger.info("2fa disabled for user %s", user.id)

    def set_preferred_method(
        self, user_id: uuid.UUID, method: TwoFactorMethod, code: str, context: RequestContext | None = None
    ) -> None:
        """Switch the preferred method, proven with a code from the current preferred method."""
        user = self._user(user_id)
        method = TwoFactorMethod(method)
        methods = available_methods(user)
        if not methods:
            raise NotEnabledError()
        if method not in methods:
            raise NotEnabledError(f"{method.value} is not enabled for this account")

        current = TwoFactorMethod(user.preferred_method) if user.preferred_method in {m.value for m in methods} else methods[0]
        self._require_factor(user, lambda: self._check_code(user, current, code), operation="set_preferred_method", context=context)

        with transaction(self.db):
            user.preferred_method = method.value
            self.c.audit.append(
                AuditAction.METHOD_CHANGED,
                user_id=user.id,
                context=context,
                metadata=AuditMetadata(method=method.value, extra={"previous": current.value}),
            )

    def remove_method(
        self, user_id: uuid.UUID, method: TwoFactorMethod, code: str, context: RequestContext | None = None
    ) -> TwoFactorMethod:
        """Remove one of two active methods; the code must come from the one that stays."""
        user = self._user(user_id)
        method = TwoFactorMethod(method)
        methods = available_methods(user)
        if method not in methods:
            raise NotEnabledError(f"{method.value} is not enabled for this account")
        if len(methods) < 2:
            raise InvalidInputError("Cannot remove the only active method; disable two-factor authentication instead")

        keep = TwoFactorMethod.SMS if method == TwoFactorMethod.TOTP else TwoFactorMethod.TOTP
        self._require_factor(user, lambda: self._check_code(user, keep, code), operation="remove_method", context=context)

        with transaction(self.db):
            if method == TwoFactorMethod.TOTP:
                user.totp_enabled = False
                user.totp_secret_enc = None
                user.totp_enrolled_at = None
            else:
                user.phone_verified = False
                user.phone_number = None
            user.preferred_method = keep.value
            self.c.audit.append(
                AuditAction.METHOD_REMOVED,
                user_id=user.id,
                context=context,
                metadata=AuditMetadata(method=method.value, extra={"remaining": keep.value}),
            )
        return keep

    # Backup codes

    def regenerate_backup_codes(self, user_id: uuid.UUID, code: str, context: RequestContext | None = None) -> list[str]:
        user = self._user(user_id)
        if not user.two_factor_enabled:
            raise NotEnabledError()
        self._require_factor(
            user, lambda: self._check_any_factor(user, code, allow_backup=False), operation="regenerate_backup_codes", context=context
        )

        with transaction(self.db):
            codes = self.c.backup_codes.generate(user.id)
            self.c.audit.append(
                AuditAction.BACKUP_CODES_REGENERATED,
                user_id=user.id,
                context=context,
                metadata=AuditMetadata(extra={"count": len(codes)}),
            )
        logger.info("backup codes regenerated for user %s", user.id)
        return codes

    def consume_backup_code(self, user_id: uuid.UUID, code: str, context: RequestContext | None = None) -> bool:
        with transaction(self.db):
            ok = self.c.backup_codes.consume(user_id, code)
            if ok:
                self.c.audit.append(
                    AuditAction.BACKUP_CODE_USAGE,
                    user_id=user_id,
                    context=context,
                    metadata=AuditMetadata(extra={"remaining_codes": self.c.backup_codes.remaining(user_id)}),
                )
        return ok
