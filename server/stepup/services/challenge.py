from __future__ import annotations

import base64
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..errors import (
    AccountLockedError,
    ChallengeExpiredError,
    ChallengeNotFoundError,
    ErrorCode,
    InvalidInputError,
    NotEnabledError,
    RateLimitedError,
)
from ..models import AppUser, MfaChallenge
from ..schemas import AuditAction, AuditMetadata, ChallengeStatus, TwoFactorMethod
from .audit import RequestContext
from .backup_codes import is_backup_format, is_emergency_format
from .components import TwoFactorComponents, available_methods, load_user
from .db_utils import transaction
from .lockout import LockoutStatus, user_key
from .mfa import normalize_code, sha256_hex
from .rate_limit import FixedWindowRateLimiter
from .sms import SmsSendResult
from .time_utils import as_utc

logger = logging.getLogger(__name__)

# (user_id, method) -> whatever the session layer hands back
SessionMinter = Callable[[uuid.UUID, str], Any]


@dataclass
class IssuedChallenge:
    token: str
    method: TwoFactorMethod
    expires_at: datetime
    masked_destination: str | None = None
    available_methods: list[TwoFactorMethod] = field(default_factory=list)
    emergency_only: bool = False


@dataclass
class SessionGrant:
    """Proof that a challenge was completed; ``mint()`` creates the full session."""

    user_id: uuid.UUID
    method: str
    verified_at: datetime
    minter: SessionMinter | None = None

    def mint(self) -> Any:
        if self.minter is None:
            raise RuntimeError("no session minter configured")
        return self.minter(self.user_id, self.method)


@dataclass
class VerificationResult:
    success: bool
    grant: SessionGrant | None = None
    error: ErrorCode | None = None
    attempts_remaining: int = 0
    challenge_locked: bool = False
    account_locked_until: datetime | None = None
    used_backup_code: bool = False
    used_emergency_code: bool = False
    backup_codes_remaining: int | None = None


def _new_token(rng) -> str:
    raw = rng.getrandbits(256).to_bytes(32, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class ChallengeService:
    """Window between password success and full session issuance.

    A challenge goes ISSUED -> CONSUMED on the first correct code, ISSUED ->
    LOCKED when its attempts run out and ISSUED -> EXPIRED once ``expires_at``
    passes. Every transition is a conditional UPDATE on ``status='issued'``, so
    no challenge is ever usable twice.
    """

    def __init__(
        self,
        components: TwoFactorComponents,
        *,
        session_minter: SessionMinter | None = None,
        ip_limiter: FixedWindowRateLimiter | None = None,
    ):
        self.c = components
        self.db: Session = components.db
        self.policy = components.policy
        self.clock = components.clock
        self.session_minter = session_minter
        self.ip_limiter = ip_limiter

    # Issuance

    def _check_issue_limit(self, user_id: uuid.UUID, now: datetime) -> None:
        window = timedelta(seconds=self.policy.challenge_issue_window_seconds)
        count, oldest = self.db.execute(
            select(func.count(MfaChallenge.id), func.min(MfaChallenge.issued_at)).where(
                MfaChallenge.user_id == user_id,
                MfaChallenge.method_switches == 0,
                MfaChallenge.issued_at > now - window,
            )
        ).one()
        if int(count or 0) >= self.policy.challenge_issue_limit:
            retry_after = max(1, int((as_utc(oldest) + window - now).total_seconds()))
            logger.warning("challenge issue limit hit for user %s", user_id)
            raise RateLimitedError("Too many verification requests", retry_after_seconds=retry_after)

    def _pick_method(self, user: AppUser, methods: list[TwoFactorMethod]) -> TwoFactorMethod:
        preferred = user.preferred_method
        if preferred and TwoFactorMethod(preferred) in methods:
            return TwoFactorMethod(preferred)
        if TwoFactorMethod.TOTP in methods:
            return TwoFactorMethod.TOTP
        return methods[0]

    def _insert(
        self,
        user: AppUser,
        method: TwoFactorMethod,
        *,
        now: datetime,
        expires_at: datetime,
        attempts: int,
        context: RequestContext,
        emergency_only: bool = False,
        method_switches: int = 0,
    ) -> str:
        token = _new_token(self.c.rng)
        self.db.add(
            MfaChallenge(
                token_sha256=sha256_hex(token),
                user_id=user.id,
                method=method.value,
                status=ChallengeStatus.ISSUED.value,
                attempts_remaining=attempts,
                emergency_only=emergency_only,
                method_switches=method_switches,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                issued_at=now,
                expires_at=expires_at,
            )
        )
        self.db.flush()
        return token

    def initiate_challenge(self, user_id: uuid.UUID, context: RequestContext | None = None) -> IssuedChallenge:
        ctx = context or RequestContext()
        now = self.clock()

        user = load_user(self.db, user_id)
        methods = available_methods(user) if user is not None and user.is_active else []
        if not methods:
            # Same answer for unknown users and users without 2FA.
            raise NotEnabledError()

        emergency_only = False
        lock = self.c.lockout.status(user_key(user.id))
        if lock.locked:
            if self.c.emergency_codes.active_count(user.id) == 0:
                raise AccountLockedError(locked_until=lock.locked_until)
            emergency_only = True

        with transaction(self.db):
            self._check_issue_limit(user.id, now)
            method = self._pick_method(user, methods)

            # A new login supersedes any challenge still open for this user.
            self.db.execute(
                update(MfaChallenge)
                .where(MfaChallenge.user_id == user.id, MfaChallenge.status == ChallengeStatus.ISSUED.value)
                .values(status=ChallengeStatus.REPLACED.value, closed_at=now)
                .execution_options(synchronize_session=False)
            )

            expires_at = now + timedelta(seconds=self.policy.challenge_ttl_seconds)
            token = self._insert(
                user,
                method,
                now=now,
                expires_at=expires_at,
                attempts=self.policy.challenge_max_attempts,
                context=ctx,
                emergency_only=emergency_only,
            )

            masked = None
            if method == TwoFactorMethod.SMS and not emergency_only:
                masked = self.c.sms.submit(user.id, user.phone_number, purpose="login").masked_phone

            self.c.audit.append(
                AuditAction.CHALLENGE_ISSUED,
                user_id=user.id,
                context=ctx,
                metadata=AuditMetadata(method=method.value, extra={"emergency_only": emergency_only} if emergency_only else {}),
            )

        logger.info("challenge issued for user %s via %s%s", user.id, method.value, " (emergency only)" if emergency_only else "")
        return IssuedChallenge(
            token=token,
            method=method,
            expires_at=expires_at,
            masked_destination=masked,
            available_methods=[] if emergency_only else methods,
            emergency_only=emergency_only,
        )

    # Lookup

    def _load(self, token: str) -> MfaChallenge | None:
        if not token:
            return None
        return self.db.execute(
            select(MfaChallenge)
            .where(MfaChallenge.token_sha256 == sha256_hex(token))
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _load_open(self, token: str) -> MfaChallenge:
        """Return an ISSUED, unexpired challenge or raise the matching terminal error."""
        ch = self._load(token)
        if ch is None or ch.status in (ChallengeStatus.CONSUMED.value, ChallengeStatus.REPLACED.value):
            raise ChallengeNotFoundError()
        now = self.clock()
        if ch.status == ChallengeStatus.EXPIRED.value:
            raise ChallengeExpiredError()
        if ch.status == ChallengeStatus.ISSUED.value and as_utc(ch.expires_at) <= now:
            with transaction(self.db):
                self.db.execute(
                    update(MfaChallenge)
                    .where(MfaChallenge.id == ch.id, MfaChallenge.status == ChallengeStatus.ISSUED.value)
                    .values(status=ChallengeStatus.EXPIRED.value, closed_at=now)
                    .execution_options(synchronize_session=False)
                )
            raise ChallengeExpiredError()
        return ch

    def _check_account(self, ch: MfaChallenge) -> LockoutStatus:
        lock = self.c.lockout.status(user_key(ch.user_id))
        if lock.locked and not ch.emergency_only:
            raise AccountLockedError(locked_until=lock.locked_until)
        return lock

    def _throttle_ip(self, ctx: RequestContext) -> None:
        if self.ip_limiter is None or not ctx.ip_address:
            return
        rl = self.ip_limiter.check(f"verify:{ctx.ip_address}")
        if not rl.allowed:
            logger.warning("verification throttle hit for ip %s", ctx.ip_address)
            raise RateLimitedError("Too many verification attempts", retry_after_seconds=rl.retry_after_seconds)

    # Verification

    def _match(self, ch: MfaChallenge, user: AppUser, code: str) -> tuple[str | None, str]:
        """Return (matched_by, failure_reason)."""
        if is_emergency_format(code):
            if self.c.emergency_codes.consume(user.id, code):
                return "emergency_code", ""
            return None, "invalid_emergency_code"
        if ch.emergency_only:
            return None, "emergency_code_required"
        if is_backup_format(code):
            if self.c.backup_codes.consume(user.id, code):
                return "backup_code", ""
            return None, "invalid_backup_code"

        if ch.method == TwoFactorMethod.TOTP.value:
            if not (user.totp_enabled and user.totp_secret_enc):
                return None, "method_unavailable"
            secret = self.c.secret_box.decrypt(user.totp_secret_enc)
            if self.c.totp.validate_code(secret, code):
                return TwoFactorMethod.TOTP.value, ""
            return None, "invalid_totp"

        res = self.c.sms.verify_code(user.id, code, purpose="login")
        if res.success:
            return TwoFactorMethod.SMS.value, ""
        return None, f"sms_{res.reason or 'mismatch'}"

    def verify_challenge(self, token: str, code: str, context: RequestContext | None = None) -> VerificationResult:
        ctx = context or RequestContext()
        ch = self._load_open(token)
        self._check_account(ch)
        if ch.status == ChallengeStatus.LOCKED.value:
            raise ChallengeExpiredError("Challenge locked after too many attempts")
        self._throttle_ip(ctx)

        now = self.clock()
        with transaction(self.db):
            # Claim one attempt; concurrent submissions serialize on this row.
            claimed = self.db.execute(
                update(MfaChallenge)
                .where(
                    MfaChallenge.id == ch.id,
                    MfaChallenge.status == ChallengeStatus.ISSUED.value,
                    MfaChallenge.attempts_remaining > 0,
                    MfaChallenge.expires_at > now,
                )
                .values(attempts_remaining=MfaChallenge.attempts_remaining - 1)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise ChallengeNotFoundError()
            self.db.refresh(ch)
            attempts_left = int(ch.attempts_remaining)

            user = load_user(self.db, ch.user_id)
            if user is None:
                raise ChallengeNotFoundError()
            matched_by, failure_reason = self._match(ch, user, normalize_code(code))

            if matched_by:
                result = self._succeed(ch, user, matched_by, now, ctx)
            else:
                result = self._fail(ch, user, failure_reason, attempts_left, now, ctx)

        return result

    def _succeed(self, ch: MfaChallenge, user: AppUser, matched_by: str, now: datetime, ctx: RequestContext) -> VerificationResult:
        consumed = self.db.execute(
            update(MfaChallenge)
            .where(MfaChallenge.id == ch.id, MfaChallenge.status == ChallengeStatus.ISSUED.value)
            .values(status=ChallengeStatus.CONSUMED.value, closed_at=now)
            .execution_options(synchronize_session=False)
        )
        if consumed.rowcount != 1:
            raise ChallengeNotFoundError()

        self.c.lockout.record_success(user_key(user.id))
        user.two_factor_verified_at = now

        audit = self.c.audit
        audit.append(
            AuditAction.SUCCESSFUL_AUTH,
            user_id=user.id,
            context=ctx,
            metadata=AuditMetadata(method=matched_by),
        )

        remaining = None
        if matched_by == "backup_code":
            remaining = self.c.backup_codes.remaining(user.id)
            audit.append(
                AuditAction.BACKUP_CODE_USAGE,
                user_id=user.id,
                context=ctx,
                metadata=AuditMetadata(method=ch.method, extra={"remaining_codes": remaining}),
            )
        elif matched_by == "emergency_code":
            audit.append(
                AuditAction.EMERGENCY_CODE_USAGE,
                user_id=user.id,
                context=ctx,
                metadata=AuditMetadata(method=ch.method, extra={"active_codes": self.c.emergency_codes.active_count(user.id)}),
            )

        logger.info("challenge consumed for user %s via %s", user.id, matched_by)
        return VerificationResult(
            success=True,
            grant=SessionGrant(user_id=user.id, method=matched_by, verified_at=now, minter=self.session_minter),
            attempts_remaining=int(ch.attempts_remaining),
            used_backup_code=matched_by == "backup_code",
            used_emergency_code=matched_by == "emergency_code",
            backup_codes_remaining=remaining,
        )

    def _fail(
        self,
        ch: MfaChallenge,
        user: AppUser,
        failure_reason: str,
        attempts_left: int,
        now: datetime,
        ctx: RequestContext,
    ) -> VerificationResult:
        lock = self.c.lockout.record_failure(user_key(user.id))

        challenge_locked = attempts_left <= 0
        if challenge_locked:
            self.db.execute(
                update(MfaChallenge)
                .where(MfaChallenge.id == ch.id, MfaChallenge.status == ChallengeStatus.ISSUED.value)
                .values(status=ChallengeStatus.LOCKED.value, closed_at=now)
                .execution_options(synchronize_session=False)
            )

        self.c.audit.append(
            AuditAction.FAILED_ATTEMPT,
            user_id=user.id,
            success=False,
            context=ctx,
            metadata=AuditMetadata(method=ch.method, failure_reason=failure_reason, attempts_remaining=attempts_left),
        )
        if lock.locked:
            self.c.audit.append(
                AuditAction.LOCKOUT,
                user_id=user.id,
                success=False,
                context=ctx,
                metadata=AuditMetadata(
                    method=ch.method,
                    locked_until=lock.locked_until.isoformat() if lock.locked_until else None,
                    extra={"failed_count": lock.failed_count},
                ),
            )

        return VerificationResult(
            success=False,
            error=ErrorCode.INVALID_CODE,
            attempts_remaining=attempts_left,
            challenge_locked=challenge_locked,
            account_locked_until=lock.locked_until if lock.locked else None,
        )

    # Resend / switch

    def resend_sms_code(self, token: str, context: RequestContext | None = None) -> SmsSendResult:
        ch = self._load_open(token)
        self._check_account(ch)
        if ch.status != ChallengeStatus.ISSUED.value:
            raise ChallengeExpiredError()
        if ch.method != TwoFactorMethod.SMS.value or ch.emergency_only:
            raise InvalidInputError("Challenge does not use SMS")

        user = load_user(self.db, ch.user_id)
        if user is None or TwoFactorMethod.SMS not in available_methods(user):
            raise NotEnabledError("SMS verification is not enabled")

        with transaction(self.db):
            sent = self.c.sms.submit(user.id, user.phone_number, purpose="login")
        logger.info("sms code resent for user %s", user.id)
        return sent

    def switch_challenge_method(
        self, token: str, new_method: TwoFactorMethod, context: RequestContext | None = None
    ) -> IssuedChallenge:
        ctx = context or RequestContext()
        ch = self._load_open(token)
        self._check_account(ch)
        if ch.status != ChallengeStatus.ISSUED.value:
            raise ChallengeExpiredError()
        if ch.emergency_only:
            raise InvalidInputError("Only an emergency code can complete this challenge")

        new_method = TwoFactorMethod(new_method)
        user = load_user(self.db, ch.user_id)
        methods = available_methods(user) if user is not None else []
        if new_method not in methods:
            raise NotEnabledError(f"{new_method.value} is not enabled for this account")
        if new_method.value == ch.method:
            raise InvalidInputError(f"Challenge already uses {new_method.value}")
        if int(ch.method_switches or 0) >= self.policy.challenge_max_method_switches:
            raise RateLimitedError("Too many method switches; sign in again")

        now = self.clock()
        expires_at = as_utc(ch.expires_at)
        with transaction(self.db):
            replaced = self.db.execute(
                update(MfaChallenge)
                .where(MfaChallenge.id == ch.id, MfaChallenge.status == ChallengeStatus.ISSUED.value)
                .values(status=ChallengeStatus.REPLACED.value, closed_at=now)
                .execution_options(synchronize_session=False)
            )
            if replaced.rowcount != 1:
                raise ChallengeNotFoundError()

            # Keeps the original expiry and remaining attempts so switching never extends the window.
            new_token = self._insert(
                user,
                new_method,
                now=now,
                expires_at=expires_at,
                attempts=int(ch.attempts_remaining),
                context=ctx,
                method_switches=int(ch.method_switches or 0) + 1,
            )
            masked = None
            if new_method == TwoFactorMethod.SMS:
                masked = self.c.sms.submit(user.id, user.phone_number, purpose="login").masked_phone

            self.c.audit.append(
                AuditAction.CHALLENGE_ISSUED,
                user_id=user.id,
                context=ctx,
                metadata=AuditMetadata(method=new_method.value, extra={"switched_from": ch.method}),
            )

        logger.info("challenge for user %s switched %s -> %s", user.id, ch.method, new_method.value)
        return IssuedChallenge(
            token=new_token,
            method=new_method,
            expires_at=expires_at,
            masked_destination=masked,
            available_methods=methods,
        )
