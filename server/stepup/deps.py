from __future__ import annotations

import random
import secrets

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from .config import settings
from .db import get_db
from .errors import ForbiddenError
from .models import AppSession, AppUser
from .services.admin_override import AdminOverrideService
from .services.audit import RequestContext, request_context
from .services.challenge import ChallengeService
from .services.compliance import ComplianceService
from .services.components import TwoFactorComponents
from .services.enrollment import EnrollmentService
from .services.mfa import SecretBox
from .services.rate_limit import FixedWindowRateLimiter
from .services.sessions import SessionIssuer
from .services.sms import LoggingSmsProvider, SmsProvider, TwilioSmsProvider
from .services.time_utils import Clock, now_utc

SESSION_COOKIE = "stepup_session"
CSRF_COOKIE = "stepup_csrf"

_SMS_PROVIDER: SmsProvider | None = None
_VERIFY_LIMITER: FixedWindowRateLimiter | None = None


def build_sms_provider() -> SmsProvider:
    name = (settings.sms_provider or "log").strip().lower()
    if name == "twilio":
        return TwilioSmsProvider(
            account_sid=settings.twilio_account_sid or "",
            auth_token=settings.twilio_auth_token or "",
            from_number=settings.twilio_from_number or "",
            api_base_url=settings.twilio_api_base_url,
            timeout_seconds=settings.twilio_timeout_seconds,
        )
    if name == "log":
        return LoggingSmsProvider()
    raise RuntimeError(f"unknown SMS_PROVIDER: {settings.sms_provider}")


def get_sms_provider() -> SmsProvider:
    global _SMS_PROVIDER  # noqa: PLW0603
    if _SMS_PROVIDER is None:
        _SMS_PROVIDER = build_sms_provider()
    return _SMS_PROVIDER


def get_verify_limiter() -> FixedWindowRateLimiter:
    global _VERIFY_LIMITER  # noqa: PLW0603
    if _VERIFY_LIMITER is None:
        _VERIFY_LIMITER = FixedWindowRateLimiter(
            limit=settings.verify_ip_limit, window_seconds=settings.verify_ip_window_seconds
        )
    _VERIFY_LIMITER.cleanup()
    return _VERIFY_LIMITER


def get_clock() -> Clock:
    return now_utc


def get_rng() -> random.Random:
    return secrets.SystemRandom()


def get_request_context(request: Request) -> RequestContext:
    return request_context(request)


def get_session_issuer(db: Session = Depends(get_db), clock: Clock = Depends(get_clock)) -> SessionIssuer:
    return SessionIssuer(db, session_days=settings.ui_session_days, clock=clock)


def get_components(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    rng: random.Random = Depends(get_rng),
    sms_provider: SmsProvider = Depends(get_sms_provider),
) -> TwoFactorComponents:
    return TwoFactorComponents.build(
        db,
        settings.two_factor_policy(),
        secret_box=SecretBox(settings.mfa_encryption_key),
        sms_provider=sms_provider,
        clock=clock,
        rng=rng,
        sms_brand=settings.sms_brand_name,
        audit_max_retries=settings.audit_append_max_retries,
    )


def get_challenge_service(
    components: TwoFactorComponents = Depends(get_components),
    issuer: SessionIssuer = Depends(get_session_issuer),
    limiter: FixedWindowRateLimiter = Depends(get_verify_limiter),
) -> ChallengeService:
    return ChallengeService(components, session_minter=issuer.issue, ip_limiter=limiter)


def get_enrollment_service(components: TwoFactorComponents = Depends(get_components)) -> EnrollmentService:
    return EnrollmentService(components)


def get_admin_service(components: TwoFactorComponents = Depends(get_components)) -> AdminOverrideService:
    return AdminOverrideService(components)


def get_compliance_service(db: Session = Depends(get_db), clock: Clock = Depends(get_clock)) -> ComplianceService:
    return ComplianceService(db, settings.two_factor_policy(), clock=clock)


# Session auth


def get_current_session_from_request(request: Request, db: Session, clock: Clock = now_utc) -> tuple[AppSession, AppUser] | None:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return None
    return SessionIssuer(db, clock=clock).lookup(token)


def require_ui_user(request: Request, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)) -> AppUser:
    res = get_current_session_from_request(request, db, clock)
    if not res:
        raise HTTPException(401, "Not authenticated")
    sess, user = res
    # A user with 2FA configured only gets full sessions through a completed challenge.
    if user.two_factor_enabled and not sess.mfa_verified_at:
        raise HTTPException(403, "Two-factor verification required")
    return user


def require_admin_user(user: AppUser = Depends(require_ui_user)) -> AppUser:
    from .services.rbac import require_admin

    try:
        return require_admin(user)
    except ForbiddenError:
        raise HTTPException(403, "Admin privileges required")


# Pre-session steps carry no session cookie worth protecting.
CSRF_EXEMPT_PATHS = ("/health", "/auth/login", "/auth/logout")
CSRF_EXEMPT_PREFIXES = ("/auth/2fa/challenge/",)
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def csrf_violation(request: Request) -> bool:
    """Double-submit check: X-CSRF-Token must echo the CSRF cookie on cookie-authenticated writes."""
    if (request.method or "GET").upper() in SAFE_METHODS:
        return False
    path = request.url.path or ""
    if path in CSRF_EXEMPT_PATHS or path.startswith(CSRF_EXEMPT_PREFIXES):
        return False
    if not request.cookies.get(SESSION_COOKIE):
        return False
    expected = request.cookies.get(CSRF_COOKIE)
    supplied = request.headers.get("X-CSRF-Token")
    return not expected or not supplied or not secrets.compare_digest(expected, supplied)
