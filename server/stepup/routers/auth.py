from __future__ import annotations

import secrets
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from passlib.context import CryptContext
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..deps import (
    CSRF_COOKIE,
    SESSION_COOKIE,
    get_challenge_service,
    get_current_session_from_request,
    get_request_context,
    get_session_issuer,
    require_ui_user,
)
from ..models import AppSession, AppUser
from ..schemas import ChallengeOut, ChallengeSwitchPayload, ChallengeTokenPayload, ChallengeVerifyPayload, LoginPayload
from ..services.audit import RequestContext
from ..services.challenge import ChallengeService, IssuedChallenge
from ..services.components import available_methods
from ..services.mfa import sha256_hex
from ..services.rate_limit import FixedWindowRateLimiter
from ..services.rbac import permissions_for
from ..services.sessions import IssuedSession, SessionIssuer

router = APIRouter(prefix="/auth", tags=["auth"])

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Basic brute-force guard on the password step (single-process, in-memory).
_LOGIN_LIMITER = FixedWindowRateLimiter(limit=10, window_seconds=60)


def challenge_out(ch: IssuedChallenge) -> dict:
    return ChallengeOut(
        challenge_token=ch.token,
        method=ch.method,
        expires_at=ch.expires_at.isoformat(),
        masked_destination=ch.masked_destination,
        available_methods=ch.available_methods,
        emergency_only=ch.emergency_only,
    ).model_dump(mode="json")


def set_session_cookies(resp: JSONResponse, issued: IssuedSession) -> JSONResponse:
    expires = int(issued.expires_at.timestamp())
    resp.set_cookie(
        key=SESSION_COOKIE,
        value=issued.token,
        httponly=True,
        samesite="lax",
        secure=bool(settings.ui_cookie_secure),
        expires=expires,
        path="/",
    )
    # CSRF protection: double-submit cookie.
    # Frontend must echo this value in X-CSRF-Token for state-changing requests.
    resp.set_cookie(
        key=CSRF_COOKIE,
        value=secrets.token_urlsafe(32),
        httponly=False,
        samesite="lax",
        secure=bool(settings.ui_cookie_secure),
        expires=expires,
        path="/",
    )
    return resp


@router.post("/login")
def auth_login(
    payload: LoginPayload,
    request: Request,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    challenges: ChallengeService = Depends(get_challenge_service),
    issuer: SessionIssuer = Depends(get_session_issuer),
):
    username = (payload.username or "").strip()
    password = payload.password or ""
    if not username or not password:
        raise HTTPException(400, "username and password are required")

    ip = (ctx.ip_address or "unknown").strip()
    rl_key = f"login:{ip}:{username.lower()}"
    rl = _LOGIN_LIMITER.check(rl_key)
    _LOGIN_LIMITER.cleanup()
    if not rl.allowed:
        raise HTTPException(429, f"Too many login attempts. Try again in {rl.retry_after_seconds}s")

    user = db.execute(
        select(AppUser).where(AppUser.username == username, AppUser.is_active == True)  # noqa: E712
    ).scalar_one_or_none()
    if not user or not pwd_context.verify(password, user.password_hash):
        raise HTTPException(401, "Invalid username or password")
    _LOGIN_LIMITER.reset(rl_key)

    if available_methods(user):
        ch = challenges.initiate_challenge(user.id, ctx)
        return {"ok": True, "mfa_required": True, "challenge": challenge_out(ch)}

    issued = issuer.issue(user.id)
    return set_session_cookies(JSONResponse({"ok": True, "mfa_required": False, "username": user.username}), issued)


@router.post("/2fa/challenge/verify")
def challenge_verify(
    payload: ChallengeVerifyPayload,
    ctx: RequestContext = Depends(get_request_context),
    challenges: ChallengeService = Depends(get_challenge_service),
):
    result = challenges.verify_challenge(payload.challenge_token, payload.code, ctx)
    if not result.success:
        return JSONResponse(
            status_code=400,
            content={
                "detail": "Invalid verification code",
                "code": result.error.value if result.error else "INVALID_CODE",
                "attempts_remaining": result.attempts_remaining,
                "challenge_locked": result.challenge_locked,
                "locked_until": result.account_locked_until.isoformat() if result.account_locked_until else None,
            },
        )

    issued = result.grant.mint()
    body = {
        "ok": True,
        "method": result.grant.method,
        "used_backup_code": result.used_backup_code,
        "used_emergency_code": result.used_emergency_code,
        "backup_codes_remaining": result.backup_codes_remaining,
    }
    return set_session_cookies(JSONResponse(body), issued)


@router.post("/2fa/challenge/resend")
def challenge_resend(
    payload: ChallengeTokenPayload,
    ctx: RequestContext = Depends(get_request_context),
    challenges: ChallengeService = Depends(get_challenge_service),
):
    sent = challenges.resend_sms_code(payload.challenge_token, ctx)
    return {"ok": True, "masked_destination": sent.masked_phone, "code_expires_at": sent.expires_at.isoformat()}


@router.post("/2fa/challenge/switch")
def challenge_switch(
    payload: ChallengeSwitchPayload,
    ctx: RequestContext = Depends(get_request_context),
    challenges: ChallengeService = Depends(get_challenge_service),
):
    ch = challenges.switch_challenge_method(payload.challenge_token, payload.method, ctx)
    return {"ok": True, "challenge": challenge_out(ch)}


@router.post("/logout")
def auth_logout(request: Request, db: Session = Depends(get_db)):
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        db.execute(delete(AppSession).where(AppSession.token_sha256 == sha256_hex(token)))
        db.commit()
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(SESSION_COOKIE, path="/")
    resp.delete_cookie(CSRF_COOKIE, path="/")
    return resp


@router.get("/me")
def auth_me(request: Request, db: Session = Depends(get_db), user: AppUser = Depends(require_ui_user)):
    res = get_current_session_from_request(request, db)
    sess = res[0] if res else None
    verified_at: datetime | None = getattr(sess, "mfa_verified_at", None)
    return {
        "username": user.username,
        "role": user.role,
        "permissions": permissions_for(user),
        "two_factor_enabled": user.two_factor_enabled,
        "methods": [m.value for m in available_methods(user)],
        "preferred_method": user.preferred_method,
        "session_mfa_verified_at": verified_at.isoformat() if verified_at else None,
    }
