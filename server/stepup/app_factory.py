from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select

# NOTE: DB schema should be managed by Alembic in production.
from .db import Base, SessionLocal, engine
from .errors import SmsDeliveryError, TwoFactorError
from .routers import admin, audit, auth, mfa

logger = logging.getLogger(__name__)

# Verification codes and challenge tokens travel in these responses.
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "same-origin",
    "X-Frame-Options": "DENY",
    "Cache-Control": "no-store",
}
HSTS_VALUE = "max-age=15552000"


def _seed_bootstrap_admin(username: str, password: str | None) -> None:
    from .models import AppUser
    from .services.db_utils import transaction

    if not password:
        logger.warning("BOOTSTRAP_PASSWORD not set; no initial admin account will be created")
        return

    with SessionLocal() as db:
        try:
            with transaction(db):
                if db.execute(select(AppUser.id).where(AppUser.username == username)).first() is None:
                    db.add(AppUser(username=username, password_hash=auth.pwd_context.hash(password), role="admin", is_active=True))
                    logger.info("Created bootstrap admin '%s'", username)
        except Exception:
            # Startup continues; the account can be created by a later boot.
            logger.exception("Bootstrap admin creation failed")


def _startup() -> None:
    from .config import settings

    if settings.db_auto_create_tables:
        Base.metadata.create_all(bind=engine)
        logger.info("DB auto-create enabled: ensured 2FA tables exist")
    else:
        logger.info("DB auto-create disabled: expecting schema to be managed by Alembic")

    if not settings.mfa_encryption_key:
        logger.warning("MFA_ENCRYPTION_KEY not set; TOTP enrollment and verification will fail")

    _seed_bootstrap_admin(settings.bootstrap_username or "admin", settings.bootstrap_password)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from .config import settings
    from .services.housekeeping import housekeeping_loop

    _startup()

    stop_event = asyncio.Event()
    task = asyncio.create_task(housekeeping_loop(stop_event, SessionLocal, settings))
    try:
        yield
    finally:
        stop_event.set()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


def create_app() -> FastAPI:
    from .config import settings
    from .deps import csrf_violation

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = FastAPI(title="Stepup 2FA", lifespan=lifespan)

    if settings.cors_allow_origins or settings.cors_allow_origin_regex:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_origin_regex=settings.cors_allow_origin_regex,
            allow_methods=settings.cors_allow_methods,
            allow_headers=settings.cors_allow_headers,
            allow_credentials=bool(settings.cors_allow_credentials),
        )

    @app.exception_handler(TwoFactorError)
    async def two_factor_error_handler(request: Request, exc: TwoFactorError):
        retry_after = exc.details.get("retry_after_seconds")
        headers = {"Retry-After": str(int(retry_after))} if retry_after else None
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(SmsDeliveryError)
    async def sms_delivery_error_handler(request: Request, exc: SmsDeliveryError):
        logger.error("SMS delivery failed: %s", exc)
        return JSONResponse(status_code=502, content={"detail": "Could not deliver SMS code", "code": "SMS_DELIVERY_FAILED"})

    @app.middleware("http")
    async def csrf_middleware(request: Request, call_next):
        if csrf_violation(request):
            return JSONResponse(status_code=403, content={"detail": "CSRF token missing or invalid"})
        return await call_next(request)

    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        resp = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            resp.headers.setdefault(name, value)
        forwarded = (request.headers.get("x-forwarded-proto") or "").lower()
        if settings.ui_cookie_secure and "https" in (request.url.scheme, forwarded):
            resp.headers.setdefault("Strict-Transport-Security", HSTS_VALUE)
        return resp

    for module in (auth, mfa, admin, audit):
        app.include_router(module.router)

    @app.get("/health")
    def health():
        return {"ok": True, "service": "stepup", "ts": datetime.now(timezone.utc).isoformat()}

    return app
