from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ..models import AppSession, AppUser
from .mfa import sha256_hex
from .time_utils import Clock, now_utc

logger = logging.getLogger(__name__)


@dataclass
class IssuedSession:
    session_id: uuid.UUID
    token: str
    expires_at: datetime


class SessionIssuer:
    """Mints UI sessions. Only the token's SHA-256 is persisted."""

    def __init__(self, db: Session, *, session_days: int = 30, clock: Clock = now_utc):
        self.db = db
        self.session_days = int(session_days)
        self.clock = clock

    def issue(self, user_id: uuid.UUID, mfa_method: str | None = None) -> IssuedSession:
        token = secrets.token_urlsafe(32)
        now = self.clock()
        expires = now + timedelta(days=self.session_days)

        # Cleanup expired sessions for this user while we're here.
        self.db.execute(delete(AppSession).where(AppSession.user_id == user_id, AppSession.expires_at <= now))

        sess = AppSession(
            user_id=user_id,
            token_sha256=sha256_hex(token),
            expires_at=expires,
            mfa_verified_at=now if mfa_method else None,
            mfa_method=mfa_method,
        )
        self.db.add(sess)
        self.db.commit()
        return IssuedSession(session_id=sess.id, token=token, expires_at=expires)

    def lookup(self, token: str) -> tuple[AppSession, AppUser] | None:
        if not token:
            return None
        sess = self.db.execute(
            select(AppSession).where(AppSession.token_sha256 == sha256_hex(token), AppSession.expires_at > self.clock())
        ).scalar_one_or_none()
        if not sess:
            return None
        user = self.db.execute(
            select(AppUser).where(AppUser.id == sess.user_id, AppUser.is_active == True)  # noqa: E712
        ).scalar_one_or_none()
        if not user:
            return None
        return sess, user

    def revoke_all(self, user_id: uuid.UUID) -> int:
        res = self.db.execute(delete(AppSession).where(AppSession.user_id == user_id))
        return int(res.rowcount or 0)
