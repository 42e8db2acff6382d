from __future__ import annotations

import logging
import random
import secrets
import uuid
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from ..config import TwoFactorPolicy
from ..models import BackupCode, EmergencyCode
from .mfa import normalize_code, sha256_hex
from .time_utils import Clock, now_utc

logger = logging.getLogger(__name__)

# readable, high-entropy codes (no ambiguous chars)
BACKUP_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
BACKUP_CODE_LENGTH = 8
EMERGENCY_ALPHABET = "0123456789ABCDEF"
EMERGENCY_CODE_LENGTH = 16


def _group(raw: str) -> str:
    return "-".join(raw[i:i + 4] for i in range(0, len(raw), 4))


def is_backup_format(code: str) -> bool:
    return len(code) == BACKUP_CODE_LENGTH and code.isalnum()


def is_emergency_format(code: str) -> bool:
    return len(code) == EMERGENCY_CODE_LENGTH and all(ch in EMERGENCY_ALPHABET for ch in code)


class BackupCodeManager:
    """Single-use recovery codes. Only SHA-256 digests are stored.

    Callers own the transaction: regeneration is atomic because the delete of
    the old batch and the insert of the new one commit together.
    """

    def __init__(self, db: Session, policy: TwoFactorPolicy, *, clock: Clock = now_utc, rng: random.Random | None = None):
        self.db = db
        self.policy = policy
        self.clock = clock
        self.rng = rng or secrets.SystemRandom()

    def _new_code(self) -> str:
        return _group("".join(self.rng.choice(BACKUP_ALPHABET) for _ in range(BACKUP_CODE_LENGTH)))

    def generate(self, user_id: uuid.UUID, count: int | None = None) -> list[str]:
        n = int(count or self.policy.backup_code_count)
        now = self.clock()

        codes: list[str] = []
        seen: set[str] = set()
        while len(codes) < n:
            c = self._new_code()
            if c not in seen:
                seen.add(c)
                codes.append(c)

        self.invalidate_unused(user_id)
        for c in codes:
            self.db.add(BackupCode(user_id=user_id, code_hash=sha256_hex(normalize_code(c)), used=False, created_at=now))
        self.db.flush()
        return codes

    def consume(self, user_id: uuid.UUID, code: str) -> bool:
        code = normalize_code(code)
        if not is_backup_format(code):
            return False
        h = sha256_hex(code)
        code_id = self.db.execute(
            select(BackupCode.id)
            .where(BackupCode.user_id == user_id, BackupCode.code_hash == h, BackupCode.used.is_(False))
            .limit(1)
        ).scalar_one_or_none()
        if code_id is None:
            return False

        # Losers of a concurrent race see used=true and match nothing.
        res = self.db.execute(
            update(BackupCode)
            .where(BackupCode.id == code_id, BackupCode.used.is_(False))
            .values(used=True, used_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    def remaining(self, user_id: uuid.UUID) -> int:
        return int(
            self.db.execute(
                select(func.count(BackupCode.id)).where(BackupCode.user_id == user_id, BackupCode.used.is_(False))
            ).scalar_one()
        )

    def invalidate_unused(self, user_id: uuid.UUID) -> int:
        res = self.db.execute(delete(BackupCode).where(BackupCode.user_id == user_id, BackupCode.used.is_(False)))
        return int(res.rowcount or 0)


class EmergencyCodeManager:
    """Admin-issued recovery codes that expire after a few hours."""

    def __init__(self, db: Session, policy: TwoFactorPolicy, *, clock: Clock = now_utc, rng: random.Random | None = None):
        self.db = db
        self.policy = policy
        self.clock = clock
        self.rng = rng or secrets.SystemRandom()

    def _new_code(self) -> str:
        return _group("".join(self.rng.choice(EMERGENCY_ALPHABET) for _ in range(EMERGENCY_CODE_LENGTH)))

    def generate(self, user_id: uuid.UUID, *, admin_id: uuid.UUID, reason: str) -> tuple[list[str], datetime]:
        now = self.clock()
        expires_at = now + timedelta(hours=self.policy.emergency_code_ttl_hours)
        codes = [self._new_code() for _ in range(self.policy.emergency_code_count)]

        # A new batch replaces any still-unused one.
        self.db.execute(delete(EmergencyCode).where(EmergencyCode.user_id == user_id, EmergencyCode.used.is_(False)))
        for c in codes:
            self.db.add(
                EmergencyCode(
                    user_id=user_id,
                    code_hash=sha256_hex(normalize_code(c)),
                    generated_by=admin_id,
                    reason=reason,
                    used=False,
                    expires_at=expires_at,
                    created_at=now,
                )
            )
        self.db.flush()
        return codes, expires_at

    def consume(self, user_id: uuid.UUID, code: str) -> bool:
        code = normalize_code(code)
        if not is_emergency_format(code):
            return False
        now = self.clock()
        code_id = self.db.execute(
            select(EmergencyCode.id)
            .where(
                EmergencyCode.user_id == user_id,
                EmergencyCode.code_hash == sha256_hex(code),
                EmergencyCode.used.is_(False),
                EmergencyCode.expires_at > now,
            )
            .limit(1)
        ).scalar_one_or_none()
        if code_id is None:
            return False

        res = self.db.execute(
            update(EmergencyCode)
            .where(EmergencyCode.id == code_id, EmergencyCode.used.is_(False))
            .values(used=True, used_at=now)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    def active_count(self, user_id: uuid.UUID) -> int:
        return int(
            self.db.execute(
                select(func.count(EmergencyCode.id)).where(
                    EmergencyCode.user_id == user_id,
                    EmergencyCode.used.is_(False),
                    EmergencyCode.expires_at > self.clock(),
                )
            ).scalar_one()
        )

    def invalidate_unused(self, user_id: uuid.UUID) -> int:
        res = self.db.execute(delete(EmergencyCode).where(EmergencyCode.user_id == user_id, EmergencyCode.used.is_(False)))
        return int(res.rowcount or 0)
