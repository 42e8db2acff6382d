from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.orm import Session

from ..config import TwoFactorPolicy
from ..models import LockoutRecord
from .db_utils import dialect_insert
from .time_utils import Clock, as_utc, now_utc

logger = logging.getLogger(__name__)


def user_key(user_id: uuid.UUID | str) -> str:
    return f"user:{user_id}"


def ip_key(ip: str) -> str:
    return f"ip:{ip}"


@dataclass
class LockoutStatus:
    locked: bool
    locked_until: datetime | None = None
    failed_count: int = 0


class LockoutTracker:
    """Rolling-window failure counter with self-expiring, progressive lockouts.

    Every mutation is a single conditional statement so a burst of concurrent
    failures cannot each observe "not yet locked".
    """

    def __init__(self, db: Session, policy: TwoFactorPolicy, *, clock: Clock = now_utc):
        self.db = db
        self.policy = policy
        self.clock = clock

    def lockout_duration(self, failed_count: int) -> timedelta:
        tiers = self.policy.lockout_tier_minutes or (30,)
        threshold = max(1, self.policy.lockout_threshold)
        idx = min(len(tiers) - 1, max(0, failed_count // threshold - 1))
        return timedelta(minutes=tiers[idx])

    def record_failure(self, identifier: str) -> LockoutStatus:
        now = self.clock()
        cutoff = now - timedelta(seconds=self.policy.lockout_window_seconds)

        insert = dialect_insert(self.db)
        self.db.execute(
            insert(LockoutRecord)
            .values(identifier=identifier, failed_count=0, window_start=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=["identifier"])
        )

        stale = or_(LockoutRecord.window_start.is_(None), LockoutRecord.window_start < cutoff)
        failed_count, locked_until = self.db.execute(
            update(LockoutRecord)
            .where(LockoutRecord.identifier == identifier)
            .values(
                failed_count=case((stale, 1), else_=LockoutRecord.failed_count + 1),
                window_start=case((stale, now), else_=LockoutRecord.window_start),
                last_failed_at=now,
                updated_at=now,
            )
            .returning(LockoutRecord.failed_count, LockoutRecord.locked_until)
            .execution_options(synchronize_session=False)
        ).one()

        failed_count = int(failed_count)
        locked_until = as_utc(locked_until)
        if failed_count < self.policy.lockout_threshold:
            return LockoutStatus(locked=bool(locked_until and locked_until > now), locked_until=locked_until, failed_count=failed_count)

        until = now + self.lockout_duration(failed_count)
        self.db.execute(
            update(LockoutRecord)
            .where(
                LockoutRecord.identifier == identifier,
                or_(LockoutRecord.locked_until.is_(None), LockoutRecord.locked_until < until),
            )
            .values(locked_until=until, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        logger.warning("lockout: %s locked until %s after %s failures", identifier, until.isoformat(), failed_count)
        return LockoutStatus(locked=True, locked_until=until, failed_count=failed_count)

    def record_success(self, identifier: str) -> None:
        self.db.execute(
            update(LockoutRecord)
            .where(LockoutRecord.identifier == identifier)
            .values(failed_count=0, window_start=None, locked_until=None, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )

    def status(self, identifier: str) -> LockoutStatus:
        row = self.db.execute(
            select(LockoutRecord)
            .where(LockoutRecord.identifier == identifier)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            return LockoutStatus(locked=False)
        now = self.clock()
        locked_until = as_utc(row.locked_until)
        # Lazy expiry: an elapsed lock is not a lock even if the sweep hasn't run.
        if locked_until is None or locked_until <= now:
            cutoff = now - timedelta(seconds=self.policy.lockout_window_seconds)
            window_start = as_utc(row.window_start)
            count = int(row.failed_count or 0) if window_start and window_start >= cutoff else 0
            return LockoutStatus(locked=False, failed_count=count)
        return LockoutStatus(locked=True, locked_until=locked_until, failed_count=int(row.failed_count or 0))

    def is_locked(self, identifier: str) -> bool:
        return self.status(identifier).locked

    def unlock(self, identifier: str) -> bool:
        """Clear a lockout; returns whether one was active."""
        was_locked = self.is_locked(identifier)
        self.db.execute(delete(LockoutRecord).where(LockoutRecord.identifier == identifier))
        return was_locked

    def sweep_expired(self) -> int:
        now = self.clock()
        cutoff = now - timedelta(seconds=self.policy.lockout_window_seconds)
        res = self.db.execute(
            delete(LockoutRecord).where(
                or_(
                    LockoutRecord.locked_until <= now,
                    and_(
                        LockoutRecord.locked_until.is_(None),
                        or_(LockoutRecord.window_start.is_(None), LockoutRecord.window_start < cutoff),
                    ),
                )
            )
        )
        return int(res.rowcount or 0)

    def count_locked(self) -> int:
        return int(
            self.db.execute(select(func.count()).select_from(LockoutRecord).where(LockoutRecord.locked_until > self.clock())).scalar_one()
        )
