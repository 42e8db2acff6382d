from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Callable

from sqlalchemy.orm import Session

from ..config import Settings
from ..models import MfaChallenge, SmsVerificationCode
from .audit import AuditLog
from .db_utils import transaction
from .lockout import LockoutTracker
from .retry import RetryPolicy
from .time_utils import Clock, now_utc

logger = logging.getLogger(__name__)

# Closed challenges and spent SMS codes are kept this long for debugging, then purged.
STALE_ROW_GRACE = timedelta(days=1)


def sweep_lockouts(db: Session, settings: Settings, clock: Clock = now_utc) -> int:
    with transaction(db):
        return LockoutTracker(db, settings.two_factor_policy(), clock=clock).sweep_expired()


def purge_stale_rows(db: Session, clock: Clock = now_utc) -> int:
    cutoff = clock() - STALE_ROW_GRACE
    with transaction(db):
        n = db.query(MfaChallenge).filter(MfaChallenge.expires_at < cutoff).delete(synchronize_session=False)
        n += db.query(SmsVerificationCode).filter(SmsVerificationCode.expires_at < cutoff).delete(synchronize_session=False)
    return int(n or 0)


def archive_audit(db: Session, settings: Settings, clock: Clock = now_utc) -> int:
    days = int(settings.audit_retention_days or 0)
    if days <= 0:
        return 0
    log = AuditLog(db, clock=clock, max_retries=settings.audit_append_max_retries)
    return log.archive_older_than(clock() - timedelta(days=days), batch_size=settings.audit_archive_batch_size)


def run_housekeeping(
    session_factory: Callable[[], Session],
    settings: Settings,
    *,
    clock: Clock = now_utc,
    retry: RetryPolicy | None = None,
    sleep: Callable[[float], None] | None = None,
) -> dict[str, int]:
    """Run every maintenance task once; each one gets its own session and retry budget."""
    retry = retry or RetryPolicy(
        max_attempts=settings.housekeeping_retry_max_attempts,
        base_delay_seconds=settings.housekeeping_retry_base_delay_seconds,
    )
    tasks = {
        "lockouts_swept": lambda db: sweep_lockouts(db, settings, clock),
        "stale_rows_purged": lambda db: purge_stale_rows(db, clock),
        "audit_archived": lambda db: archive_audit(db, settings, clock),
    }

    results: dict[str, int] = {}
    for name, task in tasks.items():

        def _once(task=task) -> int:
            db = session_factory()
            try:
                return task(db)
            finally:
                db.close()

        kwargs = {"sleep": sleep} if sleep is not None else {}
        results[name] = retry.run(_once, name=name, **kwargs)
    return results


async def housekeeping_loop(stop_event: asyncio.Event, session_factory: Callable[[], Session], settings: Settings) -> None:
    interval_s = int(settings.housekeeping_interval_seconds or 0)
    if interval_s <= 0:
        logger.info("Housekeeping loop disabled (housekeeping_interval_seconds<=0)")
        return

    logger.info("Started housekeeping loop (every %ss)", interval_s)
    while not stop_event.is_set():
        try:
            # Sleep first to avoid spiking right at boot.
            await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
            break
        except asyncio.TimeoutError:
            pass

        try:
            # Off the event loop: the tasks block on the database and on retry backoff.
            results = await asyncio.to_thread(run_housekeeping, session_factory, settings)
            if any(results.values()):
                logger.info("housekeeping: %s", results)
        except Exception:
            logger.exception("Housekeeping pass failed")
