import asyncio

import pytest
from sqlalchemy import func, select

from stepup.config import Settings
from stepup.models import AuditEvent, AuditEventArchive, LockoutRecord, MfaChallenge
from stepup.services.audit import AuditLog
from stepup.services.challenge import ChallengeService
from stepup.services.housekeeping import housekeeping_loop, run_housekeeping
from stepup.services.lockout import user_key
from stepup.services.retry import RetryPolicy


def test_retry_delays_grow_and_cap():
    p = RetryPolicy(max_attempts=5, base_delay_seconds=2.0, max_delay_seconds=10.0)
    assert [p.delay_for(i) for i in range(1, 5)] == [2.0, 4.0, 8.0, 10.0]


def test_retry_recovers_after_transient_failures():
    calls, sleeps = [], []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("db restarting")
        return "ok"

    assert RetryPolicy(max_attempts=3, base_delay_seconds=1.0).run(flaky, name="flaky", sleep=sleeps.append) == "ok"
    assert sleeps == [1.0, 2.0]


def test_retry_gives_up_and_reraises():
    sleeps = []

    def broken():
        raise ValueError("nope")

    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=2, base_delay_seconds=0.5).run(broken, sleep=sleeps.append)
    assert sleeps == [0.5]


def test_housekeeping_sweeps_purges_and_archives(session_factory, components, make_user, clock):
    db = components.db
    user = make_user("tina", totp=True)
    ChallengeService(components).initiate_challenge(user.id)
    for _ in range(5):
        components.lockout.record_failure(user_key(user.id))
    AuditLog(db, clock=clock).append("lockout", user_id=user.id, success=False)
    db.commit()
    audit_rows = db.execute(select(func.count(AuditEvent.id))).scalar_one()

    clock.advance(days=3)
    settings = Settings(audit_retention_days=1, audit_archive_batch_size=10)
    results = run_housekeeping(session_factory, settings, clock=clock, retry=RetryPolicy(max_attempts=1))

    assert results == {"lockouts_swept": 1, "stale_rows_purged": 1, "audit_archived": audit_rows}
    with session_factory() as check:
        assert check.execute(select(func.count()).select_from(LockoutRecord)).scalar_one() == 0
        assert check.execute(select(func.count(MfaChallenge.id))).scalar_one() == 0
        assert check.execute(select(func.count(AuditEventArchive.id))).scalar_one() == audit_rows
        assert AuditLog(check, clock=clock).verify_chain_integrity().valid is True


def test_housekeeping_keeps_recent_rows(session_factory, components, make_user, clock):
    user = make_user("tina", totp=True)
    ChallengeService(components).initiate_challenge(user.id)
    components.db.commit()

    results = run_housekeeping(session_factory, Settings(audit_retention_days=0), clock=clock, retry=RetryPolicy(max_attempts=1))
    assert results == {"lockouts_swept": 0, "stale_rows_purged": 0, "audit_archived": 0}


def test_housekeeping_retries_failed_task(session_factory, clock):
    opened, sleeps = [], []

    def flaky_factory():
        opened.append(1)
        if len(opened) == 1:
            raise ConnectionError("pool exhausted")
        return session_factory()

    results = run_housekeeping(
        flaky_factory,
        Settings(audit_retention_days=0),
        clock=clock,
        retry=RetryPolicy(max_attempts=2, base_delay_seconds=0.25),
        sleep=sleeps.append,
    )
    assert results["lockouts_swept"] == 0
    assert sleeps == [0.25]


def test_housekeeping_loop_disabled_returns_immediately(session_factory):
    settings = Settings(housekeeping_interval_seconds=0)
    asyncio.run(housekeeping_loop(asyncio.Event(), session_factory, settings))
