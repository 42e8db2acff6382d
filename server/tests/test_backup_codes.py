import random
import re
import uuid
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from stepup.db import Base, make_engine
from stepup.models import AppUser, BackupCode, EmergencyCode
from stepup.services.backup_codes import BackupCodeManager, EmergencyCodeManager
from stepup.services.mfa import normalize_code, sha256_hex


def test_generate_returns_distinct_readable_codes(db, components, make_user):
    user = make_user("bob", totp=True)
    codes = components.backup_codes.generate(user.id)
    db.commit()

    assert len(codes) == 10
    assert len(set(codes)) == 10
    for c in codes:
        assert re.fullmatch(r"[A-HJKMNP-Z2-9]{4}-[A-HJKMNP-Z2-9]{4}", c), c

    stored = db.execute(select(BackupCode.code_hash).where(BackupCode.user_id == user.id)).scalars().all()
    assert len(stored) == 10
    assert not set(codes) & set(stored)


def test_backup_code_is_single_use(db, components, make_user):
    user = make_user("bob", totp=True)
    code = components.backup_codes.generate(user.id)[0]
    db.commit()

    # Case and separators do not matter.
    assert components.backup_codes.consume(user.id, code.lower().replace("-", "")) is True
    assert components.backup_codes.consume(user.id, code) is False
    assert components.backup_codes.remaining(user.id) == 9


def test_backup_codes_are_scoped_to_their_user(db, components, make_user):
    bob = make_user("bob", totp=True)
    eve = make_user("eve", totp=True)
    code = components.backup_codes.generate(bob.id)[0]
    db.commit()

    assert components.backup_codes.consume(eve.id, code) is False
    assert components.backup_codes.consume(bob.id, code) is True


def test_regenerate_invalidates_previous_batch(db, components, make_user):
    user = make_user("bob", totp=True)
    old = components.backup_codes.generate(user.id)
    components.backup_codes.consume(user.id, old[0])
    new = components.backup_codes.generate(user.id)
    db.commit()

    assert components.backup_codes.consume(user.id, old[1]) is False
    assert components.backup_codes.consume(user.id, new[0]) is True
    assert components.backup_codes.remaining(user.id) == 9


def test_concurrent_consumers_only_one_wins(tmp_path, policy, clock):
    engine = make_engine(f"sqlite+pysqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    with Session() as setup:
        user = AppUser(username="bob", password_hash="x", totp_enabled=True, totp_secret_enc="x")
        setup.add(user)
        setup.flush()
        user_id = user.id
        code = BackupCodeManager(setup, policy, clock=clock, rng=random.Random(7)).generate(user_id)[0]
        setup.commit()

    s1, s2 = Session(), Session()
    winner = BackupCodeManager(s1, policy, clock=clock)
    loser = BackupCodeManager(s2, policy, clock=clock)

    real_execute = s2.execute
    raced = []

    def racing_execute(stmt, *args, **kwargs):
        res = real_execute(stmt, *args, **kwargs)
        if not raced:
            # The loser has found the unused row; the winner consumes it before the loser's UPDATE.
            raced.append(True)
            frozen = res.freeze()
            assert winner.consume(user_id, code) is True
            s1.commit()
            return frozen()
        return res

    s2.execute = racing_execute
    try:
        assert loser.consume(user_id, code) is False
        s2.commit()
    finally:
        s1.close()
        s2.close()

    with Session() as check:
        used = check.execute(select(BackupCode).where(BackupCode.used.is_(True))).scalars().all()
        assert len(used) == 1
    engine.dispose()


def test_readers_see_the_old_batch_or_the_new_one_never_a_mix(tmp_path, policy, clock):
    engine = make_engine(f"sqlite+pysqlite:///{tmp_path / 'regen.db'}")
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    with Session() as setup:
        user = AppUser(username="bob", password_hash="x", totp_enabled=True, totp_secret_enc="x")
        setup.add(user)
        setup.flush()
        user_id = user.id
        old = BackupCodeManager(setup, policy, clock=clock, rng=random.Random(7)).generate(user_id)
        setup.commit()

    def unused_hashes():
        with Session() as reader:
            return set(
                reader.execute(
                    select(BackupCode.code_hash).where(BackupCode.user_id == user_id, BackupCode.used.is_(False))
                ).scalars()
            )

    def hashes(codes):
        return {sha256_hex(normalize_code(c)) for c in codes}

    with Session() as writer:
        new = BackupCodeManager(writer, policy, clock=clock, rng=random.Random(8)).generate(user_id)
        assert unused_hashes() == hashes(old)
        writer.commit()
    assert unused_hashes() == hashes(new)

    # An abandoned regeneration leaves the current batch untouched.
    with Session() as writer:
        BackupCodeManager(writer, policy, clock=clock, rng=random.Random(9)).generate(user_id)
        writer.rollback()
    assert unused_hashes() == hashes(new)

    with Session() as s:
        mgr = BackupCodeManager(s, policy, clock=clock)
        assert all(mgr.consume(user_id, c) is False for c in old)
        assert mgr.consume(user_id, new[0]) is True
        s.commit()
    engine.dispose()


def test_emergency_codes_are_hex_groups_and_expire(db, components, make_user, clock):
    user = make_user("bob", totp=True)
    admin_id = uuid.uuid4()
    codes, expires_at = components.emergency_codes.generate(user.id, admin_id=admin_id, reason="lost phone")
    db.commit()

    assert len(codes) == 5
    for c in codes:
        assert re.fullmatch(r"[0-9A-F]{4}(-[0-9A-F]{4}){3}", c), c
    assert expires_at == clock() + timedelta(hours=48)
    assert components.emergency_codes.active_count(user.id) == 5

    assert components.emergency_codes.consume(user.id, codes[0]) is True
    assert components.emergency_codes.consume(user.id, codes[0]) is False

    clock.advance(hours=49)
    assert components.emergency_codes.consume(user.id, codes[1]) is False
    assert components.emergency_codes.active_count(user.id) == 0

    row = db.execute(select(EmergencyCode).where(EmergencyCode.user_id == user.id).limit(1)).scalar_one()
    assert row.generated_by == admin_id
    assert row.reason == "lost phone"


def test_new_emergency_batch_replaces_unused_codes(db, components, make_user):
    user = make_user("bob", totp=True)
    first, _ = components.emergency_codes.generate(user.id, admin_id=uuid.uuid4(), reason="r1")
    second, _ = components.emergency_codes.generate(user.id, admin_id=uuid.uuid4(), reason="r2")
    db.commit()

    assert components.emergency_codes.consume(user.id, first[0]) is False
    assert components.emergency_codes.consume(user.id, second[0]) is True


def test_invalidate_unused_clears_both_kinds(db, policy, clock, make_user):
    user = make_user("bob", totp=True)
    backup = BackupCodeManager(db, policy, clock=clock)
    emergency = EmergencyCodeManager(db, policy, clock=clock)
    backup.generate(user.id)
    emergency.generate(user.id, admin_id=uuid.uuid4(), reason="r")

    assert backup.invalidate_unused(user.id) == 10
    assert emergency.invalidate_unused(user.id) == 5
    assert backup.remaining(user.id) == 0
