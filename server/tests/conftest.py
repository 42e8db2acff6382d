import os
import random
import re
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure the server/ directory is on sys.path so `import stepup.*` works in all runners.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

TEST_FERNET_KEY = "_rNr8yrCmiYQ9pGyQQlAWx-IvRfb8v-X8IG4MvfFcRo="
TOTP_SECRET = "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP"

# Test-suite guardrails: in-memory SQLite, no background loop, log-only SMS.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DB_AUTO_CREATE_TABLES"] = "true"
os.environ["MFA_ENCRYPTION_KEY"] = TEST_FERNET_KEY
os.environ["HOUSEKEEPING_INTERVAL_SECONDS"] = "0"
os.environ["SMS_PROVIDER"] = "log"

import pyotp  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from stepup.config import TwoFactorPolicy  # noqa: E402
from stepup.db import Base, make_engine  # noqa: E402
from stepup.errors import SmsDeliveryError  # noqa: E402
from stepup.models import AppUser  # noqa: E402
from stepup.services.components import TwoFactorComponents  # noqa: E402
from stepup.services.mfa import SecretBox  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSmsProvider:
    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    def send(self, phone_number: str, message: str) -> str:
        if self.fail:
            raise SmsDeliveryError("carrier unavailable")
        self.sent.append((phone_number, message))
        return f"test-{len(self.sent)}"

    @property
    def last_code(self) -> str:
        return re.search(r"\b(\d{6})\b", self.sent[-1][1]).group(1)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sms_provider():
    return RecordingSmsProvider()


@pytest.fixture
def policy():
    return TwoFactorPolicy()


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    with session_factory() as s:
        yield s


@pytest.fixture
def components(db, policy, clock, sms_provider):
    return TwoFactorComponents.build(
        db,
        policy,
        secret_box=SecretBox(TEST_FERNET_KEY),
        sms_provider=sms_provider,
        clock=clock,
        rng=random.Random(1234),
    )


@pytest.fixture
def make_user(db, components):
    def _make(username: str, *, role: str = "creator", totp: bool = False, phone: str | None = None) -> AppUser:
        user = AppUser(username=username, password_hash="x", role=role, is_active=True)
        if totp:
            user.totp_enabled = True
            user.totp_secret_enc = components.secret_box.encrypt(TOTP_SECRET)
            user.preferred_method = "totp"
        if phone:
            user.phone_number = phone
            user.phone_verified = True
            user.preferred_method = user.preferred_method or "sms"
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def totp_code(clock):
    def _code(offset: int = 0, secret: str = TOTP_SECRET) -> str:
        return pyotp.TOTP(secret).at(clock(), offset)

    return _code
