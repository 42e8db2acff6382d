from __future__ import annotations

import random
import secrets
import uuid
from dataclasses import dataclass

from sqlalchemy.orm import Session

from ..config import TwoFactorPolicy
from ..models import AppUser
from ..schemas import TwoFactorMethod
from .audit import AuditLog
from .backup_codes import BackupCodeManager, EmergencyCodeManager
from .lockout import LockoutTracker
from .mfa import SecretBox, TotpVerifier
from .sms import SmsProvider, SmsVerifier
from .time_utils import Clock, now_utc


def available_methods(user: AppUser) -> list[TwoFactorMethod]:
    methods: list[TwoFactorMethod] = []
    if user.totp_enabled and user.totp_secret_enc:
        methods.append(TwoFactorMethod.TOTP)
    if user.phone_verified and user.phone_number:
        methods.append(TwoFactorMethod.SMS)
    return methods


def load_user(db: Session, user_id: uuid.UUID | None) -> AppUser | None:
    if user_id is None:
        return None
    return db.get(AppUser, user_id, populate_existing=True)


@dataclass
class TwoFactorComponents:
    """Collaborators shared by the 2FA services for one unit of work.

    All of them use the same session, clock and random source.
    """

    db: Session
    policy: TwoFactorPolicy
    clock: Clock
    rng: random.Random
    secret_box: SecretBox
    totp: TotpVerifier
    sms: SmsVerifier
    backup_codes: BackupCodeManager
    emergency_codes: EmergencyCodeManager
    lockout: LockoutTracker
    audit: AuditLog

    @classmethod
    def build(
        cls,
        db: Session,
        policy: TwoFactorPolicy,
        *,
        secret_box: SecretBox,
        sms_provider: SmsProvider,
        clock: Clock = now_utc,
        rng: random.Random | None = None,
        sms_brand: str = "Stepup",
        audit_max_retries: int = 5,
    ) -> "TwoFactorComponents":
        rng = rng or secrets.SystemRandom()
        return cls(
            db=db,
            policy=policy,
            clock=clock,
            rng=rng,
            secret_box=secret_box,
            totp=TotpVerifier(valid_window=policy.totp_valid_window, clock=clock),
            sms=SmsVerifier(db, policy, sms_provider, clock=clock, rng=rng, brand=sms_brand),
            backup_codes=BackupCodeManager(db, policy, clock=clock, rng=rng),
            emergency_codes=EmergencyCodeManager(db, policy, clock=clock, rng=rng),
            lockout=LockoutTracker(db, policy, clock=clock),
            audit=AuditLog(db, clock=clock, max_retries=audit_max_retries),
        )
