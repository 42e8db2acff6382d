from __future__ import annotations

import hashlib
import hmac
import logging
import random
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

import httpx
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..config import TwoFactorPolicy
from ..errors import InvalidInputError, RateLimitedError, SmsDeliveryError
from ..models import SmsVerificationCode
from .time_utils import Clock, as_utc, now_utc

logger = logging.getLogger(__name__)

SMS_CODE_DIGITS = 6

_E164 = re.compile(r"^\+[1-9]\d{7,14}$")

_TEMPLATES = {
    "login": "{brand}: Login code {code}. Valid for {minutes} minutes. If you didn't request this, contact support.",
    "setup": "{brand}: Verify your phone with code {code}. Expires in {minutes} minutes.",
}


def normalize_phone(raw: str | None) -> str:
    phone = re.sub(r"[\s\-().]", "", raw or "")
    if not _E164.match(phone):
        raise InvalidInputError("Phone number must be in E.164 format, e.g. +15551234567")
    return phone


def mask_phone(phone: str | None) -> str:
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) < 4:
        return "***"
    return f"***-***-{digits[-4:]}"


class SmsProvider(Protocol):
    def send(self, phone_number: str, message: str) -> str:
        """Hand a message to the carrier, return the provider's delivery id."""
        ...


class LoggingSmsProvider:
    """Development provider: logs the masked destination and drops the message."""

    def send(self, phone_number: str, message: str) -> str:
        delivery_id = f"log-{uuid.uuid4().hex[:12]}"
        logger.info("sms to %s accepted by log provider (%s)", mask_phone(phone_number), delivery_id)
        return delivery_id


class TwilioSmsProvider:
    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_base_url: str = "https://api.twilio.com",
        timeout_seconds: float = 8.0,
    ):
        if not (account_sid and auth_token and from_number):
            raise RuntimeError("Twilio credentials are not configured")
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)

    def send(self, phone_number: str, message: str) -> str:
        url = f"{self.api_base_url}/2010-04-01/Accounts/{self.account_sid}/Messages.json"
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                r = client.post(
                    url,
                    auth=(self.account_sid, self.auth_token),
                    data={"To": phone_number, "From": self.from_number, "Body": message},
                )
        except httpx.HTTPError as e:
            raise SmsDeliveryError(f"sms provider unreachable: {e}") from e
        if r.status_code >= 400:
            raise SmsDeliveryError(f"sms provider rejected message ({r.status_code}): {r.text[:300]}")
        return str(r.json().get("sid") or "")


def _hash_code(code: str, salt: str) -> str:
    return f"{salt}${hashlib.sha256((salt + code).encode('utf-8')).hexdigest()}"


def _code_matches(stored: str, code: str) -> bool:
    salt, _, _digest = (stored or "").partition("$")
    return hmac.compare_digest(_hash_code(code, salt), stored)


@dataclass
class SmsSendResult:
    delivery_id: str
    expires_at: datetime
    masked_phone: str


@dataclass
class SmsVerificationResult:
    success: bool
    attempts_remaining: int
    reason: str | None = None  # no_code|expired|attempts_exhausted|mismatch


class SmsVerifier:
    """Random short-lived codes sent over SMS, checked with their own attempt budget.

    Does not commit; the calling operation owns the transaction.
    """

    def __init__(
        self,
        db: Session,
        policy: TwoFactorPolicy,
        provider: SmsProvider,
        *,
        clock: Clock = now_utc,
        rng: random.Random | None = None,
        brand: str = "Stepup",
    ):
        self.db = db
        self.policy = policy
        self.provider = provider
        self.clock = clock
        self.rng = rng or secrets.SystemRandom()
        self.brand = brand

    def _new_code(self) -> str:
        return str(self.rng.randrange(10 ** SMS_CODE_DIGITS)).zfill(SMS_CODE_DIGITS)

    def _check_send_limit(self, user_id: uuid.UUID, now: datetime) -> None:
        window_start = now - timedelta(seconds=self.policy.sms_send_window_seconds)
        count, oldest = self.db.execute(
            select(func.count(SmsVerificationCode.id), func.min(SmsVerificationCode.created_at)).where(
                SmsVerificationCode.user_id == user_id,
                SmsVerificationCode.created_at > window_start,
            )
        ).one()
        if int(count or 0) >= self.policy.sms_send_limit:
            reset_at = as_utc(oldest) + timedelta(seconds=self.policy.sms_send_window_seconds)
            retry_after = max(1, int((reset_at - now).total_seconds()))
            logger.warning("sms send limit hit for user %s", user_id)
            raise RateLimitedError("Too many SMS codes requested", retry_after_seconds=retry_after)

    def submit(self, user_id: uuid.UUID, phone_number: str, *, purpose: str = "login") -> SmsSendResult:
        now = self.clock()
        self._check_send_limit(user_id, now)

        # Only the newest code for a purpose is ever checked.
        self.db.execute(
            update(SmsVerificationCode)
            .where(
                SmsVerificationCode.user_id == user_id,
                SmsVerificationCode.purpose == purpose,
                SmsVerificationCode.verified_at.is_(None),
                SmsVerificationCode.superseded.is_(False),
            )
            .values(superseded=True)
        )

        code = self._new_code()
        salt = "%016x" % self.rng.getrandbits(64)
        expires_at = now + timedelta(seconds=self.policy.sms_code_ttl_seconds)
        row = SmsVerificationCode(
            user_id=user_id,
            phone_number=phone_number,
            purpose=purpose,
            code_hash=_hash_code(code, salt),
            attempts=0,
            max_attempts=self.policy.sms_max_attempts,
            created_at=now,
            expires_at=expires_at,
        )
        self.db.add(row)
        self.db.flush()

        template = _TEMPLATES.get(purpose, _TEMPLATES["login"])
        message = template.format(brand=self.brand, code=code, minutes=max(1, self.policy.sms_code_ttl_seconds // 60))
        row.delivery_id = self.provider.send(phone_number, message)
        logger.info("sms %s code sent to %s", purpose, mask_phone(phone_number))
        return SmsSendResult(delivery_id=row.delivery_id, expires_at=expires_at, masked_phone=mask_phone(phone_number))

    def _latest(self, user_id: uuid.UUID, purpose: str) -> SmsVerificationCode | None:
        return self.db.execute(
            select(SmsVerificationCode)
            .where(
                SmsVerificationCode.user_id == user_id,
                SmsVerificationCode.purpose == purpose,
                SmsVerificationCode.verified_at.is_(None),
                SmsVerificationCode.superseded.is_(False),
            )
            .order_by(SmsVerificationCode.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def verify_code(self, user_id: uuid.UUID, code: str, *, purpose: str = "login") -> SmsVerificationResult:
        code = "".join(ch for ch in (code or "") if ch.isdigit())
        row = self._latest(user_id, purpose)
        if row is None:
            return SmsVerificationResult(False, 0, "no_code")

        now = self.clock()
        if as_utc(row.expires_at) <= now:
            return SmsVerificationResult(False, 0, "expired")

        # Claim one attempt; concurrent submissions cannot overspend the budget.
        claimed = self.db.execute(
            update(SmsVerificationCode)
            .where(
                SmsVerificationCode.id == row.id,
                SmsVerificationCode.verified_at.is_(None),
                SmsVerificationCode.attempts < SmsVerificationCode.max_attempts,
            )
            .values(attempts=SmsVerificationCode.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            return SmsVerificationResult(False, 0, "attempts_exhausted")

        self.db.refresh(row)
        remaining = max(0, int(row.max_attempts) - int(row.attempts))

        if not _code_matches(row.code_hash, code):
            return SmsVerificationResult(False, remaining, "mismatch")

        done = self.db.execute(
            update(SmsVerificationCode)
            .where(SmsVerificationCode.id == row.id, SmsVerificationCode.verified_at.is_(None))
            .values(verified_at=now)
            .execution_options(synchronize_session=False)
        )
        if done.rowcount != 1:
            return SmsVerificationResult(False, remaining, "attempts_exhausted")
        return SmsVerificationResult(True, remaining)
