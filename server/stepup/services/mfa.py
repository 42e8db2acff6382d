from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO

import pyotp
from cryptography.fernet import Fernet, InvalidToken

from .time_utils import Clock, now_utc

logger = logging.getLogger(__name__)

TOTP_DIGITS = 6


def _fernet(raw_key: str | None) -> Fernet:
    if not raw_key:
        raise RuntimeError("MFA_ENCRYPTION_KEY is not set")

    key = str(raw_key).strip()
    # Be tolerant of accidentally quoted env values, e.g. "<fernet-key>".
    if len(key) >= 2 and key[0] == key[-1] and key[0] in {'"', "'"}:
        key = key[1:-1].strip()

    try:
        return Fernet(key.encode("utf-8"))
    except Exception as e:
        raise RuntimeError("MFA_ENCRYPTION_KEY is invalid (must be a 32-byte urlsafe base64 Fernet key)") from e


class SecretBox:
    """Encrypts TOTP seeds at rest."""

    def __init__(self, key: str | None):
        self._key = key

    def encrypt(self, secret_b32: str) -> str:
        return _fernet(self._key).encrypt(secret_b32.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str:
        f = _fernet(self._key)
        try:
            return f.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            raise ValueError("invalid encrypted secret")


def sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def normalize_code(code: str | None) -> str:
    """Strip whitespace and dashes, upper-case. Used for every code type."""
    return "".join(ch for ch in (code or "") if not ch.isspace() and ch != "-").upper()


def is_totp_format(code: str) -> bool:
    return len(code) == TOTP_DIGITS and code.isdigit()


def new_totp_secret() -> str:
    return pyotp.random_base32()


def format_manual_entry_key(secret_b32: str) -> str:
    return " ".join(secret_b32[i:i + 4] for i in range(0, len(secret_b32), 4))


def otpauth_uri(username: str, secret_b32: str, *, issuer: str) -> str:
    return pyotp.TOTP(secret_b32).provisioning_uri(name=username, issuer_name=issuer)


def qr_data_url(uri: str) -> str | None:
    # Optional QR helper. Frontend can fall back to showing the URI.
    try:
        import qrcode
    except ImportError:
        return None

    img = qrcode.make(uri)
    buf = BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


@dataclass
class TotpProvisioning:
    secret: str
    otpauth_uri: str
    manual_entry_key: str
    qr_data_url: str | None


class TotpVerifier:
    """Stateless TOTP check with a symmetric drift window (in 30s steps)."""

    def __init__(self, *, valid_window: int = 1, clock: Clock = now_utc):
        self.valid_window = int(valid_window)
        self.clock = clock

    def validate_code(self, secret_b32: str, code: str, *, at: datetime | None = None) -> bool:
        code = normalize_code(code)
        if not is_totp_format(code):
            return False
        when = at or self.clock()
        return bool(pyotp.TOTP(secret_b32).verify(code, for_time=when, valid_window=self.valid_window))

    def provision(self, username: str, *, issuer: str) -> TotpProvisioning:
        secret = new_totp_secret()
        uri = otpauth_uri(username, secret, issuer=issuer)
        return TotpProvisioning(
            secret=secret,
            otpauth_uri=uri,
            manual_entry_key=format_manual_entry_key(secret),
            qr_data_url=qr_data_url(uri),
        )
