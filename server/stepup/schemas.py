from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TwoFactorMethod(str, Enum):
    TOTP = "totp"
    SMS = "sms"


class ChallengeStatus(str, Enum):
    ISSUED = "issued"
    CONSUMED = "consumed"
    LOCKED = "locked"
    EXPIRED = "expired"
    REPLACED = "replaced"


class AuditAction(str, Enum):
    SETUP = "setup"
    DISABLE = "disable"
    SUCCESSFUL_AUTH = "successful_auth"
    FAILED_ATTEMPT = "failed_attempt"
    LOCKOUT = "lockout"
    ADMIN_RESET = "admin_reset"
    EMERGENCY_CODE_GENERATED = "emergency_code_generated"
    BACKUP_CODE_USAGE = "backup_code_usage"
    BACKUP_CODES_REGENERATED = "backup_codes_regenerated"
    EMERGENCY_CODE_USAGE = "emergency_code_usage"
    CHALLENGE_ISSUED = "challenge_issued"
    METHOD_CHANGED = "method_changed"
    METHOD_REMOVED = "method_removed"
    ACCOUNT_UNLOCKED = "account_unlocked"


class AuditMetadata(BaseModel):
    """Known audit fields plus an open ``extra`` map for anything else."""

    method: Optional[str] = None
    failure_reason: Optional[str] = None
    reason: Optional[str] = None
    attempts_remaining: Optional[int] = None
    locked_until: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True, exclude_defaults=False)


# Request payloads


class LoginPayload(BaseModel):
    username: str
    password: str


class ChallengeVerifyPayload(BaseModel):
    challenge_token: str
    code: str


class ChallengeTokenPayload(BaseModel):
    challenge_token: str


class ChallengeSwitchPayload(BaseModel):
    challenge_token: str
    method: TwoFactorMethod


class CodePayload(BaseModel):
    code: str


class SmsEnablePayload(BaseModel):
    phone_number: str


class PreferredMethodPayload(BaseModel):
    method: TwoFactorMethod
    code: str


class RemoveMethodPayload(BaseModel):
    method: TwoFactorMethod
    code: str


class AdminReasonPayload(BaseModel):
    reason: str


# Responses


class ChallengeOut(BaseModel):
    challenge_token: str
    method: TwoFactorMethod
    expires_at: str
    masked_destination: Optional[str] = None
    available_methods: List[TwoFactorMethod] = Field(default_factory=list)
    emergency_only: bool = False
