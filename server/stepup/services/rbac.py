from __future__ import annotations

from ..errors import ForbiddenError
from ..models import AppUser

ROLES = ("admin", "brand", "creator", "viewer")


def is_admin(user: AppUser | None) -> bool:
    return bool(user) and (getattr(user, "role", "") or "").lower() == "admin"


def require_admin(user: AppUser | None) -> AppUser:
    if not is_admin(user) or not getattr(user, "is_active", False):
        raise ForbiddenError("Admin privileges required")
    return user


def permissions_for(user: AppUser) -> dict:
    role = (getattr(user, "role", "viewer") or "viewer").lower()
    return {
        "role": role,
        "can_manage_own_2fa": True,
        "can_reset_user_2fa": role == "admin",
        "can_issue_emergency_codes": role == "admin",
        "can_unlock_accounts": role == "admin",
        "can_view_compliance": role == "admin",
        "can_verify_audit_chain": role == "admin",
    }
