from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from ..deps import get_admin_service, get_compliance_service, get_request_context, require_admin_user
from ..models import AppUser
from ..schemas import AdminReasonPayload
from ..services.admin_override import AdminOverrideService
from ..services.audit import RequestContext
from ..services.compliance import ComplianceService

router = APIRouter(prefix="/admin/2fa", tags=["admin-2fa"])


@router.get("/users/{user_id}")
def user_status(
    user_id: uuid.UUID,
    admin: AppUser = Depends(require_admin_user),
    svc: AdminOverrideService = Depends(get_admin_service),
):
    return svc.get_user_2fa_status(user_id)


@router.post("/users/{user_id}/reset")
def reset_user(
    user_id: uuid.UUID,
    payload: AdminReasonPayload,
    admin: AppUser = Depends(require_admin_user),
    ctx: RequestContext = Depends(get_request_context),
    svc: AdminOverrideService = Depends(get_admin_service),
):
    svc.reset_user_2fa(user_id, admin.id, payload.reason, ctx)
    return {"ok": True, "user_id": str(user_id), "two_factor_enabled": False}


@router.post("/users/{user_id}/emergency-codes")
def emergency_codes(
    user_id: uuid.UUID,
    payload: AdminReasonPayload,
    admin: AppUser = Depends(require_admin_user),
    ctx: RequestContext = Depends(get_request_context),
    svc: AdminOverrideService = Depends(get_admin_service),
):
    issued = svc.generate_emergency_codes(user_id, admin.id, payload.reason, ctx)
    return {"ok": True, "codes": issued.codes, "expires_at": issued.expires_at.isoformat()}


@router.post("/users/{user_id}/unlock")
def unlock_user(
    user_id: uuid.UUID,
    payload: AdminReasonPayload,
    admin: AppUser = Depends(require_admin_user),
    ctx: RequestContext = Depends(get_request_context),
    svc: AdminOverrideService = Depends(get_admin_service),
):
    was_locked = svc.unlock_account(user_id, admin.id, payload.reason, ctx)
    return {"ok": True, "was_locked": was_locked}


@router.get("/metrics/adoption")
def adoption(admin: AppUser = Depends(require_admin_user), svc: ComplianceService = Depends(get_compliance_service)):
    return svc.get_adoption_metrics()


@router.get("/metrics/failure-trend")
def failure_trend(
    days: int = 30,
    admin: AppUser = Depends(require_admin_user),
    svc: ComplianceService = Depends(get_compliance_service),
):
    return svc.get_failure_trend(days)


@router.get("/metrics/lockouts")
def lockouts(admin: AppUser = Depends(require_admin_user), svc: ComplianceService = Depends(get_compliance_service)):
    return svc.get_lockout_stats()


@router.get("/metrics/alerts")
def security_alerts(admin: AppUser = Depends(require_admin_user), svc: ComplianceService = Depends(get_compliance_service)):
    return svc.get_security_alerts()
