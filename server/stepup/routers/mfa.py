from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..deps import get_clock, get_current_session_from_request, get_enrollment_service, get_request_context, require_ui_user
from ..models import AppUser
from ..schemas import CodePayload, PreferredMethodPayload, RemoveMethodPayload, SmsEnablePayload
from ..services.audit import RequestContext
from ..services.db_utils import transaction
from ..services.enrollment import EnrollmentService
from ..services.time_utils import Clock

router = APIRouter(prefix="/auth/2fa", tags=["2fa"])


def _mark_session_verified(request: Request, db: Session, method: str, clock: Clock) -> None:
    # The user just proved possession of the new factor; keep the current session usable.
    res = get_current_session_from_request(request, db, clock)
    if not res:
        return
    sess, _user = res
    with transaction(db):
        sess.mfa_verified_at = clock()
        sess.mfa_method = method


def _send_result(sent) -> dict:
    return {"ok": True, "masked_destination": sent.masked_phone, "code_expires_at": sent.expires_at.isoformat()}


@router.post("/totp/enable")
def totp_enable(user: AppUser = Depends(require_ui_user), svc: EnrollmentService = Depends(get_enrollment_service)):
    # Require encryption key before generating a secret we could not store.
    if not settings.mfa_encryption_key:
        raise HTTPException(500, "MFA_ENCRYPTION_KEY not configured")

    prov = svc.enable_totp(user.id)
    return {
        "ok": True,
        "otpauth_uri": prov.otpauth_uri,
        "manual_entry_key": prov.manual_entry_key,
        "qr_data_url": prov.qr_data_url,
    }


@router.post("/totp/confirm")
def totp_confirm(
    payload: CodePayload,
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: AppUser = Depends(require_ui_user),
    ctx: RequestContext = Depends(get_request_context),
    svc: EnrollmentService = Depends(get_enrollment_service),
):
    codes = svc.confirm_totp_setup(user.id, payload.code, ctx)
    _mark_session_verified(request, db, "totp", clock)
    return {"ok": True, "backup_codes": codes}


@router.post("/sms/enable")
def sms_enable(
    payload: SmsEnablePayload,
    user: AppUser = Depends(require_ui_user),
    svc: EnrollmentService = Depends(get_enrollment_service),
):
    return _send_result(svc.enable_sms(user.id, payload.phone_number))


@router.post("/sms/confirm")
def sms_confirm(
    payload: CodePayload,
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: AppUser = Depends(require_ui_user),
    ctx: RequestContext = Depends(get_request_context),
    svc: EnrollmentService = Depends(get_enrollment_service),
):
    codes = svc.confirm_sms_setup(user.id, payload.code, ctx)
    _mark_session_verified(request, db, "sms", clock)
    return {"ok": True, "backup_codes": codes}


@router.post("/sms/send-code")
def sms_send_code(user: AppUser = Depends(require_ui_user), svc: EnrollmentService = Depends(get_enrollment_service)):
    return _send_result(svc.send_verification_code(user.id))


@router.post("/disable")
def disable(
    payload: CodePayload,
    user: AppUser = Depends(require_ui_user),
    ctx: RequestContext = Depends(get_request_context),
    svc: EnrollmentService = Depends(get_enrollment_service),
):
    svc.disable_2fa(user.id, payload.code, ctx)
    return {"ok": True, "two_factor_enabled": False}


@router.post("/preferred-method")
def preferred_method(
    payload: PreferredMethodPayload,
    user: AppUser = Depends(require_ui_user),
    ctx: RequestContext = Depends(get_request_context),
    svc: EnrollmentService = Depends(get_enrollment_service),
):
    svc.set_preferred_method(user.id, payload.method, payload.code, ctx)
    return {"ok": True, "preferred_method": payload.method.value}


@router.post("/remove-method")
def remove_method(
    payload: RemoveMethodPayload,
    user: AppUser = Depends(require_ui_user),
    ctx: RequestContext = Depends(get_request_context),
    svc: EnrollmentService = Depends(get_enrollment_service),
):
    keep = svc.remove_method(user.id, payload.method, payload.code, ctx)
    return {"ok": True, "removed": payload.method.value, "preferred_method": keep.value}


@router.post("/backup-codes/regenerate")
def backup_codes_regenerate(
    payload: CodePayload,
    user: AppUser = Depends(require_ui_user),
    ctx: RequestContext = Depends(get_request_context),
    svc: EnrollmentService = Depends(get_enrollment_service),
):
    codes = svc.regenerate_backup_codes(user.id, payload.code, ctx)
    return {"ok": True, "backup_codes": codes}
