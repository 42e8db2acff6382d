from __future__ import annotations

import uuid
from dataclasses import asdict
from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..deps import get_clock, require_admin_user
from ..models import AppUser, AuditEvent
from ..services.audit import AuditLog
from ..services.time_utils import Clock

router = APIRouter(prefix="/audit", tags=["audit"])


def _normalize_event(e: AuditEvent) -> dict:
    meta = e.meta if isinstance(e.meta, dict) else {}
    return {
        "id": str(e.id),
        "sequence": e.sequence,
        "timestamp": e.created_at.isoformat() if e.created_at else None,
        "action": e.action,
        "result": "success" if e.success else "failed",
        "user_id": str(e.user_id) if e.user_id else None,
        "actor_user_id": str(e.actor_user_id) if e.actor_user_id else None,
        "ip_address": e.ip_address,
        "user_agent": e.user_agent,
        "metadata": meta,
        "entry_hash": e.entry_hash,
    }


def _log(db: Session, clock: Clock) -> AuditLog:
    return AuditLog(db, clock=clock, max_retries=settings.audit_append_max_retries)


@router.get("/events")
def list_events(
    user_id: uuid.UUID | None = None,
    action: str | None = None,
    since: datetime | None = None,
    limit: int = 100,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    admin: AppUser = Depends(require_admin_user),
):
    events = _log(db, clock).list_events(user_id=user_id, action=action, since=since, limit=limit)
    return {"items": [_normalize_event(e) for e in events]}


@router.get("/integrity")
def integrity(
    start_sequence: int | None = None,
    end_sequence: int | None = None,
    include_archive: bool = True,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    admin: AppUser = Depends(require_admin_user),
):
    log = _log(db, clock)
    res = log.verify_chain_integrity(
        start_sequence=start_sequence, end_sequence=end_sequence, include_archive=include_archive
    )
    return {"verification": asdict(res), "statistics": log.statistics()}
