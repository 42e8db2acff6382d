from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.orm import Session

from ..config import TwoFactorPolicy
from ..models import AppUser, AuditEvent
from ..schemas import AuditAction
from .lockout import LockoutTracker
from .time_utils import Clock, as_utc, now_utc

logger = logging.getLogger(__name__)

AUTH_ACTIONS = (AuditAction.SUCCESSFUL_AUTH.value, AuditAction.FAILED_ATTEMPT.value)


def _rate(part: int, total: int) -> float:
    return round(100.0 * part / total, 2) if total else 0.0


def _start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


class ComplianceService:
    """Read-only rollups over the credential store and the audit log."""

    def __init__(self, db: Session, policy: TwoFactorPolicy, *, clock: Clock = now_utc):
        self.db = db
        self.policy = policy
        self.clock = clock

    def get_adoption_metrics(self) -> dict[str, Any]:
        has_totp = and_(AppUser.totp_enabled.is_(True), AppUser.totp_secret_enc.is_not(None))
        has_sms = and_(AppUser.phone_verified.is_(True), AppUser.phone_number.is_not(None))
        enabled = or_(has_totp, has_sms)

        rows = self.db.execute(
            select(
                AppUser.role,
                func.count(AppUser.id),
                func.sum(case((enabled, 1), else_=0)),
                func.sum(case((and_(has_totp, ~has_sms), 1), else_=0)),
                func.sum(case((and_(has_sms, ~has_totp), 1), else_=0)),
                func.sum(case((and_(has_totp, has_sms), 1), else_=0)),
            )
            .where(AppUser.is_active.is_(True))
            .group_by(AppUser.role)
        ).all()

        total = enabled_total = totp_only = sms_only = both = 0
        by_role: dict[str, dict[str, Any]] = {}
        for role, n, n_enabled, n_totp, n_sms, n_both in rows:
            n, n_enabled = int(n or 0), int(n_enabled or 0)
            total += n
            enabled_total += n_enabled
            totp_only += int(n_totp or 0)
            sms_only += int(n_sms or 0)
            both += int(n_both or 0)
            by_role[role or "unknown"] = {"total": n, "enabled": n_enabled, "adoption_rate": _rate(n_enabled, total=n)}

        return {
            "total_users": total,
            "enabled_users": enabled_total,
            "adoption_rate": _rate(enabled_total, total),
            "by_method": {"totp_only": totp_only, "sms_only": sms_only, "both": both},
            "by_role": by_role,
            "generated_at": self.clock().isoformat(),
        }

    def get_failure_trend(self, days: int = 30) -> dict[str, Any]:
        days = max(1, min(int(days), 365))
        now = self.clock()
        start = _start_of_day(now) - timedelta(days=days - 1)

        buckets: dict[str, dict[str, Any]] = {}
        for i in range(days):
            day = (start + timedelta(days=i)).date().isoformat()
            buckets[day] = {"date": day, "successes": 0, "failures": 0, "failures_by_method": defaultdict(int)}

        rows = self.db.execute(
            select(AuditEvent.created_at, AuditEvent.action, AuditEvent.meta).where(
                AuditEvent.created_at >= start,
                AuditEvent.action.in_(AUTH_ACTIONS),
            )
        ).all()
        for created_at, action, meta in rows:
            b = buckets.get(as_utc(created_at).date().isoformat())
            if b is None:
                continue
            if action == AuditAction.SUCCESSFUL_AUTH.value:
                b["successes"] += 1
            else:
                b["failures"] += 1
                b["failures_by_method"][(meta or {}).get("method") or "unknown"] += 1

        series = []
        for b in buckets.values():
            attempts = b["successes"] + b["failures"]
            series.append({**b, "failures_by_method": dict(b["failures_by_method"]), "failure_rate": _rate(b["failures"], attempts)})

        total_failures = sum(s["failures"] for s in series)
        total_attempts = total_failures + sum(s["successes"] for s in series)
        return {
            "days": days,
            "series": series,
            "total_failures": total_failures,
            "overall_failure_rate": _rate(total_failures, total_attempts),
        }

    def get_lockout_stats(self) -> dict[str, Any]:
        now = self.clock()
        today = _start_of_day(now)

        def _count(action: AuditAction) -> int:
            return int(
                self.db.execute(
                    select(func.count(AuditEvent.id)).where(AuditEvent.action == action.value, AuditEvent.created_at >= today)
                ).scalar_one()
            )

        return {
            "currently_locked": LockoutTracker(self.db, self.policy, clock=self.clock).count_locked(),
            "lockouts_today": _count(AuditAction.LOCKOUT),
            "unlocks_today": _count(AuditAction.ACCOUNT_UNLOCKED),
            "emergency_codes_issued_today": _count(AuditAction.EMERGENCY_CODE_GENERATED),
        }

    # Anomaly detection

    def _auth_counts(self, since: datetime, until: datetime | None = None) -> tuple[int, int]:
        q = select(
            func.sum(case((AuditEvent.action == AuditAction.FAILED_ATTEMPT.value, 1), else_=0)),
            func.count(AuditEvent.id),
        ).where(AuditEvent.action.in_(AUTH_ACTIONS), AuditEvent.created_at >= since)
        if until is not None:
            q = q.where(AuditEvent.created_at < until)
        failures, total = self.db.execute(q).one()
        return int(failures or 0), int(total or 0)

    def _affected_users(self, since: datetime) -> int:
        return int(
            self.db.execute(
                select(func.count(func.distinct(AuditEvent.user_id))).where(
                    AuditEvent.action == AuditAction.FAILED_ATTEMPT.value,
                    AuditEvent.created_at >= since,
                    AuditEvent.user_id.is_not(None),
                )
            ).scalar_one()
        )

    def check_failure_rate_spike(self) -> dict[str, Any] | None:
        """Failure rate over the last hour against the 23 hours before it."""
        now = self.clock()
        hour_ago = now - timedelta(hours=1)
        recent_failures, recent_total = self._auth_counts(hour_ago)
        base_failures, base_total = self._auth_counts(now - timedelta(hours=24), hour_ago)
        if not recent_total or not base_total:
            return None

        current = 100.0 * recent_failures / recent_total
        baseline = 100.0 * base_failures / base_total
        increase = (current - baseline) / baseline * 100.0 if baseline > 0 else current
        if increase < self.policy.alert_failure_spike_percent:
            return None
        return {
            "type": "failure_rate_spike",
            "severity": "critical" if increase >= 100 else "warning",
            "metric": "failure_rate",
            "current_value": round(current, 2),
            "baseline_value": round(baseline, 2),
            "threshold": self.policy.alert_failure_spike_percent,
            "increase_percent": round(increase, 2),
            "period_start": hour_ago.isoformat(),
            "period_end": now.isoformat(),
            "affected_user_count": self._affected_users(hour_ago),
        }

    def check_velocity_attack(self) -> dict[str, Any] | None:
        """Source IPs whose verification rate exceeds the per-minute threshold."""
        now = self.clock()
        minutes = max(1, self.policy.alert_velocity_window_minutes)
        since = now - timedelta(minutes=minutes)
        n = func.count(AuditEvent.id)
        rows = self.db.execute(
            select(AuditEvent.ip_address, n)
            .where(
                AuditEvent.action.in_(AUTH_ACTIONS),
                AuditEvent.created_at >= since,
                AuditEvent.ip_address.is_not(None),
            )
            .group_by(AuditEvent.ip_address)
            .having(n >= self.policy.alert_velocity_per_minute * minutes)
        ).all()
        if not rows:
            return None
        total = sum(int(c) for _, c in rows)
        return {
            "type": "velocity_attack",
            "severity": "critical",
            "metric": "attempts_per_minute",
            "current_value": round(total / minutes, 2),
            "threshold": self.policy.alert_velocity_per_minute,
            "period_start": since.isoformat(),
            "period_end": now.isoformat(),
            "affected_ip_addresses": sorted(ip for ip, _ in rows),
            "affected_user_count": self._affected_users(since),
        }

    def check_sustained_attack(self) -> dict[str, Any] | None:
        now = self.clock()
        since = now - timedelta(minutes=self.policy.alert_sustained_minutes)
        failures, total = self._auth_counts(since)
        if not total:
            return None
        rate = 100.0 * failures / total
        if rate <= self.policy.alert_sustained_failure_rate or failures <= self.policy.alert_sustained_min_failures:
            return None
        return {
            "type": "sustained_attack",
            "severity": "urgent",
            "metric": "sustained_failure_rate",
            "current_value": round(rate, 2),
            "threshold": self.policy.alert_sustained_failure_rate,
            "failures": failures,
            "period_start": since.isoformat(),
            "period_end": now.isoformat(),
            "affected_user_count": self._affected_users(since),
        }

    def get_security_alerts(self) -> dict[str, Any]:
        checks = (self.check_failure_rate_spike, self.check_velocity_attack, self.check_sustained_attack)
        alerts = [a for a in (check() for check in checks) if a is not None]
        for a in alerts:
            logger.warning("2FA security alert: %s (%s) %s=%s", a["type"], a["severity"], a["metric"], a["current_value"])
        return {"generated_at": self.clock().isoformat(), "alerts": alerts}
