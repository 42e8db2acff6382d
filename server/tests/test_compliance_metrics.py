from stepup.config import TwoFactorPolicy
from stepup.schemas import AuditAction, AuditMetadata
from stepup.services.audit import RequestContext
from stepup.services.compliance import ComplianceService
from stepup.services.lockout import user_key


def test_adoption_metrics_by_method_and_role(db, policy, clock, make_user):
    make_user("root", role="admin")
    make_user("tina", totp=True)
    make_user("sam", phone="+15551234567")
    make_user("bea", role="brand", totp=True, phone="+15557654321")

    m = ComplianceService(db, policy, clock=clock).get_adoption_metrics()
    assert m["total_users"] == 4
    assert m["enabled_users"] == 3
    assert m["adoption_rate"] == 75.0
    assert m["by_method"] == {"totp_only": 1, "sms_only": 1, "both": 1}
    assert m["by_role"]["creator"] == {"total": 2, "enabled": 2, "adoption_rate": 100.0}
    assert m["by_role"]["admin"]["enabled"] == 0


def test_failure_trend_buckets_by_day(db, policy, clock, components):
    audit = components.audit
    audit.append(AuditAction.FAILED_ATTEMPT, success=False, metadata=AuditMetadata(method="sms"))
    clock.advance(days=1)
    audit.append(AuditAction.FAILED_ATTEMPT, success=False, metadata=AuditMetadata(method="totp"))
    audit.append(AuditAction.FAILED_ATTEMPT, success=False, metadata=AuditMetadata(method="totp"))
    audit.append(AuditAction.SUCCESSFUL_AUTH, metadata=AuditMetadata(method="totp"))
    db.commit()

    trend = ComplianceService(db, policy, clock=clock).get_failure_trend(7)
    assert trend["days"] == 7
    assert len(trend["series"]) == 7
    today, yesterday = trend["series"][-1], trend["series"][-2]
    assert today["date"] == clock().date().isoformat()
    assert today["failures"] == 2
    assert today["successes"] == 1
    assert today["failures_by_method"] == {"totp": 2}
    assert today["failure_rate"] == 66.67
    assert yesterday["failures_by_method"] == {"sms": 1}
    assert trend["total_failures"] == 3
    assert trend["overall_failure_rate"] == 75.0


def test_lockout_stats(db, policy, clock, components, make_user):
    user = make_user("tina", totp=True)
    for _ in range(5):
        components.lockout.record_failure(user_key(user.id))
    components.audit.append(AuditAction.LOCKOUT, user_id=user.id, success=False)
    components.audit.append(AuditAction.ACCOUNT_UNLOCKED, user_id=user.id)
    db.commit()

    stats = ComplianceService(db, policy, clock=clock).get_lockout_stats()
    assert stats["currently_locked"] == 1
    assert stats["lockouts_today"] == 1
    assert stats["unlocks_today"] == 1
    assert stats["emergency_codes_issued_today"] == 0


def _attempts(audit, user, *, failures, successes, ip=None):
    ctx = RequestContext(ip_address=ip)
    for _ in range(failures):
        audit.append(AuditAction.FAILED_ATTEMPT, user_id=user.id, success=False, context=ctx, metadata=AuditMetadata(method="totp"))
    for _ in range(successes):
        audit.append(AuditAction.SUCCESSFUL_AUTH, user_id=user.id, context=ctx, metadata=AuditMetadata(method="totp"))


def test_failure_rate_spike_against_day_baseline(db, policy, clock, components, make_user):
    tina = make_user("tina", totp=True)
    sam = make_user("sam", totp=True)
    _attempts(components.audit, tina, failures=1, successes=9)
    clock.advance(hours=3)
    _attempts(components.audit, tina, failures=3, successes=5)
    _attempts(components.audit, sam, failures=2, successes=0)
    db.commit()

    svc = ComplianceService(db, policy, clock=clock)
    spike = svc.check_failure_rate_spike()
    assert spike["current_value"] == 50.0
    assert spike["baseline_value"] == 10.0
    assert spike["severity"] == "critical"
    assert spike["affected_user_count"] == 2

    assert [a["type"] for a in svc.get_security_alerts()["alerts"]] == ["failure_rate_spike"]


def test_no_spike_without_baseline_or_at_normal_rate(db, policy, clock, components, make_user):
    tina = make_user("tina", totp=True)
    _attempts(components.audit, tina, failures=5, successes=5)
    db.commit()
    assert ComplianceService(db, policy, clock=clock).check_failure_rate_spike() is None

    clock.advance(hours=2)
    _attempts(components.audit, tina, failures=1, successes=1)
    db.commit()
    assert ComplianceService(db, policy, clock=clock).check_failure_rate_spike() is None


def test_velocity_attack_names_busy_addresses(db, clock, components, make_user):
    tina = make_user("tina", totp=True)
    policy = TwoFactorPolicy(alert_velocity_per_minute=2, alert_velocity_window_minutes=5)
    _attempts(components.audit, tina, failures=10, successes=0, ip="198.51.100.7")
    _attempts(components.audit, tina, failures=3, successes=0, ip="203.0.113.9")
    db.commit()

    alert = ComplianceService(db, policy, clock=clock).check_velocity_attack()
    assert alert["affected_ip_addresses"] == ["198.51.100.7"]
    assert alert["current_value"] == 2.0

    clock.advance(minutes=6)
    assert ComplianceService(db, policy, clock=clock).check_velocity_attack() is None


def test_sustained_attack_needs_rate_and_volume(db, policy, clock, components, make_user):
    tina = make_user("tina", totp=True)
    _attempts(components.audit, tina, failures=20, successes=10)
    db.commit()
    assert ComplianceService(db, policy, clock=clock).check_sustained_attack() is None

    _attempts(components.audit, tina, failures=1, successes=0)
    db.commit()
    alert = ComplianceService(db, policy, clock=clock).check_sustained_attack()
    assert alert["severity"] == "urgent"
    assert alert["failures"] == 21
    assert alert["current_value"] == 67.74
