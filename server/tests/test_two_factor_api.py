import importlib
import sys
from urllib.parse import parse_qs, urlparse

import pyotp


def _reload_stepup_modules():
    for k in list(sys.modules.keys()):
        if k == "stepup" or k.startswith("stepup."):
            sys.modules.pop(k, None)


def _base_env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("BOOTSTRAP_USERNAME", "admin")
    monkeypatch.setenv("BOOTSTRAP_PASSWORD", "admin-password-123")
    monkeypatch.setenv("UI_COOKIE_SECURE", "false")
    monkeypatch.setenv("DB_AUTO_CREATE_TABLES", "true")
    monkeypatch.setenv("HOUSEKEEPING_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("SMS_PROVIDER", "log")


def _app(monkeypatch):
    _base_env(monkeypatch)
    _reload_stepup_modules()
    app_factory = importlib.import_module("stepup.app_factory")
    return app_factory.create_app()


def _login(client, username="admin", password="admin-password-123"):
    r = client.post("/auth/login", json={"username": username, "password": password})
    assert r.status_code == 200, r.text
    return r.json()


def _add_user(username, password, *, role="creator"):
    from stepup.db import SessionLocal
    from stepup.models import AppUser
    from stepup.routers.auth import pwd_context

    with SessionLocal() as db:
        user = AppUser(username=username, password_hash=pwd_context.hash(password), role=role, is_active=True)
        db.add(user)
        db.commit()
        return user.id


def test_enroll_then_login_requires_second_factor(monkeypatch):
    app = _app(monkeypatch)

    from fastapi.testclient import TestClient

    with TestClient(app) as client:
        data = _login(client)
        assert data["mfa_required"] is False
        csrf = client.cookies.get("stepup_csrf")
        assert csrf

        r = client.post("/auth/2fa/totp/enable", json={}, headers={"X-CSRF-Token": csrf})
        assert r.status_code == 200, r.text
        uri = r.json()["otpauth_uri"]
        secret = parse_qs(urlparse(uri).query)["secret"][0]

        r = client.post("/auth/2fa/totp/confirm", json={"code": pyotp.TOTP(secret).now()}, headers={"X-CSRF-Token": csrf})
        assert r.status_code == 200, r.text
        assert len(r.json()["backup_codes"]) == 10

        me = client.get("/auth/me").json()
        assert me["two_factor_enabled"] is True
        assert me["methods"] == ["totp"]

        client.post("/auth/logout")
        assert client.get("/auth/me").status_code == 401

        data = _login(client)
        assert data["mfa_required"] is True
        token = data["challenge"]["challenge_token"]
        assert data["challenge"]["method"] == "totp"
        assert client.cookies.get("stepup_session") is None

        wrong = "%06d" % ((int(pyotp.TOTP(secret).now()) + 500_000) % 1_000_000)
        r = client.post("/auth/2fa/challenge/verify", json={"challenge_token": token, "code": wrong})
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_CODE"
        assert r.json()["attempts_remaining"] == 4

        r = client.post("/auth/2fa/challenge/verify", json={"challenge_token": token, "code": pyotp.TOTP(secret).now()})
        assert r.status_code == 200, r.text
        assert r.json()["method"] == "totp"
        assert r.headers.get("cache-control") == "no-store"

        me = client.get("/auth/me").json()
        assert me["session_mfa_verified_at"]

        r = client.post("/auth/2fa/challenge/verify", json={"challenge_token": token, "code": pyotp.TOTP(secret).now()})
        assert r.status_code == 401
        assert r.json()["code"] == "CHALLENGE_NOT_FOUND"


def test_state_changing_requests_need_csrf_header(monkeypatch):
    app = _app(monkeypatch)

    from fastapi.testclient import TestClient

    with TestClient(app) as client:
        _login(client)
        r = client.post("/auth/2fa/totp/enable", json={})
        assert r.status_code == 403
        assert "CSRF" in r.text


def test_admin_endpoints(monkeypatch):
    app = _app(monkeypatch)

    from fastapi.testclient import TestClient

    with TestClient(app) as client:
        user_id = _add_user("tina", "tina-password-123")
        _login(client)
        csrf = client.cookies.get("stepup_csrf")
        headers = {"X-CSRF-Token": csrf}

        me = client.get("/auth/me").json()
        assert me["permissions"]["can_reset_user_2fa"] is True

        from stepup.db import SessionLocal
        from stepup.models import AppUser

        with SessionLocal() as db:
            admin_id = db.query(AppUser.id).filter(AppUser.username == "admin").scalar()

        r = client.post(f"/admin/2fa/users/{admin_id}/reset", json={"reason": "testing"}, headers=headers)
        assert r.status_code == 403
        assert r.json()["code"] == "FORBIDDEN"

        r = client.post(f"/admin/2fa/users/{user_id}/emergency-codes", json={"reason": "lost phone"}, headers=headers)
        assert r.status_code == 400
        assert r.json()["code"] == "NOT_ENABLED"

        r = client.post(f"/admin/2fa/users/{user_id}/reset", json={"reason": "lost phone"}, headers=headers)
        assert r.status_code == 200, r.text

        r = client.get(f"/admin/2fa/users/{user_id}")
        assert r.status_code == 200
        assert r.json()["last_reset_by"] == str(admin_id)

        r = client.get("/admin/2fa/metrics/adoption")
        assert r.status_code == 200
        assert r.json()["total_users"] == 2

        r = client.get("/admin/2fa/metrics/alerts")
        assert r.status_code == 200
        assert r.json()["alerts"] == []

        r = client.get("/audit/integrity")
        assert r.status_code == 200
        assert r.json()["verification"]["valid"] is True
        assert r.json()["statistics"]["live_entries"] == 2

        events = client.get("/audit/events", params={"action": "admin_reset"}).json()["items"]
        assert [e["result"] for e in events] == ["success", "failed"]


def test_non_admin_cannot_use_admin_endpoints(monkeypatch):
    app = _app(monkeypatch)

    from fastapi.testclient import TestClient

    with TestClient(app) as client:
        _add_user("tina", "tina-password-123")
        _login(client, "tina", "tina-password-123")
        assert client.get("/admin/2fa/metrics/adoption").status_code == 403
        assert client.get("/admin/2fa/metrics/alerts").status_code == 403
        assert client.get("/audit/integrity").status_code == 403


def test_challenge_errors_carry_codes(monkeypatch):
    app = _app(monkeypatch)

    from fastapi.testclient import TestClient

    with TestClient(app) as client:
        r = client.post("/auth/2fa/challenge/verify", json={"challenge_token": "missing", "code": "123456"})
        assert r.status_code == 401
        assert r.json()["code"] == "CHALLENGE_NOT_FOUND"

        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["ok"] is True


def test_successful_password_clears_login_throttle(monkeypatch):
    app = _app(monkeypatch)

    from fastapi.testclient import TestClient

    from stepup.routers import auth
    from stepup.services.rate_limit import FixedWindowRateLimiter

    monkeypatch.setattr(auth, "_LOGIN_LIMITER", FixedWindowRateLimiter(limit=2, window_seconds=3600))

    with TestClient(app) as client:
        _add_user("tina", "tina-password-123")
        bad = {"username": "tina", "password": "wrong"}
        assert client.post("/auth/login", json=bad).status_code == 401
        _login(client, "tina", "tina-password-123")
        assert client.post("/auth/login", json=bad).status_code == 401
        assert client.post("/auth/login", json=bad).status_code == 401
        assert client.post("/auth/login", json=bad).status_code == 429
