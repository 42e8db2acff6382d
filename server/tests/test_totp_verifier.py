from datetime import timedelta

import pytest

from stepup.services.mfa import SecretBox, TotpVerifier, format_manual_entry_key, normalize_code


SECRET = "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP"


def test_totp_accepts_one_step_of_drift_either_way(clock, totp_code):
    v = TotpVerifier(valid_window=1, clock=clock)
    assert v.validate_code(SECRET, totp_code(0))
    assert v.validate_code(SECRET, totp_code(-1))
    assert v.validate_code(SECRET, totp_code(1))


def test_totp_rejects_codes_two_steps_away(clock, totp_code):
    v = TotpVerifier(valid_window=1, clock=clock)
    assert not v.validate_code(SECRET, totp_code(-2))
    assert not v.validate_code(SECRET, totp_code(2))


def test_totp_validation_follows_the_clock(clock, totp_code):
    v = TotpVerifier(valid_window=1, clock=clock)
    code = totp_code(0)
    clock.advance(seconds=90)
    assert not v.validate_code(SECRET, code)
    assert v.validate_code(SECRET, code, at=clock() - timedelta(seconds=90))


def test_totp_rejects_malformed_codes(clock, totp_code):
    v = TotpVerifier(valid_window=1, clock=clock)
    assert not v.validate_code(SECRET, "")
    assert not v.validate_code(SECRET, "12345")
    assert not v.validate_code(SECRET, "abcdef")
    # Separators and spaces are tolerated.
    code = totp_code(0)
    assert v.validate_code(SECRET, f"{code[:3]} {code[3:]}")


def test_provision_returns_uri_and_grouped_key(clock):
    prov = TotpVerifier(clock=clock).provision("alice", issuer="stepup")
    assert prov.otpauth_uri.startswith("otpauth://totp/")
    assert "issuer=stepup" in prov.otpauth_uri
    assert prov.manual_entry_key.replace(" ", "") == prov.secret
    assert format_manual_entry_key("ABCDEFGH") == "ABCD EFGH"


def test_secret_box_tolerates_quoted_key():
    raw = "_rNr8yrCmiYQ9pGyQQlAWx-IvRfb8v-X8IG4MvfFcRo="
    token = SecretBox(raw).encrypt(SECRET)
    assert token != SECRET
    assert SecretBox(f'"{raw}"').decrypt(token) == SECRET


def test_secret_box_reports_missing_or_invalid_key():
    with pytest.raises(RuntimeError, match="not set"):
        SecretBox(None).encrypt(SECRET)
    with pytest.raises(RuntimeError, match="invalid"):
        SecretBox("definitely-not-a-fernet-key").encrypt(SECRET)


def test_normalize_code():
    assert normalize_code(" abcd-efgh ") == "ABCDEFGH"
    assert normalize_code(None) == ""
