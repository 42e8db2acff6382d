import httpx
import pytest

from stepup.errors import InvalidInputError, RateLimitedError, SmsDeliveryError
from stepup.services import sms as sms_mod
from stepup.services.sms import TwilioSmsProvider, mask_phone, normalize_phone


PHONE = "+15551234567"


def test_normalize_phone_accepts_e164_with_separators():
    assert normalize_phone("+1 (555) 123-4567") == PHONE
    with pytest.raises(InvalidInputError):
        normalize_phone("5551234567")
    with pytest.raises(InvalidInputError):
        normalize_phone("+0123")


def test_mask_phone_keeps_last_four_digits():
    assert mask_phone(PHONE) == "***-***-4567"
    assert mask_phone("12") == "***"


def test_sms_code_verifies_once(db, components, make_user, sms_provider):
    user = make_user("sam", phone=PHONE)
    sent = components.sms.submit(user.id, PHONE)
    db.commit()

    assert sent.masked_phone == "***-***-4567"
    assert sms_provider.sent[-1][0] == PHONE
    code = sms_provider.last_code

    res = components.sms.verify_code(user.id, code)
    assert res.success is True
    assert res.attempts_remaining == 2

    again = components.sms.verify_code(user.id, code)
    assert again.success is False
    assert again.reason == "no_code"


def test_sms_attempt_budget_is_enforced(db, components, make_user, sms_provider):
    user = make_user("sam", phone=PHONE)
    components.sms.submit(user.id, PHONE)
    code = sms_provider.last_code
    wrong = "%06d" % ((int(code) + 1) % 1_000_000)

    remaining = [components.sms.verify_code(user.id, wrong).attempts_remaining for _ in range(3)]
    assert remaining == [2, 1, 0]

    res = components.sms.verify_code(user.id, code)
    assert res.success is False
    assert res.reason == "attempts_exhausted"


def test_sms_code_expires(db, components, make_user, sms_provider, clock):
    user = make_user("sam", phone=PHONE)
    components.sms.submit(user.id, PHONE)
    clock.advance(seconds=301)

    res = components.sms.verify_code(user.id, sms_provider.last_code)
    assert res.success is False
    assert res.reason == "expired"


def test_new_code_supersedes_previous(db, components, make_user, sms_provider):
    user = make_user("sam", phone=PHONE)
    components.sms.submit(user.id, PHONE)
    first = sms_provider.last_code
    components.sms.submit(user.id, PHONE)
    second = sms_provider.last_code

    if first != second:
        assert components.sms.verify_code(user.id, first).success is False
    assert components.sms.verify_code(user.id, second).success is True


def test_codes_are_scoped_by_purpose(db, components, make_user, sms_provider):
    user = make_user("sam", phone=PHONE)
    components.sms.submit(user.id, PHONE, purpose="setup")
    code = sms_provider.last_code

    assert components.sms.verify_code(user.id, code, purpose="login").reason == "no_code"
    assert components.sms.verify_code(user.id, code, purpose="setup").success is True


def test_send_limit_per_window(db, components, make_user, clock):
    user = make_user("sam", phone=PHONE)
    for _ in range(3):
        components.sms.submit(user.id, PHONE)
        clock.advance(seconds=10)
    db.commit()

    with pytest.raises(RateLimitedError) as exc:
        components.sms.submit(user.id, PHONE)
    assert exc.value.details["retry_after_seconds"] > 0

    clock.advance(seconds=900)
    components.sms.submit(user.id, PHONE)


def test_only_code_hashes_are_stored(db, components, make_user, sms_provider):
    from stepup.models import SmsVerificationCode

    user = make_user("sam", phone=PHONE)
    components.sms.submit(user.id, PHONE)
    row = db.query(SmsVerificationCode).one()
    assert sms_provider.last_code not in row.code_hash
    assert "$" in row.code_hash


def test_twilio_provider_posts_message(monkeypatch):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.content.decode()
        return httpx.Response(201, json={"sid": "SM123"})

    real_client = httpx.Client
    monkeypatch.setattr(sms_mod.httpx, "Client", lambda **kw: real_client(transport=httpx.MockTransport(handler), **kw))

    provider = TwilioSmsProvider(account_sid="AC1", auth_token="tok", from_number="+15550000000")
    assert provider.send(PHONE, "hello") == "SM123"
    assert seen["url"].endswith("/2010-04-01/Accounts/AC1/Messages.json")
    assert "Body=hello" in seen["body"]


def test_twilio_provider_raises_on_rejection(monkeypatch):
    real_client = httpx.Client
    transport = httpx.MockTransport(lambda request: httpx.Response(400, json={"message": "bad number"}))
    monkeypatch.setattr(sms_mod.httpx, "Client", lambda **kw: real_client(transport=transport, **kw))

    provider = TwilioSmsProvider(account_sid="AC1", auth_token="tok", from_number="+15550000000")
    with pytest.raises(SmsDeliveryError):
        provider.send(PHONE, "hello")


def test_twilio_provider_requires_credentials():
    with pytest.raises(RuntimeError):
        TwilioSmsProvider(account_sid="", auth_token="", from_number="")
