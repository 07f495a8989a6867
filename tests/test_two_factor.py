"""Tests for the email two-factor challenge engine."""

import asyncio
from datetime import timedelta

import pytest

from clinicore.service import two_factor
from clinicore.service.errors import DeliveryError, NoEmailOnFileError
from clinicore.service.two_factor import TwoFactorEngine, code_digest
from clinicore.storage.models import TwoFactorChallenge, utcnow


class RecordingNotifier:
    def __init__(self, result=True, error=None):
        self.result = result
        self.error = error
        self.sent = []

    def send_two_factor_code(self, to_email, code, expires_minutes, locale):
        if self.error is not None:
            raise self.error
        self.sent.append({"to": to_email, "code": code, "minutes": expires_minutes, "locale": locale})
        return self.result


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(store, notifier):
    return TwoFactorEngine(store, notifier, ttl_minutes=5, max_attempts=3, lockout_seconds=300)


@pytest.fixture
def user(store):
    return store.create_user("30111222", "professional", name="Ana Ruiz", email="ana@example.com")


def _scripted_codes(monkeypatch, engine, *codes):
    remaining = iter(codes)
    monkeypatch.setattr(engine, "generate_code", lambda: next(remaining))


def test_generated_codes_are_six_digits():
    for _ in range(50):
        code = TwoFactorEngine.generate_code()
        assert len(code) == 6 and code.isdigit()


async def test_send_stores_digest_and_delivers_code(engine, notifier, store, user):
    challenge = await engine.send(user, locale="en")

    assert len(notifier.sent) == 1
    delivered = notifier.sent[0]
    assert delivered["to"] == "ana@example.com"
    assert delivered["locale"] == "en"
    assert delivered["minutes"] == 5
    stored = store.get_two_factor_challenge(user.id)
    assert stored.id == challenge.id
    assert stored.code_digest == code_digest(delivered["code"])
    assert stored.code_digest != delivered["code"]


async def test_send_defaults_locale(engine, notifier, user):
    await engine.send(user)
    assert notifier.sent[0]["locale"] == "es"


async def test_valid_code_is_single_use(engine, notifier, user):
    await engine.send(user)
    code = notifier.sent[0]["code"]

    first = await engine.validate(user.id, code)
    second = await engine.validate(user.id, code)

    assert first.valid is True
    assert second.valid is False
    assert second.reason == two_factor.ALREADY_USED


async def test_concurrent_submissions_accept_only_one(engine, notifier, user):
    await engine.send(user)
    code = notifier.sent[0]["code"]

    results = await asyncio.gather(*(engine.validate(user.id, code) for _ in range(5)))

    assert sum(1 for r in results if r.valid) == 1
    assert all(r.reason == two_factor.ALREADY_USED for r in results if not r.valid)


async def test_newest_challenge_supersedes_previous(monkeypatch, engine, user):
    _scripted_codes(monkeypatch, engine, "111111", "222222")
    await engine.send(user)
    await engine.send(user)

    stale = await engine.validate(user.id, "111111")
    fresh = await engine.validate(user.id, "222222")

    assert stale.reason == two_factor.INVALID_CODE
    assert fresh.valid is True


async def test_validate_without_challenge(engine, user):
    result = await engine.validate(user.id, "123456")
    assert result.valid is False
    assert result.reason == two_factor.NOT_REQUESTED


async def test_expired_challenge_rejected(engine, notifier, store, user):
    await engine.send(user)
    store.get_two_factor_challenge(user.id).expires_at = utcnow() - timedelta(seconds=1)

    result = await engine.validate(user.id, notifier.sent[0]["code"])

    assert result.reason == two_factor.EXPIRED


async def test_repeated_wrong_codes_lock_out(monkeypatch, engine, user):
    _scripted_codes(monkeypatch, engine, "123456")
    await engine.send(user)

    reasons = [(await engine.validate(user.id, "000000")).reason for _ in range(3)]
    after = await engine.validate(user.id, "123456")

    assert reasons == [two_factor.INVALID_CODE, two_factor.INVALID_CODE, two_factor.LOCKED_OUT]
    assert after.valid is False
    assert after.reason == two_factor.LOCKED_OUT


async def test_success_clears_failed_attempts(monkeypatch, engine, user):
    _scripted_codes(monkeypatch, engine, "123456", "654321")
    await engine.send(user)
    for _ in range(2):
        await engine.validate(user.id, "000000")
    assert (await engine.validate(user.id, "123456")).valid

    await engine.send(user)
    for _ in range(2):
        assert (await engine.validate(user.id, "000000")).reason == two_factor.INVALID_CODE
    assert (await engine.validate(user.id, "654321")).valid


async def test_send_requires_email_on_file(engine, store):
    no_email = store.create_user("30999888", "professional", name="Sin Correo")
    with pytest.raises(NoEmailOnFileError):
        await engine.send(no_email)
    assert store.get_two_factor_challenge(no_email.id) is None


async def test_undelivered_code_raises(store, user):
    engine = TwoFactorEngine(store, RecordingNotifier(result=False))
    with pytest.raises(DeliveryError) as excinfo:
        await engine.send(user)
    assert excinfo.value.status_code == 500


async def test_notifier_exception_becomes_delivery_error(store, user):
    engine = TwoFactorEngine(store, RecordingNotifier(error=ConnectionError("smtp down")))
    with pytest.raises(DeliveryError):
        await engine.send(user)


@pytest.mark.parametrize("submitted", ["12345", " 012345", "012345 ", 12345, None])
async def test_code_must_match_exact_string(store, notifier, user, submitted):
    engine = TwoFactorEngine(store, notifier, max_attempts=10)
    challenge = TwoFactorChallenge.new(user.id, code_digest("012345"))
    store.upsert_two_factor_challenge(challenge)

    rejected = await engine.validate(user.id, submitted)
    accepted = await engine.validate(user.id, "012345")

    assert rejected.valid is False
    assert rejected.reason == two_factor.INVALID_CODE
    assert accepted.valid is True
