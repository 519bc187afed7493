import pytest

from src.chatline.domain.errors import AuthorizationError
from src.chatline.infrastructure.session_store import InMemorySessionStore
from src.chatline.security.auth import (
    SessionConfig,
    decode_session_cookie,
    encode_session_cookie,
    hash_password,
    validate_session,
    verify_password,
)


CFG = SessionConfig(secret="unit-test-secret")


class _Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_password_hash_verifies_and_is_salted():
    first = hash_password("hunter2-hunter2")
    second = hash_password("hunter2-hunter2")
    assert first != second
    assert first.startswith("$argon2id$")
    assert verify_password(first, "hunter2-hunter2")
    assert not verify_password(first, "wrong")
    assert not verify_password("not-a-hash", "hunter2-hunter2")


def test_cookie_round_trip_and_tamper_detection():
    value = encode_session_cookie("sid-123", CFG)
    assert decode_session_cookie(value, CFG) == "sid-123"
    with pytest.raises(AuthorizationError):
        decode_session_cookie(value, SessionConfig(secret="another-secret"))
    with pytest.raises(AuthorizationError):
        decode_session_cookie("garbage", CFG)


def test_expired_cookie_is_rejected():
    value = encode_session_cookie("sid-123", SessionConfig(secret="unit-test-secret", max_age_seconds=-10))
    with pytest.raises(AuthorizationError) as info:
        decode_session_cookie(value, CFG)
    assert "expired" in str(info.value).lower()


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("SESSION_SECRET", "from-env")
    monkeypatch.setenv("SESSION_MAX_AGE_SECONDS", "60")
    monkeypatch.setenv("SESSION_COOKIE_SECURE", "true")
    cfg = SessionConfig.from_env()
    assert cfg.secret == "from-env"
    assert cfg.max_age_seconds == 60
    assert cfg.cookie_name == "chat.sid"
    assert cfg.secure is True


@pytest.mark.asyncio
async def test_validate_session_builds_identity():
    sessions = InMemorySessionStore()
    record = await sessions.create({"id": 7, "username": "alice", "fullname": "Alice"}, 60)
    cookies = {"chat.sid": encode_session_cookie(record.session_id, CFG)}

    identity = await validate_session(cookies, sessions, CFG)

    assert identity.user_id == 7
    assert identity.username == "alice"
    assert identity.display_name == "Alice"
    assert identity.session_id == record.session_id


@pytest.mark.asyncio
async def test_display_name_falls_back_to_username():
    sessions = InMemorySessionStore()
    record = await sessions.create({"id": 7, "username": "alice", "fullname": ""}, 60)
    identity = await validate_session({"chat.sid": encode_session_cookie(record.session_id, CFG)}, sessions, CFG)
    assert identity.display_name == "alice"


@pytest.mark.asyncio
async def test_validate_session_rejections():
    clock = _Clock()
    sessions = InMemorySessionStore(clock=clock)

    with pytest.raises(AuthorizationError):
        await validate_session({}, sessions, CFG)
    with pytest.raises(AuthorizationError):
        await validate_session({"chat.sid": encode_session_cookie("unknown", CFG)}, sessions, CFG)

    anonymous = await sessions.create({}, 60)
    with pytest.raises(AuthorizationError):
        await validate_session({"chat.sid": encode_session_cookie(anonymous.session_id, CFG)}, sessions, CFG)

    record = await sessions.create({"id": 1, "username": "alice"}, 60)
    cookies = {"chat.sid": encode_session_cookie(record.session_id, CFG)}
    await validate_session(cookies, sessions, CFG)
    clock.now += 61
    with pytest.raises(AuthorizationError):
        await validate_session(cookies, sessions, CFG)


@pytest.mark.asyncio
async def test_destroyed_session_no_longer_validates():
    sessions = InMemorySessionStore()
    record = await sessions.create({"id": 1, "username": "alice"}, 60)
    cookies = {"chat.sid": encode_session_cookie(record.session_id, CFG)}
    assert await sessions.destroy(record.session_id) is True
    assert await sessions.destroy(record.session_id) is False
    with pytest.raises(AuthorizationError):
        await validate_session(cookies, sessions, CFG)
