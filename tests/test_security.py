import asyncio
import time

import fakeredis
import jwt
import pytest
from starlette.requests import Request

from qrvault import security, store
from qrvault.config import JWT_SECRET, SUSPICIOUS_ACTIVITY_THRESHOLD, parse_duration


def make_request(headers=None, client=("9.9.9.9", 4321)):
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "headers": raw, "client": client})


def with_redis(coro_fn):
    """Run an async scenario against a fresh in-memory Redis."""
    async def runner():
        store.set_redis(fakeredis.aioredis.FakeRedis(decode_responses=True))
        try:
            return await coro_fn()
        finally:
            store.set_redis(None)
    return asyncio.run(runner())


def test_parse_duration():
    assert parse_duration("15m") == 900
    assert parse_duration("7d") == 7 * 86400
    assert parse_duration("30") == 30
    with pytest.raises(ValueError):
        parse_duration("soon")


def test_client_ip_prefers_proxy_headers():
    assert security.get_client_ip(make_request({"X-Forwarded-For": "1.2.3.4, 10.0.0.1"})) == "1.2.3.4"
    assert security.get_client_ip(make_request({"X-Real-IP": "5.6.7.8"})) == "5.6.7.8"
    assert security.get_client_ip(make_request()) == "9.9.9.9"
    assert security.get_client_ip(make_request(client=None)) == "unknown"


def test_fingerprint_depends_on_client():
    a = security.device_fingerprint(make_request({"User-Agent": "A"}))
    b = security.device_fingerprint(make_request({"User-Agent": "B"}))
    assert a != b
    assert a == security.device_fingerprint(make_request({"User-Agent": "A"}))


def test_sanitize_user_agent():
    assert security.sanitize_user_agent(None) == "Unknown"
    assert security.sanitize_user_agent("<script>x</script>") == "scriptx/script"
    assert len(security.sanitize_user_agent("x" * 1000)) == 500


def test_password_hashing():
    hashed = security.hash_password("Str0ng!Pass")
    assert security.verify_password("Str0ng!Pass", hashed)
    assert not security.verify_password("wrong", hashed)
    assert not security.verify_password("", hashed)


def test_password_problems():
    assert security.password_problems("Str0ng!Pass") == []
    assert len(security.password_problems("short")) == 2
    assert security.password_problems("alllowercase1!") != []


def test_token_pair_claims():
    tokens = security.generate_token_pair({"userId": 7, "email": "a@b.co", "role": "basic", "sessionId": "s1"})
    access = security.verify_token(tokens["accessToken"])
    assert access["userId"] == 7
    assert access["sessionId"] == "s1"
    assert access["jti"]

    refresh = security.verify_refresh_token(tokens["refreshToken"])
    assert refresh["type"] == "refresh"
    assert refresh["sessionId"] == "s1"

    # Access tokens are signed with a different secret
    with pytest.raises(jwt.InvalidTokenError):
        security.verify_refresh_token(tokens["accessToken"])


def test_expired_and_forged_tokens():
    expired = security._sign({"userId": 1}, JWT_SECRET, -10)
    with pytest.raises(jwt.ExpiredSignatureError):
        security.verify_token(expired)

    forged = jwt.encode({"userId": 1, "exp": int(time.time()) + 60}, "other-secret", algorithm="HS256")
    with pytest.raises(jwt.InvalidTokenError):
        security.verify_token(forged)


def test_blacklist():
    async def scenario():
        token = security._sign({"userId": 1}, JWT_SECRET, 60)
        assert not await security.is_token_blacklisted(token)
        assert await security.blacklist_token(token, int(time.time()) + 60)
        assert await security.is_token_blacklisted(token)
        # Already expired tokens need no entry
        assert not await security.blacklist_token("old", int(time.time()) - 1)
    with_redis(scenario)


def test_sessions_evict_oldest():
    async def scenario():
        request = make_request({"User-Agent": "pytest"})
        ids = [await security.create_session(1, "fp", request) for _ in range(6)]
        kept = await security.user_session_ids(1)
        assert kept == ids[1:]
        assert await security.validate_session(ids[0]) is None
        assert (await security.validate_session(ids[-1]))["userId"] == "1"

        assert await security.invalidate_all_user_sessions(1, keep=ids[-1]) == 4
        assert await security.user_session_ids(1) == [ids[-1]]
        assert [s["sessionId"] for s in await security.list_sessions(1)] == [ids[-1]]

        await security.remove_user_session(1, ids[-1])
        assert await security.validate_session(ids[-1]) is None
    with_redis(scenario)


def test_suspicious_activity_blocks_ip():
    async def scenario():
        request = make_request({"X-Forwarded-For": "6.6.6.6"})
        for _ in range(SUSPICIOUS_ACTIVITY_THRESHOLD - 1):
            await security.track_suspicious_activity(request)
        assert not await security.is_ip_blocked("6.6.6.6")
        await security.track_suspicious_activity(request)
        assert await security.is_ip_blocked("6.6.6.6")
        assert not await security.is_ip_blocked("7.7.7.7")
    with_redis(scenario)


def test_store_fails_open_without_redis():
    async def scenario():
        server = fakeredis.FakeServer()
        server.connected = False
        store.set_redis(fakeredis.aioredis.FakeRedis(server=server, decode_responses=True))
        try:
            assert await store.get("anything") is None
            assert await store.set("k", 1) is False
            assert await store.increment("n") == 0
            assert not await security.is_ip_blocked("1.1.1.1")
        finally:
            store.set_redis(None)
    asyncio.run(scenario())


class _User:
    email = "a@b.co"
    failed_logins = 0
    last_failed_at = None
    lockout_until = None
    status = "active"
    successful_logins = 0


def test_login_lockout_counter():
    user = _User()
    for _ in range(4):
        security.record_failed_login(user)
    assert user.lockout_until is None
    security.record_failed_login(user)
    assert user.lockout_until is not None
    assert user.status == "locked"

    security.record_successful_login(user, "1.2.3.4")
    assert user.failed_logins == 0
    assert user.lockout_until is None
    assert user.status == "active"
    assert user.last_ip == "1.2.3.4"


def test_slow_down_delays_after_soft_limit(monkeypatch):
    monkeypatch.setattr(security, "SLOW_DOWN_DELAY_AFTER", 2)
    delays = []
    real_sleep = asyncio.sleep

    async def recording_sleep(delay, *args, **kwargs):
        if delay:
            delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(security.asyncio, "sleep", recording_sleep)
    request = make_request({"X-Forwarded-For": "7.7.7.7"})

    async def scenario():
        await security.slow_down(request)
        await security.slow_down(request)
        assert delays == []
        await security.slow_down(request)

    with_redis(scenario)
    assert delays == [security.SLOW_DOWN_DELAY_MS / 1000]


def test_device_fingerprints_are_remembered(monkeypatch):
    monkeypatch.setattr(security, "ENABLE_DEVICE_TRACKING", True)

    async def scenario():
        assert await security.validate_device_fingerprint(1, "laptop", remember=False) is False
        assert await security.validate_device_fingerprint(1, "laptop") is False
        assert await security.validate_device_fingerprint(1, "laptop") is True
        assert await security.validate_device_fingerprint(2, "laptop") is False
        return await store.get("known_devices:1")

    assert with_redis(scenario) == ["laptop"]
