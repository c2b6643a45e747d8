"""
Security primitives shared by the authentication layer.

Everything stateful lives in Redis under these keys:

    session:{id}            session record (JSON)
    user_sessions:{uid}     ordered list of a user's session ids
    blacklist:{sha256}      revoked token marker, expires with the token
    suspicious:{ip}         failed-auth counter (1h window)
    blocked_ip:{ip}         temporary block after too many failures
    known_devices:{uid}     last fingerprints seen for a user
    slowdown:{ip}           request counter for progressive delay
"""
import asyncio
import hashlib
import logging
import re
import time
import uuid
from datetime import timedelta

import bcrypt
import jwt
from fastapi import Request

from . import store
from .config import (
    ACCESS_TOKEN_EXPIRY, ENABLE_DEVICE_TRACKING, FAILED_LOGIN_RESET, IP_BLOCK_DURATION,
    JWT_ALGORITHM, JWT_AUDIENCE, JWT_ISSUER, JWT_REFRESH_SECRET, JWT_SECRET,
    KNOWN_DEVICES_LIMIT, KNOWN_DEVICES_TTL, LOCKOUT_DURATION, MAX_CONCURRENT_SESSIONS,
    MAX_FAILED_LOGINS, RATE_LIMIT_WINDOW, REFRESH_TOKEN_EXPIRY, SESSION_TTL,
    SLOW_DOWN_DELAY_AFTER, SLOW_DOWN_DELAY_MS, SUSPICIOUS_ACTIVITY_THRESHOLD,
    SUSPICIOUS_ACTIVITY_WINDOW,
)
from .database import utcnow

logger = logging.getLogger(__name__)

PASSWORD_STRENGTH_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*[0-9])(?=.*[!@#$%^&*])")


# ==================== REQUEST INSPECTION ====================

def get_client_ip(request: Request) -> str:
    """Real client IP, honouring a reverse proxy's headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def sanitize_user_agent(user_agent: str) -> str:
    if not user_agent:
        return "Unknown"
    return re.sub(r"[<>]", "", user_agent)[:500] or "Unknown"


def device_fingerprint(request: Request) -> str:
    headers = request.headers
    data = ":".join([
        headers.get("user-agent", ""),
        headers.get("accept-language", ""),
        headers.get("accept-encoding", ""),
        get_client_ip(request),
    ])
    return hashlib.sha256(data.encode()).hexdigest()


def geolocation(ip: str) -> dict:
    # No lookup service is wired in; only local addresses are recognised.
    if ip == "unknown" or ip.startswith("127.") or ip.startswith("192.168."):
        return {"country": "Local", "region": "Local", "city": "Local"}
    return {"country": "Unknown", "region": "Unknown", "city": "Unknown"}


# ==================== PASSWORDS ====================

def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str) -> bool:
    """Verify a password against its hash."""
    if not password or not hashed:
        return False
    return bcrypt.checkpw(password.encode(), hashed.encode())


def password_problems(password: str) -> list:
    problems = []
    if len(password or "") < 8:
        problems.append("Password must be at least 8 characters long")
    if not PASSWORD_STRENGTH_RE.match(password or ""):
        problems.append(
            "Password must contain at least one uppercase letter, one lowercase letter, "
            "one number, and one special character (!@#$%^&*)"
        )
    return problems


def record_failed_login(user) -> None:
    """Count a failed login on the user row; lock after too many in a row."""
    now = utcnow()
    if user.last_failed_at and now - user.last_failed_at > timedelta(seconds=FAILED_LOGIN_RESET):
        user.failed_logins = 0
    user.failed_logins = (user.failed_logins or 0) + 1
    user.last_failed_at = now
    if user.failed_logins >= MAX_FAILED_LOGINS:
        user.lockout_until = now + timedelta(seconds=LOCKOUT_DURATION)
        user.status = "locked"
        logger.warning("Account %s locked after %d failed logins", user.email, user.failed_logins)


def record_successful_login(user, ip: str) -> None:
    now = utcnow()
    user.failed_logins = 0
    user.lockout_until = None
    user.successful_logins = (user.successful_logins or 0) + 1
    user.last_login = now
    user.last_activity = now
    user.last_ip = ip
    if user.status == "locked":
        user.status = "active"


# ==================== TOKENS ====================

def _sign(payload: dict, secret: str, expires_in: int) -> str:
    now = int(time.time())
    claims = {
        **payload,
        "iat": now,
        "exp": now + expires_in,
        "iss": JWT_ISSUER,
        "aud": JWT_AUDIENCE,
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(claims, secret, algorithm=JWT_ALGORITHM)


def generate_token_pair(payload: dict) -> dict:
    access_token = _sign(payload, JWT_SECRET, ACCESS_TOKEN_EXPIRY)
    refresh_token = _sign(
        {"userId": payload["userId"], "type": "refresh", "sessionId": payload.get("sessionId")},
        JWT_REFRESH_SECRET,
        REFRESH_TOKEN_EXPIRY,
    )
    return {
        "accessToken": access_token,
        "refreshToken": refresh_token,
        "expiresIn": ACCESS_TOKEN_EXPIRY,
    }


def verify_token(token: str, secret: str = JWT_SECRET) -> dict:
    """Decode a token; raises jwt.ExpiredSignatureError / jwt.InvalidTokenError."""
    return jwt.decode(
        token,
        secret,
        algorithms=[JWT_ALGORITHM],
        issuer=JWT_ISSUER,
        audience=JWT_AUDIENCE,
    )


def verify_refresh_token(token: str) -> dict:
    data = verify_token(token, JWT_REFRESH_SECRET)
    if data.get("type") != "refresh":
        raise jwt.InvalidTokenError("Not a refresh token")
    return data


def token_hash(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


async def is_token_blacklisted(token: str) -> bool:
    return bool(await store.get(f"blacklist:{token_hash(token)}"))


async def blacklist_token(token: str, expiry: int) -> bool:
    """Revoke a token until its own expiry; expired tokens need no entry."""
    ttl = int(expiry - time.time())
    if ttl <= 0:
        return False
    return await store.set(f"blacklist:{token_hash(token)}", True, ttl)


# ==================== SESSIONS ====================

async def create_session(user_id: int, fingerprint: str, request: Request) -> str:
    session_id = str(uuid.uuid4())
    ip = get_client_ip(request)
    now = utcnow().isoformat()
    session_data = {
        "sessionId": session_id,
        "userId": str(user_id),
        "deviceFingerprint": fingerprint,
        "ip": ip,
        "userAgent": sanitize_user_agent(request.headers.get("user-agent")),
        "geoLocation": geolocation(ip),
        "createdAt": now,
        "lastActivity": now,
        "isActive": True,
    }
    await store.set(f"session:{session_id}", session_data, SESSION_TTL)
    await add_user_session(user_id, session_id)
    return session_id


async def add_user_session(user_id: int, session_id: str) -> None:
    key = f"user_sessions:{user_id}"
    sessions = await store.get(key) or []
    sessions.append(session_id)

    # Limit concurrent sessions
    while len(sessions) > MAX_CONCURRENT_SESSIONS:
        oldest = sessions.pop(0)
        await invalidate_session(oldest)
        logger.info("Evicted oldest session %s for user %s", oldest, user_id)

    await store.set(key, sessions, SESSION_TTL)


async def validate_session(session_id: str):
    session = await store.get(f"session:{session_id}")
    if not session or not session.get("isActive"):
        return None
    session["lastActivity"] = utcnow().isoformat()
    await store.set(f"session:{session_id}", session, SESSION_TTL)
    return session


async def invalidate_session(session_id: str) -> None:
    await store.delete(f"session:{session_id}")


async def remove_user_session(user_id: int, session_id: str) -> None:
    key = f"user_sessions:{user_id}"
    sessions = [s for s in (await store.get(key) or []) if s != session_id]
    await invalidate_session(session_id)
    await store.set(key, sessions, SESSION_TTL)


async def invalidate_all_user_sessions(user_id: int, keep: str = None) -> int:
    key = f"user_sessions:{user_id}"
    sessions = await store.get(key) or []
    removed = 0
    for session_id in sessions:
        if session_id == keep:
            continue
        await invalidate_session(session_id)
        removed += 1
    if keep and keep in sessions:
        await store.set(key, [keep], SESSION_TTL)
    else:
        await store.delete(key)
    return removed


async def user_session_ids(user_id: int) -> list:
    return await store.get(f"user_sessions:{user_id}") or []


async def list_sessions(user_id: int) -> list:
    sessions = []
    for session_id in await user_session_ids(user_id):
        data = await store.get(f"session:{session_id}")
        if data and data.get("isActive"):
            sessions.append(data)
    return sessions


# ==================== ABUSE PROTECTION ====================

async def is_ip_blocked(ip: str) -> bool:
    return bool(await store.get(f"blocked_ip:{ip}"))


async def track_suspicious_activity(request: Request) -> int:
    ip = get_client_ip(request)
    count = await store.increment(f"suspicious:{ip}", SUSPICIOUS_ACTIVITY_WINDOW)
    if count >= SUSPICIOUS_ACTIVITY_THRESHOLD:
        await trigger_security_alert(ip, count, request)
    return count


async def trigger_security_alert(ip: str, attempt_count: int, request: Request) -> None:
    logger.warning(
        "SECURITY ALERT: suspicious activity from %s (%d failed attempts, ua=%s, fingerprint=%s)",
        ip,
        attempt_count,
        sanitize_user_agent(request.headers.get("user-agent")),
        device_fingerprint(request)[:12],
    )
    await store.set(f"blocked_ip:{ip}", True, IP_BLOCK_DURATION)


async def validate_device_fingerprint(user_id: int, fingerprint: str, remember: bool = True) -> bool:
    """Whether the device was seen before. New devices are remembered unless remember=False."""
    if not ENABLE_DEVICE_TRACKING:
        return True

    key = f"known_devices:{user_id}"
    known = await store.get(key) or []
    if fingerprint in known:
        return True

    if remember:
        known.append(fingerprint)
        known = known[-KNOWN_DEVICES_LIMIT:]
        await store.set(key, known, KNOWN_DEVICES_TTL)
    return False


async def slow_down(request: Request) -> None:
    """Delay requests progressively once an IP exceeds the soft limit."""
    count = await store.increment(f"slowdown:{get_client_ip(request)}", RATE_LIMIT_WINDOW)
    if count > SLOW_DOWN_DELAY_AFTER:
        await asyncio.sleep(SLOW_DOWN_DELAY_MS / 1000)
