"""
Account authentication module.
Bearer JWT access tokens bound to Redis-backed sessions, bcrypt password
hashing, optional TOTP 2FA, login lockout and per-IP abuse tracking.
"""
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import jwt
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, validator
from sqlalchemy import desc, select, update

from . import audit, store
from .config import (
    AUTH_RATE_LIMIT, MAX_CONCURRENT_SESSIONS, STRICT_DEVICE_VALIDATION, STRICT_IP_VALIDATION,
)
from .database import (
    DEFAULT_PREFERENCES, AsyncSessionLocal, AuditLog, User, create_user, get_user_by_email,
    get_user_by_id, utcnow,
)
from .errors import AuthError, SecurityError
from .limiter import limiter
from .qr import generate_qr_data_uri
from .security import (
    blacklist_token, create_session, device_fingerprint, generate_token_pair, get_client_ip,
    hash_password, invalidate_all_user_sessions, is_ip_blocked, is_token_blacklisted,
    list_sessions, password_problems, record_failed_login, record_successful_login,
    remove_user_session, slow_down, user_session_ids, validate_device_fingerprint,
    validate_session, verify_password, verify_refresh_token, verify_token,
)
from .totp import provisioning_uri, random_base32, verify_totp

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
TOTP_SETUP_TTL = 600


@dataclass
class AuthContext:
    user: User
    token: str
    session_id: Optional[str]
    device_fingerprint: str
    client_ip: str
    token_issued_at: datetime
    token_expires_at: datetime
    device_trusted: bool = True
    auth_method: str = "JWT"


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    if header.startswith("Bearer "):
        return header[7:].strip() or None
    return None


def _ts(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


async def _verify_request(request: Request, state: dict) -> AuthContext:
    client_ip = get_client_ip(request)
    if await is_ip_blocked(client_ip):
        raise SecurityError(
            "IP address temporarily blocked due to suspicious activity",
            "IP_BLOCKED",
            "HIGH",
            {"ip": client_ip},
        )

    token = _bearer_token(request)
    if not token:
        raise AuthError("Access denied. No authentication token provided.", "NO_TOKEN")

    if await is_token_blacklisted(token):
        raise AuthError("Token has been revoked.", "TOKEN_BLACKLISTED")

    try:
        decoded = verify_token(token)
    except jwt.ExpiredSignatureError:
        raise AuthError("Authentication token has expired.", "TOKEN_EXPIRED")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid authentication token.", "INVALID_TOKEN")
    state["user_id"] = decoded.get("userId")

    session_id = decoded.get("sessionId")
    if session_id:
        session = await validate_session(session_id)
        if not session:
            raise AuthError("Session expired or invalid.", "INVALID_SESSION")
        if STRICT_IP_VALIDATION and session.get("ip") != client_ip:
            raise SecurityError(
                "Session IP mismatch detected.",
                "IP_MISMATCH",
                "HIGH",
                {"sessionIP": session.get("ip"), "currentIP": client_ip},
            )

    user = await get_user_by_id(decoded.get("userId"))
    if not user:
        raise AuthError("User account not found.", "USER_NOT_FOUND")
    if not user.is_active:
        raise AuthError("User account has been deactivated.", "ACCOUNT_DEACTIVATED")

    fingerprint = device_fingerprint(request)
    known_device = await validate_device_fingerprint(
        user.id, fingerprint, remember=not STRICT_DEVICE_VALIDATION
    )
    if not known_device and STRICT_DEVICE_VALIDATION:
        raise SecurityError("Unrecognized device detected.", "UNKNOWN_DEVICE", "MEDIUM",
                            {"deviceFingerprint": fingerprint})

    if len(await user_session_ids(user.id)) > MAX_CONCURRENT_SESSIONS:
        raise AuthError("Maximum concurrent sessions exceeded.", "SESSION_LIMIT_EXCEEDED", 429)

    return AuthContext(
        user=user,
        token=token,
        session_id=session_id,
        device_fingerprint=fingerprint,
        client_ip=client_ip,
        token_issued_at=_ts(decoded["iat"]),
        token_expires_at=_ts(decoded["exp"]),
        device_trusted=known_device,
    )


async def authenticate(request: Request, response: Response) -> AuthContext:
    """Dependency: resolve the bearer token to an authenticated user."""
    start = time.perf_counter()
    state = {}
    try:
        ctx = await _verify_request(request, state)
    except (AuthError, SecurityError) as e:
        e.duration_ms = int((time.perf_counter() - start) * 1000)
        await audit.log_auth_attempt(request, False, state.get("user_id"), e)
        raise

    request.state.auth = ctx
    await audit.log_auth_attempt(request, True, ctx.user.id)

    async with AsyncSessionLocal() as session:
        await session.execute(
            update(User).where(User.id == ctx.user.id).values(
                last_activity=utcnow(), last_ip=ctx.client_ip
            )
        )
        await session.commit()

    response.headers["X-Auth-Duration"] = f"{int((time.perf_counter() - start) * 1000)}ms"
    return ctx


async def optional_auth(request: Request, response: Response) -> Optional[AuthContext]:
    """Dependency: like authenticate, but anonymous requests pass through as None."""
    if not request.headers.get("authorization"):
        return None
    return await authenticate(request, response)


def require_role(*roles: str):
    """Dependency factory restricting a route to the given roles."""
    async def dependency(request: Request, ctx: AuthContext = Depends(authenticate)) -> AuthContext:
        if ctx.user.role not in roles:
            error = AuthError(
                "Access denied. Insufficient role permissions.",
                "INSUFFICIENT_ROLE",
                403,
                {"requiredRoles": list(roles), "userRole": ctx.user.role},
            )
            # Recorded, but a signed-in user on a forbidden route does not count against the IP
            await audit.log_auth_attempt(request, False, ctx.user.id, error, track=False)
            raise error
        return ctx
    return dependency


async def ensure_admin_exists(email: Optional[str], password: Optional[str]):
    """Create the bootstrap admin account when configured and missing."""
    if not email or not password:
        return
    if await get_user_by_email(email):
        return
    logger.info("Creating bootstrap admin: %s", email)
    user = await create_user(email, hash_password(password), name="Administrator")
    async with AsyncSessionLocal() as session:
        await session.execute(update(User).where(User.id == user.id).values(role="admin"))
        await session.commit()


# ==================== REQUEST MODELS ====================

def _validate_email(v: str) -> str:
    v = (v or "").strip().lower()
    if not EMAIL_RE.match(v):
        raise ValueError("Please provide a valid email address")
    return v


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = None

    _email = validator("email", allow_reuse=True)(_validate_email)

    @validator("name")
    def validate_name(cls, v):
        if v is None:
            return v
        v = v.strip()
        if len(v) > 100:
            raise ValueError("Name cannot exceed 100 characters")
        return v or None


class LoginRequest(BaseModel):
    email: str
    password: str
    totp_code: Optional[str] = None

    _email = validator("email", allow_reuse=True)(_validate_email)


class RefreshRequest(BaseModel):
    refreshToken: str


class Preferences(BaseModel):
    theme: Optional[str] = None
    defaultQRSize: Optional[int] = None
    autoSave: Optional[bool] = None
    showTutorial: Optional[bool] = None
    notifications: Optional[bool] = None
    exportFormat: Optional[str] = None

    @validator("theme")
    def validate_theme(cls, v):
        if v is not None and v not in ("light", "dark", "auto"):
            raise ValueError("Theme must be light, dark or auto")
        return v

    @validator("defaultQRSize")
    def validate_size(cls, v):
        if v is not None and not 100 <= v <= 2000:
            raise ValueError("QR size must be between 100 and 2000 pixels")
        return v

    @validator("exportFormat")
    def validate_export(cls, v):
        if v is not None and v not in ("png", "svg", "pdf"):
            raise ValueError("Export format must be png, svg or pdf")
        return v


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    avatar: Optional[str] = None
    preferences: Optional[Preferences] = None

    @validator("avatar")
    def validate_avatar(cls, v):
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("Invalid avatar URL")
        return v


class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str


class TOTPCodeRequest(BaseModel):
    code: str


class TOTPDisableRequest(BaseModel):
    password: str


# ==================== HELPERS ====================

async def _fail(request: Request, error: Exception, user_id: int = None):
    await audit.log_auth_attempt(request, False, user_id, error)
    raise error


async def _issue_tokens(user: User, request: Request) -> dict:
    fingerprint = device_fingerprint(request)
    await validate_device_fingerprint(user.id, fingerprint)
    session_id = await create_session(user.id, fingerprint, request)
    return generate_token_pair({
        "userId": user.id,
        "email": user.email,
        "role": user.role,
        "sessionId": session_id,
    })


# ==================== ROUTES ====================

@router.post("/register", status_code=201)
@limiter.limit(AUTH_RATE_LIMIT)
async def register(request: Request, body: RegisterRequest):
    """Create an account and sign it in."""
    await slow_down(request)
    client_ip = get_client_ip(request)

    problems = password_problems(body.password)
    if problems:
        raise HTTPException(status_code=400, detail=problems[0])

    if await get_user_by_email(body.email):
        raise HTTPException(status_code=400, detail="User already exists with this email")

    user = await create_user(body.email, hash_password(body.password), body.name, client_ip)
    tokens = await _issue_tokens(user, request)

    audit.log_user_registered(user.email, client_ip)
    await audit.log_auth_attempt(request, True, user.id, action="REGISTER")

    return {
        "success": True,
        "message": "User registered successfully",
        "data": {"user": user.to_dict(), "tokens": tokens},
    }


@router.post("/login")
@limiter.limit(AUTH_RATE_LIMIT)
async def login(request: Request, body: LoginRequest):
    """Exchange credentials (and a 2FA code when enabled) for a token pair."""
    await slow_down(request)
    client_ip = get_client_ip(request)

    if await is_ip_blocked(client_ip):
        await _fail(request, SecurityError(
            "IP address temporarily blocked due to suspicious activity",
            "IP_BLOCKED", "HIGH", {"ip": client_ip},
        ))

    async with AsyncSessionLocal() as session:
        result = await session.execute(select(User).filter(User.email == body.email))
        user = result.scalar_one_or_none()

        if not user:
            audit.log_login(body.email, success=False, ip=client_ip, reason="unknown_user")
            await _fail(request, AuthError("Invalid email or password.", "INVALID_CREDENTIALS"))

        if user.is_locked:
            audit.log_login(user.email, success=False, ip=client_ip, reason="locked")
            await _fail(request, AuthError(
                "Account temporarily locked due to too many failed login attempts.",
                "ACCOUNT_LOCKED", 423, {"lockoutUntil": user.lockout_until.isoformat()},
            ), user.id)

        if not user.is_active:
            await _fail(request, AuthError("User account has been deactivated.", "ACCOUNT_DEACTIVATED"), user.id)

        if not verify_password(body.password, user.password_hash):
            record_failed_login(user)
            await session.commit()
            audit.log_login(user.email, success=False, ip=client_ip, reason="bad_password")
            await _fail(request, AuthError("Invalid email or password.", "INVALID_CREDENTIALS"), user.id)

        if user.totp_secret:
            if not body.totp_code:
                # Signal the client to prompt for the 2FA code
                raise AuthError("Two-factor authentication code required.", "2FA_REQUIRED", 403)
            if not verify_totp(user.totp_secret, body.totp_code):
                record_failed_login(user)
                await session.commit()
                audit.log_login(user.email, success=False, ip=client_ip, reason="bad_2fa")
                await _fail(request, AuthError("Invalid two-factor authentication code.", "INVALID_2FA_CODE"), user.id)

        record_successful_login(user, client_ip)
        await session.commit()

    tokens = await _issue_tokens(user, request)
    audit.log_login(user.email, success=True, ip=client_ip)
    await audit.log_auth_attempt(request, True, user.id, action="LOGIN")

    return {
        "success": True,
        "message": "Login successful",
        "data": {"user": user.to_dict(), "tokens": tokens},
    }


@router.post("/refresh")
@limiter.limit(AUTH_RATE_LIMIT)
async def refresh(request: Request, body: RefreshRequest):
    """Rotate a refresh token into a new token pair on the same session."""
    token = body.refreshToken
    if await is_token_blacklisted(token):
        await _fail(request, AuthError("Token has been revoked.", "TOKEN_BLACKLISTED"))

    try:
        decoded = verify_refresh_token(token)
    except jwt.ExpiredSignatureError:
        await _fail(request, AuthError("Refresh token has expired.", "TOKEN_EXPIRED"))
    except jwt.InvalidTokenError:
        await _fail(request, AuthError("Invalid refresh token.", "INVALID_TOKEN"))

    user = await get_user_by_id(decoded.get("userId"))
    if not user or not user.is_active:
        await _fail(request, AuthError("User account not found.", "USER_NOT_FOUND"))

    session_id = decoded.get("sessionId")
    if session_id and not await validate_session(session_id):
        await _fail(request, AuthError("Session expired or invalid.", "INVALID_SESSION"), user.id)

    await blacklist_token(token, decoded["exp"])
    tokens = generate_token_pair({
        "userId": user.id,
        "email": user.email,
        "role": user.role,
        "sessionId": session_id,
    })
    return {"success": True, "data": {"tokens": tokens}}


@router.post("/logout")
async def logout(request: Request, ctx: AuthContext = Depends(authenticate)):
    """Revoke the presented token and end its session."""
    await blacklist_token(ctx.token, int(ctx.token_expires_at.timestamp()))
    if ctx.session_id:
        await remove_user_session(ctx.user.id, ctx.session_id)
    await audit.log_auth_attempt(request, True, ctx.user.id, action="LOGOUT")
    return {"success": True, "message": "Successfully logged out."}


@router.post("/logout-all")
async def logout_all(request: Request, ctx: AuthContext = Depends(authenticate)):
    """End every session of the current user."""
    await invalidate_all_user_sessions(ctx.user.id)
    await blacklist_token(ctx.token, int(ctx.token_expires_at.timestamp()))
    await audit.log_auth_attempt(request, True, ctx.user.id, action="LOGOUT_ALL")
    return {"success": True, "message": "All sessions terminated successfully."}


@router.get("/me")
async def get_me(ctx: AuthContext = Depends(authenticate)):
    return {"success": True, "data": ctx.user.to_dict()}


@router.put("/profile")
async def update_profile(body: ProfileUpdateRequest, ctx: AuthContext = Depends(authenticate)):
    async with AsyncSessionLocal() as session:
        user = await session.get(User, ctx.user.id)
        if body.name is not None:
            name = body.name.strip()
            if len(name) > 100:
                raise HTTPException(status_code=400, detail="Name cannot exceed 100 characters")
            user.name = name or None
        if body.avatar is not None:
            user.avatar_url = body.avatar or None
        if body.preferences is not None:
            merged = {**DEFAULT_PREFERENCES, **(user.preferences or {})}
            merged.update({k: v for k, v in body.preferences.dict().items() if v is not None})
            user.preferences = merged
        await session.commit()
        await session.refresh(user)

    return {"success": True, "message": "Profile updated successfully", "data": user.to_dict()}


@router.put("/password")
@limiter.limit("3/hour")
async def change_password(
    request: Request,
    body: PasswordChangeRequest,
    ctx: AuthContext = Depends(authenticate),
):
    """Change the password and sign out every other session."""
    if not verify_password(body.current_password, ctx.user.password_hash):
        raise HTTPException(status_code=400, detail="Current password is incorrect")

    problems = password_problems(body.new_password)
    if problems:
        raise HTTPException(status_code=400, detail=problems[0])
    if body.new_password == body.current_password:
        raise HTTPException(status_code=400, detail="New password must differ from the current one")

    async with AsyncSessionLocal() as session:
        await session.execute(
            update(User).where(User.id == ctx.user.id).values(
                password_hash=hash_password(body.new_password),
                password_changed_at=utcnow(),
            )
        )
        await session.commit()

    revoked = await invalidate_all_user_sessions(ctx.user.id, keep=ctx.session_id)
    audit.log_password_changed(ctx.user.email, ctx.client_ip)
    return {
        "success": True,
        "message": "Password changed successfully",
        "data": {"revokedSessions": revoked},
    }


@router.get("/sessions")
async def get_sessions(ctx: AuthContext = Depends(authenticate)):
    sessions = await list_sessions(ctx.user.id)
    for s in sessions:
        s["current"] = s.get("sessionId") == ctx.session_id
    return {"success": True, "data": sessions}


@router.delete("/sessions/{session_id}")
async def revoke_session(session_id: str, ctx: AuthContext = Depends(authenticate)):
    if session_id not in await user_session_ids(ctx.user.id):
        raise HTTPException(status_code=404, detail="Session not found")
    await remove_user_session(ctx.user.id, session_id)
    return {"success": True, "message": "Session revoked"}


@router.post("/2fa/setup")
@limiter.limit("5/hour")
async def setup_2fa(request: Request, ctx: AuthContext = Depends(authenticate)):
    """Start 2FA enrolment: returns a secret and a QR code for authenticator apps."""
    if ctx.user.totp_secret:
        raise HTTPException(status_code=400, detail="Two-factor authentication is already enabled")
    secret = random_base32()
    await store.set(f"totp_pending:{ctx.user.id}", secret, TOTP_SETUP_TTL)
    uri = provisioning_uri(ctx.user.email, secret)
    return {"success": True, "data": {"secret": secret, "uri": uri, "qr_code": generate_qr_data_uri(uri)}}


@router.post("/2fa/verify")
async def verify_2fa_setup(body: TOTPCodeRequest, ctx: AuthContext = Depends(authenticate)):
    """Finish enrolment by proving the authenticator app produces valid codes."""
    secret = await store.get(f"totp_pending:{ctx.user.id}")
    if not secret:
        raise HTTPException(status_code=400, detail="No pending two-factor setup. Start again.")
    if not verify_totp(secret, body.code):
        raise HTTPException(status_code=400, detail="Invalid code")

    async with AsyncSessionLocal() as session:
        await session.execute(update(User).where(User.id == ctx.user.id).values(totp_secret=secret))
        await session.commit()
    await store.delete(f"totp_pending:{ctx.user.id}")
    audit.log_2fa_changed(ctx.user.email, enabled=True)
    return {"success": True, "data": {"status": "enabled"}}


@router.post("/2fa/disable")
async def disable_2fa(body: TOTPDisableRequest, ctx: AuthContext = Depends(authenticate)):
    if not verify_password(body.password, ctx.user.password_hash):
        raise HTTPException(status_code=400, detail="Invalid password")

    async with AsyncSessionLocal() as session:
        await session.execute(update(User).where(User.id == ctx.user.id).values(totp_secret=None))
        await session.commit()
    audit.log_2fa_changed(ctx.user.email, enabled=False)
    return {"success": True, "data": {"status": "disabled"}}


@router.get("/audit")
async def recent_auth_attempts(
    limit: int = 100,
    success: Optional[bool] = None,
    ctx: AuthContext = Depends(require_role("admin")),
):
    """Recent authentication attempts, newest first (admins only)."""
    limit = max(1, min(limit, 500))
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id)).limit(limit)
    if success is not None:
        query = query.where(AuditLog.success == success)

    async with AsyncSessionLocal() as session:
        result = await session.execute(query)
        entries = result.scalars().all()

    return {
        "success": True,
        "data": [
            {
                "id": e.id,
                "timestamp": e.timestamp.isoformat(),
                "ip": e.ip,
                "userId": e.user_id,
                "success": e.success,
                "action": e.action,
                "errorCode": e.error_code,
                "userAgent": e.user_agent,
            }
            for e in entries
        ],
    }
