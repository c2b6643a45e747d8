"""
Audit logging module.
User actions are appended to a JSON-lines file; authentication attempts are
also stored in the audit_logs table with a short-lived copy in Redis.
QR contents are never written to the audit trail - metadata only.
"""
import json
import logging
import uuid
from datetime import datetime, timezone

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError

from . import store
from .config import AUDIT_LOG_PATH, AUDIT_REDIS_TTL
from .database import AsyncSessionLocal, AuditLog
from .security import (
    device_fingerprint, geolocation, get_client_ip, sanitize_user_agent,
    track_suspicious_activity,
)

logger = logging.getLogger(__name__)


def log_action(action: str, user: str, details: dict = None, ip: str = None):
    """
    Log a user action to the audit log.

    Args:
        action: Action type (e.g., 'qr_created', 'qr_deleted')
        user: The account that performed the action
        details: Additional metadata (never QR contents)
        ip: Client IP when known
    """
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "action": action,
        "user": user,
        "ip": ip,
        "details": details or {},
    }
    try:
        AUDIT_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        with open(AUDIT_LOG_PATH, "a") as f:
            f.write(json.dumps(entry) + "\n")
    except OSError as e:
        logger.error("Audit log write failed: %s", e)


def log_user_registered(email: str, ip: str = None):
    log_action("user_registered", email, ip=ip)


def log_login(email: str, success: bool, ip: str = None, reason: str = None):
    log_action(
        "login_success" if success else "login_failed",
        email,
        {"reason": reason} if reason else None,
        ip,
    )


def log_password_changed(email: str, ip: str = None):
    log_action("password_changed", email, ip=ip)


def log_2fa_changed(email: str, enabled: bool):
    log_action("2fa_enabled" if enabled else "2fa_disabled", email)


def log_qr_created(email: str, qr_id: int, qr_type: str):
    log_action("qr_created", email, {"id": qr_id, "type": qr_type})


def log_qr_deleted(email: str, qr_id=None, count: int = None):
    details = {"id": qr_id} if qr_id is not None else {"count": count}
    log_action("qr_deleted", email, details)


def log_qr_shared(email: str, qr_id: int):
    log_action("qr_shared", email, {"id": qr_id})


async def log_auth_attempt(
    request: Request,
    success: bool,
    user_id: int = None,
    error: Exception = None,
    action: str = None,
    track: bool = True,
):
    """Persist an authentication attempt. Failures feed abuse tracking unless track is off."""
    ip = get_client_ip(request)
    headers = request.headers
    record = {
        "ip": ip,
        "user_agent": sanitize_user_agent(headers.get("user-agent")),
        "device_fingerprint": device_fingerprint(request),
        "success": success,
        "user_id": user_id,
        "action": action,
        "error": getattr(error, "message", None) or (str(error) if error else None),
        "error_code": getattr(error, "code", None) if error else None,
        "geo_location": geolocation(ip),
        "headers": {
            "origin": headers.get("origin"),
            "referer": headers.get("referer"),
            "accept-language": headers.get("accept-language"),
        },
    }

    try:
        async with AsyncSessionLocal() as session:
            session.add(AuditLog(**record))
            await session.commit()
    except SQLAlchemyError as e:
        logger.error("Audit logging failed: %s", e)

    key = f"audit:{int(datetime.now(timezone.utc).timestamp() * 1000)}:{uuid.uuid4()}"
    await store.set(key, record, AUDIT_REDIS_TTL)

    if not success and track:
        await track_suspicious_activity(request)
