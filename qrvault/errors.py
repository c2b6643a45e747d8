"""
Exception types and their HTTP renderings.
"""
import logging
from datetime import datetime, timezone

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import DEVELOPMENT

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class AuthError(Exception):
    """Authentication failed; rendered with its own status code."""

    def __init__(self, message: str, code: str, status_code: int = 401, details: dict = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = _now_iso()


class SecurityError(Exception):
    """A security policy was violated; always rendered as 403."""

    def __init__(self, message: str, code: str, severity: str = "HIGH", details: dict = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.severity = severity
        self.details = details or {}
        self.timestamp = _now_iso()


class PayloadError(ValueError):
    """QR content could not be encoded or failed validation."""


class ScanError(ValueError):
    """An uploaded image could not be read."""


def _auth_headers(exc) -> dict:
    headers = {"X-Auth-Error": exc.code}
    duration = getattr(exc, "duration_ms", None)
    if duration is not None:
        headers["X-Auth-Duration"] = f"{duration}ms"
    return headers


async def auth_error_handler(request: Request, exc: AuthError):
    body = {
        "success": False,
        "message": exc.message,
        "code": exc.code,
        "timestamp": exc.timestamp,
    }
    if DEVELOPMENT and exc.details:
        body["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=body, headers=_auth_headers(exc))


async def security_error_handler(request: Request, exc: SecurityError):
    logger.warning(
        "SECURITY INCIDENT %s (%s): %s details=%s",
        exc.code, exc.severity, exc.message, exc.details,
    )
    return JSONResponse(
        status_code=403,
        content={
            "success": False,
            "message": "Access denied due to security policy.",
            "code": exc.code,
            "timestamp": exc.timestamp,
        },
        headers=_auth_headers(exc),
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    # Routes may pass a full body (with a code) as the detail
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"success": False, "message": exc.detail}
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={"success": False, "message": "Validation failed", "errors": errors},
    )


async def payload_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"success": False, "message": str(exc)})


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "message": "Too many requests. Please try again later.",
            "code": "RATE_LIMIT_EXCEEDED",
        },
    )


def register_error_handlers(app) -> None:
    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(SecurityError, security_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(PayloadError, payload_error_handler)
    app.add_exception_handler(ScanError, payload_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
