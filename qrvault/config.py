"""
Configuration for QR Vault.
"""
import os
import re
from pathlib import Path

# Paths
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))


def parse_duration(value: str) -> int:
    """Convert a duration like '15m', '7d' or '3600' into seconds."""
    match = re.fullmatch(r"\s*(\d+)\s*([smhd]?)\s*", str(value))
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = int(match.group(1)), match.group(2) or "s"
    return amount * {"s": 1, "m": 60, "h": 3600, "d": 86400}[unit]


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


# Database
# MySQL when DB_HOST is given, local SQLite file otherwise.
DB_HOST = os.getenv("DB_HOST")
DB_PORT = os.getenv("DB_PORT", "3306")
DB_USER = os.getenv("DB_USER", "qrvault")
DB_PASS = os.getenv("DB_PASS", "")
DB_NAME = os.getenv("DB_NAME", "qrvault")

if DB_HOST:
    _default_db_url = f"mysql+aiomysql://{DB_USER}:{DB_PASS}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
else:
    _default_db_url = f"sqlite+aiosqlite:///{DATA_DIR / 'qrvault.db'}"
DATABASE_URL = os.getenv("DATABASE_URL", _default_db_url)

# Redis (sessions, blacklist, abuse tracking)
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Tokens
JWT_SECRET = os.getenv("JWT_SECRET", "change-this-in-production-use-openssl-rand-hex-32")
JWT_REFRESH_SECRET = os.getenv("JWT_REFRESH_SECRET", "change-this-refresh-secret-too-openssl-rand-hex-32")
JWT_ALGORITHM = "HS256"
JWT_ISSUER = os.getenv("APP_NAME", "auth-service")
JWT_AUDIENCE = os.getenv("APP_DOMAIN", "localhost")
ACCESS_TOKEN_EXPIRY = parse_duration(os.getenv("ACCESS_TOKEN_EXPIRY", "15m"))
REFRESH_TOKEN_EXPIRY = parse_duration(os.getenv("REFRESH_TOKEN_EXPIRY", "7d"))

# Sessions & device trust
SESSION_TTL = 86400 * 7
MAX_CONCURRENT_SESSIONS = int(os.getenv("MAX_CONCURRENT_SESSIONS", "5"))
ENABLE_DEVICE_TRACKING = _flag("ENABLE_DEVICE_TRACKING")
STRICT_IP_VALIDATION = _flag("STRICT_IP_VALIDATION")
STRICT_DEVICE_VALIDATION = _flag("STRICT_DEVICE_VALIDATION")
KNOWN_DEVICES_LIMIT = 10
KNOWN_DEVICES_TTL = 86400 * 30

# Abuse protection
SUSPICIOUS_ACTIVITY_THRESHOLD = int(os.getenv("SUSPICIOUS_ACTIVITY_THRESHOLD", "5"))
SUSPICIOUS_ACTIVITY_WINDOW = 3600
IP_BLOCK_DURATION = 3600
AUTH_RATE_LIMIT = os.getenv("AUTH_RATE_LIMIT", "100/15minutes")
RATE_LIMIT_WINDOW = 15 * 60
SLOW_DOWN_DELAY_AFTER = int(os.getenv("SLOW_DOWN_DELAY_AFTER", "50"))
SLOW_DOWN_DELAY_MS = int(os.getenv("SLOW_DOWN_DELAY_MS", "1000"))

# Login lockout
MAX_FAILED_LOGINS = 5
LOCKOUT_DURATION = 30 * 60
FAILED_LOGIN_RESET = 2 * 60 * 60

# QR codes
DEFAULT_MAX_QR_CODES = 50
SHARE_SECRET = os.getenv("SHARE_SECRET", JWT_SECRET)
SHARE_MAX_AGE = parse_duration(os.getenv("SHARE_MAX_AGE", "7d"))
MAX_UPLOAD_BYTES = 10 * 1024 * 1024

# HTTP
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
DEVELOPMENT = os.getenv("ENVIRONMENT", "production") == "development"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# 2FA
TOTP_ISSUER = os.getenv("TOTP_ISSUER", "QR Vault")

# Audit log
AUDIT_LOG_PATH = DATA_DIR / "audit.log"
AUDIT_REDIS_TTL = 86400 * 30

# Bootstrap admin, created on startup when both are set
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
