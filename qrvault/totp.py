"""
RFC 6238 time-based one-time passwords for account 2FA.
"""
import base64
import hashlib
import hmac
import secrets
import struct
import time
from urllib.parse import quote

from .config import TOTP_ISSUER

PERIOD = 30
DIGITS = 6
BASE32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"


def _decode_secret(secret: str) -> bytes:
    secret = secret.strip().replace(" ", "").upper()
    missing_padding = len(secret) % 8
    if missing_padding:
        secret += "=" * (8 - missing_padding)
    return base64.b32decode(secret, casefold=True)


def hotp(secret: str, counter: int) -> str:
    key = _decode_secret(secret)
    digest = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code = (struct.unpack(">I", digest[offset:offset + 4])[0] & 0x7FFFFFFF) % 10 ** DIGITS
    return str(code).zfill(DIGITS)


def totp(secret: str, at: float = None) -> str:
    return hotp(secret, int(at if at is not None else time.time()) // PERIOD)


def verify_totp(secret: str, code: str, window: int = 2, at: float = None) -> bool:
    """
    Verify a TOTP code.
    window: Number of 30s intervals to accept before/after now (clock drift).
    """
    if not secret or not code:
        return False
    code = str(code).strip()
    try:
        counter = int(at if at is not None else time.time()) // PERIOD
        return any(
            hmac.compare_digest(hotp(secret, counter + i), code)
            for i in range(-window, window + 1)
        )
    except (ValueError, TypeError):
        # Malformed base32 secret
        return False


def random_base32(length: int = 32) -> str:
    return "".join(secrets.choice(BASE32_ALPHABET) for _ in range(length))


def provisioning_uri(account: str, secret: str, issuer: str = TOTP_ISSUER) -> str:
    label = quote(f"{issuer}:{account}")
    return (
        f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}"
        f"&algorithm=SHA1&digits={DIGITS}&period={PERIOD}"
    )
