"""
QR payload encoding.

Turns user input into the strings that end up inside a QR code, following
the conventions phone scanners understand:

    url    https://example.com
    email  mailto:someone@example.com
    phone  tel:+15551234567
    wifi   WIFI:T:WPA;S:<ssid>;P:<password>;H:false;;

WiFi SSIDs and passwords are backslash-escaped so that ``; , : " \\`` inside
them cannot break the field layout.
"""
import re
import string
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel

from .errors import PayloadError

QR_TYPES = ("text", "url", "wifi", "email", "phone")
WIFI_SECURITY = ("WPA", "WEP", "nopass")

# Byte-mode capacity of a version 40 symbol at error correction level L.
MAX_PAYLOAD_BYTES = 2953

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[\d\s\-()]+$")
PHONE_DIGITS_RE = re.compile(r"^\+?\d{7,15}$")
_WIFI_SPECIAL_RE = re.compile(r'([\\;,:"])')
_WIFI_ESCAPED_RE = re.compile(r"\\(.)", re.DOTALL)


class WiFiConfig(BaseModel):
    ssid: str
    password: str = ""
    security: str = "WPA"
    hidden: bool = False


def escape_wifi(value: str) -> str:
    if not value:
        return ""
    return _WIFI_SPECIAL_RE.sub(r"\\\1", value)


def unescape_wifi(value: str) -> str:
    if not value:
        return ""
    return _WIFI_ESCAPED_RE.sub(r"\1", value)


def _is_hex(value: str) -> bool:
    return bool(value) and all(c in string.hexdigits for c in value)


def validate_wifi(config: WiFiConfig) -> None:
    """Raise PayloadError if the network details cannot form a usable payload."""
    if not config.ssid or not config.ssid.strip():
        raise PayloadError("Network name (SSID) is required")
    if len(config.ssid.encode("utf-8")) > 32:
        raise PayloadError("Network name (SSID) cannot exceed 32 bytes")
    if config.security not in WIFI_SECURITY:
        raise PayloadError(f"Invalid security type. Must be one of: {', '.join(WIFI_SECURITY)}")

    if config.security == "nopass":
        return

    password = config.password or ""
    if not password:
        raise PayloadError(f"A password is required for {config.security} networks")

    if config.security == "WPA":
        if len(password) == 64 and _is_hex(password):
            return
        if not 8 <= len(password) <= 63:
            raise PayloadError("WPA passwords must be 8-63 characters (or 64 hex digits)")
    elif config.security == "WEP":
        if len(password) in (5, 13):
            return
        if len(password) in (10, 26) and _is_hex(password):
            return
        raise PayloadError("WEP keys must be 5 or 13 characters, or 10 or 26 hex digits")


def build_wifi_payload(config: WiFiConfig) -> str:
    validate_wifi(config)
    password = "" if config.security == "nopass" else escape_wifi(config.password)
    hidden = "true" if config.hidden else "false"
    return f"WIFI:T:{config.security};S:{escape_wifi(config.ssid)};P:{password};H:{hidden};;"


def _split_fields(body: str) -> list:
    # Split on unescaped ';', keeping escapes for unescape_wifi.
    fields, buf, escaped = [], [], False
    for ch in body:
        if escaped:
            buf.append("\\" + ch)
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == ";":
            fields.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
    if buf:
        fields.append("".join(buf))
    return [f for f in fields if f]


def _normalize_security(value: str) -> str:
    upper = value.strip().upper()
    if not upper or upper == "NOPASS":
        return "nopass"
    if upper.startswith("WPA"):
        return "WPA"
    if upper == "WEP":
        return "WEP"
    return value.strip()


def parse_wifi_payload(content: str) -> Optional[WiFiConfig]:
    """Parse a ``WIFI:`` payload. Returns None for anything else."""
    if not content or content[:5].upper() != "WIFI:":
        return None

    values = {}
    for field in _split_fields(content[5:]):
        key, sep, value = field.partition(":")
        if not sep:
            continue
        values.setdefault(key.strip().upper(), value)

    security = _normalize_security(values["T"]) if "T" in values else "WPA"
    return WiFiConfig(
        ssid=unescape_wifi(values.get("S", "")),
        password=unescape_wifi(values.get("P", "")),
        security=security,
        hidden=values.get("H", "").strip().lower() == "true",
    )


def detect_type(content: str) -> str:
    """Guess the QR type of decoded content."""
    content = (content or "").strip()
    if content[:5].upper() == "WIFI:":
        return "wifi"
    if content.lower().startswith("mailto:") or EMAIL_RE.match(content):
        return "email"
    if content.lower().startswith("tel:") or PHONE_RE.match(content):
        return "phone"
    if content.startswith(("http://", "https://")) or content.lower().startswith("www."):
        return "url"
    return "text"


def _url_payload(content: str) -> str:
    url = content.strip()
    if "://" not in url:
        url = "https://" + url
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ("http", "https"):
        raise PayloadError("URL must use http or https")
    host = parsed.hostname or ""
    if " " in parsed.netloc or not ("." in host or host == "localhost"):
        raise PayloadError("Invalid URL")
    return url


def _email_payload(content: str) -> str:
    value = content.strip()
    if value.lower().startswith("mailto:"):
        address = value[7:].split("?", 1)[0]
        payload = "mailto:" + value[7:]
    else:
        address = value
        payload = "mailto:" + value
    if not EMAIL_RE.match(address):
        raise PayloadError("Invalid email address")
    return payload


def _phone_payload(content: str) -> str:
    value = content.strip()
    if value.lower().startswith("tel:"):
        value = value[4:]
    number = re.sub(r"[\s\-().]", "", value)
    if not PHONE_DIGITS_RE.match(number):
        raise PayloadError("Invalid phone number")
    return "tel:" + number


def build_payload(qr_type: str, content: str) -> str:
    """Normalise and validate content for the given QR type."""
    if qr_type not in QR_TYPES:
        raise PayloadError(f"Invalid QR type. Must be one of: {', '.join(QR_TYPES)}")
    if content is None or not content.strip():
        raise PayloadError("Content is required")

    if qr_type == "url":
        payload = _url_payload(content)
    elif qr_type == "email":
        payload = _email_payload(content)
    elif qr_type == "phone":
        payload = _phone_payload(content)
    elif qr_type == "wifi":
        config = parse_wifi_payload(content.strip())
        if config is None:
            raise PayloadError("WiFi content must start with 'WIFI:'")
        payload = build_wifi_payload(config)
    else:
        payload = content

    if len(payload.encode("utf-8")) > MAX_PAYLOAD_BYTES:
        raise PayloadError(f"Content is too long for a QR code (max {MAX_PAYLOAD_BYTES} bytes)")
    return payload
