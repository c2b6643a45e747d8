"""
QR decoding from uploaded images.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import cv2
import numpy as np

from .errors import ScanError
from .payloads import WiFiConfig, detect_type, parse_wifi_payload

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    content: str
    qr_type: str
    points: list = field(default_factory=list)
    wifi: Optional[WiFiConfig] = None

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "type": self.qr_type,
            "points": self.points,
            "wifi": self.wifi.dict() if self.wifi else None,
        }


def _load_image(data: bytes) -> np.ndarray:
    if not data:
        raise ScanError("No image data received")
    buf = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(buf, cv2.IMREAD_COLOR)
    if img is None:
        raise ScanError("Failed to load image")
    return img


def _polygon(pts) -> List[List[int]]:
    # Single detection comes back as (1, 4, 2), multi rows as (4, 2)
    if pts is None:
        return []
    return np.asarray(pts).reshape(-1, 2).astype(int).tolist()


def _result(text: str, points) -> ScanResult:
    text = text.strip()
    qr_type = detect_type(text)
    return ScanResult(
        content=text,
        qr_type=qr_type,
        points=points,
        wifi=parse_wifi_payload(text) if qr_type == "wifi" else None,
    )


def decode_image(data: bytes) -> List[ScanResult]:
    """Decode every QR code found in an encoded image (PNG, JPEG, ...)."""
    img = _load_image(data)
    detector = cv2.QRCodeDetector()
    results = []

    # Try Multi QR
    try:
        ret, texts, points, _ = detector.detectAndDecodeMulti(img)
    except cv2.error as e:
        logger.debug("Multi QR decode failed: %s", e)
        ret, texts, points = False, None, None

    if ret and texts and points is not None:
        for i, txt in enumerate(texts):
            if txt:
                results.append(_result(txt, _polygon(points[i])))
        if results:
            return results

    # Single fallback
    try:
        txt, pts, _ = detector.detectAndDecode(img)
    except cv2.error as e:
        logger.debug("Single QR decode failed: %s", e)
        return results
    if txt:
        results.append(_result(txt, _polygon(pts)))
    return results


def scan_image(data: bytes) -> Optional[ScanResult]:
    """Return the first QR code in the image, or None if there is none."""
    results = decode_image(data)
    return results[0] if results else None
