"""
QR code rendering module.
Turns a payload string into a PNG or SVG image.
"""
import base64
import io
import re
import xml.etree.ElementTree as ET

import qrcode
import qrcode.constants
from PIL import Image
from pydantic import BaseModel, validator
from qrcode.exceptions import DataOverflowError
from qrcode.image.svg import SvgPathImage

from .errors import PayloadError

ERROR_CORRECTION = {
    "L": qrcode.constants.ERROR_CORRECT_L,
    "M": qrcode.constants.ERROR_CORRECT_M,
    "Q": qrcode.constants.ERROR_CORRECT_Q,
    "H": qrcode.constants.ERROR_CORRECT_H,
}
IMAGE_FORMATS = ("png", "svg")
MIME_TYPES = {"png": "image/png", "svg": "image/svg+xml"}

_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")

SVG_NAMESPACE = "http://www.w3.org/2000/svg"
ET.register_namespace("", SVG_NAMESPACE)


class RenderOptions(BaseModel):
    size: int = 300
    margin: int = 2
    foreground: str = "#000000"
    background: str = "#FFFFFF"
    error_correction: str = "M"
    fmt: str = "png"

    @validator("size")
    def validate_size(cls, v):
        if not 100 <= v <= 2000:
            raise ValueError("QR size must be between 100 and 2000 pixels")
        return v

    @validator("margin")
    def validate_margin(cls, v):
        if not 0 <= v <= 20:
            raise ValueError("Margin must be between 0 and 20 modules")
        return v

    @validator("foreground", "background")
    def validate_color(cls, v):
        if not _COLOR_RE.match(v):
            raise ValueError("Colors must be hex values like #1A2B3C")
        return v.upper()

    @validator("error_correction")
    def validate_error_correction(cls, v):
        v = v.upper()
        if v not in ERROR_CORRECTION:
            raise ValueError("Error correction must be one of: L, M, Q, H")
        return v

    @validator("fmt")
    def validate_fmt(cls, v):
        v = v.lower()
        if v not in IMAGE_FORMATS:
            raise ValueError("Format must be png or svg")
        return v


def _build(content: str, options: RenderOptions) -> qrcode.QRCode:
    qr = qrcode.QRCode(
        version=None,  # Auto-determine size
        error_correction=ERROR_CORRECTION[options.error_correction],
        box_size=10,
        border=options.margin,
    )
    qr.add_data(content)
    try:
        qr.make(fit=True)
    except (DataOverflowError, ValueError):
        # Past version 40 the library raises a plain ValueError
        raise PayloadError(
            f"Content is too long for a QR code at error correction level {options.error_correction}"
        )
    return qr


def _style_svg(data: bytes, options: RenderOptions) -> bytes:
    """Apply colours and pixel size to the path SVG the library emits."""
    root = ET.fromstring(data)
    view_box = root.get("viewBox")
    if view_box is None:
        side = re.sub(r"[a-z]+$", "", root.get("width", "0"))
        view_box = f"0 0 {side} {side}"
        root.set("viewBox", view_box)
    x, y, width, height = view_box.split()

    root.set("width", str(options.size))
    root.set("height", str(options.size))
    for el in root.iter():
        if el.tag.rsplit("}", 1)[-1] == "path":
            el.set("fill", options.foreground)

    background = ET.Element(
        f"{{{SVG_NAMESPACE}}}rect",
        x=x, y=y, width=width, height=height, fill=options.background,
    )
    root.insert(0, background)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def render_qr(content: str, options: RenderOptions = None) -> bytes:
    """
    Render a QR code image.

    Args:
        content: The payload to encode
        options: Size, colours, error correction and output format

    Returns:
        Raw PNG or SVG bytes
    """
    options = options or RenderOptions()
    qr = _build(content, options)
    buffer = io.BytesIO()

    if options.fmt == "svg":
        img = qr.make_image(image_factory=SvgPathImage)
        img.save(buffer)
        return _style_svg(buffer.getvalue(), options)

    img = qr.make_image(fill_color=options.foreground, back_color=options.background)
    pil_img = img.get_image().convert("RGB")
    # Nearest keeps module edges sharp for scanners
    pil_img = pil_img.resize((options.size, options.size), Image.NEAREST)
    pil_img.save(buffer, format="PNG")
    return buffer.getvalue()


def to_data_uri(data: bytes, fmt: str = "png") -> str:
    return f"data:{MIME_TYPES[fmt]};base64,{base64.b64encode(data).decode()}"


def generate_qr_data_uri(content: str, options: RenderOptions = None) -> str:
    """
    Generate a data URI for embedding a QR code directly in HTML.

    Returns:
        Data URI string (data:image/png;base64,...)
    """
    options = options or RenderOptions()
    return to_data_uri(render_qr(content, options), options.fmt)
