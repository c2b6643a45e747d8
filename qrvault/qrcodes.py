"""
QR code records and tools.
CRUD over a user's saved codes plus stateless generate / WiFi / scan helpers.
"""
import logging
import math
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import Response
from itsdangerous import BadSignature, URLSafeTimedSerializer
from pydantic import BaseModel, ValidationError, validator
from sqlalchemy import delete, desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import audit
from .auth import AuthContext, authenticate, optional_auth
from .config import MAX_UPLOAD_BYTES, SHARE_MAX_AGE, SHARE_SECRET
from .database import SCAN_SOURCES, AsyncSessionLocal, QRCode, User, utcnow
from .payloads import QR_TYPES, WiFiConfig, build_payload, build_wifi_payload
from .qr import MIME_TYPES, RenderOptions, generate_qr_data_uri, render_qr
from .scanner import scan_image

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/qrcodes", tags=["qrcodes"])
shared_router = APIRouter(prefix="/api/shared", tags=["shared"])

MAX_TAGS = 20

_share_serializer = URLSafeTimedSerializer(SHARE_SECRET, salt="qr-share")


# ==================== REQUEST MODELS ====================

def _clean_title(v):
    if v is None:
        return v
    v = v.strip()
    if not v:
        raise ValueError("Title is required")
    if len(v) > 200:
        raise ValueError("Title cannot exceed 200 characters")
    return v


def _clean_tags(v):
    if v is None:
        return v
    tags = [t.strip() for t in v if t and t.strip()]
    if len(tags) > MAX_TAGS:
        raise ValueError(f"At most {MAX_TAGS} tags are allowed")
    return tags


class QRCodeCreate(BaseModel):
    type: str
    title: str
    content: str
    qr_code_url: str = ""
    is_scanned: bool = False
    scanned_from: Optional[str] = None
    tags: List[str] = []
    category: str = "general"
    is_favorite: bool = False
    options: Optional[RenderOptions] = None

    _title = validator("title", allow_reuse=True)(_clean_title)
    _tags = validator("tags", allow_reuse=True)(_clean_tags)

    @validator("type")
    def validate_type(cls, v):
        if v not in QR_TYPES:
            raise ValueError(f"Invalid QR type. Must be one of: {', '.join(QR_TYPES)}")
        return v

    @validator("scanned_from")
    def validate_source(cls, v):
        if v is not None and v not in SCAN_SOURCES:
            raise ValueError("scanned_from must be image, camera or manual")
        return v

    @validator("category")
    def validate_category(cls, v):
        v = (v or "").strip() or "general"
        if len(v) > 100:
            raise ValueError("Category cannot exceed 100 characters")
        return v


class QRCodeUpdate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    tags: Optional[List[str]] = None
    category: Optional[str] = None
    is_favorite: Optional[bool] = None

    _title = validator("title", allow_reuse=True)(_clean_title)
    _tags = validator("tags", allow_reuse=True)(_clean_tags)


class GenerateRequest(BaseModel):
    type: str = "text"
    content: str
    options: Optional[RenderOptions] = None


class WiFiRequest(WiFiConfig):
    options: Optional[RenderOptions] = None


class ScanEvent(BaseModel):
    device_info: Optional[str] = None


# ==================== HELPERS ====================

def _render_options(**kwargs) -> RenderOptions:
    try:
        return RenderOptions(**kwargs)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors()[0]["msg"])


def _user_options(ctx: Optional[AuthContext], options: Optional[RenderOptions]) -> RenderOptions:
    """Explicit options win; otherwise fall back to the user's preferred size."""
    if options is not None:
        return options
    size = None
    if ctx and ctx.user.preferences:
        size = ctx.user.preferences.get("defaultQRSize")
    return _render_options(size=size) if size else RenderOptions()


async def _get_owned(session: AsyncSession, qr_id: int, user_id: int) -> QRCode:
    result = await session.execute(
        select(QRCode).where(QRCode.id == qr_id, QRCode.user_id == user_id)
    )
    qr = result.scalar_one_or_none()
    if not qr:
        raise HTTPException(status_code=404, detail="QR code not found")
    return qr


async def _reserve_quota(session: AsyncSession, user_id: int) -> None:
    user = await session.get(User, user_id)
    if not user.can_create_qr_code:
        raise HTTPException(
            status_code=403,
            detail={
                "success": False,
                "message": f"QR code limit reached ({user.max_qr_codes}). Delete or upgrade to create more.",
                "code": "QR_LIMIT_REACHED",
            },
        )
    user.qr_codes_created = (user.qr_codes_created or 0) + 1


# ==================== STATELESS TOOLS ====================

@router.post("/generate")
async def generate(body: GenerateRequest, ctx: Optional[AuthContext] = Depends(optional_auth)):
    """Normalise content and render it without saving anything."""
    payload = build_payload(body.type, body.content)
    options = _user_options(ctx, body.options)
    return {
        "success": True,
        "data": {
            "type": body.type,
            "content": payload,
            "qr_code_url": generate_qr_data_uri(payload, options),
        },
    }


@router.post("/wifi")
async def generate_wifi(body: WiFiRequest, ctx: Optional[AuthContext] = Depends(optional_auth)):
    """Build a WiFi join payload and its QR image."""
    config = WiFiConfig(ssid=body.ssid, password=body.password, security=body.security, hidden=body.hidden)
    payload = build_wifi_payload(config)
    options = _user_options(ctx, body.options)
    return {
        "success": True,
        "data": {
            "type": "wifi",
            "content": payload,
            "qr_code_url": generate_qr_data_uri(payload, options),
        },
    }


@router.post("/scan")
async def scan(
    file: UploadFile = File(...),
    save: bool = Form(False),
    title: Optional[str] = Form(None),
    ctx: Optional[AuthContext] = Depends(optional_auth),
):
    """Decode a QR code from an uploaded image, optionally saving it."""
    data = await file.read(MAX_UPLOAD_BYTES + 1)
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Image too large")

    result = scan_image(data)
    if result is None:
        raise HTTPException(status_code=400, detail="No QR code found in image")

    response = result.to_dict()
    response["qrCode"] = None

    if save:
        if ctx is None:
            raise HTTPException(status_code=401, detail="Sign in to save scanned codes")
        async with AsyncSessionLocal() as session:
            await _reserve_quota(session, ctx.user.id)
            qr = QRCode(
                user_id=ctx.user.id,
                type=result.qr_type,
                title=(title or "").strip()[:200] or f"Scanned {result.qr_type}",
                content=result.content,
                qr_code_url=generate_qr_data_uri(result.content, _user_options(ctx, None)),
                is_scanned=True,
                scanned_from="image",
            )
            session.add(qr)
            await session.commit()
            await session.refresh(qr)
        audit.log_qr_created(ctx.user.email, qr.id, qr.type)
        response["qrCode"] = qr.to_dict()

    return {"success": True, "data": response}


# ==================== RECORDS ====================

@router.get("")
async def list_qrcodes(
    page: int = 1,
    limit: int = 50,
    type: str = "all",
    search: Optional[str] = None,
    favorite: Optional[bool] = None,
    ctx: AuthContext = Depends(authenticate),
):
    """List the current user's QR codes, newest first."""
    page = max(page, 1)
    limit = max(1, min(limit, 100))

    query = select(QRCode).where(QRCode.user_id == ctx.user.id)
    if type and type != "all":
        query = query.where(QRCode.type == type)
    if search:
        # Wildcards in the search text match literally
        term = search.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{term}%"
        query = query.where(or_(
            QRCode.title.ilike(pattern, escape="\\"),
            QRCode.content.ilike(pattern, escape="\\"),
        ))
    if favorite is not None:
        query = query.where(QRCode.is_favorite == favorite)

    async with AsyncSessionLocal() as session:
        total = await session.scalar(select(func.count()).select_from(query.subquery()))
        result = await session.execute(
            query.order_by(desc(QRCode.created_at), desc(QRCode.id))
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = result.scalars().all()

    return {
        "success": True,
        "data": [qr.to_dict() for qr in items],
        "pagination": {
            "current": page,
            "pages": math.ceil(total / limit) if total else 0,
            "total": total,
        },
    }


@router.post("", status_code=201)
async def create_qrcode(body: QRCodeCreate, ctx: AuthContext = Depends(authenticate)):
    payload = build_payload(body.type, body.content)
    image = body.qr_code_url or generate_qr_data_uri(payload, _user_options(ctx, body.options))

    async with AsyncSessionLocal() as session:
        await _reserve_quota(session, ctx.user.id)
        qr = QRCode(
            user_id=ctx.user.id,
            type=body.type,
            title=body.title,
            content=payload,
            qr_code_url=image,
            is_scanned=body.is_scanned,
            scanned_from=body.scanned_from,
            tags=body.tags,
            category=body.category,
            is_favorite=body.is_favorite,
        )
        session.add(qr)
        await session.commit()
        await session.refresh(qr)

    audit.log_qr_created(ctx.user.email, qr.id, qr.type)
    return {"success": True, "message": "QR code created successfully", "data": qr.to_dict()}


@router.delete("")
async def delete_all_qrcodes(ctx: AuthContext = Depends(authenticate)):
    async with AsyncSessionLocal() as session:
        result = await session.execute(delete(QRCode).where(QRCode.user_id == ctx.user.id))
        await session.commit()
    count = result.rowcount or 0

    audit.log_qr_deleted(ctx.user.email, count=count)
    return {"success": True, "message": f"{count} QR codes deleted successfully", "data": {"deleted": count}}


@router.get("/stats/overview")
async def stats_overview(ctx: AuthContext = Depends(authenticate)):
    """Totals for the dashboard."""
    owned = QRCode.user_id == ctx.user.id
    async with AsyncSessionLocal() as session:
        total = await session.scalar(select(func.count(QRCode.id)).where(owned))
        favorites = await session.scalar(
            select(func.count(QRCode.id)).where(owned, QRCode.is_favorite.is_(True))
        )
        scans = await session.scalar(select(func.coalesce(func.sum(QRCode.scan_count), 0)).where(owned))
        rows = await session.execute(
            select(QRCode.type, func.count(QRCode.id)).where(owned).group_by(QRCode.type)
        )
        by_type = {qr_type: count for qr_type, count in rows.all()}

    return {
        "success": True,
        "data": {
            "total": total,
            "favorites": favorites,
            "totalScans": scans,
            "byType": {t: by_type.get(t, 0) for t in QR_TYPES},
        },
    }


@router.get("/{qr_id}")
async def get_qrcode(qr_id: int, ctx: AuthContext = Depends(authenticate)):
    async with AsyncSessionLocal() as session:
        qr = await _get_owned(session, qr_id, ctx.user.id)
    return {"success": True, "data": qr.to_dict()}


@router.put("/{qr_id}")
async def update_qrcode(qr_id: int, body: QRCodeUpdate, ctx: AuthContext = Depends(authenticate)):
    async with AsyncSessionLocal() as session:
        qr = await _get_owned(session, qr_id, ctx.user.id)
        if body.title is not None:
            qr.title = body.title
        if body.content is not None:
            payload = build_payload(qr.type, body.content)
            if payload != qr.content:
                qr.content = payload
                qr.qr_code_url = generate_qr_data_uri(payload, _user_options(ctx, None))
        if body.tags is not None:
            qr.tags = body.tags
        if body.category is not None:
            qr.category = body.category.strip()[:100] or "general"
        if body.is_favorite is not None:
            qr.is_favorite = body.is_favorite
        qr.updated_at = utcnow()
        await session.commit()
        await session.refresh(qr)

    return {"success": True, "message": "QR code updated successfully", "data": qr.to_dict()}


@router.delete("/{qr_id}")
async def delete_qrcode(qr_id: int, ctx: AuthContext = Depends(authenticate)):
    async with AsyncSessionLocal() as session:
        qr = await _get_owned(session, qr_id, ctx.user.id)
        await session.delete(qr)
        await session.commit()

    audit.log_qr_deleted(ctx.user.email, qr_id=qr_id)
    return {"success": True, "message": "QR code deleted successfully"}


@router.patch("/{qr_id}/favorite")
async def toggle_favorite(qr_id: int, ctx: AuthContext = Depends(authenticate)):
    async with AsyncSessionLocal() as session:
        qr = await _get_owned(session, qr_id, ctx.user.id)
        qr.is_favorite = not qr.is_favorite
        await session.commit()
        await session.refresh(qr)

    where = "added to" if qr.is_favorite else "removed from"
    return {"success": True, "message": f"QR code {where} favorites", "data": qr.to_dict()}


@router.post("/{qr_id}/scans")
async def record_scan(
    qr_id: int,
    request: Request,
    body: Optional[ScanEvent] = None,
    ctx: AuthContext = Depends(authenticate),
):
    """Count a scan of a saved code."""
    device = (body.device_info if body and body.device_info else request.headers.get("user-agent")) or ""
    async with AsyncSessionLocal() as session:
        qr = await _get_owned(session, qr_id, ctx.user.id)
        qr.scan_count = (qr.scan_count or 0) + 1
        qr.last_scanned = utcnow()
        qr.device_info = device[:500]
        await session.commit()
        await session.refresh(qr)

    return {"success": True, "data": qr.to_dict()}


@router.get("/{qr_id}/image")
async def get_qrcode_image(
    qr_id: int,
    format: str = "png",
    size: int = 300,
    ctx: AuthContext = Depends(authenticate),
):
    options = _render_options(fmt=format, size=size)
    async with AsyncSessionLocal() as session:
        qr = await _get_owned(session, qr_id, ctx.user.id)

    return Response(
        content=render_qr(qr.content, options),
        media_type=MIME_TYPES[options.fmt],
        headers={"Content-Disposition": f'inline; filename="qrcode-{qr.id}.{options.fmt}"'},
    )


@router.post("/{qr_id}/share")
async def share_qrcode(qr_id: int, ctx: AuthContext = Depends(authenticate)):
    """Issue a signed, expiring token that lets anyone view this code."""
    async with AsyncSessionLocal() as session:
        qr = await _get_owned(session, qr_id, ctx.user.id)

    token = _share_serializer.dumps({"id": qr.id, "uid": ctx.user.id})
    audit.log_qr_shared(ctx.user.email, qr.id)
    return {
        "success": True,
        "data": {"token": token, "url": f"/api/shared/{token}", "expiresIn": SHARE_MAX_AGE},
    }


@shared_router.get("/{token}")
async def view_shared(token: str):
    try:
        data = _share_serializer.loads(token, max_age=SHARE_MAX_AGE)
    except BadSignature:
        raise HTTPException(status_code=404, detail="Shared link is invalid or has expired")

    async with AsyncSessionLocal() as session:
        result = await session.execute(
            select(QRCode).where(QRCode.id == data.get("id"), QRCode.user_id == data.get("uid"))
        )
        qr = result.scalar_one_or_none()
    if not qr:
        raise HTTPException(status_code=404, detail="Shared link is invalid or has expired")

    shared = qr.to_dict()
    shared.pop("userId", None)
    return {"success": True, "data": shared}
