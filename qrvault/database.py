import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, select, text,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import NullPool

from .config import DATABASE_URL, DATA_DIR, DEFAULT_MAX_QR_CODES

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


if DATABASE_URL.startswith("sqlite"):
    # aiosqlite connections are bound to the loop that opened them
    engine = create_async_engine(DATABASE_URL, echo=False, poolclass=NullPool)
else:
    engine = create_async_engine(DATABASE_URL, echo=False, pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


class Base(DeclarativeBase):
    pass


SCAN_SOURCES = ("image", "camera", "manual")

DEFAULT_PREFERENCES = {
    "theme": "light",
    "defaultQRSize": 300,
    "autoSave": True,
    "showTutorial": True,
    "notifications": True,
    "exportFormat": "png",
}


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(String(20), default="basic")
    status: Mapped[str] = mapped_column(String(30), default="active", index=True)
    preferences: Mapped[dict] = mapped_column(JSON, default=lambda: dict(DEFAULT_PREFERENCES))

    # 2FA
    totp_secret: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Login security
    failed_logins: Mapped[int] = mapped_column(Integer, default=0)
    last_failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    lockout_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    successful_logins: Mapped[int] = mapped_column(Integer, default=0)
    password_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Activity
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_activity: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    registration_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Usage
    qr_codes_created: Mapped[int] = mapped_column(Integer, default=0)
    max_qr_codes: Mapped[int] = mapped_column(Integer, default=DEFAULT_MAX_QR_CODES)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status not in ("inactive", "suspended", "deleted")

    @property
    def is_locked(self) -> bool:
        return self.lockout_until is not None and self.lockout_until > utcnow()

    @property
    def can_create_qr_code(self) -> bool:
        return (self.qr_codes_created or 0) < (self.max_qr_codes or DEFAULT_MAX_QR_CODES)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name or self.email,
            "avatar": self.avatar_url,
            "role": self.role,
            "status": self.status,
            "preferences": {**DEFAULT_PREFERENCES, **(self.preferences or {})},
            "twoFactorEnabled": bool(self.totp_secret),
            "qrCodesCreated": self.qr_codes_created,
            "maxQRCodes": self.max_qr_codes,
            "lastLogin": self.last_login.isoformat() if self.last_login else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class QRCode(Base):
    __tablename__ = "qr_codes"
    __table_args__ = (
        Index("ix_qr_codes_user_created", "user_id", "created_at"),
        Index("ix_qr_codes_user_type", "user_id", "type"),
        Index("ix_qr_codes_user_favorite", "user_id", "is_favorite"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(10), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    qr_code_url: Mapped[str] = mapped_column(Text, default="")
    is_scanned: Mapped[bool] = mapped_column(Boolean, default=False)
    scanned_from: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    category: Mapped[str] = mapped_column(String(100), default="general")
    is_favorite: Mapped[bool] = mapped_column(Boolean, default=False)

    # Scan analytics
    scan_count: Mapped[int] = mapped_column(Integer, default=0)
    last_scanned: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    device_info: Mapped[str] = mapped_column(String(500), default="")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.type,
            "title": self.title,
            "content": self.content,
            "qrCodeUrl": self.qr_code_url,
            "isScanned": self.is_scanned,
            "scannedFrom": self.scanned_from,
            "tags": self.tags or [],
            "category": self.category,
            "isFavorite": self.is_favorite,
            "metadata": {
                "scanCount": self.scan_count,
                "lastScanned": self.last_scanned.isoformat() if self.last_scanned else None,
                "deviceInfo": self.device_info,
            },
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    device_fingerprint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, default=False)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    action: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    geo_location: Mapped[dict] = mapped_column(JSON, default=dict)
    headers: Mapped[dict] = mapped_column(JSON, default=dict)


async def init_db():
    if DATABASE_URL.startswith("sqlite"):
        DATA_DIR.mkdir(parents=True, exist_ok=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_user_by_id(user_id: int) -> Optional[User]:
    async with AsyncSessionLocal() as session:
        return await session.get(User, user_id)


async def get_user_by_email(email: str) -> Optional[User]:
    async with AsyncSessionLocal() as session:
        result = await session.execute(select(User).filter(User.email == email.strip().lower()))
        return result.scalar_one_or_none()


async def create_user(email: str, password_hash: str, name: str = None, registration_ip: str = None) -> User:
    async with AsyncSessionLocal() as session:
        user = User(
            email=email.strip().lower(),
            password_hash=password_hash,
            name=name,
            registration_ip=registration_ip,
            password_changed_at=utcnow(),
        )
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


async def db_health_check() -> bool:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database health check failed: %s", e)
        return False
