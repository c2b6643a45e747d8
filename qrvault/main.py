"""
QR Vault - FastAPI Application
Main entrypoint for the API server.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import store
from .auth import ensure_admin_exists, router as auth_router
from .config import ADMIN_EMAIL, ADMIN_PASSWORD, CORS_ORIGINS, LOG_LEVEL
from .database import db_health_check, init_db
from .errors import register_error_handlers
from .limiter import limiter
from .qrcodes import router as qrcodes_router, shared_router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("qrvault")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup/shutdown."""
    # Startup
    await init_db()
    await ensure_admin_exists(ADMIN_EMAIL, ADMIN_PASSWORD)
    if await store.ping():
        logger.info("Redis connected")
    else:
        logger.warning("Redis unavailable; sessions and token revocation are disabled")
    yield
    # Shutdown
    await store.close()


app = FastAPI(
    title="QR Vault",
    description="QR code generation, scanning and storage API",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
register_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials="*" not in CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Auth-Error", "X-Auth-Duration"],
)

# Include routers
app.include_router(auth_router)
app.include_router(qrcodes_router)
app.include_router(shared_router)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    database = await db_health_check()
    return {
        "status": "healthy",
        "service": "qrvault",
        "database": "ok" if database else "unavailable",
        "redis": "ok" if await store.ping() else "unavailable",
    }
