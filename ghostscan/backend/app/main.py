"""
GhostScan — Main FastAPI Application

Follower export ingestion and ghost-follower scoring
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from app.core.config import get_settings
from app.core.exceptions import GhostScanError

settings = get_settings()

# ── Logging ──────────────────────────────────────────────────────────────

logging.basicConfig(level=logging.getLevelName(settings.log_level))

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(settings.log_level)
    ),
)

logger = structlog.get_logger()


# ── Lifespan ─────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hooks."""
    logger.info("Starting GhostScan", version=settings.app_version, executor=settings.scan_executor)

    await init_db()

    logger.info("GhostScan ready", upload_dir=settings.upload_dir)

    yield

    await engine.dispose()
    logger.info("Shutting down GhostScan")


from app.core.database import engine, init_db

# ── App ──────────────────────────────────────────────────────────────────

app = FastAPI(
    title=settings.app_name,
    description="Follower export ingestion and ghost-follower scoring",
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Prometheus metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.exception_handler(GhostScanError)
async def ghostscan_error_handler(request: Request, exc: GhostScanError):
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=exc.describe())
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Routes ───────────────────────────────────────────────────────────────

from app.api.routes import followers, profiles, scans, uploads

app.include_router(uploads.router, prefix=settings.api_prefix)
app.include_router(profiles.router, prefix=settings.api_prefix)
app.include_router(scans.router, prefix=settings.api_prefix)
app.include_router(followers.router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "description": "Follower export ingestion and ghost-follower scoring",
        "version": settings.app_version,
        "scan_executor": settings.scan_executor,
        "plans": ["free", "starter", "pro"],
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    return {"status": "healthy", "version": settings.app_version}
