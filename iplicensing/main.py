"""
IP Licensing API

Licensing marketplace for creator-owned IP: assets and ownership, brand
licenses, usage reporting, royalty runs and Stripe Connect payouts.
"""
import asyncio
import importlib
import traceback
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from iplicensing.config import settings
from iplicensing.database import close_db, init_db
from iplicensing.errors import register_exception_handlers
from iplicensing.log_config import configure_logging
from iplicensing.redis_client import close_redis

configure_logging()
logger = structlog.get_logger()

ROUTER_MODULES = [
    "auth",
    "assets",
    "licenses",
    "media",
    "messages",
    "notifications",
    "royalties",
    "payouts",
    "webhooks",
    "admin_jobs",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("app_starting", version=settings.app_version, environment=settings.environment)
    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        # Continue anyway - health check will show status
        logger.error("database_init_failed", error=str(e))

    worker = None
    worker_task = None
    if settings.jobs_worker_in_process:
        from iplicensing.jobs.worker import JobsWorker

        worker = JobsWorker()
        worker_task = asyncio.create_task(worker.run_forever())

    yield

    logger.info("app_stopping")
    if worker is not None:
        await worker.shutdown()
        worker_task.cancel()
        await asyncio.gather(worker_task, return_exceptions=True)
    await close_redis()
    try:
        await close_db()
    except Exception as e:
        logger.error("database_close_failed", error=str(e))


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Licensing, royalties and payouts for creator-owned IP",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

_router_errors: list[str] = []


def load_routers() -> None:
    """Mount every endpoint module under /api/v1, logging any that fail to import."""
    for name in ROUTER_MODULES:
        try:
            module = importlib.import_module(f"iplicensing.api.endpoints.{name}")
            app.include_router(module.router, prefix="/api/v1")
        except Exception as e:
            _router_errors.append(f"{name}: {e}")
            logger.error("router_load_failed", router=name, error=str(e), traceback=traceback.format_exc())
    logger.info("routers_loaded", total=len(ROUTER_MODULES), errors=len(_router_errors))


load_routers()


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {
        "status": "healthy" if not _router_errors else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "router_errors": len(_router_errors),
    }


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "status": "running",
        "docs": "/docs",
        "endpoints": {
            "health": "/health",
            **{name: f"/api/v1/{name.replace('_', '/')}" for name in ROUTER_MODULES},
        },
    }
