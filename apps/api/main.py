"""
Social Connect - FastAPI Backend
Platform OAuth connections, token lifecycle and cached metrics for Twitter/X, YouTube and Instagram.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import cron, health, social
from services.connectors.providers import get_services, reset_services
from services.metrics_refresh import refresh_all_accounts


def _configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


async def _periodic_metrics_refresh() -> None:
    interval_minutes = max(int(settings.METRICS_REFRESH_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await refresh_all_accounts(get_services())
            print(
                f"📊 Metrics refresh: processed={result['processed']} "
                f"succeeded={result['succeeded']} failed={result['failed']}"
            )
        except Exception as exc:
            print(f"⚠️ Metrics refresh tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    _configure_logging()
    print("🚀 Starting Social Connect API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    refresh_task = None
    if int(settings.METRICS_REFRESH_INTERVAL_MINUTES) > 0:
        refresh_task = asyncio.create_task(_periodic_metrics_refresh())
        print(
            "📅 Metrics refresh loop enabled "
            f"(every {int(settings.METRICS_REFRESH_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if refresh_task is not None:
        refresh_task.cancel()
        try:
            await refresh_task
        except asyncio.CancelledError:
            pass
    await reset_services()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Social Connect API",
    description="Connect social accounts and serve cached engagement metrics",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(social.router, prefix="/social", tags=["Social"])
app.include_router(cron.router, prefix="/cron", tags=["Cron"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Social Connect API",
        "version": "0.1.0",
        "status": "running"
    }
