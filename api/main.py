"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, runs, sync as sync_routes
from api.middleware import RequestContextMiddleware
from core.config import settings, load_tenant_configs
from core.database import async_session_maker
from core.logging import setup_logging
from sync.notifications import build_notifier
from sync.orchestrator import SyncOrchestrator
from sync.scheduler import SyncScheduler
import logging

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Store Sync API",
    description="Multi-tenant order and product sync: manual triggers and execution log",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(runs.router)
app.include_router(sync_routes.router)


def build_sync_scheduler() -> SyncScheduler:
    tenants = load_tenant_configs()
    orchestrator = SyncOrchestrator(async_session_maker, notifier=build_notifier())
    return SyncScheduler(orchestrator, tenants)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    setup_logging()
    logger.info("Starting Store Sync API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    app.state.sync = build_sync_scheduler()
    logger.info(f"Loaded {len(app.state.sync.tenants)} tenants from {settings.TENANTS_CONFIG_PATH}")

    if settings.SCHEDULER_ENABLED:
        await app.state.sync.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Store Sync API")
    sync_scheduler = getattr(app.state, "sync", None)
    if sync_scheduler is not None:
        sync_scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Store Sync API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "runs": "/runs",
            "trigger": "/tenants/{tenant_id}/sync",
            "cancel": "/tenants/{tenant_id}/cancel"
        }
    }
