"""
Health check endpoint with database and sync status
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from api.dependencies import get_db
from schemas.api import HealthCheckResponse, TenantStatusInfo
from sync.execution_log import ExecutionLog
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Scheduler state
    - Latest run per configured tenant
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    sync_scheduler = getattr(request.app.state, "sync", None)
    tenants = dict(sync_scheduler.tenants) if sync_scheduler else {}

    latest = {}
    if db_connected:
        try:
            latest = await ExecutionLog(db).latest_per_tenant()
        except Exception as e:
            logger.error(f"Failed to fetch latest runs: {str(e)}")

    tenant_statuses = []
    for tenant_id in sorted(set(tenants) | set(latest)):
        entry = latest.get(tenant_id)
        tenant = tenants.get(tenant_id)
        tenant_statuses.append(TenantStatusInfo(
            tenant_id=tenant_id,
            enabled=tenant.enabled if tenant else False,
            running=sync_scheduler.orchestrator.registry.is_running(tenant_id) if sync_scheduler else False,
            last_status=entry.status if entry else None,
            last_run_at=entry.started_at if entry else None,
            last_log_id=entry.id if entry else None,
            next_retry_at=entry.next_retry_at if entry else None,
        ))

    return HealthCheckResponse(
        database_connected=db_connected,
        scheduler_running=bool(sync_scheduler and sync_scheduler.scheduler.running),
        tenants=tenant_statuses,
    )
