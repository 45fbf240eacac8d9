"""
Manual trigger and cancellation endpoints
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.dependencies import get_sync_scheduler
from core.exceptions import ConfigurationError, RunInProgressError
from schemas.api import CancelResponse, SyncTriggerResponse
from sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/tenants", tags=["Sync"])


@router.post("/{tenant_id}/sync", response_model=SyncTriggerResponse, status_code=202)
async def trigger_sync(
    tenant_id: str,
    request: Request,
    full: bool = Query(False, description="Full sync without the lookback window"),
    wait: bool = Query(False, description="Run in the request and return the outcome"),
    sync_scheduler: SyncScheduler = Depends(get_sync_scheduler)
):
    """
    Trigger a sync for one tenant now, regardless of business hours.

    - 202: accepted and running in the background
    - 404: unknown tenant
    - 409: a sync is already running for the tenant
    """
    request_id = getattr(request.state, "request_id", "-")
    logger.info(f"[{request_id}] Manual sync for {tenant_id} (full={full}, wait={wait})")

    try:
        result = await sync_scheduler.trigger_now(tenant_id, full=full, wait=wait)
    except ConfigurationError:
        raise HTTPException(status_code=404, detail=f"Unknown tenant {tenant_id}")
    except RunInProgressError:
        raise HTTPException(status_code=409, detail=f"A sync is already running for {tenant_id}")

    if wait:
        return SyncTriggerResponse(
            tenant_id=tenant_id,
            accepted=True,
            full_sync=full,
            correlation_id=result.correlation_id,
            summary=result.as_dict(),
        )

    return SyncTriggerResponse(
        tenant_id=tenant_id,
        accepted=True,
        full_sync=full,
        correlation_id=result,
    )


@router.post("/{tenant_id}/cancel", response_model=CancelResponse)
async def cancel_sync(
    tenant_id: str,
    sync_scheduler: SyncScheduler = Depends(get_sync_scheduler)
):
    """Request cancellation of the tenant's running sync"""
    try:
        requested = sync_scheduler.cancel(tenant_id)
    except ConfigurationError:
        raise HTTPException(status_code=404, detail=f"Unknown tenant {tenant_id}")

    return CancelResponse(
        tenant_id=tenant_id,
        cancel_requested=requested,
        message="Cancellation requested" if requested else "No sync is running",
    )
