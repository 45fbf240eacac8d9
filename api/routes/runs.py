"""
Execution log queries
"""

from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from schemas.api import ExecutionLogDetailResponse, ExecutionLogResponse
from sync.execution_log import ExecutionLog

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Runs"])


@router.get("/runs", response_model=List[ExecutionLogResponse])
async def list_runs(
    request: Request,
    tenant_id: Optional[str] = Query(None, description="Filter by tenant"),
    limit: int = Query(20, ge=1, le=200, description="Number of runs to return"),
    db: AsyncSession = Depends(get_db)
):
    """Most recent run summaries, newest first"""
    request_id = getattr(request.state, "request_id", "-")
    logger.info(f"[{request_id}] GET /runs - tenant_id={tenant_id}, limit={limit}")
    return await ExecutionLog(db).recent_runs(tenant_id=tenant_id, limit=limit)


@router.get("/runs/{log_id}", response_model=ExecutionLogDetailResponse)
async def get_run(log_id: int, db: AsyncSession = Depends(get_db)):
    """One run (or step) with its step entries"""
    entry = await ExecutionLog(db).get_with_children(log_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Run {log_id} not found")
    return entry
