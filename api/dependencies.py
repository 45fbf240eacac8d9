"""
FastAPI dependencies
"""

from typing import AsyncGenerator

from fastapi import HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import async_session_maker
from sync.scheduler import SyncScheduler


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Database session per request"""
    async with async_session_maker() as session:
        yield session


def get_sync_scheduler(request: Request) -> SyncScheduler:
    """SyncScheduler created at startup"""
    sync_scheduler = getattr(request.app.state, "sync", None)
    if sync_scheduler is None:
        raise HTTPException(status_code=503, detail="Sync service is not initialized")
    return sync_scheduler
