"""
Pydantic schemas for API request/response models
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models.base import FlowType, RunStatus, TriggerSource, utcnow


# ============================================================================
# Health Check Schemas
# ============================================================================

class TenantStatusInfo(BaseModel):
    """Latest run of one tenant, for the health check"""
    tenant_id: str
    enabled: bool = True
    running: bool = False
    last_status: Optional[RunStatus] = None
    last_run_at: Optional[datetime] = None
    last_log_id: Optional[int] = None
    next_retry_at: Optional[datetime] = None


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=utcnow)
    database_connected: bool
    scheduler_running: bool = False
    tenants: List[TenantStatusInfo] = Field(default_factory=list)

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif any(t.last_status == RunStatus.FAILED for t in self.tenants):
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00",
                "database_connected": True,
                "scheduler_running": True,
                "tenants": [
                    {
                        "tenant_id": "acme",
                        "enabled": True,
                        "running": False,
                        "last_status": "success",
                        "last_run_at": "2024-01-15T10:15:00",
                        "last_log_id": 42
                    }
                ]
            }
        }
    )


# ============================================================================
# Execution Log Schemas
# ============================================================================

class ExecutionLogResponse(BaseModel):
    """One execution log entry (summary or step)"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    flow_name: str
    flow_type: FlowType
    tenant_id: str
    source_system: str
    status: RunStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    records_total: int = 0
    records_success: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    records_updated: int = 0

    error_message: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 0
    next_retry_at: Optional[datetime] = None

    triggered_by: Optional[TriggerSource] = None
    correlation_id: Optional[str] = None
    parent_log_id: Optional[int] = None
    child_log_count: int = 0


class ExecutionLogDetailResponse(ExecutionLogResponse):
    """Summary entry with its step entries"""
    error_details: Optional[Dict[str, Any]] = None
    stack_trace: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    run_metadata: Optional[Dict[str, Any]] = None
    children: List[ExecutionLogResponse] = Field(default_factory=list)


# ============================================================================
# Trigger Schemas
# ============================================================================

class StepSummary(BaseModel):
    flow_type: FlowType
    status: RunStatus
    records_total: int
    records_success: int
    records_failed: int


class RunSummaryResponse(BaseModel):
    tenant_id: str
    triggered_by: TriggerSource
    status: Optional[RunStatus] = None
    skipped: bool = False
    reason: Optional[str] = None
    log_id: Optional[int] = None
    correlation_id: Optional[str] = None
    retry_count: int = 0
    full_sync: bool = False
    records_total: int = 0
    records_success: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    records_updated: int = 0
    records_fetched: int = 0
    error_message: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    steps: List[StepSummary] = Field(default_factory=list)


class SyncTriggerResponse(BaseModel):
    """Manual trigger result: accepted for background execution, or the finished run"""
    tenant_id: str
    accepted: bool
    full_sync: bool = False
    correlation_id: Optional[str] = None
    summary: Optional[RunSummaryResponse] = None


class CancelResponse(BaseModel):
    tenant_id: str
    cancel_requested: bool
    message: str
