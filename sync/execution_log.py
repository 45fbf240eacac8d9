"""
Execution log recorder.

Every run writes one summary entry plus one child entry per pipeline step.
Status changes go through ``transition`` which enforces:

    pending -> running | cancelled
    running -> success | partial | failed | retrying | cancelled

Terminal entries are never rewritten.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from core.config import TenantConfig
from core.exceptions import InvalidTransitionError, describe_error
from models.base import EntityType, FlowType, RunStatus, TriggerSource, utcnow
from models.execution_log import ExecutionLogEntry

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.CANCELLED},
    RunStatus.RUNNING: {
        RunStatus.SUCCESS,
        RunStatus.PARTIAL,
        RunStatus.FAILED,
        RunStatus.RETRYING,
        RunStatus.CANCELLED,
    },
}

ERROR_MESSAGE_MAX_LENGTH = 4000
MAX_RECORDED_ERRORS = 50


def check_transition(current: RunStatus, new: RunStatus) -> None:
    current = RunStatus(current)
    new = RunStatus(new)
    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(
            f"Cannot move execution log entry from {current.value} to {new.value}",
            context={"from_status": current.value, "to_status": new.value}
        )


@dataclass
class StepResult:
    """Outcome of one pipeline step (fetch or transform of one entity type)"""

    flow_type: FlowType
    entity_type: EntityType
    status: RunStatus = RunStatus.SUCCESS
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    records_total: int = 0
    records_success: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    records_updated: int = 0
    record_errors: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[BaseException] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def failed_entirely(self) -> bool:
        return self.error is not None

    def add_record_error(self, external_id: Optional[str], exc: BaseException, **extra) -> None:
        self.records_failed += 1
        if len(self.record_errors) < MAX_RECORDED_ERRORS:
            self.record_errors.append({"external_id": external_id, **describe_error(exc), **extra})

    def finish(self, status: Optional[RunStatus] = None) -> "StepResult":
        self.completed_at = utcnow()
        if status is not None:
            self.status = status
        elif self.error is not None:
            self.status = RunStatus.FAILED
        elif self.records_failed and self.records_success:
            self.status = RunStatus.PARTIAL
        elif self.records_failed:
            self.status = RunStatus.FAILED
        else:
            self.status = RunStatus.SUCCESS
        return self

    def error_details(self) -> Optional[Dict[str, Any]]:
        if self.error is None and not self.record_errors:
            return None
        details: Dict[str, Any] = {}
        if self.error is not None:
            details["step_error"] = describe_error(self.error)
        if self.record_errors:
            details["record_errors"] = self.record_errors
        return details


@dataclass
class RunSummary:
    """
    Outcome of one orchestrator invocation.

    A run stopped by the gate (tenant disabled, outside business hours) is
    ``skipped``: it has no status and wrote no execution log entry.
    """

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
    steps: List[StepResult] = field(default_factory=list)

    @classmethod
    def skip(cls, tenant_id: str, triggered_by: TriggerSource, reason: str) -> "RunSummary":
        return cls(tenant_id=tenant_id, triggered_by=triggered_by, skipped=True, reason=reason)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "triggered_by": self.triggered_by.value,
            "status": self.status.value if self.status else None,
            "skipped": self.skipped,
            "reason": self.reason,
            "log_id": self.log_id,
            "correlation_id": self.correlation_id,
            "retry_count": self.retry_count,
            "full_sync": self.full_sync,
            "records_total": self.records_total,
            "records_success": self.records_success,
            "records_failed": self.records_failed,
            "records_skipped": self.records_skipped,
            "records_updated": self.records_updated,
            "records_fetched": self.records_fetched,
            "error_message": self.error_message,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "steps": [
                {
                    "flow_type": step.flow_type.value,
                    "status": step.status.value,
                    "records_total": step.records_total,
                    "records_success": step.records_success,
                    "records_failed": step.records_failed,
                }
                for step in self.steps
            ],
        }


class ExecutionLog:
    """Create, transition and query execution log entries"""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def create(
        self,
        tenant: TenantConfig,
        flow_type: FlowType,
        triggered_by: TriggerSource,
        correlation_id: str,
        retry_count: int = 0,
        parent: Optional[ExecutionLogEntry] = None,
        flow_name: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> ExecutionLogEntry:
        """Create a pending entry and commit it"""
        entry = ExecutionLogEntry(
            flow_name=flow_name or f"{tenant.tenant_id}:{flow_type.value}",
            flow_type=flow_type,
            source_system=tenant.source_system,
            tenant_id=tenant.tenant_id,
            status=RunStatus.PENDING,
            started_at=started_at or utcnow(),
            retry_count=retry_count,
            max_retries=tenant.max_retries,
            context=tenant.safe_snapshot() if parent is None else None,
            triggered_by=triggered_by,
            correlation_id=correlation_id,
            parent_log_id=parent.id if parent is not None else None,
        )
        self.db.add(entry)
        if parent is not None:
            parent.child_log_count = (parent.child_log_count or 0) + 1
        await self.db.commit()
        return entry

    async def transition(self, entry: ExecutionLogEntry, status: RunStatus, **fields) -> ExecutionLogEntry:
        """
        Move an entry to ``status`` and commit.

        Raises:
            InvalidTransitionError: The state machine does not allow the change
        """
        check_transition(entry.status, status)

        entry.status = status
        for name, value in fields.items():
            setattr(entry, name, value)

        if status.is_terminal:
            entry.completed_at = entry.completed_at or utcnow()
            entry.duration_ms = int((entry.completed_at - entry.started_at).total_seconds() * 1000)

        await self.db.commit()
        logger.debug(f"Execution log {entry.id} ({entry.flow_name}) -> {status.value}")
        return entry

    async def start(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        return await self.transition(entry, RunStatus.RUNNING)

    async def complete(
        self,
        entry: ExecutionLogEntry,
        status: RunStatus,
        records_total: int = 0,
        records_success: int = 0,
        records_failed: int = 0,
        records_skipped: int = 0,
        records_updated: int = 0,
        error_message: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None,
        stack_trace: Optional[str] = None,
        next_retry_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
        completed_at: Optional[datetime] = None,
    ) -> ExecutionLogEntry:
        """Move a running entry to a terminal status with its counts and errors"""
        if not RunStatus(status).is_terminal:
            raise InvalidTransitionError(
                f"{RunStatus(status).value} is not a terminal status",
                context={"log_id": entry.id}
            )
        return await self.transition(
            entry,
            status,
            records_total=records_total,
            records_success=records_success,
            records_failed=records_failed,
            records_skipped=records_skipped,
            records_updated=records_updated,
            error_message=error_message[:ERROR_MESSAGE_MAX_LENGTH] if error_message else None,
            error_details=error_details,
            stack_trace=stack_trace,
            next_retry_at=next_retry_at,
            run_metadata=metadata,
            completed_at=completed_at,
        )

    async def record_step(
        self,
        parent: ExecutionLogEntry,
        tenant: TenantConfig,
        step: StepResult,
        triggered_by: TriggerSource,
    ) -> ExecutionLogEntry:
        """Write the child entry of a finished step"""
        child = await self.create(
            tenant,
            step.flow_type,
            triggered_by,
            correlation_id=parent.correlation_id,
            retry_count=parent.retry_count,
            parent=parent,
            started_at=step.started_at,
        )
        await self.start(child)
        return await self.complete(
            child,
            step.status,
            records_total=step.records_total,
            records_success=step.records_success,
            records_failed=step.records_failed,
            records_skipped=step.records_skipped,
            records_updated=step.records_updated,
            error_message=str(step.error) if step.error is not None else None,
            error_details=step.error_details(),
            metadata=step.metadata or None,
            completed_at=step.completed_at,
        )

    async def get(self, log_id: int) -> Optional[ExecutionLogEntry]:
        return await self.db.get(ExecutionLogEntry, log_id)

    async def get_with_children(self, log_id: int) -> Optional[ExecutionLogEntry]:
        result = await self.db.execute(
            select(ExecutionLogEntry)
            .options(selectinload(ExecutionLogEntry.children))
            .where(ExecutionLogEntry.id == log_id)
        )
        return result.scalar_one_or_none()

    async def recent_runs(self, tenant_id: Optional[str] = None, limit: int = 20) -> List[ExecutionLogEntry]:
        """Summary entries, newest first"""
        query = select(ExecutionLogEntry).where(ExecutionLogEntry.parent_log_id.is_(None))
        if tenant_id:
            query = query.where(ExecutionLogEntry.tenant_id == tenant_id)
        query = query.order_by(ExecutionLogEntry.started_at.desc(), ExecutionLogEntry.id.desc()).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def latest_per_tenant(self) -> Dict[str, ExecutionLogEntry]:
        latest_ids = (
            select(func.max(ExecutionLogEntry.id))
            .where(ExecutionLogEntry.parent_log_id.is_(None))
            .group_by(ExecutionLogEntry.tenant_id)
        )
        result = await self.db.execute(
            select(ExecutionLogEntry).where(ExecutionLogEntry.id.in_(latest_ids))
        )
        return {entry.tenant_id: entry for entry in result.scalars().all()}

    async def pending_retries(self) -> List[ExecutionLogEntry]:
        """
        Latest summary per tenant when it is waiting in ``retrying``.

        A retry that lands outside business hours is re-armed by the scheduler
        for the window opening; its entry stays ``retrying`` until that run
        writes a newer summary.
        """
        latest = await self.latest_per_tenant()
        return sorted(
            (
                entry for entry in latest.values()
                if entry.status == RunStatus.RETRYING and entry.next_retry_at is not None
            ),
            key=lambda entry: entry.next_retry_at
        )
