import asyncio
import logging
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from core.config import TenantConfig
from core.exceptions import ConfigurationError, RunInProgressError
from models.base import FlowType, TriggerSource
from sync.execution_log import ExecutionLog, RunSummary
from sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Trigger surface of the pipeline.

    - One interval job per enabled tenant (``fetch_interval_minutes``),
      never more than one instance at a time
    - One date job per tenant for a run waiting in ``retrying``
    - Manual triggers and cancellation for the HTTP API
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        tenants: Iterable[TenantConfig],
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.orchestrator = orchestrator
        self.tenants: Dict[str, TenantConfig] = {t.tenant_id: t for t in tenants}
        self._tasks: Set[asyncio.Task] = set()
        orchestrator.retry_hook = self.schedule_retry

    @staticmethod
    def job_id(tenant_id: str) -> str:
        return f"sync:{tenant_id}"

    @staticmethod
    def retry_job_id(tenant_id: str) -> str:
        return f"retry:{tenant_id}"

    def get_tenant(self, tenant_id: str) -> TenantConfig:
        tenant = self.tenants.get(tenant_id)
        if tenant is None:
            raise ConfigurationError("Unknown tenant", context={"tenant_id": tenant_id})
        return tenant

    async def run_tenant_job(
        self,
        tenant_id: str,
        trigger: TriggerSource = TriggerSource.SCHEDULER,
        retry_count: int = 0,
        full: bool = False,
        correlation_id: Optional[str] = None,
    ) -> Optional[RunSummary]:
        """Job to run the pipeline for one tenant"""
        tenant = self.tenants.get(tenant_id)
        if tenant is None:
            logger.warning(f"Scheduler: tenant {tenant_id} is no longer configured")
            return None

        logger.info(f"Scheduler: starting {trigger.value} sync for {tenant_id}")
        try:
            summary = await self.orchestrator.run(
                tenant,
                trigger,
                full=full,
                correlation_id=correlation_id,
                retry_count=retry_count,
            )
            if summary.skipped and trigger == TriggerSource.RETRY and summary.next_retry_at is not None:
                self._add_retry_job(tenant, summary.next_retry_at, retry_count, full)
            return summary
        except RunInProgressError:
            logger.info(f"Scheduler: sync for {tenant_id} already running; skipped")
        except Exception as e:
            logger.error(f"Scheduler: sync job for {tenant_id} failed - {e}")
        return None

    def schedule_tenant(self, tenant: TenantConfig) -> None:
        self.scheduler.add_job(
            self.run_tenant_job,
            trigger=IntervalTrigger(minutes=tenant.fetch_interval_minutes),
            id=self.job_id(tenant.tenant_id),
            args=[tenant.tenant_id],
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def schedule_retry(self, tenant: TenantConfig, summary: RunSummary) -> None:
        """Run the tenant again at ``summary.next_retry_at`` as a retry"""
        if summary.next_retry_at is None:
            return
        self._add_retry_job(tenant, summary.next_retry_at, summary.retry_count + 1, summary.full_sync)

    def _add_retry_job(self, tenant: TenantConfig, run_at: datetime, retry_count: int, full: bool) -> None:
        self.scheduler.add_job(
            self.run_tenant_job,
            trigger=DateTrigger(run_date=run_at, timezone="UTC"),
            id=self.retry_job_id(tenant.tenant_id),
            args=[tenant.tenant_id],
            kwargs={
                "trigger": TriggerSource.RETRY,
                "retry_count": retry_count,
                "full": full,
            },
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=None,
        )
        logger.info(f"Scheduler: retry {retry_count} for {tenant.tenant_id} at {run_at.isoformat()}")

    async def rearm_retries(self) -> int:
        """Schedule retries left pending by a previous process"""
        async with self.orchestrator.session_factory() as session:
            pending = await ExecutionLog(session).pending_retries()

        armed = 0
        for entry in pending:
            tenant = self.tenants.get(entry.tenant_id)
            if tenant is None or not tenant.enabled:
                continue
            self.schedule_retry(
                tenant,
                RunSummary(
                    tenant_id=entry.tenant_id,
                    triggered_by=entry.triggered_by,
                    retry_count=entry.retry_count,
                    next_retry_at=entry.next_retry_at,
                    full_sync=entry.flow_type == FlowType.SYNC_FULL,
                ),
            )
            armed += 1
        return armed

    async def trigger_now(self, tenant_id: str, full: bool = False, wait: bool = False):
        """
        Manual trigger: bypasses business hours.

        Returns:
            RunSummary when ``wait`` is set, otherwise the correlation id of
            the run started in the background

        Raises:
            ConfigurationError: Unknown tenant
            RunInProgressError: The tenant already has a run in progress
        """
        tenant = self.get_tenant(tenant_id)
        if wait:
            return await self.orchestrator.run(tenant, TriggerSource.MANUAL, full=full)

        if self.orchestrator.registry.is_running(tenant_id):
            raise RunInProgressError(
                "A sync is already running for this tenant",
                context={"tenant_id": tenant_id}
            )
        correlation_id = uuid.uuid4().hex
        task = asyncio.create_task(
            self.run_tenant_job(
                tenant_id,
                trigger=TriggerSource.MANUAL,
                full=full,
                correlation_id=correlation_id,
            )
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return correlation_id

    def cancel(self, tenant_id: str) -> bool:
        self.get_tenant(tenant_id)
        return self.orchestrator.cancel(tenant_id)

    def jobs(self) -> List[str]:
        return sorted(job.id for job in self.scheduler.get_jobs())

    async def start(self) -> None:
        """Start the scheduler"""
        for tenant in self.tenants.values():
            if tenant.enabled:
                self.schedule_tenant(tenant)
        try:
            armed = await self.rearm_retries()
        except Exception as e:
            armed = 0
            logger.error(f"Scheduler: could not re-arm pending retries - {e}")
        self.scheduler.start()
        logger.info(f"Sync Scheduler started ({len(self.tenants)} tenants, {armed} pending retries)")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Sync Scheduler stopped")
