"""
Sync Orchestrator - decides whether a tenant runs and sequences its steps.

This module provides:
- Business-hours gate in the tenant's timezone (manual triggers bypass it)
- One run at a time per tenant, with cooperative cancellation
- Fetch orders/products concurrently, then transform both concurrently
- Per-step time bounds and failure aggregation
- Final status and retry scheduling for the run
"""

import asyncio
import logging
import traceback
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.exc import InterfaceError, OperationalError

from core.config import TenantConfig
from core.exceptions import (
    AUTHENTICATION,
    INTERNAL,
    TRANSIENT,
    RunInProgressError,
    StepTimeoutError,
    SyncException,
    ThrottledError,
    describe_error,
)
from core.retry import RetryPolicy
from models.base import EntityType, FlowType, RunStatus, TriggerSource, utcnow
from sync.client import UpstreamClient
from sync.execution_log import ExecutionLog, RunSummary, StepResult
from sync.fetcher import FetchCycle
from sync.notifications import LoggingNotifier, Notifier, notify_safely
from sync.processor import TransformCycle

logger = logging.getLogger(__name__)

TRANSFORM_FLOWS = (FlowType.TRANSFORM_ORDERS, FlowType.TRANSFORM_PRODUCTS)
FETCH_FLOWS = (FlowType.FETCH_ORDERS, FlowType.FETCH_PRODUCTS)


def within_business_hours(tenant: TenantConfig, now: datetime) -> bool:
    """
    ``start <= hour < end`` in the tenant's local time; ``start > end`` is an
    overnight window (e.g. 22 -> 6).

    Args:
        now: Naive UTC instant
    """
    local = now.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tenant.timezone))
    start, end = tenant.business_hours_start, tenant.business_hours_end
    if start < end:
        return start <= local.hour < end
    return local.hour >= start or local.hour < end


def next_business_hours_start(tenant: TenantConfig, now: datetime) -> datetime:
    """
    First full local hour after ``now`` that falls inside the tenant's
    business hours, as naive UTC.
    """
    local = now.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tenant.timezone))
    hour_start = local.replace(minute=0, second=0, microsecond=0).astimezone(timezone.utc).replace(tzinfo=None)
    for hours in range(1, 26):
        candidate = hour_start + timedelta(hours=hours)
        if within_business_hours(tenant, candidate):
            return candidate
    return now


def error_class_of(exc: BaseException) -> str:
    if isinstance(exc, SyncException):
        return exc.error_class
    if isinstance(exc, (OperationalError, InterfaceError, ConnectionError, asyncio.TimeoutError)):
        return TRANSIENT
    return INTERNAL


class RunRegistry:
    """In-process registry of running syncs, one per tenant"""

    def __init__(self):
        self._runs: Dict[str, asyncio.Event] = {}

    def register(self, tenant_id: str, cancel_event: Optional[asyncio.Event] = None) -> asyncio.Event:
        if tenant_id in self._runs:
            raise RunInProgressError(
                "A sync is already running for this tenant",
                context={"tenant_id": tenant_id}
            )
        event = cancel_event or asyncio.Event()
        self._runs[tenant_id] = event
        return event

    def release(self, tenant_id: str) -> None:
        self._runs.pop(tenant_id, None)

    def is_running(self, tenant_id: str) -> bool:
        return tenant_id in self._runs

    def running(self) -> List[str]:
        return sorted(self._runs)

    def cancel(self, tenant_id: str) -> bool:
        """Request cancellation; False when no run is in progress"""
        event = self._runs.get(tenant_id)
        if event is None:
            return False
        event.set()
        return True


run_registry = RunRegistry()


class SyncOrchestrator:
    """
    Run the sync pipeline for one tenant at a time.

    Responsibilities:
    - Gate scheduled runs on tenant state and business hours
    - Run steps with their own database sessions
    - Aggregate step failures into one run status
    - Write one summary entry plus one entry per step
    - Notify after the log is written
    """

    def __init__(
        self,
        session_factory,
        notifier: Optional[Notifier] = None,
        registry: Optional[RunRegistry] = None,
        client_factory: Optional[Callable[[TenantConfig], UpstreamClient]] = None,
        retry_hook: Optional[Callable[[TenantConfig, RunSummary], None]] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier if notifier is not None else LoggingNotifier()
        self.registry = registry or run_registry
        self.client_factory = client_factory or UpstreamClient
        self.retry_hook = retry_hook

    def cancel(self, tenant_id: str) -> bool:
        return self.registry.cancel(tenant_id)

    async def run(
        self,
        tenant: TenantConfig,
        trigger: TriggerSource,
        now: Optional[datetime] = None,
        cancel_event: Optional[asyncio.Event] = None,
        full: bool = False,
        correlation_id: Optional[str] = None,
        retry_count: int = 0,
    ) -> RunSummary:
        """
        Run one sync for ``tenant``.

        Args:
            trigger: scheduler and retry runs are gated by business hours,
                manual runs are not
            now: Naive UTC instant used for the gate and the fetch window
            full: Full sync without a lookback window
            retry_count: Number of the retry this run is (0 for a fresh run)

        Returns:
            RunSummary (``skipped`` when gated, without any log entry; a
            gated retry carries the window opening in ``next_retry_at``)

        Raises:
            RunInProgressError: The tenant already has a run in progress
        """
        now = now or utcnow()
        trigger = TriggerSource(trigger)

        if not tenant.enabled:
            logger.info(f"Tenant {tenant.tenant_id} is disabled; nothing to do")
            return RunSummary.skip(tenant.tenant_id, trigger, "tenant disabled")

        if trigger != TriggerSource.MANUAL and not within_business_hours(tenant, now):
            logger.info(f"Outside business hours for {tenant.tenant_id}; skipping {trigger.value} run")
            summary = RunSummary.skip(tenant.tenant_id, trigger, "outside business hours")
            if trigger == TriggerSource.RETRY:
                # the caller re-arms the same retry for the window opening
                summary.retry_count = retry_count
                summary.full_sync = full
                summary.next_retry_at = next_business_hours_start(tenant, now)
            return summary

        event = self.registry.register(tenant.tenant_id, cancel_event)
        try:
            summary = await self._execute(
                tenant,
                trigger,
                now,
                event,
                full,
                correlation_id or uuid.uuid4().hex,
                retry_count,
            )
        finally:
            self.registry.release(tenant.tenant_id)

        await notify_safely(self.notifier, summary)
        if summary.status == RunStatus.RETRYING and self.retry_hook is not None:
            try:
                self.retry_hook(tenant, summary)
            except Exception:
                logger.exception(f"Failed to schedule retry for {tenant.tenant_id}")
        return summary

    async def _execute(
        self,
        tenant: TenantConfig,
        trigger: TriggerSource,
        now: datetime,
        cancel_event: asyncio.Event,
        full: bool,
        correlation_id: str,
        retry_count: int,
    ) -> RunSummary:
        summary = RunSummary(
            tenant_id=tenant.tenant_id,
            triggered_by=trigger,
            correlation_id=correlation_id,
            retry_count=retry_count,
            full_sync=full,
        )

        async with self.session_factory() as session:
            log = ExecutionLog(session)
            entry = await log.create(
                tenant,
                FlowType.SYNC_FULL if full else FlowType.SYNC_INCREMENTAL,
                trigger,
                correlation_id,
                retry_count=retry_count,
            )
            summary.log_id = entry.id
            summary.started_at = entry.started_at

            if cancel_event.is_set():
                await log.transition(entry, RunStatus.CANCELLED)
                summary.status = RunStatus.CANCELLED
                summary.completed_at = entry.completed_at
                return summary

            await log.start(entry)
            logger.info(
                f"Starting {trigger.value} sync {correlation_id} for {tenant.tenant_id} "
                f"({'full' if full else 'incremental'}, retry {retry_count})"
            )

            try:
                steps = await self._run_steps(tenant, now, cancel_event, full)
                status, next_retry_at, error_message = self._decide(tenant, steps, cancel_event, retry_count)

                for step in steps:
                    await log.record_step(entry, tenant, step, trigger)

                self._aggregate(summary, steps)
                summary.status = status
                summary.next_retry_at = next_retry_at
                summary.error_message = error_message

                await log.complete(
                    entry,
                    status,
                    records_total=summary.records_total,
                    records_success=summary.records_success,
                    records_failed=summary.records_failed,
                    records_skipped=summary.records_skipped,
                    records_updated=summary.records_updated,
                    error_message=error_message,
                    error_details=self._error_details(steps),
                    next_retry_at=next_retry_at,
                    metadata=self._metadata(steps, full, cancel_event),
                )

            except Exception as e:
                logger.exception(f"Unexpected error in sync {correlation_id} for {tenant.tenant_id}")
                await session.rollback()
                await session.refresh(entry)
                if not RunStatus(entry.status).is_terminal:
                    await log.complete(
                        entry,
                        RunStatus.FAILED,
                        error_message=str(e),
                        error_details={"run_error": describe_error(e)},
                        stack_trace="".join(traceback.format_exception(type(e), e, e.__traceback__)),
                    )
                raise

            summary.completed_at = entry.completed_at

        logger.info(
            f"Sync {correlation_id} for {tenant.tenant_id} finished: {summary.status.value} "
            f"(total={summary.records_total}, success={summary.records_success}, failed={summary.records_failed})"
        )
        return summary

    async def _run_steps(
        self,
        tenant: TenantConfig,
        now: datetime,
        cancel_event: asyncio.Event,
        full: bool,
    ) -> List[StepResult]:
        steps = list(await asyncio.gather(
            *(self._fetch(tenant, entity_type, now, cancel_event, full) for entity_type in EntityType)
        ))

        fatal = [s for s in steps if s.error is not None and error_class_of(s.error) == AUTHENTICATION]
        if fatal:
            logger.error(f"Aborting sync for {tenant.tenant_id}: {fatal[0].error}")
            return steps
        if cancel_event.is_set():
            return steps

        steps.extend(await asyncio.gather(
            *(self._transform(tenant, entity_type, now, cancel_event) for entity_type in EntityType)
        ))
        return steps

    async def _bounded(self, tenant: TenantConfig, cycle, coro) -> StepResult:
        try:
            return await asyncio.wait_for(coro, timeout=tenant.step_timeout_seconds)
        except asyncio.TimeoutError:
            step = cycle.step
            step.error = StepTimeoutError(
                f"{step.flow_type.value} exceeded {tenant.step_timeout_seconds}s",
                context={"tenant_id": tenant.tenant_id, "flow_type": step.flow_type.value}
            )
            logger.error(f"{step.flow_type.value} timed out for {tenant.tenant_id}")
            return step.finish()

    async def _fetch(
        self,
        tenant: TenantConfig,
        entity_type: EntityType,
        now: datetime,
        cancel_event: asyncio.Event,
        full: bool,
    ) -> StepResult:
        async with self.session_factory() as session:
            client = self.client_factory(tenant)
            cycle = FetchCycle(session, client, tenant, entity_type, cancel_event)
            async with client:
                return await self._bounded(tenant, cycle, cycle.run(now=now, full=full))

    async def _transform(
        self,
        tenant: TenantConfig,
        entity_type: EntityType,
        now: datetime,
        cancel_event: asyncio.Event,
    ) -> StepResult:
        async with self.session_factory() as session:
            cycle = TransformCycle(session, tenant, entity_type, cancel_event)
            return await self._bounded(tenant, cycle, cycle.run(now=utcnow()))

    @staticmethod
    def _decide(
        tenant: TenantConfig,
        steps: List[StepResult],
        cancel_event: asyncio.Event,
        retry_count: int,
    ) -> Tuple[RunStatus, Optional[datetime], Optional[str]]:
        """Final run status, next retry instant and error message"""
        errors = [s.error for s in steps if s.error is not None]
        fatal = [e for e in errors if error_class_of(e) == AUTHENTICATION]
        transient = [e for e in errors if error_class_of(e) == TRANSIENT]
        other = [e for e in errors if e not in fatal and e not in transient]

        transforms = [s for s in steps if s.flow_type in TRANSFORM_FLOWS]
        success = sum(s.records_success for s in transforms)
        failed = sum(s.records_failed for s in transforms)

        if cancel_event.is_set():
            return RunStatus.CANCELLED, None, "Cancelled on request"

        if fatal:
            return RunStatus.FAILED, None, str(fatal[0])

        if transient:
            if retry_count < tenant.max_retries:
                policy = RetryPolicy.for_records(tenant)
                delay = policy.delay(retry_count)
                throttled = [e for e in transient if isinstance(e, ThrottledError) and e.retry_after]
                if throttled:
                    delay = max(delay, max(e.retry_after for e in throttled))
                return RunStatus.RETRYING, utcnow() + timedelta(seconds=delay), str(transient[0])
            return RunStatus.FAILED, None, f"Retries exhausted: {transient[0]}"

        if other:
            return RunStatus.FAILED, None, str(other[0])

        if failed and success:
            return RunStatus.PARTIAL, None, f"{failed} records failed"
        if failed:
            return RunStatus.FAILED, None, f"{failed} records failed"
        return RunStatus.SUCCESS, None, None

    @staticmethod
    def _aggregate(summary: RunSummary, steps: List[StepResult]) -> None:
        summary.steps = steps
        for step in steps:
            if step.flow_type in TRANSFORM_FLOWS:
                summary.records_total += step.records_total
                summary.records_success += step.records_success
                summary.records_failed += step.records_failed
                summary.records_skipped += step.records_skipped
                summary.records_updated += step.records_updated
            elif step.flow_type in FETCH_FLOWS:
                summary.records_fetched += step.records_success

    @staticmethod
    def _error_details(steps: List[StepResult]) -> Optional[Dict]:
        details = {
            step.flow_type.value: step.error_details()
            for step in steps
            if step.error_details() is not None
        }
        return {"steps": details} if details else None

    @staticmethod
    def _metadata(steps: List[StepResult], full: bool, cancel_event: asyncio.Event) -> Dict:
        return {
            "full_sync": full,
            "cancel_requested": cancel_event.is_set(),
            "records_fetched": sum(s.records_success for s in steps if s.flow_type in FETCH_FLOWS),
            "fetched": {
                s.entity_type.value: s.records_success for s in steps if s.flow_type in FETCH_FLOWS
            },
            "exhausted_external_ids": {
                s.entity_type.value: s.metadata.get("exhausted_external_ids", [])
                for s in steps
                if s.flow_type in TRANSFORM_FLOWS and s.metadata.get("exhausted_external_ids")
            },
            "steps": {s.flow_type.value: s.status.value for s in steps},
        }
