"""
Fetch cycle: page through the upstream API and persist every page verbatim.

Each page's raw records and the checkpoint cursor are committed in one
transaction, so a crashed or cancelled cycle resumes from the page after the
last committed one, with the same updated_at window.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import TenantConfig
from models.base import EntityType, FlowType, RunStatus, utcnow
from models.checkpoint import FetchCheckpoint
from sync.client import UpstreamClient
from sync.execution_log import StepResult
from sync.raw_store import RawStore

logger = logging.getLogger(__name__)


class FetchCycle:
    """
    Fetch all pages of one entity type for one tenant into the raw store.

    Responsibilities:
    - Incremental window (now - lookback) or full sync (no window)
    - Durable cursor checkpoint per (tenant, entity type)
    - Skip items without an id
    - Stop between pages when cancellation is requested
    """

    def __init__(
        self,
        db_session: AsyncSession,
        client: UpstreamClient,
        tenant: TenantConfig,
        entity_type: EntityType,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.db = db_session
        self.client = client
        self.tenant = tenant
        self.entity_type = entity_type
        self.cancel_event = cancel_event
        self.raw_store = RawStore(db_session)
        self.step = StepResult(flow_type=FlowType.fetch_for(entity_type), entity_type=entity_type)

    async def get_checkpoint(self) -> FetchCheckpoint:
        """Retrieve (or create) the checkpoint of this tenant and entity type"""
        result = await self.db.execute(
            select(FetchCheckpoint).where(
                FetchCheckpoint.tenant_id == self.tenant.tenant_id,
                FetchCheckpoint.entity_type == self.entity_type,
            )
        )
        checkpoint = result.scalar_one_or_none()
        if checkpoint is None:
            checkpoint = FetchCheckpoint(
                tenant_id=self.tenant.tenant_id,
                entity_type=self.entity_type,
                status=RunStatus.PENDING,
                total_runs=0,
                total_records_fetched=0,
                last_records_fetched=0,
            )
            self.db.add(checkpoint)
            await self.db.commit()
        return checkpoint

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _event_type(self, full: bool) -> str:
        return f"{self.entity_type.value}/{'backfill' if full else 'updated'}"

    async def run(self, now: Optional[datetime] = None, full: bool = False) -> StepResult:
        """
        Run the fetch cycle.

        Args:
            now: Cycle start (naive UTC); the incremental window is
                ``now - lookback``
            full: Fetch everything, ignoring the lookback window

        Returns:
            StepResult; a failure is recorded on it rather than raised
        """
        now = now or utcnow()
        step = self.step
        step.started_at = now
        checkpoint = None
        pages = 0

        try:
            checkpoint = await self.get_checkpoint()

            if checkpoint.in_flight:
                cursor = checkpoint.cursor
                window_start = checkpoint.window_start
                step.metadata["resumed"] = True
                logger.info(
                    f"Resuming {self.entity_type.value} fetch for {self.tenant.tenant_id} "
                    f"from stored cursor (window start: {window_start})"
                )
            else:
                cursor = None
                window_start = None if full else now - timedelta(minutes=self.tenant.lookback_minutes)
                checkpoint.window_start = window_start

            checkpoint.status = RunStatus.RUNNING
            checkpoint.last_run_at = now
            await self.db.commit()

            step.metadata["window_start"] = window_start.isoformat() if window_start else None
            step.metadata["full_sync"] = window_start is None

            while True:
                if self._cancelled():
                    logger.info(f"Fetch of {self.entity_type.value} for {self.tenant.tenant_id} cancelled after {pages} pages")
                    step.metadata["pages"] = pages
                    return step.finish(RunStatus.CANCELLED)

                page = await self.client.fetch_page(self.entity_type, cursor, window_start)

                for item in page.items:
                    step.records_total += 1
                    external_id = item.get("id")
                    if external_id is None or str(external_id).strip() == "":
                        step.records_skipped += 1
                        logger.warning(
                            f"Skipping {self.entity_type.value} item without id for {self.tenant.tenant_id}"
                        )
                        continue

                    await self.raw_store.upsert_raw(
                        tenant_id=self.tenant.tenant_id,
                        external_id=str(external_id),
                        source_system=self.tenant.source_system,
                        event_type=self._event_type(window_start is None),
                        payload=item,
                        entity_type=self.entity_type,
                        max_retries=self.tenant.max_retries,
                    )
                    step.records_success += 1

                # Page and cursor become durable together
                checkpoint.cursor = page.next_cursor
                await self.db.commit()
                pages += 1

                if page.done:
                    break
                cursor = page.next_cursor

            finished = utcnow()
            checkpoint.last_window_start = window_start
            checkpoint.window_start = None
            checkpoint.status = RunStatus.SUCCESS
            checkpoint.last_success_at = finished
            checkpoint.total_runs = (checkpoint.total_runs or 0) + 1
            checkpoint.total_records_fetched = (checkpoint.total_records_fetched or 0) + step.records_success
            checkpoint.last_records_fetched = step.records_success
            checkpoint.error_message = None
            await self.db.commit()

            step.metadata["pages"] = pages
            logger.info(
                f"Fetched {step.records_success} {self.entity_type.value} for {self.tenant.tenant_id} "
                f"in {pages} pages ({step.records_skipped} skipped)"
            )
            return step.finish()

        except Exception as e:
            step.error = e
            step.metadata["pages"] = pages
            logger.error(
                f"Fetch of {self.entity_type.value} failed for {self.tenant.tenant_id}: {e}",
                extra={"error_context": {"tenant_id": self.tenant.tenant_id, "pages": pages}}
            )
            await self.db.rollback()
            if checkpoint is not None:
                await self._record_failure(checkpoint, e)
            return step.finish()

    async def _record_failure(self, checkpoint: FetchCheckpoint, error: Exception) -> None:
        # The cursor of the last committed page is kept for the next run
        try:
            await self.db.refresh(checkpoint)
            checkpoint.status = RunStatus.FAILED
            checkpoint.last_failure_at = utcnow()
            checkpoint.total_runs = (checkpoint.total_runs or 0) + 1
            checkpoint.error_message = str(error)[:4000]
            await self.db.commit()
        except Exception:
            logger.exception(f"Failed to update fetch checkpoint for {self.tenant.tenant_id}")
            await self.db.rollback()
