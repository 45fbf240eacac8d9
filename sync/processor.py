"""
Transform cycle: claim unprocessed raw records in batches, normalize them and
write the normalized entities.

Each record is its own unit of work: the normalized parent, its child set and
the raw record's processed flag commit together. A record that fails
validation or hits an integrity violation is rolled back and rescheduled
without affecting the rest of the batch.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import DataError, DBAPIError, StatementError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import TenantConfig, settings
from core.exceptions import IntegrityViolationError, SyncException, TransformationError, ValidationError
from core.retry import RetryPolicy
from models.base import EntityType, FlowType, RunStatus, utcnow
from models.raw_data import RawRecord
from sync.execution_log import StepResult
from sync.loaders.normalized_store import NormalizedStore, UpsertOutcome
from sync.raw_store import RawStore
from sync.transformers.normalizer import transform

logger = logging.getLogger(__name__)

RECORD_ERRORS = (TransformationError, IntegrityViolationError)


def is_rejected_value(exc: StatementError) -> bool:
    """Value-level database errors (out of range, bad encoding) belong to one record"""
    return isinstance(exc, DataError) or not isinstance(exc, DBAPIError)


class TransformCycle:
    """
    Drain the raw record queue of one tenant and entity type.

    Records failed during this cycle get a next_retry_at after the cycle
    start, so the cycle never claims them twice and always terminates.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        tenant: TenantConfig,
        entity_type: EntityType,
        cancel_event: Optional[asyncio.Event] = None,
        retry_policy: Optional[RetryPolicy] = None,
        claim_ttl_seconds: int = settings.CLAIM_TTL_SECONDS,
    ):
        self.db = db_session
        self.tenant = tenant
        self.entity_type = entity_type
        self.cancel_event = cancel_event
        self.retry_policy = retry_policy or RetryPolicy.for_records(tenant)
        self.raw_store = RawStore(db_session, claim_ttl_seconds=claim_ttl_seconds)
        self.store = NormalizedStore(db_session)
        self.step = StepResult(flow_type=FlowType.transform_for(entity_type), entity_type=entity_type)
        self.exhausted: List[str] = []
        self.as_of: Optional[datetime] = None

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def process_record(self, raw: RawRecord) -> bool:
        """
        Transform and write one claimed raw record.

        Returns:
            True if the record was written and marked processed
        """
        step = self.step
        step.records_total += 1

        try:
            result = transform(raw)
            outcome = await self.store.write_unit(result, raw.id)
            marked = await self.raw_store.mark_processed(raw.id, content_hash=raw.content_hash)
        except StatementError as e:
            if not is_rejected_value(e):
                raise
            rejected = ValidationError(
                f"Database rejected {self.entity_type.value} {raw.external_id}: {type(e.orig or e).__name__}",
                context={"external_id": raw.external_id, "field_name": "payload"},
                original_exception=e
            )
            return await self._record_failure(raw, rejected)
        except RECORD_ERRORS as e:
            return await self._record_failure(raw, e)

        if not marked:
            step.records_skipped += 1
            return False

        step.records_success += 1
        if outcome == UpsertOutcome.UPDATED:
            step.records_updated += 1
        return True

    async def _record_failure(self, raw: RawRecord, e: SyncException) -> bool:
        """Roll back the unit, reschedule the raw record and aggregate the error"""
        await self.db.rollback()
        failure = await self.raw_store.mark_failed(raw.id, e, self.retry_policy, now=self.as_of)
        self.step.add_record_error(
            raw.external_id,
            e,
            raw_record_id=raw.id,
            retry_count=failure.retry_count,
            exhausted=failure.exhausted,
        )
        if failure.exhausted:
            self.exhausted.append(raw.external_id)
        logger.error(
            f"Transform failed for {self.entity_type.value} {raw.external_id} "
            f"(attempt {failure.retry_count}/{raw.max_retries}): {e.message}",
            extra={"error_context": e.to_dict()}
        )
        return False

    async def run(self, now: Optional[datetime] = None) -> StepResult:
        """
        Run the transform cycle until no eligible record is left.

        Args:
            now: Cycle start (naive UTC), the retry eligibility instant

        Returns:
            StepResult; a step-level failure is recorded on it rather than raised
        """
        as_of = self.as_of = now or utcnow()
        step = self.step
        step.started_at = as_of
        batches = 0
        in_hand: List[int] = []

        try:
            while True:
                if self._cancelled():
                    logger.info(
                        f"Transform of {self.entity_type.value} for {self.tenant.tenant_id} "
                        f"cancelled after {batches} batches"
                    )
                    step.metadata.update(batches=batches, exhausted_external_ids=self.exhausted)
                    return step.finish(RunStatus.CANCELLED)

                batch = await self.raw_store.claim_unprocessed_batch(
                    self.tenant.tenant_id,
                    self.entity_type,
                    self.tenant.batch_size,
                    as_of=as_of,
                )
                if not batch:
                    break

                batches += 1
                in_hand = [raw.id for raw in batch]
                for raw in batch:
                    await self.process_record(raw)
                    in_hand.remove(raw.id)

                logger.debug(
                    f"Batch {batches}: {self.entity_type.value} for {self.tenant.tenant_id} "
                    f"success={step.records_success} failed={step.records_failed}"
                )

        except Exception as e:
            step.error = e
            logger.error(
                f"Transform of {self.entity_type.value} failed for {self.tenant.tenant_id}: {e}",
                extra={"error_context": {"tenant_id": self.tenant.tenant_id, "batches": batches}}
            )
            await self.db.rollback()
            try:
                await self.raw_store.release_claims(in_hand)
            except Exception:
                logger.exception(f"Failed to release {len(in_hand)} claimed raw records")
                await self.db.rollback()

        step.metadata.update(batches=batches, exhausted_external_ids=self.exhausted)
        if self.exhausted:
            logger.warning(
                f"{len(self.exhausted)} {self.entity_type.value} for {self.tenant.tenant_id} "
                f"exhausted their retry budget: {', '.join(self.exhausted[:20])}"
            )
        logger.info(
            f"Transformed {self.entity_type.value} for {self.tenant.tenant_id}: "
            f"{step.records_success}/{step.records_total} succeeded, {step.records_failed} failed"
        )
        return step.finish()
